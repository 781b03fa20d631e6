import concurrent.futures
import logging
import threading
from typing import List, Optional, Protocol
from videoconverter.domain.events import JobStarted
from videoconverter.domain.models import ConversionJob, EncoderProfile, ErrorKind, JobStatus, TranscodeOutcome
from videoconverter.infrastructure.event_bus import EventBus
from videoconverter.pipeline.job_queue import JobQueue
from videoconverter.pipeline.jobs import JobTable
from videoconverter.pipeline.retry import RetryManager


class Executor(Protocol):
    def execute(
        self,
        job: ConversionJob,
        profile: EncoderProfile,
        kill_event: Optional[threading.Event] = None,
    ) -> TranscodeOutcome: ...


class WorkerPool:
    """Exactly `size` long-running workers pulling from the JobQueue.

    Each worker handles one job at a time, so the number of RUNNING jobs can
    never exceed `size`.
    """

    def __init__(
        self,
        size: int,
        queue: JobQueue,
        jobs: JobTable,
        executor: Executor,
        retry_manager: RetryManager,
        event_bus: EventBus,
        poll_interval: float = 0.5,
    ):
        self.size = size
        self.queue = queue
        self.jobs = jobs
        self.executor = executor
        self.retry_manager = retry_manager
        self.event_bus = event_bus
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(__name__)

        self.kill_event = threading.Event()
        self._profile: Optional[EncoderProfile] = None
        self._pool: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._futures: List[concurrent.futures.Future] = []
        self._running = 0
        self._peak_running = 0
        self._running_lock = threading.Lock()

    @property
    def running(self) -> int:
        with self._running_lock:
            return self._running

    @property
    def peak_running(self) -> int:
        with self._running_lock:
            return self._peak_running

    def start(self, profile: EncoderProfile) -> None:
        self._profile = profile
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.size, thread_name_prefix="worker"
        )
        self._futures = [self._pool.submit(self._worker_loop, i) for i in range(self.size)]
        self.logger.info(f"Started {self.size} worker(s) using {profile.name}")

    def _worker_loop(self, worker_id: int) -> None:
        while True:
            job = self.queue.get(timeout=self.poll_interval)
            if job is None:
                if self.queue.closed:
                    break
                continue
            self.process(job)
        self.logger.debug(f"WORKER_EXIT: worker {worker_id}")

    def process(self, job: ConversionJob) -> None:
        self.jobs.transition(job, JobStatus.RUNNING)
        job.attempts += 1
        with self._running_lock:
            self._running += 1
            self._peak_running = max(self._peak_running, self._running)
        self.event_bus.publish(JobStarted(job=job, encoder=self._profile.encoder))

        try:
            outcome = self.executor.execute(job, self._profile, kill_event=self.kill_event)
        except Exception as e:
            self.logger.exception(f"Unexpected error converting {job.source_path}")
            outcome = TranscodeOutcome(error_kind=ErrorKind.RETRYABLE, error_message=f"Unexpected error: {e}")
        finally:
            with self._running_lock:
                self._running -= 1

        try:
            self.retry_manager.apply(job, outcome)
        except Exception:
            self.logger.exception(f"Could not record the outcome of {job.source_path}")
            if not job.status.is_terminal:
                self.retry_manager.abandon(job, "internal error")

    def stop(self, grace_period: float) -> None:
        """Closes the queue, waits for in-flight jobs, then kills what is left."""
        self.queue.close()
        if self._pool is None:
            return
        _, not_done = concurrent.futures.wait(self._futures, timeout=grace_period)
        if not_done:
            self.logger.warning(
                f"{len(not_done)} worker(s) still busy after {grace_period:g}s, terminating conversions"
            )
            self.kill_event.set()
        self.join()
        self._pool.shutdown(wait=True)
        self._pool = None

    def join(self) -> None:
        """Blocks until every worker loop has exited (the queue must be closed)."""
        concurrent.futures.wait(self._futures)
