import logging
import os
import shutil
from enum import Enum
from typing import Callable, Optional
from pydantic import BaseModel
from videoconverter.config.models import AppConfig
from videoconverter.domain.events import JobAbandoned, JobFailed, JobRetryScheduled, JobSucceeded
from videoconverter.domain.models import ConversionJob, ErrorKind, JobStatus, TranscodeOutcome
from videoconverter.infrastructure.event_bus import EventBus
from videoconverter.pipeline.job_queue import JobQueue
from videoconverter.pipeline.jobs import JobTable

class RetryAction(str, Enum):
    SUCCEED = "SUCCEED"
    RETRY = "RETRY"
    FAIL = "FAIL"
    ABANDON = "ABANDON"

class RetryDecision(BaseModel):
    action: RetryAction
    status: JobStatus
    delay_seconds: float = 0.0
    reason: str = ""

class RetryManager:
    """Turns a TranscodeOutcome into the job's next state.

    `decide()` is pure; `apply()` records the error on the job, performs the
    transition, re-enqueues retries and runs the post-success file handling.
    """

    def __init__(
        self,
        config: AppConfig,
        queue: JobQueue,
        jobs: JobTable,
        event_bus: EventBus,
        on_finished: Optional[Callable[[ConversionJob], None]] = None,
    ):
        self.config = config
        self.queue = queue
        self.jobs = jobs
        self.event_bus = event_bus
        self.on_finished = on_finished
        self.logger = logging.getLogger(__name__)

    def retry_delay(self, attempt: int) -> float:
        eh = self.config.error_handling
        if eh.retry_backoff == "exponential":
            delay = eh.retry_delay * (2 ** max(0, attempt - 1))
        else:
            delay = eh.retry_delay
        return min(delay, eh.max_retry_delay)

    def decide(self, job: ConversionJob, outcome: TranscodeOutcome) -> RetryDecision:
        if outcome.interrupted:
            return RetryDecision(action=RetryAction.ABANDON, status=JobStatus.ABANDONED,
                                 reason=outcome.error_message or "interrupted")
        if outcome.succeeded:
            return RetryDecision(action=RetryAction.SUCCEED, status=JobStatus.SUCCEEDED)

        reason = outcome.error_message or f"ffmpeg exited with code {outcome.exit_code}"
        if outcome.error_kind == ErrorKind.FATAL:
            return RetryDecision(action=RetryAction.FAIL, status=JobStatus.FAILED, reason=reason)

        max_retries = self.config.error_handling.max_retries
        if job.attempts < max_retries:
            return RetryDecision(
                action=RetryAction.RETRY,
                status=JobStatus.QUEUED,
                delay_seconds=self.retry_delay(job.attempts),
                reason=reason,
            )
        return RetryDecision(
            action=RetryAction.FAIL,
            status=JobStatus.FAILED,
            reason=f"{reason} (gave up after {job.attempts} attempts)",
        )

    def apply(self, job: ConversionJob, outcome: TranscodeOutcome) -> RetryDecision:
        decision = self.decide(job, outcome)
        if decision.action != RetryAction.SUCCEED:
            job.last_error_kind = outcome.error_kind
            job.last_error = decision.reason

        if decision.action == RetryAction.SUCCEED:
            self.jobs.transition(job, JobStatus.SUCCEEDED)
            source_deleted = self._finalize_files(job)
            self.event_bus.publish(JobSucceeded(
                job=job,
                duration_seconds=outcome.duration_seconds,
                source_deleted=source_deleted,
            ))
        elif decision.action == RetryAction.RETRY:
            self.jobs.transition(job, JobStatus.QUEUED)
            if not self.queue.put_delayed(job, decision.delay_seconds):
                return self._abandon(job, "shutdown before retry")
            self.event_bus.publish(JobRetryScheduled(
                job=job,
                delay_seconds=decision.delay_seconds,
                error_message=decision.reason,
            ))
            return decision
        elif decision.action == RetryAction.FAIL:
            self.jobs.transition(job, JobStatus.FAILED)
            self.event_bus.publish(JobFailed(
                job=job,
                error_kind=outcome.error_kind,
                error_message=decision.reason,
            ))
        else:
            self.jobs.transition(job, JobStatus.ABANDONED)
            self.event_bus.publish(JobAbandoned(job=job, reason=decision.reason))

        self._finished(job)
        return decision

    def abandon(self, job: ConversionJob, reason: str, quiet: bool = False) -> None:
        """Moves a job that never ran to completion to ABANDONED.

        With `quiet`, no JobAbandoned event is published; the drop is only
        logged at DEBUG.
        """
        if not job.status.is_terminal:
            self._abandon(job, reason, quiet=quiet)

    def _abandon(self, job: ConversionJob, reason: str, quiet: bool = False) -> RetryDecision:
        self.jobs.transition(job, JobStatus.ABANDONED)
        if quiet:
            self.logger.debug(f"JOB_DROPPED: {job.source_path.name} ({reason})")
        else:
            self.event_bus.publish(JobAbandoned(job=job, reason=reason))
        self._finished(job)
        return RetryDecision(action=RetryAction.ABANDON, status=JobStatus.ABANDONED, reason=reason)

    def _finished(self, job: ConversionJob) -> None:
        if self.on_finished is not None:
            self.on_finished(job)

    def _finalize_files(self, job: ConversionJob) -> bool:
        """Copies permissions/timestamps onto the output and deletes the source; returns True if deleted."""
        fh = self.config.file_handling
        source, dest = job.source_path, job.destination_path
        try:
            if fh.preserve_permissions:
                shutil.copymode(source, dest)
            if fh.preserve_timestamps:
                st = source.stat()
                os.utime(dest, ns=(st.st_atime_ns, st.st_mtime_ns))
        except OSError as e:
            self.logger.warning(f"Could not copy file attributes to {dest}: {e}")

        if not fh.delete_original:
            return False
        try:
            source.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.warning(f"Converted {source.name} but could not delete the original: {e}")
            return False
        return True
