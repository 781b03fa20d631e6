"""Service orchestrator for the conversion pipeline.

Wires the components together and owns their lifecycle:

- DirectoryWatcher emits each matching file once (startup scan + live events)
- StabilityGate checks run in a thread pool so discovery never blocks
- Stable files become QUEUED jobs in the JobQueue
- WorkerPool runs at most `service.max_workers` conversions at a time
- RetryManager decides retry / fail / succeed and handles the source file
- OutputRegistry gives every source its own destination, even when names clash
- The main thread waits for shutdown and keeps the instance lock fresh

All state lives on the Orchestrator instance; nothing is module-global.
"""

import concurrent.futures
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional
from videoconverter.config.models import AppConfig
from videoconverter.domain.events import FileDropped, FileSkipped, JobQueued, ProcessingSummary, ShutdownRequested
from videoconverter.domain.models import ConversionJob, DiscoveredFile, JobStatus, StabilityResult
from videoconverter.infrastructure.encoders import EncoderDetector
from videoconverter.infrastructure.event_bus import EventBus
from videoconverter.infrastructure.ffmpeg import TMP_SUFFIX
from videoconverter.infrastructure.instance_lock import InstanceLock
from videoconverter.infrastructure.output_registry import OutputRegistry
from videoconverter.infrastructure.stability import StabilityGate
from videoconverter.infrastructure.watcher import DirectoryWatcher
from videoconverter.pipeline.job_queue import JobQueue
from videoconverter.pipeline.jobs import JobTable
from videoconverter.pipeline.retry import RetryManager
from videoconverter.pipeline.worker_pool import Executor, WorkerPool


class Orchestrator:
    """Conversion service context object.

    Args:
        config: validated AppConfig.
        event_bus: EventBus receiving every domain event.
        detector: EncoderDetector; detection runs once in `start()`.
        executor: anything with TranscodeExecutor's `execute()` signature.
        watcher: optional DirectoryWatcher (built from config when omitted).
        stability_gate: optional StabilityGate (built from config when omitted).
        instance_lock: lock whose heartbeat is refreshed while running.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        detector: EncoderDetector,
        executor: Executor,
        watcher: Optional[DirectoryWatcher] = None,
        stability_gate: Optional[StabilityGate] = None,
        instance_lock: Optional[InstanceLock] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.detector = detector
        self.instance_lock = instance_lock
        self.logger = logging.getLogger(__name__)

        self.watched_paths = config.watched_paths()
        self.output_dirs: List[Path] = sorted({config.output_dir_for(wp.root) for wp in self.watched_paths})
        self.outputs = OutputRegistry(self.output_dirs)

        self.watcher = watcher or DirectoryWatcher(
            self.watched_paths, event_bus, exclude_dirs=self.output_dirs
        )
        adv = config.advanced
        self.stability_gate = stability_gate or StabilityGate(
            interval=adv.stability_check_interval,
            timeout=adv.stability_check_duration,
            required_samples=adv.stability_required_samples,
        )

        self.queue = JobQueue()
        self.jobs = JobTable()
        self.retry_manager = RetryManager(
            config, self.queue, self.jobs, event_bus, on_finished=self._on_job_finished
        )
        self.workers = WorkerPool(
            config.service.max_workers, self.queue, self.jobs, executor, self.retry_manager, event_bus
        )

        self._shutdown_event = threading.Event()
        self._shutdown_reason: Optional[str] = None
        self._stability_pool: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._discovery_thread: Optional[threading.Thread] = None
        self._started = False
        self._stopped = False

    # ── lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        profile = self.detector.detect()
        self.cleanup_stale_outputs()
        self.workers.start(profile)
        self._stability_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.advanced.stability_workers, thread_name_prefix="stability"
        )
        self.watcher.start()
        self._discovery_thread = threading.Thread(
            target=self._discovery_loop, name="discovery", daemon=True
        )
        self._discovery_thread.start()
        self._started = True

    def run(self) -> Dict[str, int]:
        """Runs until `request_shutdown()`; returns the final per-status counts."""
        self.start()
        heartbeat = self.config.advanced.stale_lock_seconds / 3
        try:
            while not self._shutdown_event.wait(heartbeat):
                if self.instance_lock is not None and not self.instance_lock.refresh():
                    self.request_shutdown("instance lock lost")
        finally:
            counts = self.stop()
        return counts

    def request_shutdown(self, reason: str = "signal") -> None:
        """Asks `run()` to stop.

        Only records the reason and sets the shutdown event, so it may be
        called from a signal handler; ShutdownRequested is published by
        `stop()` on the thread that runs it.
        """
        if self._shutdown_event.is_set():
            return
        self._shutdown_reason = reason
        self._shutdown_event.set()

    def stop(self) -> Dict[str, int]:
        """Stops discovery, drains the workers and abandons whatever did not run."""
        if self._stopped:
            return self.jobs.counts()
        self._stopped = True
        self._shutdown_event.set()
        if self._shutdown_reason is not None:
            self.event_bus.publish(ShutdownRequested(reason=self._shutdown_reason))

        self.watcher.stop()
        if self._discovery_thread is not None:
            self._discovery_thread.join(timeout=5.0)
        if self._stability_pool is not None:
            # Pending checks see the shutdown event and return STILL_WRITING
            self._stability_pool.shutdown(wait=True, cancel_futures=True)

        if self._started:
            self.workers.stop(self.config.advanced.shutdown_grace_period)
        else:
            self.queue.close()

        for job in self.queue.drain():
            self.retry_manager.abandon(job, "shutdown")
        for job in self.jobs.active():
            self.retry_manager.abandon(job, "shutdown")

        counts = self.jobs.counts()
        self.event_bus.publish(ProcessingSummary(counts=counts))
        return counts

    # ── discovery → stability → queue ────────────────────────────────────────

    def _discovery_loop(self) -> None:
        for discovered in self.watcher:
            if self._shutdown_event.is_set():
                break
            try:
                self.submit(discovered)
            except Exception:
                self.logger.exception(f"Could not schedule {discovered.path}")

    def submit(self, discovered: DiscoveredFile) -> Optional[ConversionJob]:
        """Creates a job for a discovered file and starts its stability check."""
        root = discovered.watched_root or discovered.path.parent
        destination = self.outputs.claim(discovered.path, self.destination_for(discovered.path, root))

        if self._already_converted(discovered.path, destination):
            self.event_bus.publish(FileSkipped(path=discovered.path, destination=destination))
            self.watcher.forget(discovered.path)
            return None

        job = ConversionJob(
            source_path=discovered.path,
            destination_path=destination,
            watched_root=root,
            source_size_bytes=discovered.size_bytes,
        )
        if not self.jobs.register(job):
            self.logger.debug(f"DUPLICATE: {discovered.path} already has an active job")
            return None

        self.jobs.transition(job, JobStatus.STABILIZING)
        if self._stability_pool is None:
            self._stabilize(job)
        else:
            try:
                self._stability_pool.submit(self._stabilize, job)
            except RuntimeError:
                # Pool already shut down
                self.retry_manager.abandon(job, "shutdown")
        return job

    def _stabilize(self, job: ConversionJob) -> None:
        try:
            result = self.stability_gate.await_stable(job.source_path, self._shutdown_event)
            if result == StabilityResult.STABLE:
                try:
                    job.source_size_bytes = job.source_path.stat().st_size
                except OSError:
                    pass
                self.jobs.transition(job, JobStatus.QUEUED)
                if self.queue.put(job):
                    self.event_bus.publish(JobQueued(job=job))
                else:
                    self.retry_manager.abandon(job, "shutdown")
            elif result == StabilityResult.STILL_WRITING:
                self.retry_manager.abandon(job, "shutdown while still being written")
            elif result == StabilityResult.VANISHED:
                self.logger.debug(f"VANISHED: {job.source_path} disappeared during the stability check")
                self.retry_manager.abandon(job, "file disappeared", quiet=True)
            else:
                reason = f"still changing after {self.stability_gate.timeout:g}s"
                self.event_bus.publish(FileDropped(path=job.source_path, reason=reason))
                self.retry_manager.abandon(job, reason)
        except Exception:
            self.logger.exception(f"Stability check failed for {job.source_path}")
            self.retry_manager.abandon(job, "stability check error")

    def _on_job_finished(self, job: ConversionJob) -> None:
        # A later sighting of the same path is a new file (or a changed one)
        self.watcher.forget(job.source_path)

    # ── paths ────────────────────────────────────────────────────────────────

    def destination_for(self, source: Path, root: Path) -> Path:
        """Mirrors `source`'s position under `root` into the output directory."""
        ext = self.config.directories.output_extension
        out_dir = self.config.output_dir_for(root)
        try:
            relative = source.relative_to(root)
        except ValueError:
            relative = Path(source.name)
        return (out_dir / relative).with_suffix(ext)

    def _already_converted(self, source: Path, destination: Path) -> bool:
        """True if `destination` is this source's own output and is not older than it."""
        if self.outputs.owner(destination) != source:
            return False
        try:
            return destination.stat().st_mtime >= source.stat().st_mtime
        except OSError:
            return False

    def cleanup_stale_outputs(self) -> int:
        """Removes `.tmp` outputs left behind by an earlier run that crashed."""
        suffix = f"{self.config.directories.output_extension}{TMP_SUFFIX}"
        removed = 0
        for out_dir in self.output_dirs:
            if not out_dir.is_dir():
                continue
            for root, _, files in os.walk(out_dir):
                for name in files:
                    if not name.endswith(suffix):
                        continue
                    path = Path(root) / name
                    try:
                        path.unlink()
                        removed += 1
                    except OSError as e:
                        self.logger.warning(f"Could not remove stale output {path}: {e}")
        if removed:
            self.logger.info(f"Removed {removed} stale temporary output(s)")
        return removed
