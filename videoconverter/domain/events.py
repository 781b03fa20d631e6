"""Domain events for the conversion service.

Events represent state changes and notifications that flow through the EventBus,
decoupling the pipeline components from the log sink and enabling extensibility.
Each event names the component that emitted it, a log level and a one-line
message; `context()` returns the structured fields that go with it.

See `infrastructure/event_bus.py` for the pub/sub mechanism and
`infrastructure/event_log.py` for the subscriber that writes events to logging.
"""

import logging
from pathlib import Path
from typing import Any, ClassVar, Dict, Optional
from pydantic import BaseModel
from .models import ConversionJob, EncoderProfile, ErrorKind, InstanceLockRecord


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    component: ClassVar[str] = "core"
    level: ClassVar[int] = logging.INFO

    def message(self) -> str:
        return type(self).__name__

    def context(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


# ── Encoder detection ─────────────────────────────────────────────────────────

class EncoderProbed(Event):
    """Emitted once per probe attempt."""

    component: ClassVar[str] = "encoder"
    level: ClassVar[int] = logging.DEBUG

    profile: str
    tier: int
    available: bool
    reason: str = ""

    def message(self) -> str:
        state = "available" if self.available else "unavailable"
        suffix = f" ({self.reason})" if self.reason else ""
        return f"Probe tier {self.tier} {self.profile}: {state}{suffix}"


class EncoderSelected(Event):
    """Emitted when detection settles on a profile."""

    component: ClassVar[str] = "encoder"

    profile: EncoderProfile
    overridden: bool = False

    def message(self) -> str:
        how = "configured override" if self.overridden else f"tier {self.profile.tier}"
        return f"Selected encoder {self.profile.name} ({self.profile.encoder}, {how})"


# ── Discovery ─────────────────────────────────────────────────────────────────

class FileDiscovered(Event):
    component: ClassVar[str] = "watcher"
    level: ClassVar[int] = logging.DEBUG

    path: Path
    size_bytes: int
    source: str  # "scan" or "event"

    def message(self) -> str:
        return f"Discovered {self.path} ({self.size_bytes} bytes, via {self.source})"


class PathSkipped(Event):
    """Emitted when a watched directory is missing or unreadable."""

    component: ClassVar[str] = "watcher"
    level: ClassVar[int] = logging.WARNING

    path: Path
    reason: str
    error_kind: ErrorKind = ErrorKind.PATH_LEVEL

    def message(self) -> str:
        return f"Skipping watched path {self.path}: {self.reason}"


class FileDropped(Event):
    """Emitted when a discovered file never reached the queue."""

    component: ClassVar[str] = "stability"
    level: ClassVar[int] = logging.WARNING

    path: Path
    reason: str

    def message(self) -> str:
        return f"Dropped {self.path}: {self.reason}"


class FileSkipped(Event):
    """Emitted when a source already has an up-to-date destination."""

    component: ClassVar[str] = "orchestrator"

    path: Path
    destination: Path

    def message(self) -> str:
        return f"Skipping {self.path}: already converted to {self.destination}"


# ── Job lifecycle ─────────────────────────────────────────────────────────────

class JobEvent(Event):
    """Base class for events related to a specific conversion job."""

    component: ClassVar[str] = "worker"

    job: ConversionJob

    def context(self) -> Dict[str, Any]:
        data = super().context()
        job = data.pop("job")
        data.update(
            job_id=job["id"],
            source=job["source_path"],
            status=job["status"],
            attempts=job["attempts"],
        )
        return data


class JobQueued(JobEvent):
    component: ClassVar[str] = "queue"

    def message(self) -> str:
        return f"Queued {self.job.source_path.name} -> {self.job.destination_path}"


class JobStarted(JobEvent):
    """Emitted when a worker begins a conversion attempt."""

    encoder: str

    def message(self) -> str:
        return f"Started {self.job.source_path.name} (attempt {self.job.attempts}, {self.encoder})"


class JobSucceeded(JobEvent):
    duration_seconds: float = 0.0
    source_deleted: bool = False

    def message(self) -> str:
        deleted = ", original deleted" if self.source_deleted else ""
        return f"Converted {self.job.source_path.name} in {self.duration_seconds:.1f}s{deleted}"


class JobFailed(JobEvent):
    """Emitted when a job reaches FAILED."""

    level: ClassVar[int] = logging.ERROR

    error_kind: Optional[ErrorKind] = None
    error_message: str

    def message(self) -> str:
        kind = self.error_kind.value if self.error_kind else "UNKNOWN"
        return (
            f"Failed {self.job.source_path.name} after {self.job.attempts} attempt(s) "
            f"[{kind}]: {self.error_message}"
        )


class JobRetryScheduled(JobEvent):
    component: ClassVar[str] = "retry"
    level: ClassVar[int] = logging.WARNING

    delay_seconds: float
    error_message: str

    def message(self) -> str:
        return (
            f"Retrying {self.job.source_path.name} in {self.delay_seconds:.0f}s "
            f"(attempt {self.job.attempts} failed: {self.error_message})"
        )


class JobAbandoned(JobEvent):
    level: ClassVar[int] = logging.WARNING

    reason: str

    def message(self) -> str:
        return f"Abandoned {self.job.source_path.name}: {self.reason}"


# ── Instance lock ─────────────────────────────────────────────────────────────

class LockAcquired(Event):
    component: ClassVar[str] = "lock"

    path: Path
    record: InstanceLockRecord

    def message(self) -> str:
        return f"Instance lock acquired: {self.path} (pid {self.record.pid})"


class LockReclaimed(Event):
    component: ClassVar[str] = "lock"
    level: ClassVar[int] = logging.WARNING

    path: Path
    reason: str
    previous: Optional[InstanceLockRecord] = None

    def message(self) -> str:
        return f"Reclaiming instance lock {self.path}: {self.reason}"


class LockHeld(Event):
    component: ClassVar[str] = "lock"
    level: ClassVar[int] = logging.ERROR

    path: Path
    holder: InstanceLockRecord

    def message(self) -> str:
        return (
            f"Another instance is running (pid {self.holder.pid} on {self.holder.hostname}, "
            f"since {self.holder.started_at.isoformat(timespec='seconds')})"
        )


class LockReleased(Event):
    component: ClassVar[str] = "lock"

    path: Path

    def message(self) -> str:
        return f"Instance lock released: {self.path}"


# ── Service lifecycle ─────────────────────────────────────────────────────────

class ShutdownRequested(Event):
    component: ClassVar[str] = "orchestrator"

    reason: str = "signal"

    def message(self) -> str:
        return f"Shutdown requested ({self.reason})"


class ProcessingSummary(Event):
    component: ClassVar[str] = "orchestrator"

    counts: Dict[str, int]

    def message(self) -> str:
        parts = ", ".join(f"{k.lower()}={v}" for k, v in sorted(self.counts.items()))
        return f"Job summary: {parts or 'no jobs'}"
