import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

class JobStatus(str, Enum):
    PENDING = "PENDING"
    STABILIZING = "STABILIZING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"  # dropped before conversion or interrupted by shutdown

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.ABANDONED)

class ErrorKind(str, Enum):
    FATAL = "FATAL"
    RETRYABLE = "RETRYABLE"
    PATH_LEVEL = "PATH_LEVEL"
    STARTUP_FATAL = "STARTUP_FATAL"

class StabilityResult(str, Enum):
    STABLE = "STABLE"
    STILL_WRITING = "STILL_WRITING"
    VANISHED = "VANISHED"
    TIMEOUT = "TIMEOUT"

class LockResult(str, Enum):
    ACQUIRED = "ACQUIRED"
    ALREADY_RUNNING = "ALREADY_RUNNING"

class WatchedPath(BaseModel):
    model_config = ConfigDict(frozen=True)

    root: Path
    recursive: bool = True
    enabled: bool = True
    patterns: List[str] = Field(default_factory=list)

class DiscoveredFile(BaseModel):
    path: Path
    size_bytes: int
    first_seen: datetime = Field(default_factory=datetime.now)
    watched_root: Optional[Path] = None

class EncoderProfile(BaseModel):
    """A transcoding backend and the ffmpeg arguments that drive it.

    `video_args` is a template: each token is rendered with `str.format`
    against `quality` and `device` before being put on the command line.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    tier: int
    encoder: str
    probe_command: List[str] = Field(default_factory=list)
    probe_pattern: Optional[str] = None
    input_args: List[str] = Field(default_factory=list)
    video_args: List[str] = Field(default_factory=list)
    description: str = ""

    @property
    def is_hardware(self) -> bool:
        return bool(self.probe_command)

    def render_input_args(self, device: str) -> List[str]:
        return [arg.format(device=device) for arg in self.input_args]

    def render_video_args(self, quality: int, device: str) -> List[str]:
        return [arg.format(quality=quality, device=device) for arg in self.video_args]

class ConversionJob(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    source_path: Path
    destination_path: Path
    watched_root: Optional[Path] = None
    source_size_bytes: int = 0
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    last_error_kind: Optional[ErrorKind] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def touch(self) -> None:
        self.updated_at = datetime.now()

class TranscodeOutcome(BaseModel):
    exit_code: Optional[int] = None
    output: str = ""
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    timed_out: bool = False
    interrupted: bool = False
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error_kind is None and not self.interrupted

class InstanceLockRecord(BaseModel):
    """Contents of the lock file. Timestamps are timezone-aware (UTC when written)."""
    pid: int
    started_at: AwareDatetime
    hostname: str
    heartbeat_at: Optional[AwareDatetime] = None

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        reference = self.heartbeat_at or self.started_at
        return (now - reference).total_seconds()
