import fcntl
import json
import logging
import os
import socket
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional
from pydantic import ValidationError
from videoconverter.domain.events import LockAcquired, LockHeld, LockReclaimed, LockReleased
from videoconverter.domain.models import InstanceLockRecord, LockResult
from videoconverter.infrastructure.event_bus import EventBus

GUARD_SUFFIX = ".guard"


class LockError(Exception):
    """Raised when the lock file cannot be read or written at all."""


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user.
        return True
    return True


class InstanceLock:
    """Single-instance guard backed by a JSON record in the lock file.

    A record is considered abandoned when its process is gone (same host only)
    or when its heartbeat is older than `stale_after` seconds. Every read and
    write of the record happens under an exclusive flock on a sibling guard
    file, so two services starting at once cannot both win.
    """

    def __init__(self, path: Path, event_bus: EventBus, stale_after: float = 300.0):
        self.path = Path(path)
        self.guard_path = self.path.with_name(self.path.name + GUARD_SUFFIX)
        self.event_bus = event_bus
        self.stale_after = stale_after
        self.logger = logging.getLogger(__name__)
        self.hostname = socket.gethostname()
        self.record: Optional[InstanceLockRecord] = None

    @property
    def held(self) -> bool:
        return self.record is not None

    @contextmanager
    def _guard(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.guard_path, "a", encoding="utf-8") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def _read(self) -> Optional[InstanceLockRecord]:
        """Returns the stored record, None if absent; raises ValueError if unreadable."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return InstanceLockRecord(**json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            raise ValueError(f"unreadable lock record: {e}") from e

    def _write(self, record: InstanceLockRecord) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(record.model_dump_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def _is_ours(self, record: InstanceLockRecord) -> bool:
        return record.pid == os.getpid() and record.hostname == self.hostname

    def _abandoned_reason(self, record: InstanceLockRecord, now: datetime) -> Optional[str]:
        if record.hostname == self.hostname and not _pid_alive(record.pid):
            return f"process {record.pid} is not running"
        age = record.age_seconds(now)
        if age > self.stale_after:
            return f"heartbeat is {age:.0f}s old (limit {self.stale_after:.0f}s)"
        return None

    def acquire(self) -> LockResult:
        now = datetime.now(timezone.utc)
        try:
            with self._guard():
                previous = None
                reason = None
                try:
                    previous = self._read()
                except ValueError as e:
                    reason = str(e)

                if previous is not None and not self._is_ours(previous):
                    reason = self._abandoned_reason(previous, now)
                    if reason is None:
                        self.event_bus.publish(LockHeld(path=self.path, holder=previous))
                        return LockResult.ALREADY_RUNNING

                if reason is not None:
                    self.event_bus.publish(LockReclaimed(path=self.path, reason=reason, previous=previous))

                record = InstanceLockRecord(
                    pid=os.getpid(),
                    started_at=now,
                    hostname=self.hostname,
                    heartbeat_at=now,
                )
                self._write(record)
        except OSError as e:
            raise LockError(f"Cannot use lock file {self.path}: {e}") from e

        self.record = record
        self.event_bus.publish(LockAcquired(path=self.path, record=record))
        return LockResult.ACQUIRED

    def refresh(self) -> bool:
        """Updates the heartbeat; returns False if the lock is no longer ours."""
        if self.record is None:
            return False
        try:
            with self._guard():
                try:
                    current = self._read()
                except ValueError:
                    current = None
                if current is None or not self._is_ours(current):
                    self.logger.error(f"Instance lock {self.path} was taken over or removed")
                    self.record = None
                    return False
                self.record = self.record.model_copy(update={"heartbeat_at": datetime.now(timezone.utc)})
                self._write(self.record)
        except OSError as e:
            self.logger.warning(f"Could not refresh instance lock {self.path}: {e}")
        return True

    def release(self) -> None:
        """Removes the lock file if it still belongs to this process."""
        if self.record is None:
            return
        try:
            with self._guard():
                try:
                    current = self._read()
                except ValueError:
                    current = None
                if current is not None and self._is_ours(current):
                    self.path.unlink()
        except OSError as e:
            self.logger.warning(f"Could not remove instance lock {self.path}: {e}")
        self.record = None
        self.event_bus.publish(LockReleased(path=self.path))

    def __enter__(self) -> LockResult:
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
