import fnmatch
import logging
import os
import queue
import threading
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from videoconverter.domain.events import FileDiscovered, PathSkipped
from videoconverter.domain.models import DiscoveredFile, WatchedPath
from videoconverter.infrastructure.event_bus import EventBus

TEMP_SUFFIX = ".tmp"


def _has_read_access(path: Path) -> bool:
    return os.access(path, os.R_OK | os.X_OK)


def matches_patterns(name: str, patterns: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatch(lowered, pattern.lower()) for pattern in patterns)


class _WatchHandler(FileSystemEventHandler):
    """Forwards watchdog notifications to the watcher."""

    def __init__(self, watcher: "DirectoryWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.offer(Path(os.fsdecode(event.src_path)), source="event")

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.offer(Path(os.fsdecode(event.src_path)), source="event")

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.offer(Path(os.fsdecode(event.dest_path)), source="event")

    def on_deleted(self, event: FileSystemEvent):
        if event.is_directory:
            self.watcher.check_roots()


class DirectoryWatcher:
    """Merges a startup scan with live filesystem events into one de-duplicated stream.

    Every matching file is emitted at most once per absolute path until
    `forget()` is called for it. Missing or unreadable roots are reported as
    PathSkipped and left out; the remaining roots keep being watched, and a
    root that comes back is rescanned and watched again.
    """

    def __init__(
        self,
        watched_paths: List[WatchedPath],
        event_bus: EventBus,
        exclude_dirs: Sequence[Path] = (),
        observer_factory: Callable[[], Observer] = Observer,
        health_check_interval: float = 5.0,
    ):
        self.watched_paths = [wp for wp in watched_paths if wp.enabled]
        self.event_bus = event_bus
        self.exclude_dirs = [Path(os.path.abspath(d)) for d in exclude_dirs]
        self.observer_factory = observer_factory
        self.health_check_interval = health_check_interval
        self.logger = logging.getLogger(__name__)

        self._discovered: Set[Path] = set()
        self._discovered_lock = threading.Lock()
        self._queue: "queue.Queue[DiscoveredFile]" = queue.Queue()
        self._stop_event = threading.Event()
        self._observer: Optional[Observer] = None
        self._watches: Dict[Path, object] = {}
        self._missing: Set[Path] = set()
        self._roots_lock = threading.Lock()
        self._handler = _WatchHandler(self)

        disabled = len(watched_paths) - len(self.watched_paths)
        if disabled:
            self.logger.info(f"Ignoring {disabled} disabled watch path(s)")

    # ── lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Schedules live watches, then enumerates the existing files."""
        self._observer = self.observer_factory()
        for wp in self.watched_paths:
            self._schedule(wp)
        self._observer.start()
        for wp in self.watched_paths:
            if wp.root not in self._missing:
                self.scan(wp)
        self.logger.info(
            f"Watching {len(self._watches)} of {len(self.watched_paths)} path(s); "
            f"{len(self._discovered)} existing file(s) found"
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._observer is not None:
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join(timeout=5.0)
            self._observer = None

    # ── stream ───────────────────────────────────────────────────────────────

    def discovered(self, poll_interval: float = 0.5) -> Iterator[DiscoveredFile]:
        """Yields discovered files until `stop()` is called."""
        since_check = 0.0
        while not self._stop_event.is_set():
            try:
                item = self._queue.get(timeout=poll_interval)
            except queue.Empty:
                since_check += poll_interval
                if since_check >= self.health_check_interval:
                    since_check = 0.0
                    self.check_roots()
                continue
            yield item

    def __iter__(self) -> Iterator[DiscoveredFile]:
        return self.discovered()

    def forget(self, path: Path) -> None:
        """Allows a path to be emitted again on its next sighting."""
        with self._discovered_lock:
            self._discovered.discard(Path(os.path.abspath(path)))

    def is_known(self, path: Path) -> bool:
        with self._discovered_lock:
            return Path(os.path.abspath(path)) in self._discovered

    # ── discovery ────────────────────────────────────────────────────────────

    def scan(self, wp: WatchedPath) -> int:
        """Enumerates one watched root; returns the number of newly emitted files."""
        emitted = 0

        def _on_error(err: OSError):
            if Path(err.filename or "") == wp.root:
                self._mark_missing(wp.root, f"cannot read directory: {err.strerror}")
            else:
                self.logger.debug(f"SCAN_SKIP: {err.filename} ({err.strerror})")

        for root, dirs, files in os.walk(str(wp.root), onerror=_on_error):
            root_path = Path(root)
            if self._is_excluded(root_path):
                dirs[:] = []
                continue

            # Ensure deterministic traversal: sort directories and files
            if wp.recursive:
                dirs[:] = sorted(d for d in dirs if not self._is_excluded(root_path / d))
            else:
                dirs[:] = []
            files.sort()

            for file_name in files:
                if self.offer(root_path / file_name, source="scan"):
                    emitted += 1
        return emitted

    def offer(self, path: Path, source: str = "event") -> bool:
        """Emits `path` if it is a new, matching, regular file under a watched root."""
        path = Path(os.path.abspath(path))
        wp = self._owner(path)
        if wp is None:
            return False
        if path.name.endswith(TEMP_SUFFIX) or not matches_patterns(path.name, wp.patterns):
            return False
        if self._is_excluded(path.parent):
            return False

        with self._discovered_lock:
            if path in self._discovered:
                return False
            try:
                if not path.is_file():
                    return False
                size = path.stat().st_size
            except OSError:
                return False
            self._discovered.add(path)

        self._queue.put(DiscoveredFile(path=path, size_bytes=size, watched_root=wp.root))
        self.event_bus.publish(FileDiscovered(path=path, size_bytes=size, source=source))
        return True

    def _owner(self, path: Path) -> Optional[WatchedPath]:
        best = None
        for wp in self.watched_paths:
            if wp.recursive:
                try:
                    path.relative_to(wp.root)
                except ValueError:
                    continue
            elif path.parent != wp.root:
                continue
            if best is None or len(wp.root.parts) > len(best.root.parts):
                best = wp
        return best

    def _is_excluded(self, directory: Path) -> bool:
        for excluded in self.exclude_dirs:
            if directory == excluded:
                return True
            try:
                directory.relative_to(excluded)
                return True
            except ValueError:
                continue
        return False

    # ── root health ──────────────────────────────────────────────────────────

    def _schedule(self, wp: WatchedPath) -> bool:
        if not wp.root.is_dir():
            self._mark_missing(wp.root, "directory does not exist")
            return False
        if not _has_read_access(wp.root):
            self._mark_missing(wp.root, "permission denied")
            return False
        try:
            watch = self._observer.schedule(self._handler, str(wp.root), recursive=wp.recursive)
        except OSError as e:
            self._mark_missing(wp.root, f"cannot watch directory: {e}")
            return False
        with self._roots_lock:
            self._watches[wp.root] = watch
            self._missing.discard(wp.root)
        return True

    def _mark_missing(self, root: Path, reason: str) -> None:
        with self._roots_lock:
            if root in self._missing:
                return
            self._missing.add(root)
            watch = self._watches.pop(root, None)
        if watch is not None and self._observer is not None:
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError):
                pass
        self.event_bus.publish(PathSkipped(path=root, reason=reason))

    def check_roots(self) -> None:
        """Reports roots that disappeared and re-attaches roots that came back."""
        if self._observer is None:
            return
        for wp in self.watched_paths:
            present = wp.root.is_dir() and _has_read_access(wp.root)
            with self._roots_lock:
                was_missing = wp.root in self._missing
            if not present and not was_missing:
                self._mark_missing(wp.root, "directory disappeared")
            elif present and was_missing:
                if self._schedule(wp):
                    self.logger.info(f"Watched path is back: {wp.root}")
                    self.scan(wp)
