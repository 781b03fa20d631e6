import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Tuple
from videoconverter.domain.models import StabilityResult

class StabilityGate:
    """Decides whether a file has finished being written.

    Samples (size, mtime) every `interval` seconds and reports STABLE once
    `required_samples` consecutive samples agree on a non-empty file. Gives up
    with TIMEOUT after `timeout` seconds, VANISHED if the file disappears, and
    STILL_WRITING if `cancel_event` is set before a verdict.
    """

    def __init__(
        self,
        interval: float = 2.0,
        timeout: float = 300.0,
        required_samples: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.timeout = timeout
        self.required_samples = max(2, required_samples)
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _sample(path: Path) -> Optional[Tuple[int, int]]:
        try:
            st = path.stat()
        except OSError:
            return None
        return st.st_size, st.st_mtime_ns

    def await_stable(self, path: Path, cancel_event: Optional[threading.Event] = None) -> StabilityResult:
        cancel_event = cancel_event or threading.Event()
        deadline = self.clock() + self.timeout

        previous = self._sample(path)
        if previous is None:
            return StabilityResult.VANISHED
        matching = 1

        while True:
            if cancel_event.wait(self.interval):
                return StabilityResult.STILL_WRITING

            current = self._sample(path)
            if current is None:
                return StabilityResult.VANISHED

            if current == previous and current[0] > 0:
                matching += 1
            else:
                matching = 1
            previous = current

            self.logger.debug(
                f"STABILITY_SAMPLE: {path.name} size={current[0]} "
                f"matching={matching}/{self.required_samples}"
            )
            if matching >= self.required_samples:
                return StabilityResult.STABLE
            if self.clock() >= deadline:
                return StabilityResult.TIMEOUT
