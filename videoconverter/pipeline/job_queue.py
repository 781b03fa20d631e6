import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple
from videoconverter.domain.models import ConversionJob

class JobQueue:
    """Unbounded FIFO of jobs ready for a worker, plus delayed retries.

    Delayed entries become visible once their delay has passed and are then
    served in the order they became due. After `close()` no entry is handed
    out any more and further puts are refused; `drain()` returns what is left.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._ready: Deque[ConversionJob] = deque()
        self._delayed: List[Tuple[float, int, ConversionJob]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def put(self, job: ConversionJob) -> bool:
        with self._cond:
            if self._closed:
                return False
            self._ready.append(job)
            self._cond.notify()
            return True

    def put_delayed(self, job: ConversionJob, delay: float) -> bool:
        if delay <= 0:
            return self.put(job)
        with self._cond:
            if self._closed:
                return False
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), job))
            # Wake a waiter so it recomputes its sleep against the new due time
            self._cond.notify()
            return True

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            self._ready.append(job)

    def get(self, timeout: Optional[float] = None) -> Optional[ConversionJob]:
        """Blocks for the next job; None on timeout or once the queue is closed."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._closed:
                    return None
                self._promote_due()
                if self._ready:
                    return self._ready.popleft()

                waits = []
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    waits.append(remaining)
                if self._delayed:
                    waits.append(max(0.0, self._delayed[0][0] - self._clock()))
                self._cond.wait(min(waits) if waits else None)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def drain(self) -> List[ConversionJob]:
        """Removes and returns every remaining entry, delayed ones included."""
        with self._cond:
            jobs = list(self._ready)
            jobs.extend(job for _, _, job in sorted(self._delayed))
            self._ready.clear()
            self._delayed.clear()
            return jobs

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)
