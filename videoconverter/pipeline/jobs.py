import threading
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional
from videoconverter.domain.models import ConversionJob, JobStatus

class JobTable:
    """Thread-safe registry of jobs keyed by source path.

    Holds at most one non-terminal job per source path. A terminal job stays
    visible until a new job for the same path replaces it; its final status
    is kept in the summary counts.
    """

    def __init__(self):
        self._jobs: Dict[Path, ConversionJob] = {}
        self._finished: Counter = Counter()
        self._lock = threading.Lock()

    def register(self, job: ConversionJob) -> bool:
        """Adds `job`; returns False if its source already has a live job."""
        with self._lock:
            existing = self._jobs.get(job.source_path)
            if existing is not None and not existing.status.is_terminal:
                return False
            self._jobs[job.source_path] = job
            return True

    def get(self, source_path: Path) -> Optional[ConversionJob]:
        with self._lock:
            return self._jobs.get(source_path)

    def transition(self, job: ConversionJob, status: JobStatus) -> None:
        with self._lock:
            if job.status.is_terminal:
                raise ValueError(f"Job {job.id} is already {job.status.value}")
            job.status = status
            job.touch()
            if status.is_terminal:
                self._finished[status.value] += 1

    def active(self) -> List[ConversionJob]:
        with self._lock:
            return [job for job in self._jobs.values() if not job.status.is_terminal]

    def counts(self) -> Dict[str, int]:
        """Per-status totals: every terminal outcome so far plus the live jobs."""
        with self._lock:
            counts = Counter(self._finished)
            for job in self._jobs.values():
                if not job.status.is_terminal:
                    counts[job.status.value] += 1
            return dict(counts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
