from pathlib import Path
import pytest
from videoconverter.domain.models import ConversionJob, JobStatus
from videoconverter.pipeline.jobs import JobTable


def _job(name="a.mkv"):
    return ConversionJob(source_path=Path("/w") / name, destination_path=Path("/c") / name)


def test_one_live_job_per_source():
    table = JobTable()
    first, second = _job(), _job()

    assert table.register(first)
    assert not table.register(second)
    assert table.get(Path("/w/a.mkv")) is first


def test_terminal_job_can_be_replaced():
    table = JobTable()
    first = _job()
    table.register(first)
    table.transition(first, JobStatus.ABANDONED)

    second = _job()
    assert table.register(second)
    assert table.get(Path("/w/a.mkv")) is second


def test_terminal_jobs_cannot_transition():
    table = JobTable()
    job = _job()
    table.register(job)
    table.transition(job, JobStatus.FAILED)

    with pytest.raises(ValueError):
        table.transition(job, JobStatus.QUEUED)


def test_counts_include_replaced_terminal_jobs():
    table = JobTable()
    first = _job()
    table.register(first)
    table.transition(first, JobStatus.SUCCEEDED)
    table.register(_job())
    other = _job("b.mkv")
    table.register(other)
    table.transition(other, JobStatus.QUEUED)

    assert table.counts() == {"SUCCEEDED": 1, "PENDING": 1, "QUEUED": 1}
    assert {j.source_path.name for j in table.active()} == {"a.mkv", "b.mkv"}
    assert len(table) == 2
