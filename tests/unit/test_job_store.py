import json
import pytest
from pathlib import Path
from unittest.mock import patch
from av1janitor.domain.models import Job, JobStatus
from av1janitor.infrastructure.job_store import JobStore


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "jobs")


def test_save_and_load(store):
    job = Job.create(Path("/media/Movie.mkv"), original_bytes=123)
    path = store.save(job)

    assert path.name == f"{job.id}.json"
    assert json.loads(path.read_text())["status"] == "PENDING"
    loaded = store.load(job.id)
    assert loaded.id == job.id
    assert loaded.original_bytes == 123


def test_save_overwrites_with_latest_state(store):
    job = Job.create(Path("/media/Movie.mkv"))
    store.save(job)
    job.start()
    job.finish(JobStatus.SUCCESS, new_bytes=10)
    store.save(job)

    assert store.load(job.id).status == JobStatus.SUCCESS
    assert not list(store.jobs_dir.glob("*.tmp"))


def test_save_goes_through_temp_file_and_replace(store):
    job = Job.create(Path("/media/Movie.mkv"))
    with patch("os.replace") as mock_replace:
        store.save(job)

    src, dst = mock_replace.call_args[0]
    assert Path(src).name == f"{job.id}.json.tmp"
    assert Path(dst).name == f"{job.id}.json"


def test_load_all_skips_corrupt_records(store, caplog):
    good = Job.create(Path("/media/a.mkv"))
    store.save(good)
    (store.jobs_dir / "broken-1.json").write_text("{ half a record")

    jobs = store.load_all()

    assert [j.id for j in jobs] == [good.id]
    assert any("JOB_RECORD_UNREADABLE" in r.message for r in caplog.records)


def test_load_all_missing_dir(tmp_path):
    assert JobStore(tmp_path / "nope").load_all() == []


def test_next_attempt_counts_prior_records(store):
    source = Path("/media/Movie.mkv")
    assert store.next_attempt(source) == 1
    store.save(Job.create(source, attempt=1))
    assert store.next_attempt(source) == 2
    store.save(Job.create(source, attempt=2))
    store.save(Job.create(Path("/media/Other.mkv"), attempt=1))
    assert store.next_attempt(source) == 3
