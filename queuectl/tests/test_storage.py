import os
from datetime import timedelta

import pytest

from queuectl.errors import StoreIOError, ValidationError
from queuectl.models import PROCESSING, Job, mark_processing
from queuectl.storage import Storage
from queuectl.utils import get_utc_now


def make_job(job_id, command="echo hi"):
    return Job.create(job_id, command, 3, get_utc_now())


def test_missing_store_loads_empty_without_creating_it(tmp_path):
    path = tmp_path / "nothing-here.db"
    storage = Storage(str(path))
    assert storage.load() == []
    assert storage.get("anything") is None
    assert storage.count_by_state() == {}
    assert not path.exists()


def test_corrupt_store_raises_store_io_error(tmp_path):
    path = tmp_path / "jobs.db"
    path.write_bytes(b"this is definitely not a sqlite database" * 100)
    storage = Storage(str(path))
    with pytest.raises(StoreIOError):
        storage.load()
    with pytest.raises(StoreIOError):
        storage.add(make_job("a"))


def test_add_preserves_insertion_order(storage):
    for job_id in ("c", "a", "b"):
        storage.add(make_job(job_id))
    assert [job.id for job in storage.load()] == ["c", "a", "b"]


def test_add_rejects_duplicate_id(storage):
    storage.add(make_job("dup"))
    with pytest.raises(ValidationError):
        storage.add(make_job("dup", command="echo again"))
    assert [job.command for job in storage.load()] == ["echo hi"]


def test_save_of_load_is_a_no_op(storage):
    first = make_job("first")
    second = make_job("second")
    second.next_run_at = get_utc_now() + timedelta(seconds=30)
    second.attempts = 1
    second.last_error = "exit code 1"
    storage.add(first)
    storage.add(second)

    before = storage.load()
    storage.save(storage.load())
    assert storage.load() == before


def test_save_replaces_whole_collection(storage):
    storage.add(make_job("old"))
    storage.save([make_job("x"), make_job("y")])
    assert [job.id for job in storage.load()] == ["x", "y"]


def test_failed_save_leaves_previous_collection(storage):
    storage.add(make_job("keep"))
    with pytest.raises(ValidationError):
        storage.save([make_job("same"), make_job("same")])
    assert [job.id for job in storage.load()] == ["keep"]


def test_compare_and_swap_bumps_version(storage):
    storage.add(make_job("j"))
    job = storage.get("j")
    mark_processing(job, "worker-1", get_utc_now())

    assert storage.compare_and_swap(job, expected_version=0)
    assert job.version == 1
    stored = storage.get("j")
    assert stored.state == PROCESSING
    assert stored.worker_id == "worker-1"
    assert stored.version == 1


def test_only_one_of_two_racing_claims_lands(storage):
    storage.add(make_job("j"))
    seen_by_a = storage.load()[0]
    seen_by_b = storage.load()[0]

    mark_processing(seen_by_a, "worker-a", get_utc_now())
    mark_processing(seen_by_b, "worker-b", get_utc_now())

    assert storage.compare_and_swap(seen_by_a, 0) is True
    assert storage.compare_and_swap(seen_by_b, 0) is False
    assert storage.get("j").worker_id == "worker-a"


def test_compare_and_swap_on_unknown_job_fails(storage):
    storage.add(make_job("known"))
    assert storage.compare_and_swap(make_job("ghost"), 0) is False


def test_count_by_state(storage):
    storage.add(make_job("a"))
    storage.add(make_job("b"))
    job = storage.get("b")
    mark_processing(job, "w", get_utc_now())
    storage.compare_and_swap(job, 0)
    assert storage.count_by_state() == {"pending": 1, "processing": 1}


def test_empty_file_is_an_empty_store(tmp_path):
    path = tmp_path / "jobs.db"
    path.touch()
    assert Storage(str(path)).load() == []
    assert os.path.getsize(path) == 0
