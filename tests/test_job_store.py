"""
Research job persistence: status transitions are enforced on every write.
"""

import pytest

from src.research import job_store


def test_complete_requires_processing(db):
    job = job_store.create_job(query="coffee futures", options={})
    assert job_store.complete_job(job["id"], {"content": "x"}) is None
    assert job_store.get_job(job["id"])["status"] == "queued"

    job_store.begin_processing(job["id"])
    done = job_store.complete_job(job["id"], {"content": "x"})
    assert done["status"] == "completed"
    assert done["progress"] == 100


def test_queued_job_can_fail_directly(db):
    job = job_store.create_job(query="coffee futures", options={})
    failed = job_store.fail_job(job["id"], "enqueue failed: redis down")
    assert failed["status"] == "failed"
    assert failed["error"] == "enqueue failed: redis down"


def test_terminal_jobs_are_never_rewritten(db):
    job = job_store.create_job(query="coffee futures", options={})
    job_store.begin_processing(job["id"])
    job_store.complete_job(job["id"], {"content": "x"})

    assert job_store.fail_job(job["id"], "late failure") is None
    assert job_store.complete_job(job["id"], {"content": "y"}) is None
    again, redelivered = job_store.begin_processing(job["id"])
    assert again["status"] == "completed"
    assert redelivered is False
    assert job_store.get_job(job["id"])["result"] == {"content": "x"}


def test_begin_processing_twice_is_a_redelivery(db):
    job = job_store.create_job(query="coffee futures", options={})
    first, redelivered = job_store.begin_processing(job["id"])
    assert (first["status"], redelivered) == ("processing", False)
    second, redelivered = job_store.begin_processing(job["id"])
    assert (second["attempts"], redelivered) == (2, True)


def test_checkpoint_merges_and_stops_at_terminal(db):
    job = job_store.create_job(query="coffee futures", options={})
    job_store.begin_processing(job["id"])
    job_store.save_checkpoint(job["id"], progress=20, stage="clarify", completed_stages=["clarify"])
    cp = job_store.save_checkpoint(job["id"], in_flight="research")["checkpoint"]
    assert cp == {"completed_stages": ["clarify"], "in_flight": "research"}

    job_store.fail_job(job["id"], "boom")
    assert job_store.save_checkpoint(job["id"], progress=90) is None


def test_count_by_status(db):
    a = job_store.create_job(query="a", options={})
    job_store.create_job(query="b", options={})
    job_store.fail_job(a["id"], "x")
    assert job_store.count_by_status() == {"queued": 1, "processing": 0, "completed": 0, "failed": 1}


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))
