import threading
from datetime import timedelta

import pytest

from dlqctl.exceptions import DatabaseError
from dlqctl.models import JobStatus

from conftest import NOW


def add_job(queue_manager, job_id, next_retry_at=NOW, status=JobStatus.PENDING, **kwargs):
    job = queue_manager.create_job("analysis", {"n": job_id}, job_id=job_id, now=NOW, **kwargs)
    job.status = status
    job.next_retry_at = next_retry_at
    queue_manager.enqueue_job(job)
    return job


def test_database_initialization(temp_db):
    with temp_db.connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = [row[0] for row in cursor.fetchall()]

        assert 'jobs' in tables
        assert 'config' in tables


def test_claim_job_success(temp_db, queue_manager):
    add_job(queue_manager, "job-1")

    job = temp_db.claim_job("job-1", NOW)

    assert job is not None
    assert job.id == "job-1"
    assert job.status == JobStatus.PROCESSING
    assert job.claimed_at == NOW
    assert job.payload == {"n": "job-1"}


def test_claim_job_twice_only_first_wins(temp_db, queue_manager):
    add_job(queue_manager, "job-1")

    assert temp_db.claim_job("job-1", NOW) is not None
    assert temp_db.claim_job("job-1", NOW) is None


def test_concurrent_claims_only_one_succeeds(temp_db, queue_manager):
    add_job(queue_manager, "job-1")
    barrier = threading.Barrier(5)
    results = []
    lock = threading.Lock()

    def claim():
        barrier.wait()
        job = temp_db.claim_job("job-1", NOW)
        with lock:
            results.append(job)

    threads = [threading.Thread(target=claim) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(results) == 5
    assert len([job for job in results if job is not None]) == 1


def test_claim_job_respects_next_retry_at(temp_db, queue_manager):
    add_job(queue_manager, "job-1", next_retry_at=NOW + timedelta(seconds=30))

    assert temp_db.claim_job("job-1", NOW) is None
    assert temp_db.claim_job("job-1", NOW + timedelta(seconds=30)) is not None


def test_claim_job_refuses_terminal_and_processing_jobs(temp_db, queue_manager):
    add_job(queue_manager, "done", status=JobStatus.COMPLETED)
    add_job(queue_manager, "dead", status=JobStatus.DEAD)
    add_job(queue_manager, "busy", status=JobStatus.PROCESSING)

    for job_id in ("done", "dead", "busy"):
        assert temp_db.claim_job(job_id, NOW) is None


def test_claim_failed_job(temp_db, queue_manager):
    add_job(queue_manager, "job-1", status=JobStatus.FAILED)
    assert temp_db.claim_job("job-1", NOW).status == JobStatus.PROCESSING


def test_find_eligible_jobs_orders_by_due_time_and_limits(temp_db, queue_manager):
    add_job(queue_manager, "late", next_retry_at=NOW - timedelta(seconds=10))
    add_job(queue_manager, "oldest", next_retry_at=NOW - timedelta(minutes=5))
    add_job(queue_manager, "middle", next_retry_at=NOW - timedelta(minutes=1), status=JobStatus.FAILED)
    add_job(queue_manager, "future", next_retry_at=NOW + timedelta(minutes=1))
    add_job(queue_manager, "dead", next_retry_at=NOW - timedelta(hours=1), status=JobStatus.DEAD)

    jobs = temp_db.find_eligible_jobs(NOW, limit=10)
    assert [job.id for job in jobs] == ["oldest", "middle", "late"]

    jobs = temp_db.find_eligible_jobs(NOW, limit=2)
    assert [job.id for job in jobs] == ["oldest", "middle"]


def test_sub_second_due_times_compare_correctly(temp_db, queue_manager):
    add_job(queue_manager, "job-1", next_retry_at=NOW + timedelta(microseconds=500000))

    assert temp_db.find_eligible_jobs(NOW, limit=10) == []
    assert len(temp_db.find_eligible_jobs(NOW + timedelta(seconds=1), limit=10)) == 1


def test_find_stale_jobs(temp_db, queue_manager):
    add_job(queue_manager, "job-1")
    temp_db.claim_job("job-1", NOW)

    assert temp_db.find_stale_jobs(NOW) == []
    stale = temp_db.find_stale_jobs(NOW + timedelta(seconds=1))
    assert [job.id for job in stale] == ["job-1"]


def test_store_errors_are_wrapped(temp_db, tmp_path):
    temp_db.db_path = str(tmp_path)

    with pytest.raises(DatabaseError):
        temp_db.find_eligible_jobs(NOW, limit=10)
