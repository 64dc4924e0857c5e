import threading
import time
from datetime import timedelta

import pytest

from dlqctl.exceptions import DatabaseError
from dlqctl.handlers import HandlerRegistry
from dlqctl.models import JobStatus, RetryConfig
from dlqctl.processor import DeadLetterQueueProcessor
from dlqctl.queue import QueueManager, STALE_CLAIM_ERROR

from conftest import NOW


class RecordingHandler:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []

    def execute(self, payload):
        self.calls.append(payload["id"])
        if payload["id"] in self.fail_on:
            raise RuntimeError(f"analysis of {payload['id']} failed")


def add_job(queue_manager, job_id, job_type="analysis", next_retry_at=NOW, **kwargs):
    job = queue_manager.create_job(job_type, {"id": job_id}, job_id=job_id, now=NOW, **kwargs)
    job.next_retry_at = next_retry_at
    queue_manager.enqueue_job(job)
    return job


@pytest.fixture
def processor(queue_manager, registry, clock):
    return DeadLetterQueueProcessor(queue_manager, registry, clock=clock)


def test_empty_sweep_returns_zero_and_writes_nothing(processor, queue_manager, temp_db, monkeypatch):
    add_job(queue_manager, "not-due", next_retry_at=NOW + timedelta(minutes=5))
    before = queue_manager.get_job("not-due")

    def no_writes(*args, **kwargs):
        raise AssertionError("store write during an empty sweep")

    monkeypatch.setattr(temp_db, "claim_job", no_writes)
    monkeypatch.setattr(queue_manager, "update_job", no_writes)

    result = processor.process_retry_queue()

    assert result.to_dict() == {"processed": 0, "failed": 0, "errors": []}
    assert queue_manager.get_job("not-due") == before


def test_sweep_with_mixed_outcomes(processor, queue_manager, registry):
    handler = RecordingHandler(fail_on={"job-3"})
    registry.register("analysis", handler)
    for i in (1, 2, 3):
        add_job(queue_manager, f"job-{i}", next_retry_at=NOW - timedelta(seconds=10 - i))

    result = processor.process_retry_queue()

    assert result.processed == 2
    assert result.failed == 1
    assert result.errors == ["Job job-3: analysis of job-3 failed"]
    assert handler.calls == ["job-1", "job-2", "job-3"]

    assert queue_manager.get_job("job-1").status == JobStatus.COMPLETED
    assert queue_manager.get_job("job-2").status == JobStatus.COMPLETED
    failed = queue_manager.get_job("job-3")
    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 1
    assert failed.next_retry_at == NOW + timedelta(seconds=30)


def test_function_handlers_receive_payload(processor, queue_manager, registry):
    seen = []

    @registry.register("email")
    def send_email(payload):
        seen.append(payload)

    add_job(queue_manager, "mail-1", job_type="email")

    assert processor.process_retry_queue().processed == 1
    assert seen == [{"id": "mail-1"}]


def test_unknown_job_type_is_a_job_failure(processor, queue_manager):
    add_job(queue_manager, "job-1", job_type="credits")

    result = processor.process_retry_queue()

    assert result.failed == 1
    assert "No handler registered for job type 'credits'" in result.errors[0]
    assert queue_manager.get_job("job-1").status == JobStatus.FAILED


def test_reported_errors_are_bounded(processor, queue_manager, registry):
    registry.register("analysis", RecordingHandler(fail_on={f"job-{i}" for i in range(12)}))
    for i in range(12):
        add_job(queue_manager, f"job-{i}")

    result = processor.process_retry_queue()

    assert result.failed == 12
    assert len(result.errors) == 10


def test_batch_size_limits_one_sweep(queue_manager, registry, clock):
    handler = RecordingHandler()
    registry.register("analysis", handler)
    for i in range(3):
        add_job(queue_manager, f"job-{i}", next_retry_at=NOW - timedelta(seconds=3 - i))

    processor = DeadLetterQueueProcessor(queue_manager, registry, RetryConfig(batch_size=2), clock=clock)
    result = processor.process_retry_queue()

    assert result.processed == 2
    assert handler.calls == ["job-0", "job-1"]
    assert queue_manager.get_job("job-2").status == JobStatus.PENDING


def test_store_failure_aborts_sweep(processor, temp_db, monkeypatch):
    def unavailable(*args, **kwargs):
        raise DatabaseError("Job store error: disk I/O error")

    monkeypatch.setattr(temp_db, "find_eligible_jobs", unavailable)

    with pytest.raises(DatabaseError):
        processor.process_retry_queue()


def test_job_retried_until_dead(processor, queue_manager, registry, clock):
    handler = RecordingHandler(fail_on={"job-1"})
    registry.register("analysis", handler)
    add_job(queue_manager, "job-1", max_attempts=3)

    processor.process_retry_queue()
    job = queue_manager.get_job("job-1")
    assert job.status == JobStatus.FAILED
    assert job.next_retry_at == NOW + timedelta(seconds=30)

    clock.advance(29)
    assert processor.process_retry_queue().failed == 0

    clock.advance(1)
    processor.process_retry_queue()
    job = queue_manager.get_job("job-1")
    assert job.status == JobStatus.FAILED
    assert job.attempts == 2
    assert job.next_retry_at == clock.now + timedelta(seconds=60)

    clock.advance(60)
    processor.process_retry_queue()
    job = queue_manager.get_job("job-1")
    assert job.status == JobStatus.DEAD
    assert job.attempts == 3

    clock.advance(3600)
    assert processor.process_retry_queue().failed == 0
    assert len(handler.calls) == 3


def test_stale_claims_are_recovered_at_sweep_start(processor, queue_manager, temp_db, registry, clock):
    registry.register("analysis", RecordingHandler())
    add_job(queue_manager, "orphan")
    temp_db.claim_job("orphan", NOW)

    clock.advance(RetryConfig().stale_processing_timeout_seconds + 1)
    result = processor.process_retry_queue()

    assert result.recovered == 1
    job = queue_manager.get_job("orphan")
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.last_error == STALE_CLAIM_ERROR


def test_superseded_claim_cannot_complete_job(processor, queue_manager, temp_db, registry, clock):
    add_job(queue_manager, "job-1")
    superseded = temp_db.claim_job("job-1", NOW + timedelta(seconds=1))

    clock.advance(1000)
    assert processor.process_retry_queue().recovered == 1

    @registry.register("analysis")
    def run(payload):
        # The worker holding the recovered claim finishes while this sweep owns the job.
        assert queue_manager.handle_job_success(superseded, clock()) is False
        raise RuntimeError("worker crashed")

    clock.advance(31)
    result = processor.process_retry_queue()

    assert result.failed == 1
    job = queue_manager.get_job("job-1")
    assert job.status == JobStatus.FAILED
    assert job.attempts == 2
    assert job.last_error == "worker crashed"


def test_lost_claim_is_not_counted(processor, queue_manager, registry, clock):
    @registry.register("analysis")
    def run(payload):
        assert queue_manager.recover_stale_jobs(60, clock() + timedelta(seconds=61)) == 1

    add_job(queue_manager, "job-1")

    result = processor.process_retry_queue()

    assert result.to_dict() == {"processed": 0, "failed": 0, "errors": []}
    job = queue_manager.get_job("job-1")
    assert job.status == JobStatus.FAILED
    assert job.last_error == STALE_CLAIM_ERROR


def test_concurrent_sweeps_never_run_a_job_twice(temp_db):
    registry = HandlerRegistry()
    executed = []
    lock = threading.Lock()

    @registry.register("analysis")
    def run(payload):
        time.sleep(0.01)
        with lock:
            executed.append(payload["id"])

    queue_manager = QueueManager(temp_db)
    for i in range(10):
        queue_manager.add_failed_job("analysis", {"id": f"job-{i}"}, job_id=f"job-{i}")

    processors = [DeadLetterQueueProcessor(QueueManager(temp_db), registry) for _ in range(3)]
    results = []

    def sweep(p):
        results.append(p.process_retry_queue())

    threads = [threading.Thread(target=sweep, args=(p,)) for p in processors]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(executed) == sorted(set(executed))
    assert len(executed) == 10
    assert sum(r.processed for r in results) == 10
    assert queue_manager.get_job_counts()["completed"] == 10


def test_get_stats(processor, queue_manager):
    add_job(queue_manager, "a1")
    add_job(queue_manager, "e1", job_type="email")

    stats = processor.get_stats()

    assert stats["pending"] == 2
    assert stats["dead"] == 0
    assert stats["total"] == 2
    assert stats["queues"]["email"]["pending"] == 1
