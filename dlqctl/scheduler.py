"""Retry scheduling decisions for dead-letter jobs.

Pure functions: they read and mutate the ``Job`` passed in and touch
nothing else. Persisting the result is the caller's job.
"""

from datetime import datetime, timedelta
from typing import Optional

from .exceptions import JobValidationError
from .models import Job, JobStatus, RetryConfig, RETRYABLE_STATUSES

MAX_ERROR_LENGTH = 1000


def _require_id(job: Job):
    if not job.id:
        raise JobValidationError("Job must have an id")


def is_eligible(job: Job, now: datetime) -> bool:
    _require_id(job)
    return job.status in RETRYABLE_STATUSES and now >= job.next_retry_at


def calculate_backoff_delay(attempts: int, base_delay: int, max_delay: int) -> int:
    """Seconds to wait after ``attempts`` prior failures: ``min(base * 2**n, cap)``."""
    return min(base_delay * (2 ** max(0, attempts)), max_delay)


def schedule_retry(job: Job, error: Optional[str], now: datetime,
                   config: Optional[RetryConfig] = None) -> Job:
    """Record a failed attempt and decide between FAILED and DEAD."""
    _require_id(job)
    config = config or RetryConfig()

    previous_attempts = job.attempts
    job.attempts = min(job.attempts + 1, job.max_attempts)
    job.last_error = error[:MAX_ERROR_LENGTH] if error else None
    job.updated_at = now
    job.claimed_at = None

    if job.attempts >= job.max_attempts:
        job.status = JobStatus.DEAD
        return job

    delay_seconds = calculate_backoff_delay(
        previous_attempts, config.base_delay_seconds, config.max_delay_seconds
    )
    job.status = JobStatus.FAILED
    job.next_retry_at = now + timedelta(seconds=delay_seconds)
    return job
