import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from .db import Database, JOB_COLUMNS, format_ts
from .exceptions import JobNotFoundError, JobValidationError
from .models import Job, JobStatus, RetryConfig, TERMINAL_STATUSES, utcnow
from .scheduler import MAX_ERROR_LENGTH, schedule_retry

logger = logging.getLogger(__name__)

STALE_CLAIM_ERROR = "Processing claim expired (stale worker)"


class QueueManager:
    def __init__(self, database: Database, config: Optional[RetryConfig] = None):
        self.db = database
        self.config = config or RetryConfig()

    def enqueue_job(self, job: Job) -> str:
        with self.db.transaction() as conn:
            if self.db._get_job_by_id(conn, job.id):
                raise JobValidationError(f"Job with ID '{job.id}' already exists")
            self._insert_job(conn, job)
        logger.info(f"Job {job.id} ({job.type}) added to dead letter queue")
        return job.id

    def _insert_job(self, conn, job: Job):
        conn.execute(f"""
            INSERT INTO jobs ({JOB_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            job.id, job.type, json.dumps(job.payload), job.status.value,
            job.attempts, job.max_attempts, format_ts(job.next_retry_at),
            job.last_error, format_ts(job.created_at), format_ts(job.updated_at),
            format_ts(job.claimed_at) if job.claimed_at else None
        ))

    def create_job(self, job_type: str, payload: Optional[Dict[str, Any]] = None,
                   error: Optional[str] = None, max_attempts: Optional[int] = None,
                   job_id: Optional[str] = None, now: Optional[datetime] = None) -> Job:
        if not job_type or not isinstance(job_type, str):
            raise JobValidationError("Job type must be a non-empty string")

        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise JobValidationError("Job payload must be a JSON object")

        if max_attempts is None:
            max_attempts = self.config.max_attempts
        if not isinstance(max_attempts, int) or max_attempts < 1:
            raise JobValidationError("max_attempts must be a positive integer")

        now = now or utcnow()

        return Job(
            id=job_id or str(uuid.uuid4()),
            type=job_type,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            next_retry_at=now,
            created_at=now,
            updated_at=now,
            last_error=error[:MAX_ERROR_LENGTH] if error else None
        )

    def add_failed_job(self, job_type: str, payload: Optional[Dict[str, Any]] = None,
                       error: Optional[str] = None, max_attempts: Optional[int] = None,
                       job_id: Optional[str] = None) -> str:
        job = self.create_job(job_type, payload, error, max_attempts, job_id)
        return self.enqueue_job(job)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.db.connection() as conn:
            return self.db._get_job_by_id(conn, job_id)

    def update_job(self, job: Job, expected_status: JobStatus,
                   expected_claimed_at: Optional[datetime]) -> bool:
        """Write ``job`` only if the row still has the status and claim the writer saw.

        Returns False when another writer moved the job first; nothing is
        written in that case.
        """
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET status = ?, attempts = ?, max_attempts = ?, next_retry_at = ?,
                    last_error = ?, updated_at = ?, claimed_at = ?
                WHERE id = ?
                AND status = ?
                AND claimed_at IS ?
            """, (
                job.status.value, job.attempts, job.max_attempts,
                format_ts(job.next_retry_at), job.last_error,
                format_ts(job.updated_at),
                format_ts(job.claimed_at) if job.claimed_at else None,
                job.id,
                expected_status.value,
                format_ts(expected_claimed_at) if expected_claimed_at else None
            ))
            return cursor.rowcount == 1

    def _log_lost_claim(self, job: Job, claimed_at: Optional[datetime], outcome: str):
        logger.warning(
            f"Job {job.id} is no longer held by the claim from {claimed_at}, {outcome} discarded",
            extra={"event": "claim_lost", "job_id": job.id, "status": outcome}
        )

    def handle_job_success(self, job: Job, now: Optional[datetime] = None) -> bool:
        expected_status, claimed_at = job.status, job.claimed_at
        if expected_status in TERMINAL_STATUSES:
            raise JobValidationError(f"Job {job.id} is already {expected_status.value}")

        job.status = JobStatus.COMPLETED
        job.updated_at = now or utcnow()
        job.claimed_at = None
        job.last_error = None

        if not self.update_job(job, expected_status, claimed_at):
            self._log_lost_claim(job, claimed_at, JobStatus.COMPLETED.value)
            return False
        return True

    def handle_job_failure(self, job: Job, error_message: str,
                           now: Optional[datetime] = None,
                           config: Optional[RetryConfig] = None) -> bool:
        expected_status, claimed_at = job.status, job.claimed_at
        if expected_status in TERMINAL_STATUSES:
            raise JobValidationError(f"Job {job.id} is already {expected_status.value}")

        schedule_retry(job, error_message, now or utcnow(), config or self.config)

        if not self.update_job(job, expected_status, claimed_at):
            self._log_lost_claim(job, claimed_at, job.status.value)
            return False

        if job.status == JobStatus.DEAD:
            logger.warning(
                f"Job {job.id} moved to DEAD after {job.attempts}/{job.max_attempts} attempts: {job.last_error}",
                extra={"event": "job_dead", "job_id": job.id, "attempts": job.attempts}
            )
        else:
            logger.info(
                f"Job {job.id} scheduled for retry at {job.next_retry_at.isoformat()} "
                f"(attempt {job.attempts}/{job.max_attempts})",
                extra={"event": "job_retry_scheduled", "job_id": job.id, "attempts": job.attempts}
            )
        return True

    def list_jobs(self, status: Optional[str] = None, job_type: Optional[str] = None,
                  limit: int = 10) -> List[Job]:
        query = f"SELECT {JOB_COLUMNS} FROM jobs"
        params: List[Any] = []
        conditions = []

        if status:
            conditions.append("status = ?")
            params.append(JobStatus(status).value)

        if job_type:
            conditions.append("type = ?")
            params.append(job_type)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)

        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [self.db._row_to_job(row) for row in cursor.fetchall()]

    def get_job_counts(self) -> Dict[str, int]:
        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT status, COUNT(*)
                FROM jobs
                GROUP BY status
            """)

            counts = {status.value: 0 for status in JobStatus}
            for row in cursor.fetchall():
                counts[row[0]] = row[1]

            counts['total'] = sum(counts.values())
            return counts

    def get_counts_by_type(self) -> Dict[str, Dict[str, int]]:
        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT type, status, COUNT(*)
                FROM jobs
                GROUP BY type, status
            """)

            queues: Dict[str, Dict[str, int]] = {}
            for job_type, status, count in cursor.fetchall():
                bucket = queues.setdefault(job_type, {s.value: 0 for s in JobStatus})
                bucket[status] = count
            return queues

    def recover_stale_jobs(self, timeout_seconds: Optional[int] = None,
                           now: Optional[datetime] = None) -> int:
        """Charge a failed attempt to every PROCESSING claim older than the timeout."""
        now = now or utcnow()
        if timeout_seconds is None:
            timeout_seconds = self.config.stale_processing_timeout_seconds

        recovered = 0
        for job in self.db.find_stale_jobs(now - timedelta(seconds=timeout_seconds)):
            logger.warning(f"Recovering job {job.id} from stale claim at {job.claimed_at}")
            # Conditional on the claim read above; a job finished or recovered
            # meanwhile is left alone.
            if self.handle_job_failure(job, STALE_CLAIM_ERROR, now):
                recovered += 1

        return recovered

    def retry_dead_job(self, job_id: str, now: Optional[datetime] = None) -> str:
        """Requeue a DEAD job's work as a new PENDING job; the DEAD row is kept."""
        dead_job = self.get_job(job_id)
        if not dead_job:
            raise JobNotFoundError(job_id)

        if dead_job.status != JobStatus.DEAD:
            raise JobValidationError(
                f"Job {job_id} is {dead_job.status.value}; only dead jobs can be retried manually"
            )

        new_job = self.create_job(
            dead_job.type,
            dead_job.payload,
            error=f"Manual retry of dead job {job_id}",
            max_attempts=dead_job.max_attempts,
            now=now
        )
        self.enqueue_job(new_job)
        logger.info(f"Dead job {job_id} requeued as {new_job.id}")
        return new_job.id

    def list_dead_jobs(self, limit: int = 10) -> List[Job]:
        return self.list_jobs(status=JobStatus.DEAD.value, limit=limit)

    def purge_jobs(self, statuses: Iterable[JobStatus] = TERMINAL_STATUSES,
                   older_than_days: Optional[int] = None,
                   now: Optional[datetime] = None) -> int:
        statuses = [s for s in statuses if s in TERMINAL_STATUSES]
        if not statuses:
            raise JobValidationError("Only completed or dead jobs can be purged")

        placeholders = ", ".join("?" for _ in statuses)
        query = f"DELETE FROM jobs WHERE status IN ({placeholders})"
        params: List[Any] = [s.value for s in statuses]

        if older_than_days:
            cutoff = (now or utcnow()) - timedelta(days=older_than_days)
            query += " AND updated_at < ?"
            params.append(format_ts(cutoff))

        with self.db.transaction() as conn:
            cursor = conn.execute(query, params)
            purged = cursor.rowcount

        logger.info(f"Purged {purged} old jobs")
        return purged
