import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from .exceptions import DatabaseError
from .models import Job, JobStatus, RETRYABLE_STATUSES

JOB_COLUMNS = """
    id, type, payload, status, attempts, max_attempts, next_retry_at,
    last_error, created_at, updated_at, claimed_at
"""


def format_ts(value: datetime) -> str:
    # Fixed precision keeps ISO text ordering identical to time ordering.
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ensure_db_directory()
        self._init_schema()

    def _ensure_db_directory(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self):
        with self.connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'failed', 'dead', 'completed')),
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    next_retry_at TEXT NOT NULL,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    claimed_at TEXT,
                    CHECK (attempts <= max_attempts)
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_status_next_retry ON jobs(status, next_retry_at);
                CREATE INDEX IF NOT EXISTS idx_jobs_type ON jobs(type);
                CREATE INDEX IF NOT EXISTS idx_jobs_updated_at ON jobs(updated_at);

                CREATE TABLE IF NOT EXISTS config (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
            """)

    @contextmanager
    def connection(self):
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise DatabaseError(f"Job store error: {e}") from e
        finally:
            if conn:
                conn.close()

    @contextmanager
    def transaction(self):
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def find_eligible_jobs(self, now: datetime, limit: int) -> List[Job]:
        """Due PENDING/FAILED jobs, oldest-due first."""
        with self.connection() as conn:
            cursor = conn.cursor()
            cursor.execute(f"""
                SELECT {JOB_COLUMNS} FROM jobs
                WHERE status IN (?, ?)
                AND next_retry_at <= ?
                ORDER BY next_retry_at ASC, created_at ASC
                LIMIT ?
            """, (*[s.value for s in RETRYABLE_STATUSES], format_ts(now), limit))
            return [self._row_to_job(row) for row in cursor.fetchall()]

    def claim_job(self, job_id: str, now: datetime) -> Optional[Job]:
        """Atomically move a due job to PROCESSING.

        The status check and the write are one conditional UPDATE, so of
        several concurrent callers exactly one sees rowcount == 1.
        """
        stamp = format_ts(now)
        with self.transaction() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE jobs
                SET status = ?,
                    claimed_at = ?,
                    updated_at = ?
                WHERE id = ?
                AND status IN (?, ?)
                AND next_retry_at <= ?
            """, (
                JobStatus.PROCESSING.value, stamp, stamp, job_id,
                *[s.value for s in RETRYABLE_STATUSES], stamp
            ))

            if cursor.rowcount == 1:
                return self._get_job_by_id(conn, job_id)
            return None

    def find_stale_jobs(self, claimed_before: datetime) -> List[Job]:
        with self.connection() as conn:
            cursor = conn.cursor()
            cursor.execute(f"""
                SELECT {JOB_COLUMNS} FROM jobs
                WHERE status = ?
                AND (claimed_at IS NULL OR claimed_at < ?)
                ORDER BY claimed_at ASC
            """, (JobStatus.PROCESSING.value, format_ts(claimed_before)))
            return [self._row_to_job(row) for row in cursor.fetchall()]

    def _get_job_by_id(self, conn, job_id: str) -> Optional[Job]:
        cursor = conn.cursor()
        cursor.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))

        row = cursor.fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def _row_to_job(self, row) -> Job:
        return Job(
            id=row[0],
            type=row[1],
            payload=json.loads(row[2]),
            status=JobStatus(row[3]),
            attempts=row[4],
            max_attempts=row[5],
            next_retry_at=parse_ts(row[6]),
            last_error=row[7],
            created_at=parse_ts(row[8]),
            updated_at=parse_ts(row[9]),
            claimed_at=parse_ts(row[10])
        )
