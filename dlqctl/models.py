from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    DEAD = "dead"
    COMPLETED = "completed"


RETRYABLE_STATUSES = (JobStatus.PENDING, JobStatus.FAILED)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.DEAD)


@dataclass
class Job:
    id: str
    type: str
    payload: Dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    next_retry_at: datetime
    created_at: datetime
    updated_at: datetime
    last_error: Optional[str] = None
    claimed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "nextRetryAt": self.next_retry_at.isoformat(),
            "lastError": self.last_error,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "claimedAt": self.claimed_at.isoformat() if self.claimed_at else None,
        }


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: int = 30
    max_delay_seconds: int = 3600
    batch_size: int = 50
    max_reported_errors: int = 10
    alert_threshold: int = 5
    metrics_ttl_seconds: int = 300
    alert_ttl_seconds: int = 3600
    stale_processing_timeout_seconds: int = 900
    purge_after_days: int = 7


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    recovered: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "errors": list(self.errors),
        }
