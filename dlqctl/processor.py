import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .handlers import HandlerRegistry
from .models import Job, RetryConfig, SweepResult, utcnow
from .queue import QueueManager

logger = logging.getLogger(__name__)


class DeadLetterQueueProcessor:
    """Runs one bounded sweep over due dead-letter jobs per call.

    Holds no state between sweeps; every decision is read from and written
    back to the job store.
    """

    def __init__(self, queue_manager: QueueManager, registry: HandlerRegistry,
                 config: Optional[RetryConfig] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.queue_manager = queue_manager
        self.db = queue_manager.db
        self.registry = registry
        self.config = config or queue_manager.config
        self.clock = clock

    def process_retry_queue(self, result: Optional[SweepResult] = None) -> SweepResult:
        """Run one sweep; ``result`` is filled in place so a caller keeps
        the counts of outcomes already committed if the sweep aborts."""
        if result is None:
            result = SweepResult()
        now = self.clock()

        result.recovered = self.queue_manager.recover_stale_jobs(
            self.config.stale_processing_timeout_seconds, now
        )

        # A store failure here aborts the whole sweep.
        jobs = self.db.find_eligible_jobs(now, self.config.batch_size)
        if not jobs:
            logger.debug("No dead letter jobs due for retry")
            return result

        for job in jobs:
            claimed = self.db.claim_job(job.id, self.clock())
            if claimed is None:
                logger.debug(f"Job {job.id} already claimed by another sweep, skipping")
                continue
            self._run_job(claimed, result)

        logger.info(f"Processed {result.processed} retry jobs, {result.failed} failed")
        return result

    def _run_job(self, job: Job, result: SweepResult):
        logger.info(
            f"Retrying job {job.id} ({job.type}), attempt {job.attempts + 1}/{job.max_attempts}",
            extra={"event": "job_retry", "job_id": job.id, "job_type": job.type}
        )

        try:
            handler = self.registry.get(job.type)
            handler.execute(job.payload)
        except Exception as e:
            error_msg = str(e) or e.__class__.__name__
            logger.warning(f"Job {job.id} failed: {error_msg}",
                           extra={"event": "job_failed", "job_id": job.id, "error": error_msg})
            if not self.queue_manager.handle_job_failure(job, error_msg, self.clock(), self.config):
                return
            result.failed += 1
            if len(result.errors) < self.config.max_reported_errors:
                result.errors.append(f"Job {job.id}: {error_msg}")
            return

        if not self.queue_manager.handle_job_success(job, self.clock()):
            return
        result.processed += 1
        logger.info(f"Job {job.id} completed",
                    extra={"event": "job_completed", "job_id": job.id})

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.queue_manager.get_job_counts())
        stats['queues'] = self.queue_manager.get_counts_by_type()
        return stats
