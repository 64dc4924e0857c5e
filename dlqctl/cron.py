"""Entry points for the scheduled (cron) invocations.

Each call does one bounded unit of work and returns; scheduling is the
caller's concern.
"""

import logging
import time
from typing import Any, Dict, Optional

from .exceptions import SweepFailedError
from .metrics import MetricsRecorder
from .models import RetryConfig, SweepResult
from .processor import DeadLetterQueueProcessor
from .queue import QueueManager

logger = logging.getLogger(__name__)

FAILED_WARNING_THRESHOLD = 100
DEAD_CRITICAL_THRESHOLD = 50
PENDING_WARNING_THRESHOLD = 50


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def run_sweep(processor: DeadLetterQueueProcessor, recorder: MetricsRecorder) -> Dict[str, Any]:
    started = time.monotonic()
    logger.info("Starting DLQ processing")

    result = SweepResult()
    try:
        processor.process_retry_queue(result)
        stats = processor.get_stats()
    except Exception as e:
        duration = _elapsed_ms(started)
        message = str(e) or e.__class__.__name__
        logger.exception(f"DLQ processing failed after {duration}ms "
                         f"(processed={result.processed} failed={result.failed})")
        recorder.record_error(message, duration)
        raise SweepFailedError(message, duration, result) from e

    duration = _elapsed_ms(started)
    logger.info(f"DLQ processing completed in {duration}ms: "
                f"processed={result.processed} failed={result.failed} recovered={result.recovered}")

    recorder.record_sweep(result, duration, stats)

    return {
        'processed': result.processed,
        'failed': result.failed,
        'duration': duration,
        'dlqStats': stats,
        'errorCount': len(result.errors),
    }


def build_health_report(counts: Dict[str, int]) -> Dict[str, Any]:
    health = 'good'
    recommendations = []

    if counts.get('failed', 0) > FAILED_WARNING_THRESHOLD:
        health = 'warning'
        recommendations.append('High number of failed jobs - investigate root causes')

    if counts.get('pending', 0) > PENDING_WARNING_THRESHOLD:
        health = 'warning'
        recommendations.append('Large retry backlog - consider increasing processing frequency')

    if counts.get('dead', 0) > DEAD_CRITICAL_THRESHOLD:
        health = 'critical'
        recommendations.append('Many jobs have exceeded retry limits - manual intervention may be needed')

    return {
        'dlqSize': counts.get('failed', 0),
        'retryQueueSize': counts.get('pending', 0) + counts.get('failed', 0),
        'deadJobs': counts.get('dead', 0),
        'health': health,
        'recommendations': recommendations,
    }


def run_maintenance(queue_manager: QueueManager, recorder: MetricsRecorder,
                    config: Optional[RetryConfig] = None) -> Dict[str, Any]:
    config = config or queue_manager.config
    started = time.monotonic()
    logger.info("Starting DLQ maintenance")

    before = queue_manager.get_job_counts()
    recovered = queue_manager.recover_stale_jobs(config.stale_processing_timeout_seconds)
    purged = queue_manager.purge_jobs(older_than_days=config.purge_after_days)
    after = queue_manager.get_job_counts()

    duration = _elapsed_ms(started)
    summary = {
        'purgedJobs': purged,
        'recoveredJobs': recovered,
        'beforeCleanup': before,
        'afterCleanup': after,
        'reduction': {
            'dead': before['dead'] - after['dead'],
            'completed': before['completed'] - after['completed'],
        },
    }
    health_report = build_health_report(after)

    logger.info(f"DLQ maintenance completed in {duration}ms: purged={purged} "
                f"recovered={recovered} health={health_report['health']}")
    recorder.record_maintenance(summary, health_report, duration)

    return {
        'results': summary,
        'healthReport': health_report,
        'duration': duration,
    }
