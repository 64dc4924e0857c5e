import logging
import time
from typing import Any, Dict, Optional

from .cache import CacheBackend
from .models import RetryConfig, SweepResult, utcnow

logger = logging.getLogger(__name__)

METRICS_KEY = 'dlq:metrics'
ALERT_KEY = 'dlq:alert:high-failures'
ERROR_KEY = 'dlq:error'
MAINTENANCE_KEY = 'dlq:maintenance:last-run'
HEALTH_REPORT_KEY = 'dlq:health-report'

MAINTENANCE_TTL_SECONDS = 86400
ALERT_ERROR_COUNT = 5


class MetricsRecorder:
    """Writes sweep snapshots and alerts to the metrics cache.

    Every write is best effort: a cache failure is logged and reported
    through the return value, never raised to the sweep.
    """

    def __init__(self, cache: CacheBackend, config: Optional[RetryConfig] = None):
        self.cache = cache
        self.config = config or RetryConfig()

    def _write(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        try:
            self.cache.set(key, value, ttl_seconds=ttl_seconds)
            return True
        except Exception:
            logger.exception(f"Failed to write {key} to metrics cache")
            return False

    def record_sweep(self, result: SweepResult, duration_ms: int,
                     stats: Optional[Dict[str, Any]] = None) -> bool:
        ok = self._write(METRICS_KEY, {
            'lastRun': utcnow().isoformat(),
            'processed': result.processed,
            'failed': result.failed,
            'duration': duration_ms,
            'dlqStats': stats or {},
            'errors': result.errors[:self.config.max_reported_errors],
            'timestamp': int(time.time() * 1000),
        }, self.config.metrics_ttl_seconds)

        if result.failed > self.config.alert_threshold:
            logger.warning(f"High number of DLQ failures: {result.failed}")
            ok = self._write(ALERT_KEY, {
                'message': f"High number of DLQ failures: {result.failed}",
                'timestamp': int(time.time() * 1000),
                'failed': result.failed,
                'errors': result.errors[:ALERT_ERROR_COUNT],
            }, self.config.alert_ttl_seconds) and ok

        return ok

    def record_error(self, message: str, duration_ms: int) -> bool:
        return self._write(ERROR_KEY, {
            'lastError': utcnow().isoformat(),
            'error': message,
            'duration': duration_ms,
            'timestamp': int(time.time() * 1000),
        }, self.config.alert_ttl_seconds)

    def record_maintenance(self, summary: Dict[str, Any], health_report: Dict[str, Any],
                           duration_ms: int) -> bool:
        ok = self._write(MAINTENANCE_KEY, {
            'timestamp': utcnow().isoformat(),
            'duration': duration_ms,
            'results': summary,
            'success': True,
        }, MAINTENANCE_TTL_SECONDS)
        return self._write(HEALTH_REPORT_KEY, health_report, MAINTENANCE_TTL_SECONDS) and ok
