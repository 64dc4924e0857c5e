from __future__ import annotations

import logging
import os
import secrets
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .cache import InMemoryCache, RedisCache
from .config import ConfigManager
from .cron import run_maintenance, run_sweep
from .db import Database
from .exceptions import (
    ConfigurationError,
    CronUnauthorized,
    DatabaseError,
    JobNotFoundError,
    JobValidationError,
    SweepFailedError,
)
from .handlers import HandlerRegistry, load_registry
from .logging_utils import setup_logging
from .metrics import MetricsRecorder
from .models import SweepResult
from .processor import DeadLetterQueueProcessor
from .queue import QueueManager

log = logging.getLogger(__name__)

BEARER = HTTPBearer(auto_error=False)
DEFAULT_DB_PATH = ".data/dlqctl.db"


# -----------------------
# API models
# -----------------------


class EnqueueJobReq(BaseModel):
    type: str = Field(min_length=1, description="analysis | email | credits | ...")
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1, le=100)
    id: Optional[str] = None


# -----------------------
# Dependencies
# -----------------------


def require_cron_secret(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(BEARER),
) -> None:
    expected = request.app.state.cron_secret
    if not expected:
        raise ConfigurationError("CRON_SECRET not configured")
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise CronUnauthorized()
    if not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise CronUnauthorized()


def get_queue_manager(request: Request) -> QueueManager:
    return request.app.state.queue_manager


def get_processor(request: Request) -> DeadLetterQueueProcessor:
    return request.app.state.processor


def get_recorder(request: Request) -> MetricsRecorder:
    return request.app.state.recorder


# -----------------------
# Error mapping
# -----------------------


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CronUnauthorized)
    async def unauthorized_handler(request: Request, exc: CronUnauthorized):
        return JSONResponse(status_code=401, content={"success": False, "message": "Unauthorized"})

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=500, content={"success": False, "message": str(exc)})

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "message": str(exc)})

    @app.exception_handler(JobValidationError)
    async def job_validation_handler(request: Request, exc: JobValidationError):
        return JSONResponse(status_code=409, content={"success": False, "message": str(exc)})

    @app.exception_handler(SweepFailedError)
    async def sweep_failed_handler(request: Request, exc: SweepFailedError):
        partial = exc.result or SweepResult()
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "DLQ processing failed",
                "error": str(exc),
                "results": {
                    "processed": partial.processed,
                    "failed": partial.failed,
                    "duration": exc.duration_ms,
                    "errorCount": len(partial.errors) + 1,
                },
            },
        )

    @app.exception_handler(DatabaseError)
    async def database_handler(request: Request, exc: DatabaseError):
        log.error(f"Job store error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Job store unavailable", "error": str(exc)},
        )


# -----------------------
# App
# -----------------------


def create_app(
    queue_manager: QueueManager,
    processor: DeadLetterQueueProcessor,
    recorder: MetricsRecorder,
    cron_secret: Optional[str],
) -> FastAPI:
    app = FastAPI(title="TrueCheckIA - Dead Letter Queue")
    app.state.queue_manager = queue_manager
    app.state.processor = processor
    app.state.recorder = recorder
    app.state.cron_secret = cron_secret
    register_exception_handlers(app)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/cron/process-dlq", dependencies=[Depends(require_cron_secret)])
    def process_dlq(
        processor: DeadLetterQueueProcessor = Depends(get_processor),
        recorder: MetricsRecorder = Depends(get_recorder),
    ):
        results = run_sweep(processor, recorder)
        return {"success": True, "message": "DLQ processing completed", "results": results}

    @app.post("/cron/dlq-maintenance", dependencies=[Depends(require_cron_secret)])
    def dlq_maintenance(
        queue_manager: QueueManager = Depends(get_queue_manager),
        recorder: MetricsRecorder = Depends(get_recorder),
    ):
        report = run_maintenance(queue_manager, recorder)
        return {"success": True, "message": "DLQ maintenance completed successfully", **report}

    @app.get("/dlq/stats", dependencies=[Depends(require_cron_secret)])
    def dlq_stats(processor: DeadLetterQueueProcessor = Depends(get_processor)):
        return processor.get_stats()

    @app.get("/dlq/jobs/{job_id}", dependencies=[Depends(require_cron_secret)])
    def get_job(job_id: str, queue_manager: QueueManager = Depends(get_queue_manager)):
        job = queue_manager.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)
        return job.to_dict()

    @app.post("/dlq/jobs", status_code=201, dependencies=[Depends(require_cron_secret)])
    def enqueue_job(req: EnqueueJobReq, queue_manager: QueueManager = Depends(get_queue_manager)):
        job_id = queue_manager.add_failed_job(
            req.type, req.payload, error=req.error, max_attempts=req.max_attempts, job_id=req.id
        )
        return {"id": job_id}

    @app.post("/dlq/jobs/{job_id}/retry", dependencies=[Depends(require_cron_secret)])
    def retry_job(job_id: str, queue_manager: QueueManager = Depends(get_queue_manager)):
        new_job_id = queue_manager.retry_dead_job(job_id)
        return {"id": new_job_id, "retriedFrom": job_id}

    return app


def create_app_from_env(registry: Optional[HandlerRegistry] = None) -> FastAPI:
    """uvicorn factory: ``uvicorn dlqctl.api:create_app_from_env --factory``."""
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("DLQ_LOG_DIR"))

    database = Database(os.environ.get("DLQ_DB_PATH", DEFAULT_DB_PATH))
    config = ConfigManager(database).get_config()
    queue_manager = QueueManager(database, config)

    if registry is None:
        registry = load_registry(os.environ.get("DLQ_HANDLERS"))

    redis_url = os.environ.get("REDIS_URL")
    if redis_url:
        cache = RedisCache(redis_url, default_ttl_seconds=config.metrics_ttl_seconds)
    else:
        log.warning("REDIS_URL not set, metrics are kept in process memory")
        cache = InMemoryCache(default_ttl_seconds=config.metrics_ttl_seconds)

    processor = DeadLetterQueueProcessor(queue_manager, registry, config)
    recorder = MetricsRecorder(cache, config)
    log.info(f"DLQ service ready with handlers: {', '.join(registry.job_types()) or 'none'}")

    return create_app(queue_manager, processor, recorder, os.environ.get("CRON_SECRET"))
