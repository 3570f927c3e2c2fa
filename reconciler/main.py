from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from reconciler.core.config import get_settings
from reconciler.core.logging import configure_logging, request_id_middleware
from reconciler.reconciliation.job import get_job
from reconciler.reconciliation.router import router as reconciliation_router
from reconciler.reconciliation.scheduler import ReconciliationScheduler

settings = get_settings()
configure_logging(settings.ENV)

logger = structlog.get_logger(__name__)

_scheduler: Optional[ReconciliationScheduler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events."""
    global _scheduler

    logger.info("app.starting", env=settings.ENV)

    job = get_job()
    if settings.RECONCILER_AUTOSTART:
        _scheduler = ReconciliationScheduler(job)
        await _scheduler.start()
    else:
        logger.info("app.scheduler_not_autostarted")

    logger.info("app.started")

    yield

    logger.info("app.stopping")
    if _scheduler is not None and _scheduler.is_running:
        await _scheduler.stop()
        _scheduler = None
    logger.info("app.stopped")


app = FastAPI(title="Transaction Reconciler", version="0.1.0", lifespan=lifespan)
app.middleware("http")(request_id_middleware)
app.include_router(reconciliation_router)


@app.get("/")
def health_check():
    logger.debug("health_check")
    return {"status": "ok"}


@app.get("/healthz")
def healthz():
    logger.debug("healthz", env=settings.ENV)
    return {"status": "healthy", "env": settings.ENV}
