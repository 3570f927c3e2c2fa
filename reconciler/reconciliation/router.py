"""
Reconciliation API routes.

Provides endpoints to trigger a pass, view job status, and access metrics.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from reconciler.core.config import get_settings
from reconciler.reconciliation.clients.mock_client import MockChainClient
from reconciler.reconciliation.job import ReconciliationJob, get_job

logger = structlog.get_logger()

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


class PassTriggerResponse(BaseModel):
    """Response for manual pass trigger."""

    run_id: Optional[str]
    status: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class JobStatusResponse(BaseModel):
    """Response for job status."""

    pass_in_progress: bool
    enabled: bool
    instance_id: str
    last_pass_time: Optional[str]
    circuit_breakers: Dict[str, Any]
    current_run: Optional[Dict[str, Any]]
    last_run: Optional[Dict[str, Any]]
    metrics_24h: Dict[str, Any]
    success_rate_24h: float
    config: Dict[str, Any]


class MetricsResponse(BaseModel):
    """Response for metrics endpoint."""

    enabled: bool
    aggregate: Dict[str, Any]
    success_rate: float
    recent_runs: list[Dict[str, Any]]


@router.post("/run", response_model=PassTriggerResponse)
async def trigger_pass(job: ReconciliationJob = Depends(get_job)):
    """
    Manually trigger a reconciliation pass.

    Runs a single pass immediately, regardless of the configured interval.
    A pass already running in this process, or a lease held elsewhere,
    makes this call return a skipped result.
    """
    is_mock = isinstance(job.client, MockChainClient)
    if is_mock and get_settings().ENV == "production":
        logger.error("reconcile.mock_client_in_production")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chain client not properly configured for production",
        )

    await job.run_once()

    last_run = job.metrics.get_last_run()
    if last_run is None:
        return PassTriggerResponse(
            run_id=None, status="unknown", message="No pass was recorded"
        )

    details = last_run.to_dict()
    details["data_source"] = job.client.get_source_name()
    if last_run.skip_reason:
        message = f"Pass skipped ({last_run.skip_reason})"
    else:
        message = "Pass completed"

    return PassTriggerResponse(
        run_id=last_run.run_id,
        status=last_run.status.value,
        message=message,
        details=details,
    )


@router.get("/status", response_model=JobStatusResponse)
async def get_status(job: ReconciliationJob = Depends(get_job)):
    """Current job status, last pass and 24 hour metrics."""
    return job.get_status()


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(
    hours: Optional[int] = Query(default=None, ge=1),
    job: ReconciliationJob = Depends(get_job),
):
    """
    Get aggregate metrics for reconciliation passes.

    Args:
        hours: Limit to last N hours (omit for all history)

    Returns:
        Aggregate metrics and recent pass history
    """
    return job.get_metrics(hours=hours)
