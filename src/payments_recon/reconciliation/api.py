"""API endpoints for reconciliation operations."""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..auth import verify_api_key, limiter
from ..config import get_trigger_rate_limit
from .errors import (
    ConcurrentRunConflict,
    InvalidPolicy,
    ReconciliationError,
    RunNotFound,
    StorageError,
)
from .models import (
    ExportRequest,
    ItemStatus,
    ReconciliationItem,
    RunFilter,
    RunStatus,
    RunSummary,
    TriggerRequest,
)
from .service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

ERROR_STATUS_CODES = {
    InvalidPolicy: 422,
    ConcurrentRunConflict: 409,
    RunNotFound: 404,
    StorageError: 503,
}


def get_reconciliation_service(request: Request) -> ReconciliationService:
    """Dependency returning the service created at application startup."""
    service = getattr(request.app.state, "reconciliation_service", None)
    if service is None:
        logger.error("Reconciliation service is not initialized")
        raise HTTPException(status_code=503, detail="Reconciliation service unavailable")
    return service


def _to_http_exception(error: ReconciliationError) -> HTTPException:
    for error_class, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_class):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(status_code=500, detail=error.to_dict())


class TriggerResponse(BaseModel):
    """Response for a trigger call."""
    run: Dict[str, Any]
    items: List[ReconciliationItem] = []
    persisted: bool = False


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


@router.post("/runs", response_model=TriggerResponse)
@limiter.limit(get_trigger_rate_limit())
async def trigger_reconciliation_run(
    request: Request,
    body: TriggerRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator: str = Depends(verify_api_key),
):
    """
    Start a reconciliation run.

    Sync runs return the terminal run with its classified items. Async runs
    return 202 with the pending run; poll ``GET /runs/{run_id}`` for progress.
    """
    logger.info(
        f"Operator {operator} triggered reconciliation for "
        f"{body.period_start} to {body.period_end} (county={body.county})"
    )

    try:
        result = await service.trigger(body, created_by=operator)
    except ReconciliationError as e:
        raise _to_http_exception(e)

    response = TriggerResponse(
        run=result.run.to_summary_dict(),
        items=result.items,
        persisted=result.persisted,
    )
    if not body.sync:
        return JSONResponse(status_code=202, content=response.model_dump(mode="json"))
    return response


@router.get("/runs", response_model=List[RunSummary])
async def list_reconciliation_runs(
    status: Optional[RunStatus] = Query(default=None, description="Filter by run status"),
    county: Optional[str] = Query(default=None, description="Filter by county"),
    period_start: Optional[date] = Query(default=None, description="Runs starting on or after"),
    period_end: Optional[date] = Query(default=None, description="Runs ending on or before"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator: str = Depends(verify_api_key),
):
    """List stored reconciliation runs, newest first."""
    run_filter = RunFilter(
        status=status,
        county=county,
        period_start=period_start,
        period_end=period_end,
        limit=limit,
        offset=offset,
    )
    try:
        return await service.list_runs(run_filter)
    except ReconciliationError as e:
        raise _to_http_exception(e)


@router.get("/runs/{run_id}")
async def get_reconciliation_run(
    run_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator: str = Depends(verify_api_key),
):
    """Get a run summary. In-flight runs are included."""
    try:
        run = await service.get_run(run_id)
    except ReconciliationError as e:
        raise _to_http_exception(e)
    return run.to_summary_dict()


@router.get("/runs/{run_id}/items", response_model=List[ReconciliationItem])
async def export_reconciliation_items(
    run_id: str,
    status: Optional[ItemStatus] = Query(default=None, description="Filter by item status"),
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator: str = Depends(verify_api_key),
):
    """Export the classified items of a stored run."""
    try:
        return await service.export(ExportRequest(run_id=run_id, status=status))
    except ReconciliationError as e:
        raise _to_http_exception(e)


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_reconciliation_run(
    run_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator: str = Depends(verify_api_key),
):
    """Request cancellation of an in-flight run."""
    cancelled = await service.cancel(run_id)
    logger.info(f"Operator {operator} cancel request for run {run_id}: {cancelled}")
    return CancelResponse(run_id=run_id, cancelled=cancelled)


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}
