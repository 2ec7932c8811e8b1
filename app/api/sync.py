"""
Sales ledger sync endpoints
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from app.config import get_settings
from app.exceptions import (
    SalesLedgerError,
    SyncTimeoutError,
    TenantNotFoundError,
    TenantSyncBusyError,
    UnauthorizedTenantAccess,
)
from app.models.base import get_db
from app.models.sync_status import SalesSyncLog, SalesSyncStatus
from app.services.authorization import require_tenant_access
from app.services.sales_sync_service import SalesSyncService
from app.services.sync_scope import SyncScope
from app.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])

_sync_service = None


def get_sync_service() -> SalesSyncService:
    global _sync_service
    if _sync_service is None:
        _sync_service = SalesSyncService()
    return _sync_service


def resolve_caller(
    x_user_id: Optional[str] = Header(None),
    x_service_token: Optional[str] = Header(None),
) -> Optional[str]:
    """
    Caller principal for the request.

    X-User-Id names an interactive caller. Without it the request runs as the
    background identity (None), which requires the configured service token.
    """
    if x_user_id:
        return x_user_id
    token = get_settings().service_token
    if token and x_service_token == token:
        return None
    raise HTTPException(status_code=401, detail="X-User-Id or a valid X-Service-Token is required")


def _raise_http(e: Exception, action: str):
    if isinstance(e, UnauthorizedTenantAccess):
        raise HTTPException(status_code=403, detail=str(e))
    if isinstance(e, TenantNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, TenantSyncBusyError):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, SyncTimeoutError):
        raise HTTPException(status_code=504, detail=str(e))
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e))
    log.error(f"{action} error: {str(e)}")
    raise HTTPException(status_code=500, detail=str(e))


@router.post("/{tenant_id}/all")
def sync_all(
    tenant_id: int,
    provider: Optional[str] = Query(None, description="Limit to one provider (toast, square)"),
    caller: Optional[str] = Depends(resolve_caller),
    service: SalesSyncService = Depends(get_sync_service),
):
    """
    Full resync of the tenant's ledger from the extract.

    Runs in bulk mode: per-row side effects are off and one batch pass runs
    after commit. Returns the run's counts; rows_written is 0 when nothing
    upstream changed.
    """
    try:
        result = service.run(SyncScope(tenant_id=tenant_id, provider=provider), caller=caller, sync_type="bulk")
        return result.to_dict()
    except (SalesLedgerError, ValueError) as e:
        _raise_http(e, "Sync all")


@router.post("/{tenant_id}/range")
def sync_range(
    tenant_id: int,
    start_date: date = Query(..., description="First service date (inclusive)"),
    end_date: date = Query(..., description="Last service date (inclusive)"),
    provider: Optional[str] = Query(None),
    caller: Optional[str] = Depends(resolve_caller),
    service: SalesSyncService = Depends(get_sync_service),
):
    """Resync orders whose service date falls in [start_date, end_date]."""
    try:
        if start_date > end_date:
            raise ValueError(f"start_date {start_date} is after end_date {end_date}")
        scope = SyncScope(tenant_id=tenant_id, provider=provider, start_date=start_date, end_date=end_date)
        return service.run(scope, caller=caller, sync_type="range").to_dict()
    except (SalesLedgerError, ValueError) as e:
        _raise_http(e, "Sync range")


@router.post("/{tenant_id}/catch-up")
def catch_up(
    tenant_id: int,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    provider: Optional[str] = Query(None),
    caller: Optional[str] = Depends(resolve_caller),
    service: SalesSyncService = Depends(get_sync_service),
):
    """Re-run classification and aggregation after a failed batch pass."""
    try:
        result = service.catch_up_side_effects(tenant_id, caller, provider, start_date, end_date)
        return result.to_dict()
    except (SalesLedgerError, ValueError) as e:
        _raise_http(e, "Catch-up")


@router.get("/{tenant_id}/status")
def get_sync_status(
    tenant_id: int,
    limit: int = Query(10, description="Recent runs to include"),
    caller: Optional[str] = Depends(resolve_caller),
    db: Session = Depends(get_db),
):
    """Per-provider freshness plus the most recent runs."""
    try:
        require_tenant_access(db, tenant_id, caller)
    except UnauthorizedTenantAccess as e:
        _raise_http(e, "Sync status")

    statuses = db.query(SalesSyncStatus).filter(
        SalesSyncStatus.tenant_id == tenant_id
    ).order_by(SalesSyncStatus.provider).all()
    logs = db.query(SalesSyncLog).filter(
        SalesSyncLog.tenant_id == tenant_id
    ).order_by(SalesSyncLog.started_at.desc(), SalesSyncLog.id.desc()).limit(limit).all()

    return {
        "tenant_id": tenant_id,
        "providers": [
            {
                "provider": s.provider,
                "sync_status": s.sync_status,
                "is_healthy": s.is_healthy,
                "side_effects_pending": bool(s.side_effects_pending),
                "last_sync_attempt": s.last_sync_attempt.isoformat() if s.last_sync_attempt else None,
                "last_successful_sync": s.last_successful_sync.isoformat() if s.last_successful_sync else None,
                "rows_written": s.rows_written,
                "sync_duration_seconds": s.sync_duration_seconds,
                "error_count": s.error_count,
                "last_error": s.last_error,
            }
            for s in statuses
        ],
        "recent_runs": [
            {
                "sync_type": entry.sync_type,
                "provider": entry.provider,
                "status": entry.status,
                "rows_written": entry.rows_written,
                "rows_retracted": entry.rows_retracted,
                "dates_aggregated": entry.dates_aggregated,
                "started_at": entry.started_at.isoformat() if entry.started_at else None,
                "duration_seconds": entry.duration_seconds,
                "error": entry.error_message,
            }
            for entry in logs
        ],
    }
