"""
Sync run tracking

track_sales_sync times a run, writes a sales_sync_log row and upserts the
per-tenant, per-provider sales_sync_status row. Status bookkeeping runs in
its own session and never breaks the sync it describes.
"""
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.models.sync_status import SalesSyncLog, SalesSyncStatus
from app.utils.logger import log

ALL_PROVIDERS = "all"


@dataclass
class SalesSyncResult:
    """Counts and timing of one sync run"""
    tenant_id: int
    provider: Optional[str] = None
    sync_type: str = "bulk"  # bulk, incremental, range, order, catch_up, date_backfill
    status: str = "success"  # success, partial, failed
    range_start: Optional[date] = None
    range_end: Optional[date] = None
    rows_created: int = 0
    rows_updated: int = 0
    rows_retracted: int = 0
    splits_released: int = 0
    rows_classified: int = 0
    dates_aggregated: int = 0
    side_effects_pending: bool = False
    error_message: Optional[str] = None
    error_details: Optional[dict] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    retracted_by_rule: dict = field(default_factory=dict)

    @property
    def rows_written(self) -> int:
        return self.rows_created + self.rows_updated

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "sync_type": self.sync_type,
            "status": self.status,
            "rows_written": self.rows_written,
            "rows_created": self.rows_created,
            "rows_updated": self.rows_updated,
            "rows_retracted": self.rows_retracted,
            "retracted_by_rule": self.retracted_by_rule,
            "splits_released": self.splits_released,
            "rows_classified": self.rows_classified,
            "dates_aggregated": self.dates_aggregated,
            "side_effects_pending": self.side_effects_pending,
            "error": self.error_message,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def persist_sync_log(db: Session, result: SalesSyncResult) -> None:
    db.add(SalesSyncLog(
        tenant_id=result.tenant_id,
        provider=result.provider,
        sync_type=result.sync_type,
        status=result.status,
        range_start=result.range_start,
        range_end=result.range_end,
        rows_written=result.rows_written,
        rows_created=result.rows_created,
        rows_updated=result.rows_updated,
        rows_retracted=result.rows_retracted,
        splits_released=result.splits_released,
        rows_classified=result.rows_classified,
        dates_aggregated=result.dates_aggregated,
        error_message=result.error_message,
        error_details=result.error_details,
        started_at=result.started_at,
        completed_at=result.completed_at,
        duration_seconds=result.duration_seconds,
    ))


def update_sales_sync_status(db: Session, result: SalesSyncResult) -> SalesSyncStatus:
    """Upsert the freshness row for the run's tenant and provider."""
    provider = result.provider or ALL_PROVIDERS
    status = db.query(SalesSyncStatus).filter(
        SalesSyncStatus.tenant_id == result.tenant_id,
        SalesSyncStatus.provider == provider,
    ).first()

    if not status:
        status = SalesSyncStatus(tenant_id=result.tenant_id, provider=provider, error_count=0)
        db.add(status)

    status.last_sync_attempt = result.started_at or datetime.utcnow()
    status.sync_duration_seconds = result.duration_seconds
    status.rows_written = result.rows_written
    status.side_effects_pending = result.side_effects_pending

    if result.status in ("success", "partial"):
        status.last_successful_sync = result.completed_at or datetime.utcnow()
        status.sync_status = result.status
        status.error_count = 0
        status.first_error_at = None
        status.last_error = result.error_message if result.status == "partial" else None
        status.is_healthy = True
    else:
        status.sync_status = "failed"
        status.last_error = result.error_message
        status.error_count = (status.error_count or 0) + 1
        if not status.first_error_at:
            status.first_error_at = datetime.utcnow()
        status.is_healthy = status.error_count < 3

    status.updated_at = datetime.utcnow()
    return status


def record_sync_result(session_factory: Callable[[], Session], result: SalesSyncResult) -> None:
    db = session_factory()
    try:
        persist_sync_log(db, result)
        update_sales_sync_status(db, result)
        db.commit()
    except Exception as e:
        db.rollback()
        log.error(f"Failed to record sync status for tenant {result.tenant_id}: {e}")
    finally:
        db.close()


@contextmanager
def track_sales_sync(
    session_factory: Callable[[], Session],
    tenant_id: int,
    provider: Optional[str] = None,
    sync_type: str = "bulk",
    range_start: Optional[date] = None,
    range_end: Optional[date] = None,
):
    """
    Context manager to time a sync run and record its outcome.

    Usage:
        with track_sales_sync(SessionLocal, tenant_id, "toast") as result:
            result.rows_created = 12
    """
    result = SalesSyncResult(
        tenant_id=tenant_id,
        provider=provider,
        sync_type=sync_type,
        range_start=range_start,
        range_end=range_end,
    )
    result.started_at = datetime.utcnow()
    start_time = time.time()

    try:
        yield result
    except Exception as e:
        result.status = "failed"
        result.error_message = str(e)
        result.error_details = {"exception_type": type(e).__name__}
        log.error(f"Sales sync failed for tenant {tenant_id} ({sync_type}): {e}")
        raise
    finally:
        result.completed_at = datetime.utcnow()
        result.duration_seconds = time.time() - start_time
        if result.status != "failed" and result.side_effects_pending:
            result.status = "partial"
        record_sync_result(session_factory, result)
