"""
Health and status endpoints

/health is the liveness check used by the deploy: it only checks that the
ledger database answers. /status is for operators and summarizes sync
health across every tenant.
"""
from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.base import get_db
from app.models.sync_status import SalesSyncStatus
from app.scheduler import get_scheduled_jobs, scheduler
from app.utils.logger import log

settings = get_settings()

router = APIRouter()


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Database round trip; 503 when the ledger store is unreachable."""
    checked_at = datetime.utcnow().isoformat()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        log.error(f"Health check database error: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "unreachable", "timestamp": checked_at},
        )

    return {
        "status": "healthy",
        "database": "ok",
        "version": settings.app_version,
        "timestamp": checked_at,
    }


@router.get("/status")
def get_status(db: Session = Depends(get_db)):
    by_status = dict(
        db.query(SalesSyncStatus.sync_status, func.count(SalesSyncStatus.id))
        .group_by(SalesSyncStatus.sync_status)
        .all()
    )
    pending = db.query(func.count(SalesSyncStatus.id)).filter(
        SalesSyncStatus.side_effects_pending == True  # noqa: E712
    ).scalar()

    return {
        "app_name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "scheduler": {
            "enabled": settings.enable_scheduler,
            "running": scheduler.running,
            "jobs": get_scheduled_jobs(),
        },
        "sync": {
            "by_status": {status or "never": count for status, count in by_status.items()},
            "side_effects_pending": pending or 0,
        },
        "timestamp": datetime.utcnow().isoformat(),
    }
