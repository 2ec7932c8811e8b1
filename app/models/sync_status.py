"""
Sales sync tracking models

sales_sync_log keeps one row per sync run; sales_sync_status keeps one row
per tenant and provider for freshness and consecutive-error tracking.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Boolean, Text, Date, UniqueConstraint
from datetime import datetime

from app.models.base import Base


class SalesSyncLog(Base):
    """History of sync runs"""
    __tablename__ = "sales_sync_log"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    provider = Column(String, nullable=True)  # NULL when the run covered every provider
    sync_type = Column(String, nullable=False)  # bulk, incremental, range, order, catch_up, date_backfill
    status = Column(String, nullable=False, index=True)  # success, partial, failed

    range_start = Column(Date, nullable=True)
    range_end = Column(Date, nullable=True)

    rows_written = Column(Integer, default=0)
    rows_created = Column(Integer, default=0)
    rows_updated = Column(Integer, default=0)
    rows_retracted = Column(Integer, default=0)
    splits_released = Column(Integer, default=0)
    rows_classified = Column(Integer, default=0)
    dates_aggregated = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    started_at = Column(DateTime, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)


class SalesSyncStatus(Base):
    """Latest sync health per tenant and provider"""
    __tablename__ = "sales_sync_status"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider', name='uq_sales_sync_status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    provider = Column(String, nullable=False)  # "all" for runs that covered every provider

    last_sync_attempt = Column(DateTime, index=True)
    last_successful_sync = Column(DateTime, nullable=True)
    sync_status = Column(String, index=True)  # success, partial, failed
    side_effects_pending = Column(Boolean, default=False)

    rows_written = Column(Integer, default=0)
    sync_duration_seconds = Column(Float, nullable=True)

    last_error = Column(Text, nullable=True)
    error_count = Column(Integer, default=0)  # Consecutive errors
    first_error_at = Column(DateTime, nullable=True)

    is_healthy = Column(Boolean, default=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
