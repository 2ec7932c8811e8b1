"""
Canonical Sales Ledger Models

unified_sales holds one row per monetized sale event (revenue lines and
derived adjustments) for every provider. daily_sales is a pure rollup of
unified_sales and is only ever written by the aggregation pass.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Time, JSON, Boolean, Numeric, ForeignKey, UniqueConstraint, Index, text
)
from datetime import datetime

from app.models.base import Base


class CanonicalSaleRow(Base):
    """
    One canonical ledger row

    (tenant_id, provider, external_order_id, external_item_id) identifies the
    logical event. Uniqueness is enforced only where parent_sale_id IS NULL;
    split children reuse their parent's key and sit outside the conflict set.
    """
    __tablename__ = "unified_sales"
    __table_args__ = (
        Index(
            'uq_unified_sales_canonical_key',
            'tenant_id', 'provider', 'external_order_id', 'external_item_id',
            unique=True,
            postgresql_where=text('parent_sale_id IS NULL'),
            sqlite_where=text('parent_sale_id IS NULL'),
        ),
        Index('ix_unified_sales_tenant_date', 'tenant_id', 'sale_date'),
        Index('ix_unified_sales_uncategorized', 'tenant_id', 'is_categorized', 'is_split'),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Idempotency key
    tenant_id = Column(Integer, nullable=False)
    provider = Column(String, nullable=False)
    external_order_id = Column(String, nullable=False)
    external_item_id = Column(String, nullable=False)

    item_name = Column(String, nullable=True)
    quantity = Column(Numeric(12, 4), nullable=True)
    unit_price = Column(Numeric(18, 6), nullable=True)
    total_price = Column(Numeric(18, 6), nullable=False)  # signed; adjustments that reduce revenue are negative

    sale_date = Column(Date, nullable=False)
    sale_time = Column(Time, nullable=True)  # local time of day
    pos_category = Column(String, nullable=True)

    item_type = Column(String, nullable=False, default="sale")  # sale, discount, tax, tip, service_charge, refund
    adjustment_type = Column(String, nullable=True)  # NULL for revenue, else discount, void, tax, tip, service_charge, refund

    # Classification state
    is_categorized = Column(Boolean, default=False, nullable=False)
    category_code = Column(String, nullable=True)
    is_split = Column(Boolean, default=False, nullable=False)
    parent_sale_id = Column(Integer, ForeignKey("unified_sales.id"), nullable=True, index=True)

    raw_data = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def key(self):
        return (self.tenant_id, self.provider, self.external_order_id, self.external_item_id)


class DailySales(Base):
    """
    Daily rollup per tenant, date and provider

    gross_revenue counts only rows with no adjustment_type; each adjustment
    kind gets its own column. net_revenue = gross + discounts + voids + refunds.
    """
    __tablename__ = "daily_sales"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'date', 'provider', name='uq_daily_sales_tenant_date_provider'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    provider = Column(String, nullable=False)

    gross_revenue = Column(Numeric(14, 2), default=0)
    discounts = Column(Numeric(14, 2), default=0)
    voids = Column(Numeric(14, 2), default=0)
    refunds = Column(Numeric(14, 2), default=0)
    net_revenue = Column(Numeric(14, 2), default=0)
    tax_collected = Column(Numeric(14, 2), default=0)
    tips = Column(Numeric(14, 2), default=0)
    service_charges = Column(Numeric(14, 2), default=0)
    transaction_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
