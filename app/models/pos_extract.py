"""
Provider Extract Models

Raw orders, line items and payments pulled from POS provider APIs.
Rows are deduplicated by provider-native identifiers, updated in place on
every re-sync and never deleted. Money is stored in major units.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, JSON, Boolean, Numeric, ForeignKeyConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from datetime import datetime

from app.models.base import Base


class ProviderOrder(Base):
    """
    One order as reported by a POS provider

    business_date is the provider's own day stamp (Toast businessDate);
    service_date is the resolved sale day used for range filtering.
    """
    __tablename__ = "pos_orders"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider', 'external_order_id', name='uq_pos_order'),
        Index('ix_pos_orders_tenant_service_date', 'tenant_id', 'provider', 'service_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    provider = Column(String, nullable=False)  # toast, square
    external_order_id = Column(String, nullable=False)

    state = Column(String, default="completed", index=True)  # completed, open, voided

    # Dates
    business_date = Column(Date, nullable=True)
    service_date = Column(Date, nullable=True)
    opened_at = Column(DateTime, nullable=True)  # naive UTC
    closed_at = Column(DateTime, nullable=True)  # naive UTC

    # Totals
    gross_amount = Column(Numeric(18, 6), nullable=True)
    tax_amount = Column(Numeric(18, 6), nullable=True)
    tip_amount = Column(Numeric(18, 6), nullable=True)
    discount_amount = Column(Numeric(18, 6), nullable=True)
    service_charge_amount = Column(Numeric(18, 6), nullable=True)

    raw_payload = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)

    items = relationship(
        "ProviderLineItem",
        back_populates="order",
        order_by="ProviderLineItem.id",
        cascade="all, delete-orphan",
    )
    payments = relationship(
        "ProviderPayment",
        back_populates="order",
        order_by="ProviderPayment.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_voided(self) -> bool:
        return self.state == "voided"


class ProviderLineItem(Base):
    """
    One item within a provider order

    line_total is already quantity-multiplied. external_item_id is only
    unique together with its order.
    """
    __tablename__ = "pos_order_items"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider', 'external_order_id', 'external_item_id', name='uq_pos_order_item'),
        ForeignKeyConstraint(
            ['tenant_id', 'provider', 'external_order_id'],
            ['pos_orders.tenant_id', 'pos_orders.provider', 'pos_orders.external_order_id'],
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False)
    provider = Column(String, nullable=False)
    external_order_id = Column(String, nullable=False)
    external_item_id = Column(String, nullable=False)

    item_name = Column(String, nullable=True)
    quantity = Column(Numeric(12, 4), default=1)
    line_total = Column(Numeric(18, 6), nullable=True)
    discount_amount = Column(Numeric(18, 6), nullable=True)
    is_voided = Column(Boolean, default=False)
    pos_category = Column(String, nullable=True)

    raw_payload = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("ProviderOrder", back_populates="items")


class ProviderPayment(Base):
    """One payment applied to a provider order, with its tip and refund state"""
    __tablename__ = "pos_payments"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider', 'external_order_id', 'external_payment_id', name='uq_pos_payment'),
        ForeignKeyConstraint(
            ['tenant_id', 'provider', 'external_order_id'],
            ['pos_orders.tenant_id', 'pos_orders.provider', 'pos_orders.external_order_id'],
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False)
    provider = Column(String, nullable=False)
    external_order_id = Column(String, nullable=False)
    external_payment_id = Column(String, nullable=False)

    payment_type = Column(String, nullable=True)  # CREDIT, CASH, GIFTCARD, ...
    status = Column(String, nullable=True)  # CAPTURED, AUTHORIZED, DENIED, VOIDED
    amount = Column(Numeric(18, 6), nullable=True)
    tip_amount = Column(Numeric(18, 6), nullable=True)
    refund_status = Column(String, nullable=True)  # NONE, PARTIAL, FULL
    refund_amount = Column(Numeric(18, 6), nullable=True)

    raw_payload = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("ProviderOrder", back_populates="payments")
