"""
Shared fixtures: a throwaway SQLite database per test, a tenant with one
member, and a small builder for provider extract data.
"""
import os

# Must be set before any app module reads settings
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SERVICE_TOKEN", "test-service-token")
os.environ.setdefault("DEFAULT_TIMEZONE", "America/Chicago")

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.connectors.base import NormalizedItem, NormalizedOrder, NormalizedPayment
from app.models.base import init_db
from app.models.sales_ledger import CanonicalSaleRow, DailySales
from app.models.tenant import Tenant, TenantMember
from app.services import extract_store
from app.services.sales_sync_service import SalesSyncService

OWNER = "owner-1"
BUSINESS_DAY = date(2026, 2, 14)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def create_tenant(session_factory, name="Test Bistro", timezone="America/Chicago", members=(OWNER,)) -> int:
    session = session_factory()
    try:
        tenant = Tenant(name=name, timezone=timezone)
        session.add(tenant)
        session.flush()
        for user_id in members:
            session.add(TenantMember(tenant_id=tenant.id, user_id=user_id, role="owner"))
        session.commit()
        return tenant.id
    finally:
        session.close()


@pytest.fixture
def tenant_id(session_factory):
    return create_tenant(session_factory)


@pytest.fixture
def service(session_factory):
    return SalesSyncService(session_factory=session_factory, timeout_seconds=60, classification_limit=100000)


class ExtractBuilder:
    """Builds normalized orders, loads them into the extract and reads the ledger back."""

    def __init__(self, session_factory, tenant_id: int, provider: str = "toast", tz_name: str = "America/Chicago"):
        self.session_factory = session_factory
        self.tenant_id = tenant_id
        self.provider = provider
        self.tz_name = tz_name

    @staticmethod
    def item(item_id, name="Burger", total="10.00", discount=None, voided=False, category=None, quantity="1"):
        return NormalizedItem(
            external_item_id=item_id,
            item_name=name,
            quantity=Decimal(quantity),
            line_total=Decimal(total) if total is not None else None,
            discount_amount=Decimal(discount) if discount is not None else None,
            is_voided=voided,
            pos_category=category,
        )

    @staticmethod
    def payment(payment_id, tip=None, status="CAPTURED", refund_status=None, refund_amount=None,
                payment_type="CREDIT", amount="10.00"):
        return NormalizedPayment(
            external_payment_id=payment_id,
            payment_type=payment_type,
            status=status,
            amount=Decimal(amount),
            tip_amount=Decimal(tip) if tip is not None else None,
            refund_status=refund_status,
            refund_amount=Decimal(refund_amount) if refund_amount is not None else None,
        )

    @staticmethod
    def order(order_id, items=(), payments=(), tax=None, service_charge=None, state="completed",
              business_date=BUSINESS_DAY, closed_at=datetime(2026, 2, 15, 2, 30)):
        return NormalizedOrder(
            external_order_id=order_id,
            state=state,
            business_date=business_date,
            closed_at=closed_at,
            tax_amount=Decimal(tax) if tax is not None else None,
            service_charge_amount=Decimal(service_charge) if service_charge is not None else None,
            items=list(items),
            payments=list(payments),
        )

    def load(self, *orders):
        session = self.session_factory()
        try:
            result = extract_store.ingest_orders(session, self.tenant_id, self.provider, list(orders), self.tz_name)
            session.commit()
            return result
        finally:
            session.close()

    def ledger(self):
        """{external_item_id: total_price} for canonical (unsplit-domain) rows."""
        session = self.session_factory()
        try:
            rows = session.query(CanonicalSaleRow).filter(
                CanonicalSaleRow.tenant_id == self.tenant_id,
                CanonicalSaleRow.parent_sale_id.is_(None),
            ).all()
            return {row.external_item_id: row.total_price for row in rows}
        finally:
            session.close()

    def rows(self, **filters):
        session = self.session_factory()
        try:
            query = session.query(CanonicalSaleRow).filter(CanonicalSaleRow.tenant_id == self.tenant_id)
            for name, value in filters.items():
                query = query.filter(getattr(CanonicalSaleRow, name) == value)
            rows = query.order_by(CanonicalSaleRow.id).all()
            session.expunge_all()
            return rows
        finally:
            session.close()

    def daily(self, day=BUSINESS_DAY):
        session = self.session_factory()
        try:
            row = session.query(DailySales).filter(
                DailySales.tenant_id == self.tenant_id,
                DailySales.provider == self.provider,
                DailySales.date == day,
            ).first()
            if row is not None:
                session.expunge(row)
            return row
        finally:
            session.close()


@pytest.fixture
def extract(session_factory, tenant_id):
    return ExtractBuilder(session_factory, tenant_id)
