"""
Daily sales aggregation

Every recompute is a full resummation of unified_sales for one
(tenant, date, provider); nothing is patched incrementally. Sums are
rounded to cents once, after summing.
"""
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.sales_ledger import CanonicalSaleRow, DailySales
from app.utils.logger import log

CENTS = Decimal("0.01")
MONEY_PLACES = Decimal("0.000001")
ZERO = Decimal("0")

# adjustment_type -> DailySales column
ADJUSTMENT_COLUMNS = {
    "discount": "discounts",
    "void": "voids",
    "refund": "refunds",
    "tax": "tax_collected",
    "tip": "tips",
    "service_charge": "service_charges",
}

# Adjustments that reduce revenue; tax, tips and service charges pass through
NET_REVENUE_ADJUSTMENTS = ("discount", "void", "refund")

AggregateKey = Tuple[str, date]  # (provider, date)


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def summarize_day(db: Session, tenant_id: int, day: date, provider: str) -> Optional[Dict]:
    """
    Sum one day's ledger rows into aggregate column values.

    Split parents are skipped because their children carry the amounts.
    Returns None when the day has no ledger rows at all.
    """
    db.flush()

    sums = db.query(
        CanonicalSaleRow.adjustment_type,
        func.sum(CanonicalSaleRow.total_price),
        func.count(CanonicalSaleRow.id),
    ).filter(
        CanonicalSaleRow.tenant_id == tenant_id,
        CanonicalSaleRow.provider == provider,
        CanonicalSaleRow.sale_date == day,
        CanonicalSaleRow.is_split == False,  # noqa: E712
    ).group_by(CanonicalSaleRow.adjustment_type).all()

    if not sums:
        return None

    # SQLite sums REAL values; snap back to the column scale before rounding to cents
    raw = {adjustment: Decimal(str(total or 0)).quantize(MONEY_PLACES) for adjustment, total, _ in sums}

    transaction_count = db.query(
        func.count(func.distinct(CanonicalSaleRow.external_order_id))
    ).filter(
        CanonicalSaleRow.tenant_id == tenant_id,
        CanonicalSaleRow.provider == provider,
        CanonicalSaleRow.sale_date == day,
        CanonicalSaleRow.is_split == False,  # noqa: E712
        CanonicalSaleRow.adjustment_type.is_(None),
    ).scalar() or 0

    gross = raw.get(None, ZERO)
    values = {"gross_revenue": _round(gross), "transaction_count": transaction_count}
    for adjustment, column in ADJUSTMENT_COLUMNS.items():
        values[column] = _round(raw.get(adjustment, ZERO))

    net = gross + sum((raw.get(a, ZERO) for a in NET_REVENUE_ADJUSTMENTS), ZERO)
    values["net_revenue"] = _round(net)
    return values


def recompute_daily_sales(db: Session, tenant_id: int, day: date, provider: str) -> Optional[DailySales]:
    """
    Rebuild the daily_sales row for one tenant, date and provider.

    Deletes the aggregate when the date no longer has ledger rows.
    """
    values = summarize_day(db, tenant_id, day, provider)

    existing = db.query(DailySales).filter(
        DailySales.tenant_id == tenant_id,
        DailySales.provider == provider,
        DailySales.date == day,
    ).first()

    if values is None:
        if existing:
            db.delete(existing)
            db.flush()
        return None

    if not existing:
        existing = DailySales(tenant_id=tenant_id, provider=provider, date=day)
        db.add(existing)

    for column, value in values.items():
        setattr(existing, column, value)
    existing.updated_at = datetime.utcnow()
    db.flush()
    return existing


def discover_aggregate_dates(
    db: Session,
    tenant_id: int,
    provider: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Set[AggregateKey]:
    """
    Every (provider, date) that has ledger rows or an existing aggregate.

    Including existing aggregates lets a recompute remove rollups whose
    ledger rows were all retracted.
    """
    found: Set[AggregateKey] = set()

    ledger = db.query(CanonicalSaleRow.provider, CanonicalSaleRow.sale_date).filter(
        CanonicalSaleRow.tenant_id == tenant_id
    )
    aggregates = db.query(DailySales.provider, DailySales.date).filter(DailySales.tenant_id == tenant_id)

    if provider:
        ledger = ledger.filter(CanonicalSaleRow.provider == provider)
        aggregates = aggregates.filter(DailySales.provider == provider)
    if start_date:
        ledger = ledger.filter(CanonicalSaleRow.sale_date >= start_date)
        aggregates = aggregates.filter(DailySales.date >= start_date)
    if end_date:
        ledger = ledger.filter(CanonicalSaleRow.sale_date <= end_date)
        aggregates = aggregates.filter(DailySales.date <= end_date)

    for row_provider, day in ledger.distinct().all():
        found.add((row_provider, day))
    for row_provider, day in aggregates.distinct().all():
        found.add((row_provider, day))
    return found


def recompute_dates(db: Session, tenant_id: int, keys: Set[AggregateKey]) -> int:
    """Recompute each distinct (provider, date) once. Returns the number recomputed."""
    for provider, day in sorted(keys, key=lambda k: (k[0], k[1])):
        recompute_daily_sales(db, tenant_id, day, provider)
    if keys:
        log.debug(f"Recomputed {len(keys)} daily aggregates for tenant {tenant_id}")
    return len(keys)
