"""
Business-date correction pass

Rows written before the provider's business-day field was honoured carry
the UTC calendar day of the close timestamp. This pass re-derives each
order's business date from its stored raw payload, moves any ledger rows
(split children included) onto the corrected day and re-aggregates both
the old and the new days. Matching is by provider ids, so it can be
re-run safely; a second run finds nothing to change.
"""
from dataclasses import dataclass
from typing import Optional, Set

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.connectors import CONNECTORS
from app.models.pos_extract import ProviderOrder
from app.models.sales_ledger import CanonicalSaleRow
from app.models.tenant import Tenant
from app.services.aggregation_service import AggregateKey, recompute_dates
from app.services.business_date import resolve_business_date
from app.utils.logger import log


@dataclass
class DateBackfillResult:
    orders_scanned: int = 0
    orders_corrected: int = 0
    rows_moved: int = 0
    dates_reaggregated: int = 0

    def to_dict(self) -> dict:
        return {
            "orders_scanned": self.orders_scanned,
            "orders_corrected": self.orders_corrected,
            "rows_moved": self.rows_moved,
            "dates_reaggregated": self.dates_reaggregated,
        }


def _payload_business_date(order: ProviderOrder):
    connector = CONNECTORS.get(order.provider)
    if connector is None or not order.raw_payload:
        return order.business_date
    return connector.business_date_from_payload(order.raw_payload) or order.business_date


def rederive_business_dates(
    db: Session,
    tenant: Tenant,
    provider: Optional[str] = None,
    dry_run: bool = False,
) -> DateBackfillResult:
    """Correct service dates and ledger sale dates for one tenant. Does not commit."""
    result = DateBackfillResult()
    touched: Set[AggregateKey] = set()

    query = db.query(ProviderOrder).filter(ProviderOrder.tenant_id == tenant.id)
    if provider:
        query = query.filter(ProviderOrder.provider == provider)

    for order in query.order_by(ProviderOrder.id).all():
        result.orders_scanned += 1

        business_date = _payload_business_date(order)
        expected = resolve_business_date(business_date, order.closed_at, order.opened_at, tenant.timezone)
        if expected is None:
            continue

        stale = db.query(CanonicalSaleRow.id, CanonicalSaleRow.sale_date).filter(
            CanonicalSaleRow.tenant_id == tenant.id,
            CanonicalSaleRow.provider == order.provider,
            CanonicalSaleRow.external_order_id == order.external_order_id,
            CanonicalSaleRow.sale_date != expected,
        ).all()

        order_changed = business_date != order.business_date or expected != order.service_date
        if not order_changed and not stale:
            continue

        result.orders_corrected += 1
        if dry_run:
            result.rows_moved += len(stale)
            continue

        order.business_date = business_date
        order.service_date = expected

        if stale:
            db.execute(
                update(CanonicalSaleRow)
                .where(CanonicalSaleRow.id.in_([row.id for row in stale]))
                .values(sale_date=expected)
                .execution_options(synchronize_session=False)
            )
            result.rows_moved += len(stale)
            touched.update((order.provider, row.sale_date) for row in stale)
            touched.add((order.provider, expected))

    if not dry_run:
        db.flush()
        result.dates_reaggregated = recompute_dates(db, tenant.id, touched)

    log.info(
        f"Business date backfill for tenant {tenant.id}: {result.orders_corrected}/{result.orders_scanned} "
        f"orders corrected, {result.rows_moved} ledger rows moved"
        + (" (dry run)" if dry_run else "")
    )
    return result
