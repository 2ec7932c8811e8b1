"""
Provider extract store writer

Upserts normalized provider orders, line items and payments by their
provider-native identifiers. Extract rows are updated in place and never
deleted; the ledger reconciliation reads whatever the latest snapshot is.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session, selectinload

from app.connectors.base import NormalizedOrder
from app.models.pos_extract import ProviderLineItem, ProviderOrder, ProviderPayment
from app.services.business_date import resolve_business_date
from app.utils.logger import log

ORDER_FIELDS = (
    "state",
    "business_date",
    "opened_at",
    "closed_at",
    "gross_amount",
    "tax_amount",
    "tip_amount",
    "discount_amount",
    "service_charge_amount",
    "raw_payload",
)

ITEM_FIELDS = ("item_name", "quantity", "line_total", "discount_amount", "is_voided", "pos_category", "raw_payload")

PAYMENT_FIELDS = (
    "payment_type",
    "status",
    "amount",
    "tip_amount",
    "refund_status",
    "refund_amount",
    "raw_payload",
)


@dataclass
class IngestResult:
    orders_created: int = 0
    orders_updated: int = 0
    items_saved: int = 0
    payments_saved: int = 0
    orders_failed: int = 0
    order_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "orders_created": self.orders_created,
            "orders_updated": self.orders_updated,
            "items_saved": self.items_saved,
            "payments_saved": self.payments_saved,
            "orders_failed": self.orders_failed,
        }


def _apply(target, source, fields) -> None:
    for name in fields:
        setattr(target, name, getattr(source, name))


def ingest_orders(
    db: Session,
    tenant_id: int,
    provider: str,
    orders: List[NormalizedOrder],
    tz_name: Optional[str] = None,
) -> IngestResult:
    """
    Upsert a batch of normalized orders for one tenant and provider.

    service_date is resolved here so range syncs can filter on it. Items
    and payments missing from a newer snapshot are left in place.
    """
    result = IngestResult()
    if not orders:
        return result

    now = datetime.utcnow()
    incoming = {o.external_order_id: o for o in orders}

    existing = {
        order.external_order_id: order
        for order in db.query(ProviderOrder).options(
            selectinload(ProviderOrder.items),
            selectinload(ProviderOrder.payments),
        ).filter(
            ProviderOrder.tenant_id == tenant_id,
            ProviderOrder.provider == provider,
            ProviderOrder.external_order_id.in_(list(incoming)),
        ).all()
    }

    for order_id, normalized in incoming.items():
        order = existing.get(order_id)
        if order is None:
            order = ProviderOrder(tenant_id=tenant_id, provider=provider, external_order_id=order_id)
            db.add(order)
            result.orders_created += 1
        else:
            result.orders_updated += 1

        _apply(order, normalized, ORDER_FIELDS)
        order.service_date = resolve_business_date(
            normalized.business_date, normalized.closed_at, normalized.opened_at, tz_name
        )
        order.synced_at = now

        items_by_id = {item.external_item_id: item for item in order.items}
        for normalized_item in normalized.items:
            item = items_by_id.get(normalized_item.external_item_id)
            if item is None:
                item = ProviderLineItem(
                    tenant_id=tenant_id,
                    provider=provider,
                    external_order_id=order_id,
                    external_item_id=normalized_item.external_item_id,
                )
                order.items.append(item)
                items_by_id[item.external_item_id] = item
            _apply(item, normalized_item, ITEM_FIELDS)
            item.synced_at = now
            result.items_saved += 1

        payments_by_id = {p.external_payment_id: p for p in order.payments}
        for normalized_payment in normalized.payments:
            payment = payments_by_id.get(normalized_payment.external_payment_id)
            if payment is None:
                payment = ProviderPayment(
                    tenant_id=tenant_id,
                    provider=provider,
                    external_order_id=order_id,
                    external_payment_id=normalized_payment.external_payment_id,
                )
                order.payments.append(payment)
                payments_by_id[payment.external_payment_id] = payment
            _apply(payment, normalized_payment, PAYMENT_FIELDS)
            payment.synced_at = now
            result.payments_saved += 1

        result.order_ids.append(order_id)

    db.flush()
    log.info(
        f"Ingested {provider} orders for tenant {tenant_id}: "
        f"{result.orders_created} new, {result.orders_updated} updated, "
        f"{result.items_saved} items, {result.payments_saved} payments"
    )
    return result
