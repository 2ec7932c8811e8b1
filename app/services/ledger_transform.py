"""
Provider extract -> canonical ledger transform

Pure mapping, no database access. Each order snapshot produces a
deterministic set of SaleDraft rows:

    revenue          item id                 line total != 0
    discount         item id + _discount     discount > 0, item not voided
    void offset      item id + _void         item voided, line total != 0
    tax              order id + _tax         tax != 0, order not voided
    service charge   order id + _service_charge
    tip              payment id + _tip       tip != 0, payment not DENIED/VOIDED
    refund           payment id + _refund    refund status PARTIAL/FULL, amount != 0

The eligibility predicates below are mirrored as SQL ineligibility
predicates in reconciliation.py; change both together.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from app.services.business_date import resolve_business_date, resolve_sale_time

# Synthetic key suffixes
DISCOUNT_SUFFIX = "_discount"
VOID_SUFFIX = "_void"
TAX_SUFFIX = "_tax"
SERVICE_CHARGE_SUFFIX = "_service_charge"
TIP_SUFFIX = "_tip"
REFUND_SUFFIX = "_refund"

# Row kinds: (item_type, adjustment_type)
REVENUE = ("sale", None)
DISCOUNT = ("discount", "discount")
VOID = ("discount", "void")
TAX = ("tax", "tax")
SERVICE_CHARGE = ("service_charge", "service_charge")
TIP = ("tip", "tip")
REFUND = ("refund", "refund")

VOIDED_ORDER_STATE = "voided"
INELIGIBLE_TIP_STATUSES = ("DENIED", "VOIDED")
REFUND_STATUSES = ("PARTIAL", "FULL")

MONEY_PLACES = Decimal("0.000001")

LedgerKey = Tuple[int, str, str, str]


@dataclass
class SaleDraft:
    """A canonical ledger row before it is written"""
    tenant_id: int
    provider: str
    external_order_id: str
    external_item_id: str
    item_name: Optional[str]
    quantity: Optional[Decimal]
    unit_price: Optional[Decimal]
    total_price: Decimal
    sale_date: date
    sale_time: Optional[time]
    item_type: str
    adjustment_type: Optional[str]
    pos_category: Optional[str] = None
    raw_data: Optional[Dict[str, Any]] = field(default=None, compare=False)

    @property
    def key(self) -> LedgerKey:
        return (self.tenant_id, self.provider, self.external_order_id, self.external_item_id)

    def to_row(self, synced_at: datetime) -> Dict[str, Any]:
        """Column dict for a multi-row insert. Classification columns start cleared."""
        return {
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "external_order_id": self.external_order_id,
            "external_item_id": self.external_item_id,
            "item_name": self.item_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "sale_date": self.sale_date,
            "sale_time": self.sale_time,
            "pos_category": self.pos_category,
            "item_type": self.item_type,
            "adjustment_type": self.adjustment_type,
            "is_categorized": False,
            "category_code": None,
            "is_split": False,
            "parent_sale_id": None,
            "raw_data": self.raw_data,
            "synced_at": synced_at,
            "updated_at": synced_at,
        }


def to_money(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value)).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def _nonzero(value: Any) -> bool:
    return value is not None and Decimal(str(value)) != 0


def _unit_price(total: Decimal, quantity: Optional[Decimal]) -> Optional[Decimal]:
    if quantity is None or quantity == 0:
        return None
    return (total / quantity).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


# Eligibility

def item_effectively_voided(order, item) -> bool:
    """An item is voided by its own flag or by a voided order."""
    return bool(item.is_voided) or order.state == VOIDED_ORDER_STATE


def revenue_eligible(item) -> bool:
    return _nonzero(item.line_total)


def discount_eligible(order, item) -> bool:
    return (
        item.discount_amount is not None
        and Decimal(str(item.discount_amount)) > 0
        and not item_effectively_voided(order, item)
    )


def void_eligible(order, item) -> bool:
    return item_effectively_voided(order, item) and _nonzero(item.line_total)


def tax_eligible(order) -> bool:
    return _nonzero(order.tax_amount) and order.state != VOIDED_ORDER_STATE


def service_charge_eligible(order) -> bool:
    return _nonzero(order.service_charge_amount) and order.state != VOIDED_ORDER_STATE


def tip_eligible(payment) -> bool:
    return _nonzero(payment.tip_amount) and (payment.status or "").upper() not in INELIGIBLE_TIP_STATUSES


def refund_eligible(payment) -> bool:
    return (payment.refund_status or "").upper() in REFUND_STATUSES and _nonzero(payment.refund_amount)


# Builders

class _OrderContext:
    """Fields shared by every draft of one order"""

    def __init__(self, order, tz_name: Optional[str]):
        self.order = order
        self.sale_date = resolve_business_date(order.business_date, order.closed_at, order.opened_at, tz_name)
        self.sale_time = resolve_sale_time(order.closed_at, order.opened_at, tz_name)

    def draft(
        self,
        external_item_id: str,
        kind: Tuple[str, Optional[str]],
        name: Optional[str],
        total: Decimal,
        quantity: Optional[Decimal] = Decimal("1"),
        pos_category: Optional[str] = None,
        raw_data: Optional[Dict[str, Any]] = None,
    ) -> SaleDraft:
        item_type, adjustment_type = kind
        total = to_money(total)
        quantity = Decimal(str(quantity)) if quantity is not None else None
        return SaleDraft(
            tenant_id=self.order.tenant_id,
            provider=self.order.provider,
            external_order_id=self.order.external_order_id,
            external_item_id=external_item_id,
            item_name=name,
            quantity=quantity,
            unit_price=_unit_price(total, quantity),
            total_price=total,
            sale_date=self.sale_date,
            sale_time=self.sale_time,
            item_type=item_type,
            adjustment_type=adjustment_type,
            pos_category=pos_category,
            raw_data=raw_data,
        )


def item_drafts(ctx: _OrderContext, item) -> List[SaleDraft]:
    order = ctx.order
    name = item.item_name or "Unknown Item"
    drafts = []

    if revenue_eligible(item):
        drafts.append(ctx.draft(
            item.external_item_id, REVENUE, name, item.line_total,
            quantity=item.quantity, pos_category=item.pos_category, raw_data=item.raw_payload,
        ))

    if discount_eligible(order, item):
        drafts.append(ctx.draft(
            item.external_item_id + DISCOUNT_SUFFIX, DISCOUNT, f"Discount - {name}",
            -Decimal(str(item.discount_amount)), pos_category=item.pos_category,
        ))

    if void_eligible(order, item):
        drafts.append(ctx.draft(
            item.external_item_id + VOID_SUFFIX, VOID, f"Void - {name}",
            -Decimal(str(item.line_total)), quantity=item.quantity, pos_category=item.pos_category,
        ))

    return drafts


def order_level_drafts(ctx: _OrderContext) -> List[SaleDraft]:
    order = ctx.order
    drafts = []

    if tax_eligible(order):
        drafts.append(ctx.draft(order.external_order_id + TAX_SUFFIX, TAX, "Sales Tax", order.tax_amount))

    if service_charge_eligible(order):
        drafts.append(ctx.draft(
            order.external_order_id + SERVICE_CHARGE_SUFFIX, SERVICE_CHARGE, "Service Charge",
            order.service_charge_amount,
        ))

    return drafts


def payment_drafts(ctx: _OrderContext, payment) -> List[SaleDraft]:
    label = payment.payment_type or "Other"
    drafts = []

    if tip_eligible(payment):
        drafts.append(ctx.draft(payment.external_payment_id + TIP_SUFFIX, TIP, f"Tip - {label}", payment.tip_amount))

    if refund_eligible(payment):
        drafts.append(ctx.draft(
            payment.external_payment_id + REFUND_SUFFIX, REFUND, f"Refund - {label}",
            -abs(Decimal(str(payment.refund_amount))),
            raw_data={"refund_status": payment.refund_status},
        ))

    return drafts


def build_order_drafts(order, tz_name: Optional[str] = None) -> List[SaleDraft]:
    """
    Map one order snapshot (with items and payments loaded) to its drafts.

    Returns an empty list when no sale date can be resolved; such orders
    have neither a business date nor any timestamp yet.
    """
    ctx = _OrderContext(order, tz_name)
    if ctx.sale_date is None:
        return []

    drafts = []
    for item in order.items:
        drafts.extend(item_drafts(ctx, item))
    drafts.extend(order_level_drafts(ctx))
    for payment in order.payments:
        drafts.extend(payment_drafts(ctx, payment))
    return drafts


def dedupe_drafts(drafts: List[SaleDraft]) -> Dict[LedgerKey, SaleDraft]:
    """Key drafts by ledger key; a later draft for the same key wins."""
    return {draft.key: draft for draft in drafts}
