"""
Retraction pass

The upsert only ever writes rows whose source is currently eligible, so it
cannot notice a row that used to be eligible and no longer is. This module
finds such rows, one ineligibility direction at a time, and deletes them
(with any split children) before the upsert runs.

Each rule's predicate is the SQL negation of the matching *_eligible
function in ledger_transform.py.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session, aliased

from app.models.pos_extract import ProviderLineItem, ProviderOrder, ProviderPayment
from app.models.sales_ledger import CanonicalSaleRow
from app.services.aggregation_service import AggregateKey
from app.services.ledger_transform import (
    DISCOUNT_SUFFIX,
    INELIGIBLE_TIP_STATUSES,
    REFUND_STATUSES,
    REFUND_SUFFIX,
    SERVICE_CHARGE_SUFFIX,
    TAX_SUFFIX,
    TIP_SUFFIX,
    VOID_SUFFIX,
    VOIDED_ORDER_STATE,
    to_money,
)
from app.services.side_effects import SideEffectDispatcher
from app.services.sync_scope import SyncScope
from app.utils.logger import log

Sale = CanonicalSaleRow
Order = ProviderOrder
Item = ProviderLineItem
Payment = ProviderPayment

DELETE_CHUNK = 500


def _order_voided():
    return Order.state == VOIDED_ORDER_STATE


def _order_not_voided():
    return func.coalesce(Order.state, "") != VOIDED_ORDER_STATE


def _zero_or_null(column):
    return or_(column.is_(None), column == 0)


def _item_join(suffix: str = ""):
    item_id = Item.external_item_id + suffix if suffix else Item.external_item_id
    return and_(
        Item.tenant_id == Sale.tenant_id,
        Item.provider == Sale.provider,
        Item.external_order_id == Sale.external_order_id,
        Sale.external_item_id == item_id,
    )


def _order_join_from_item():
    return and_(
        Order.tenant_id == Item.tenant_id,
        Order.provider == Item.provider,
        Order.external_order_id == Item.external_order_id,
    )


def _order_join(suffix: str):
    return and_(
        Order.tenant_id == Sale.tenant_id,
        Order.provider == Sale.provider,
        Order.external_order_id == Sale.external_order_id,
        Sale.external_item_id == Order.external_order_id + suffix,
    )


def _payment_join(suffix: str):
    return and_(
        Payment.tenant_id == Sale.tenant_id,
        Payment.provider == Sale.provider,
        Payment.external_order_id == Sale.external_order_id,
        Sale.external_item_id == Payment.external_payment_id + suffix,
    )


def _payment_order_join():
    return and_(
        Order.tenant_id == Payment.tenant_id,
        Order.provider == Payment.provider,
        Order.external_order_id == Payment.external_order_id,
    )


# Each query selects (id, provider, sale_date) of stale canonical rows

def stale_revenue_rows():
    return (
        select(Sale.id, Sale.provider, Sale.sale_date)
        .join(Item, _item_join())
        .join(Order, _order_join_from_item())
        .where(Sale.adjustment_type.is_(None), _zero_or_null(Item.line_total))
    )


def stale_discount_rows():
    return (
        select(Sale.id, Sale.provider, Sale.sale_date)
        .join(Item, _item_join(DISCOUNT_SUFFIX))
        .join(Order, _order_join_from_item())
        .where(or_(
            Item.discount_amount.is_(None),
            Item.discount_amount <= 0,
            Item.is_voided == True,  # noqa: E712
            _order_voided(),
        ))
    )


def stale_void_rows():
    item_not_voided = or_(Item.is_voided.is_(None), Item.is_voided == False)  # noqa: E712
    return (
        select(Sale.id, Sale.provider, Sale.sale_date)
        .join(Item, _item_join(VOID_SUFFIX))
        .join(Order, _order_join_from_item())
        .where(or_(
            and_(item_not_voided, _order_not_voided()),
            _zero_or_null(Item.line_total),
        ))
    )


def stale_tax_rows():
    return (
        select(Sale.id, Sale.provider, Sale.sale_date)
        .join(Order, _order_join(TAX_SUFFIX))
        .where(or_(_zero_or_null(Order.tax_amount), _order_voided()))
    )


def stale_service_charge_rows():
    return (
        select(Sale.id, Sale.provider, Sale.sale_date)
        .join(Order, _order_join(SERVICE_CHARGE_SUFFIX))
        .where(or_(_zero_or_null(Order.service_charge_amount), _order_voided()))
    )


def stale_tip_rows():
    return (
        select(Sale.id, Sale.provider, Sale.sale_date)
        .join(Payment, _payment_join(TIP_SUFFIX))
        .join(Order, _payment_order_join())
        .where(or_(
            _zero_or_null(Payment.tip_amount),
            func.upper(func.coalesce(Payment.status, "")).in_(INELIGIBLE_TIP_STATUSES),
        ))
    )


def stale_refund_rows():
    return (
        select(Sale.id, Sale.provider, Sale.sale_date)
        .join(Payment, _payment_join(REFUND_SUFFIX))
        .join(Order, _payment_order_join())
        .where(or_(
            func.upper(func.coalesce(Payment.refund_status, "")).not_in(REFUND_STATUSES),
            _zero_or_null(Payment.refund_amount),
        ))
    )


RETRACTION_RULES: List[Tuple[str, Callable]] = [
    ("revenue", stale_revenue_rows),
    ("discount", stale_discount_rows),
    ("void", stale_void_rows),
    ("tax", stale_tax_rows),
    ("service_charge", stale_service_charge_rows),
    ("tip", stale_tip_rows),
    ("refund", stale_refund_rows),
]


@dataclass
class RetractionResult:
    retracted_by_rule: Dict[str, int] = field(default_factory=dict)
    children_deleted: int = 0
    touched_dates: Set[AggregateKey] = field(default_factory=set)

    @property
    def rows_retracted(self) -> int:
        return sum(self.retracted_by_rule.values())


def _delete_rows(db: Session, ids: List[int]) -> int:
    """Delete canonical rows and their split children. Returns children deleted."""
    children = 0
    for start in range(0, len(ids), DELETE_CHUNK):
        chunk = ids[start:start + DELETE_CHUNK]
        children += db.execute(
            delete(Sale).where(Sale.parent_sale_id.in_(chunk)).execution_options(synchronize_session=False)
        ).rowcount or 0
        db.execute(delete(Sale).where(Sale.id.in_(chunk)).execution_options(synchronize_session=False))
    return children


def retract_ineligible_rows(
    db: Session,
    scope: SyncScope,
    dispatcher: Optional[SideEffectDispatcher] = None,
) -> RetractionResult:
    """Run every retraction rule for the scope and delete what they find."""
    result = RetractionResult()
    scope_filters = [Sale.tenant_id == scope.tenant_id, Sale.parent_sale_id.is_(None), *scope.order_filters(Order)]

    for name, rule in RETRACTION_RULES:
        stale = db.execute(rule().where(*scope_filters)).all()
        result.retracted_by_rule[name] = len(stale)
        if not stale:
            continue

        result.children_deleted += _delete_rows(db, [row.id for row in stale])
        for row in stale:
            result.touched_dates.add((row.provider, row.sale_date))
            if dispatcher:
                dispatcher.row_deleted(db, row.provider, row.sale_date)

        log.info(f"Retracted {len(stale)} stale {name} rows ({scope.describe()})")

    return result


@dataclass
class SplitReleaseResult:
    parents_released: int = 0
    children_deleted: int = 0
    touched_dates: Set[AggregateKey] = field(default_factory=set)


def release_stale_splits(
    db: Session,
    scope: SyncScope,
    dispatcher: Optional[SideEffectDispatcher] = None,
) -> SplitReleaseResult:
    """
    Undo splits whose parent changed under them.

    A split is stale when the children no longer sum to the parent total or
    sit on a different date than the parent. Children are deleted and the
    parent returns to the uncategorized pool.
    """
    result = SplitReleaseResult()
    child = aliased(CanonicalSaleRow)

    children = (
        select(
            child.parent_sale_id.label("parent_id"),
            func.sum(child.total_price).label("allocated"),
            func.min(child.sale_date).label("first_date"),
            func.max(child.sale_date).label("last_date"),
        )
        .where(child.parent_sale_id.isnot(None), child.tenant_id == scope.tenant_id)
        .group_by(child.parent_sale_id)
        .subquery()
    )

    parents = db.execute(
        select(Sale.id, Sale.provider, Sale.sale_date, Sale.total_price, children.c.allocated,
               children.c.first_date, children.c.last_date)
        .join(Order, and_(
            Order.tenant_id == Sale.tenant_id,
            Order.provider == Sale.provider,
            Order.external_order_id == Sale.external_order_id,
        ))
        .outerjoin(children, children.c.parent_id == Sale.id)
        .where(
            Sale.tenant_id == scope.tenant_id,
            Sale.parent_sale_id.is_(None),
            Sale.is_split == True,  # noqa: E712
            *scope.order_filters(Order),
        )
    ).all()

    stale_ids = []
    for row in parents:
        allocated = to_money(row.allocated if row.allocated is not None else Decimal("0"))
        if (
            allocated != to_money(row.total_price)
            or row.first_date != row.sale_date
            or row.last_date != row.sale_date
        ):
            stale_ids.append(row.id)
            result.touched_dates.add((row.provider, row.sale_date))
            for child_date in (row.first_date, row.last_date):
                if child_date is not None:
                    result.touched_dates.add((row.provider, child_date))

    if not stale_ids:
        return result

    for start in range(0, len(stale_ids), DELETE_CHUNK):
        chunk = stale_ids[start:start + DELETE_CHUNK]
        result.children_deleted += db.execute(
            delete(Sale).where(Sale.parent_sale_id.in_(chunk)).execution_options(synchronize_session=False)
        ).rowcount or 0
        db.execute(
            update(Sale).where(Sale.id.in_(chunk)).values(
                is_split=False, is_categorized=False, category_code=None
            ).execution_options(synchronize_session=False)
        )
    result.parents_released = len(stale_ids)

    if dispatcher:
        dispatcher.dates_changed(db, result.touched_dates)
        for sale_id in stale_ids:
            dispatcher.classification_hook(db, sale_id)

    log.info(f"Released {result.parents_released} stale splits ({scope.describe()})")
    return result
