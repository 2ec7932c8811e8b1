"""
Sales classification

Applies tenant categorization rules to uncategorized ledger rows, and
splits a sale across several categories. Split children share the
parent's ledger key but carry parent_sale_id, so they never collide with
the canonical row on re-sync.
"""
import re
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.exceptions import SplitAllocationError
from app.models.categorization import CategorizationRule
from app.models.sales_ledger import CanonicalSaleRow
from app.utils.logger import log

CENTS = Decimal("0.01")
SPLIT_TOLERANCE = Decimal("0.02")

MATCH_TYPES = ("exact", "contains", "starts_with", "ends_with", "regex")


def _name_matches(match_type: str, pattern: str, name: str) -> bool:
    name = (name or "").lower()
    if match_type == "regex":
        try:
            return re.search(pattern, name, re.IGNORECASE) is not None
        except re.error as e:
            log.warning(f"Invalid rule regex '{pattern}': {e}")
            return False

    pattern = pattern.lower()
    if match_type == "exact":
        return name == pattern
    if match_type == "contains":
        return pattern in name
    if match_type == "starts_with":
        return name.startswith(pattern)
    if match_type == "ends_with":
        return name.endswith(pattern)
    return False


def matches_rule(rule: CategorizationRule, sale: CanonicalSaleRow) -> bool:
    """
    True when every condition configured on the rule holds for the sale.

    A rule with no conditions matches nothing.
    """
    has_condition = False

    if rule.match_type and rule.match_value:
        has_condition = True
        if not _name_matches(rule.match_type, rule.match_value, sale.item_name):
            return False

    if rule.pos_category:
        has_condition = True
        if (sale.pos_category or "").lower() != rule.pos_category.lower():
            return False

    if rule.item_type:
        has_condition = True
        if sale.item_type != rule.item_type:
            return False

    amount = abs(Decimal(str(sale.total_price)))
    if rule.amount_min is not None:
        has_condition = True
        if amount < Decimal(str(rule.amount_min)):
            return False
    if rule.amount_max is not None:
        has_condition = True
        if amount > Decimal(str(rule.amount_max)):
            return False

    return has_condition


def allocate_split(total: Decimal, allocations: List[Dict]) -> List[Decimal]:
    """
    Turn split allocations into signed child amounts that sum exactly to total.

    Allocations are either all {"percentage": ...} or all {"amount": ...}.
    Each child is rounded to cents and the last child absorbs the remainder,
    which may not exceed two cents.
    """
    if len(allocations) < 2:
        raise SplitAllocationError("A split needs at least two allocations")

    total = Decimal(str(total))
    sign = Decimal("-1") if total < 0 else Decimal("1")

    if all(a.get("percentage") is not None for a in allocations):
        pct_total = sum(Decimal(str(a["percentage"])) for a in allocations)
        if abs(pct_total - 100) > CENTS:
            raise SplitAllocationError(f"Split percentages sum to {pct_total}, expected 100")
        expected = [total * Decimal(str(a["percentage"])) / 100 for a in allocations]
    elif all(a.get("amount") is not None for a in allocations):
        expected = [sign * abs(Decimal(str(a["amount"]))) for a in allocations]
    else:
        raise SplitAllocationError("Split allocations must all use percentage or all use amount")

    amounts = [value.quantize(CENTS, rounding=ROUND_HALF_UP) for value in expected[:-1]]
    last = total - sum(amounts, Decimal("0"))
    if abs(last - expected[-1]) > SPLIT_TOLERANCE:
        raise SplitAllocationError(
            f"Split allocations leave {last - expected[-1]} unallocated of {total}"
        )
    amounts.append(last)
    return amounts


def split_sale(db: Session, sale: CanonicalSaleRow, allocations: List[Dict]) -> List[CanonicalSaleRow]:
    """
    Split a canonical row into categorized children.

    The parent stays in place as the idempotency anchor, marked is_split
    and categorized with no category of its own.
    """
    if sale.parent_sale_id is not None:
        raise SplitAllocationError(f"Sale {sale.id} is itself a split allocation")
    if sale.is_split:
        raise SplitAllocationError(f"Sale {sale.id} is already split")

    amounts = allocate_split(sale.total_price, allocations)

    children = []
    for allocation, amount in zip(allocations, amounts):
        quantity = sale.quantity
        unit_price = None
        if quantity:
            unit_price = (amount / Decimal(str(quantity))).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)
        child = CanonicalSaleRow(
            tenant_id=sale.tenant_id,
            provider=sale.provider,
            external_order_id=sale.external_order_id,
            external_item_id=sale.external_item_id,
            item_name=sale.item_name,
            quantity=quantity,
            unit_price=unit_price,
            total_price=amount,
            sale_date=sale.sale_date,
            sale_time=sale.sale_time,
            pos_category=sale.pos_category,
            item_type=sale.item_type,
            adjustment_type=sale.adjustment_type,
            is_categorized=True,
            category_code=allocation.get("category_code"),
            is_split=False,
            parent_sale_id=sale.id,
        )
        db.add(child)
        children.append(child)

    sale.is_split = True
    sale.is_categorized = True
    sale.category_code = None
    db.flush()
    return children


def load_active_rules(db: Session, tenant_id: int) -> List[CategorizationRule]:
    return db.query(CategorizationRule).filter(
        CategorizationRule.tenant_id == tenant_id,
        CategorizationRule.is_active == True,  # noqa: E712
    ).order_by(CategorizationRule.priority.desc(), CategorizationRule.id).all()


def classify_row(
    db: Session,
    sale: CanonicalSaleRow,
    rules: Optional[List[CategorizationRule]] = None,
) -> bool:
    """Apply the first matching rule to one row. Returns True if the row was classified."""
    if sale.is_categorized or sale.is_split or sale.parent_sale_id is not None:
        return False

    if rules is None:
        rules = load_active_rules(db, sale.tenant_id)

    for rule in rules:
        if not matches_rule(rule, sale):
            continue

        if rule.is_split_rule and rule.split_allocations:
            try:
                split_sale(db, sale, rule.split_allocations)
            except SplitAllocationError as e:
                log.warning(f"Split rule {rule.id} could not split sale {sale.id}: {e}")
                continue
        elif rule.category_code:
            sale.category_code = rule.category_code
            sale.is_categorized = True
        else:
            continue

        rule.apply_count = (rule.apply_count or 0) + 1
        rule.last_applied_at = datetime.utcnow()
        return True

    return False


def classify_batch(db: Session, tenant_id: int, max_rows: int, scan_size: int = 1000) -> int:
    """
    Classify up to max_rows uncategorized canonical rows, newest first.

    Pending rows are scanned in chunks of scan_size keyed on (sale_date, id)
    until max_rows rows are classified or the pending pool runs out, so rows
    no rule matches never hold back older matchable rows. Returns the number
    of rows classified.
    """
    rules = load_active_rules(db, tenant_id)
    if not rules:
        return 0

    classified = 0
    scanned = 0
    last_key = None
    while classified < max_rows:
        query = db.query(CanonicalSaleRow).filter(
            CanonicalSaleRow.tenant_id == tenant_id,
            CanonicalSaleRow.is_categorized == False,  # noqa: E712
            CanonicalSaleRow.is_split == False,  # noqa: E712
            CanonicalSaleRow.parent_sale_id.is_(None),
        )
        if last_key is not None:
            last_date, last_id = last_key
            query = query.filter(or_(
                CanonicalSaleRow.sale_date < last_date,
                and_(CanonicalSaleRow.sale_date == last_date, CanonicalSaleRow.id < last_id),
            ))
        chunk = query.order_by(
            CanonicalSaleRow.sale_date.desc(), CanonicalSaleRow.id.desc()
        ).limit(scan_size).all()
        if not chunk:
            break

        for sale in chunk:
            scanned += 1
            if classify_row(db, sale, rules):
                classified += 1
                if classified >= max_rows:
                    break
        last_key = (chunk[-1].sale_date, chunk[-1].id)

    db.flush()
    log.info(f"Classified {classified}/{scanned} scanned pending sales for tenant {tenant_id}")
    return classified
