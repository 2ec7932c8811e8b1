"""
Unit tests for the extract -> ledger transform.

Covers:
  - Revenue / discount / void / tax / service charge / tip / refund drafts
  - Synthetic key suffixes and signs
  - Voided items and voided orders
  - Business-date precedence and the timezone fallback
  - Draft de-duplication

These are unit tests that do NOT require a database.
"""
from datetime import date, datetime, time
from decimal import Decimal
from types import SimpleNamespace

from app.services.ledger_transform import (
    build_order_drafts,
    dedupe_drafts,
    discount_eligible,
    refund_eligible,
    tip_eligible,
    to_money,
)


def make_item(item_id="i1", name="Burger", total="10.00", discount=None, voided=False, quantity="1"):
    return SimpleNamespace(
        external_item_id=item_id,
        item_name=name,
        quantity=Decimal(quantity),
        line_total=Decimal(total) if total is not None else None,
        discount_amount=Decimal(discount) if discount is not None else None,
        is_voided=voided,
        pos_category="Food",
        raw_payload=None,
    )


def make_payment(payment_id="p1", tip=None, status="CAPTURED", refund_status=None, refund_amount=None):
    return SimpleNamespace(
        external_payment_id=payment_id,
        payment_type="CREDIT",
        status=status,
        tip_amount=Decimal(tip) if tip is not None else None,
        refund_status=refund_status,
        refund_amount=Decimal(refund_amount) if refund_amount is not None else None,
    )


def make_order(items=(), payments=(), tax=None, service_charge=None, state="completed",
               business_date=date(2026, 2, 14), closed_at=datetime(2026, 2, 15, 2, 30), opened_at=None):
    return SimpleNamespace(
        tenant_id=1,
        provider="toast",
        external_order_id="o1",
        state=state,
        business_date=business_date,
        closed_at=closed_at,
        opened_at=opened_at,
        tax_amount=Decimal(tax) if tax is not None else None,
        service_charge_amount=Decimal(service_charge) if service_charge is not None else None,
        items=list(items),
        payments=list(payments),
    )


def by_item_id(drafts):
    return {d.external_item_id: d for d in drafts}


# ────────────────────────────────────────────
# ROW KINDS
# ────────────────────────────────────────────


class TestRowKinds:

    def test_revenue_row_excludes_tax(self):
        drafts = by_item_id(build_order_drafts(make_order(items=[make_item()], tax="0.80")))

        assert set(drafts) == {"i1", "o1_tax"}
        assert drafts["i1"].total_price == Decimal("10.00")
        assert drafts["i1"].adjustment_type is None
        assert drafts["i1"].item_type == "sale"
        assert drafts["o1_tax"].total_price == Decimal("0.80")
        assert drafts["o1_tax"].adjustment_type == "tax"
        assert sum(d.total_price for d in drafts.values()) == Decimal("10.80")

    def test_discount_is_negative_offset(self):
        drafts = by_item_id(build_order_drafts(make_order(items=[make_item(discount="2.50")])))

        assert drafts["i1_discount"].total_price == Decimal("-2.50")
        assert drafts["i1_discount"].adjustment_type == "discount"
        assert drafts["i1_discount"].item_name == "Discount - Burger"

    def test_service_charge_and_tip(self):
        order = make_order(items=[make_item()], service_charge="1.50", payments=[make_payment(tip="2.00")])
        drafts = by_item_id(build_order_drafts(order))

        assert drafts["o1_service_charge"].total_price == Decimal("1.50")
        assert drafts["p1_tip"].total_price == Decimal("2.00")
        assert drafts["p1_tip"].item_name == "Tip - CREDIT"

    def test_refund_is_always_negative(self):
        order = make_order(items=[make_item()], payments=[make_payment(refund_status="PARTIAL", refund_amount="4.00")])
        drafts = by_item_id(build_order_drafts(order))

        assert drafts["p1_refund"].total_price == Decimal("-4.00")
        assert drafts["p1_refund"].adjustment_type == "refund"

    def test_unit_price_from_quantity(self):
        drafts = by_item_id(build_order_drafts(make_order(items=[make_item(total="9.00", quantity="3")])))
        assert drafts["i1"].unit_price == Decimal("3.000000")

    def test_zero_line_total_has_no_revenue_row(self):
        drafts = build_order_drafts(make_order(items=[make_item(total="0")]))
        assert drafts == []


# ────────────────────────────────────────────
# VOIDS
# ────────────────────────────────────────────


class TestVoids:

    def test_voided_item_keeps_revenue_and_adds_offset(self):
        drafts = by_item_id(build_order_drafts(make_order(items=[make_item(total="5.00", voided=True)])))

        assert drafts["i1"].total_price == Decimal("5.00")
        assert drafts["i1_void"].total_price == Decimal("-5.00")
        assert drafts["i1_void"].adjustment_type == "void"
        assert sum(d.total_price for d in drafts.values()) == 0

    def test_voided_item_loses_its_discount(self):
        drafts = by_item_id(build_order_drafts(make_order(items=[make_item(discount="1.00", voided=True)])))
        assert "i1_discount" not in drafts

    def test_voided_order_voids_items_and_drops_tax(self):
        order = make_order(items=[make_item(), make_item("i2", total="4.00")], tax="1.12",
                           service_charge="2.00", state="voided")
        drafts = by_item_id(build_order_drafts(order))

        assert set(drafts) == {"i1", "i1_void", "i2", "i2_void"}
        assert sum(d.total_price for d in drafts.values()) == 0


# ────────────────────────────────────────────
# ELIGIBILITY
# ────────────────────────────────────────────


class TestEligibility:

    def test_denied_and_voided_tips_are_ineligible(self):
        assert tip_eligible(make_payment(tip="1.00"))
        assert not tip_eligible(make_payment(tip="1.00", status="DENIED"))
        assert not tip_eligible(make_payment(tip="1.00", status="voided"))
        assert not tip_eligible(make_payment(tip="0"))

    def test_refund_needs_status_and_amount(self):
        assert refund_eligible(make_payment(refund_status="FULL", refund_amount="10.00"))
        assert not refund_eligible(make_payment(refund_status="NONE", refund_amount="10.00"))
        assert not refund_eligible(make_payment(refund_status="PARTIAL", refund_amount="0"))
        assert not refund_eligible(make_payment(refund_status=None, refund_amount=None))

    def test_negative_discount_is_ineligible(self):
        order = make_order()
        assert not discount_eligible(order, make_item(discount="-1.00"))
        assert not discount_eligible(order, make_item(discount=None))


# ────────────────────────────────────────────
# SALE DATE
# ────────────────────────────────────────────


class TestSaleDate:

    def test_business_date_wins_over_timestamps(self):
        order = make_order(items=[make_item()], business_date=date(2026, 2, 13),
                           closed_at=datetime(2026, 2, 15, 2, 30))
        (draft,) = build_order_drafts(order, "America/Chicago")
        assert draft.sale_date == date(2026, 2, 13)

    def test_close_time_converted_to_tenant_timezone(self):
        # 02:30 UTC on the 15th is 20:30 on the 14th in Chicago
        order = make_order(items=[make_item()], business_date=None, closed_at=datetime(2026, 2, 15, 2, 30))
        (draft,) = build_order_drafts(order, "America/Chicago")

        assert draft.sale_date == date(2026, 2, 14)
        assert draft.sale_time == time(20, 30)

    def test_open_time_used_when_not_closed(self):
        order = make_order(items=[make_item()], business_date=None, closed_at=None,
                           opened_at=datetime(2026, 2, 14, 18, 0))
        (draft,) = build_order_drafts(order, "America/Chicago")
        assert draft.sale_date == date(2026, 2, 14)

    def test_undatable_order_produces_nothing(self):
        order = make_order(items=[make_item()], tax="1.00", business_date=None, closed_at=None)
        assert build_order_drafts(order) == []


# ────────────────────────────────────────────
# HELPERS
# ────────────────────────────────────────────


def test_dedupe_keeps_last_draft_per_key():
    first = build_order_drafts(make_order(items=[make_item(total="10.00")]))
    second = build_order_drafts(make_order(items=[make_item(total="12.00")]))

    deduped = dedupe_drafts(first + second)

    assert len(deduped) == 1
    assert list(deduped.values())[0].total_price == Decimal("12.00")


def test_to_money_rounds_half_up_to_six_places():
    assert to_money("0.0000005") == Decimal("0.000001")
    assert to_money(None) is None
