"""
End-to-end tests for SalesSyncService against a SQLite database.

Covers:
  - Idempotence (a second sync writes nothing)
  - Revenue rows exclude tax
  - Void offsets net to zero in the ledger and in daily_sales
  - Eligibility flips retract rows (tax, void, discount, service charge, tip, refund)
  - Range and single-order scoping
  - Authorization and unknown tenants
  - Time budget rollback
  - Batch side-effect failure and catch-up
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.exceptions import SyncTimeoutError, TenantNotFoundError, UnauthorizedTenantAccess
from app.models.categorization import CategorizationRule
from app.models.sync_status import SalesSyncLog, SalesSyncStatus
from app.services import aggregation_service
from app.services.sales_sync_service import SalesSyncService
from app.services.sync_scope import SyncScope

from conftest import BUSINESS_DAY, OWNER, ExtractBuilder, create_tenant


# ────────────────────────────────────────────
# IDEMPOTENCE
# ────────────────────────────────────────────


class TestIdempotence:

    def test_second_sync_writes_nothing(self, service, extract, tenant_id):
        extract.load(extract.order(
            "o1",
            items=[extract.item("i1", total="10.00", discount="1.00"), extract.item("i2", name="Fries", total="4.00")],
            payments=[extract.payment("p1", tip="2.00")],
            tax="0.80",
        ))

        first = service.sync_all(tenant_id)
        ids_before = {r.external_item_id: r.id for r in extract.rows()}
        second = service.sync_all(tenant_id)

        assert first == 5
        assert second == 0
        assert {r.external_item_id: r.id for r in extract.rows()} == ids_before

    def test_changed_amount_counts_as_one_write(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1", total="10.00")], tax="0.80"))
        service.sync_all(tenant_id)

        extract.load(extract.order("o1", items=[extract.item("i1", total="12.00")], tax="0.80"))
        written = service.sync_all(tenant_id)

        assert written == 1
        assert extract.ledger()["i1"] == Decimal("12.00")
        assert extract.daily().gross_revenue == Decimal("12.00")


# ────────────────────────────────────────────
# LEDGER SHAPE
# ────────────────────────────────────────────


class TestLedgerShape:

    def test_revenue_excludes_tax(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1", total="10.00")], tax="0.80"))
        service.sync_all(tenant_id)

        ledger = extract.ledger()
        daily = extract.daily()

        assert ledger == {"i1": Decimal("10.00"), "o1_tax": Decimal("0.80")}
        assert sum(ledger.values()) == Decimal("10.80")
        assert daily.gross_revenue == Decimal("10.00")
        assert daily.tax_collected == Decimal("0.80")
        assert daily.net_revenue == Decimal("10.00")
        assert daily.transaction_count == 1

    def test_void_offset_nets_to_zero(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1", total="5.00")]))
        service.sync_all(tenant_id)
        assert extract.daily().net_revenue == Decimal("5.00")

        extract.load(extract.order("o1", items=[extract.item("i1", total="5.00", voided=True)]))
        service.sync_all(tenant_id)

        ledger = extract.ledger()
        daily = extract.daily()
        assert ledger == {"i1": Decimal("5.00"), "i1_void": Decimal("-5.00")}
        assert sum(ledger.values()) == 0
        assert daily.gross_revenue == Decimal("5.00")
        assert daily.voids == Decimal("-5.00")
        assert daily.net_revenue == Decimal("0.00")

    def test_adjustment_columns(self, service, extract, tenant_id):
        extract.load(extract.order(
            "o1",
            items=[extract.item("i1", total="20.00", discount="2.00")],
            payments=[extract.payment("p1", tip="3.00", refund_status="PARTIAL", refund_amount="5.00")],
            tax="1.60",
            service_charge="1.00",
        ))
        service.sync_all(tenant_id)

        daily = extract.daily()
        assert daily.gross_revenue == Decimal("20.00")
        assert daily.discounts == Decimal("-2.00")
        assert daily.refunds == Decimal("-5.00")
        assert daily.tax_collected == Decimal("1.60")
        assert daily.tips == Decimal("3.00")
        assert daily.service_charges == Decimal("1.00")
        assert daily.net_revenue == Decimal("13.00")


# ────────────────────────────────────────────
# RETRACTION
# ────────────────────────────────────────────


class TestRetraction:

    def test_tax_flip_removes_tax_row(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1")], tax="0.80"))
        service.sync_all(tenant_id)
        assert "o1_tax" in extract.ledger()

        extract.load(extract.order("o1", items=[extract.item("i1")], tax="0"))
        service.sync_all(tenant_id)

        assert "o1_tax" not in extract.ledger()
        assert extract.daily().tax_collected == Decimal("0.00")

    def test_unvoided_item_loses_offset(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1", total="5.00", voided=True)]))
        service.sync_all(tenant_id)
        assert "i1_void" in extract.ledger()

        extract.load(extract.order("o1", items=[extract.item("i1", total="5.00", voided=False)]))
        service.sync_all(tenant_id)

        assert extract.ledger() == {"i1": Decimal("5.00")}
        assert extract.daily().net_revenue == Decimal("5.00")

    def test_voided_order_drops_tax_and_discounts(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1", discount="1.00")], tax="0.80"))
        service.sync_all(tenant_id)

        extract.load(extract.order("o1", items=[extract.item("i1", discount="1.00")], tax="0.80", state="voided"))
        service.sync_all(tenant_id)

        assert extract.ledger() == {"i1": Decimal("10.00"), "i1_void": Decimal("-10.00")}
        daily = extract.daily()
        assert daily.net_revenue == Decimal("0.00")
        assert daily.tax_collected == Decimal("0.00")
        assert daily.discounts == Decimal("0.00")

    def test_denied_tip_is_retracted(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1")], payments=[extract.payment("p1", tip="2.00")]))
        service.sync_all(tenant_id)
        assert extract.ledger()["p1_tip"] == Decimal("2.00")

        extract.load(extract.order(
            "o1", items=[extract.item("i1")], payments=[extract.payment("p1", tip="2.00", status="DENIED")]
        ))
        service.sync_all(tenant_id)

        assert "p1_tip" not in extract.ledger()
        assert extract.daily().tips == Decimal("0.00")

    def test_voided_tip_is_retracted(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1")], payments=[extract.payment("p1", tip="3.00")]))
        service.sync_all(tenant_id)
        assert extract.daily().tips == Decimal("3.00")

        extract.load(extract.order(
            "o1", items=[extract.item("i1")], payments=[extract.payment("p1", tip="3.00", status="VOIDED")]
        ))
        service.sync_all(tenant_id)

        assert "p1_tip" not in extract.ledger()
        assert extract.daily().tips == Decimal("0.00")

    def test_service_charge_dropped_to_zero_is_retracted(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1")], service_charge="2.50"))
        service.sync_all(tenant_id)
        assert extract.ledger()["o1_service_charge"] == Decimal("2.50")
        assert extract.daily().service_charges == Decimal("2.50")

        extract.load(extract.order("o1", items=[extract.item("i1")], service_charge="0"))
        service.sync_all(tenant_id)

        assert extract.ledger() == {"i1": Decimal("10.00")}
        assert extract.daily().service_charges == Decimal("0.00")

    def test_removed_discount_on_live_item_is_retracted(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1", discount="1.00")]))
        service.sync_all(tenant_id)
        assert "i1_discount" in extract.ledger()
        assert extract.daily().discounts != Decimal("0.00")

        extract.load(extract.order("o1", items=[extract.item("i1", discount="0")]))
        service.sync_all(tenant_id)

        assert extract.ledger() == {"i1": Decimal("10.00")}
        daily = extract.daily()
        assert daily.discounts == Decimal("0.00")
        assert daily.net_revenue == Decimal("10.00")

    def test_reversed_refund_is_retracted(self, service, extract, tenant_id):
        refunded = extract.payment("p1", refund_status="FULL", refund_amount="10.00")
        extract.load(extract.order("o1", items=[extract.item("i1")], payments=[refunded]))
        service.sync_all(tenant_id)
        assert extract.ledger()["p1_refund"] == Decimal("-10.00")

        extract.load(extract.order(
            "o1", items=[extract.item("i1")], payments=[extract.payment("p1", refund_status="NONE")]
        ))
        service.sync_all(tenant_id)

        assert "p1_refund" not in extract.ledger()
        assert extract.daily().net_revenue == Decimal("10.00")

    def test_zeroed_line_removes_revenue_and_empties_day(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1", total="10.00")]))
        service.sync_all(tenant_id)
        assert extract.daily() is not None

        extract.load(extract.order("o1", items=[extract.item("i1", total="0")]))
        service.sync_all(tenant_id)

        assert extract.ledger() == {}
        assert extract.daily() is None


# ────────────────────────────────────────────
# SCOPING
# ────────────────────────────────────────────


class TestScoping:

    def test_sync_range_only_touches_range(self, service, extract, tenant_id):
        day_one = BUSINESS_DAY
        day_two = BUSINESS_DAY + timedelta(days=3)
        extract.load(
            extract.order("o1", items=[extract.item("a1")], business_date=day_one),
            extract.order("o2", items=[extract.item("b1")], business_date=day_two),
        )

        written = service.sync_range(tenant_id, day_one, day_one)

        assert written == 1
        assert set(extract.ledger()) == {"a1"}
        assert extract.daily(day_two) is None

    def test_sync_range_rejects_inverted_range(self, service, tenant_id):
        with pytest.raises(ValueError):
            service.sync_range(tenant_id, date(2026, 2, 14), date(2026, 2, 1))

    def test_sync_order_classifies_per_row_for_background_callers(self, service, extract, tenant_id, session_factory):
        session = session_factory()
        session.add(CategorizationRule(
            tenant_id=tenant_id, name="Burgers", priority=10, match_type="contains", match_value="burger",
            category_code="4000",
        ))
        session.commit()
        session.close()

        extract.load(
            extract.order("o1", items=[extract.item("i1")]),
            extract.order("o2", items=[extract.item("i2")]),
        )

        written = service.sync_order(tenant_id, "toast", "o1")

        rows = extract.rows()
        assert written == 1
        assert [(r.external_item_id, r.category_code) for r in rows] == [("i1", "4000")]
        assert extract.daily().gross_revenue == Decimal("10.00")

    def test_tenants_are_isolated(self, service, extract, session_factory):
        other_id = create_tenant(session_factory, name="Other Diner", members=("someone-else",))
        other = ExtractBuilder(session_factory, other_id)
        extract.load(extract.order("o1", items=[extract.item("i1", total="10.00")]))
        other.load(other.order("o1", items=[other.item("i1", total="99.00")]))

        service.sync_all(extract.tenant_id)

        assert extract.ledger() == {"i1": Decimal("10.00")}
        assert other.ledger() == {}


# ────────────────────────────────────────────
# CLASSIFICATION TIMING
# ────────────────────────────────────────────


class TestBulkClassification:

    @pytest.fixture
    def burger_rule(self, session_factory, tenant_id):
        session = session_factory()
        session.add(CategorizationRule(
            tenant_id=tenant_id, name="Burgers", priority=10, match_type="contains", match_value="burger",
            category_code="4000",
        ))
        session.commit()
        session.close()

    def test_background_bulk_sync_defers_classification(self, service, extract, tenant_id, burger_rule):
        extract.load(extract.order("o1", items=[extract.item("i1")]))

        service.sync_all(tenant_id)

        (row,) = extract.rows()
        assert row.is_categorized is False

        assert service.classify_pending(tenant_id) == 1
        (row,) = extract.rows()
        assert row.category_code == "4000"

    def test_interactive_bulk_sync_classifies_in_batch(self, service, extract, tenant_id, burger_rule):
        extract.load(extract.order("o1", items=[extract.item("i1")]))

        service.sync_all(tenant_id, caller=OWNER)

        (row,) = extract.rows()
        assert row.is_categorized is True
        assert row.category_code == "4000"


# ────────────────────────────────────────────
# AUTHORIZATION
# ────────────────────────────────────────────


class TestAuthorization:

    def test_non_member_is_rejected_before_any_write(self, service, extract, tenant_id, session_factory):
        extract.load(extract.order("o1", items=[extract.item("i1")]))

        with pytest.raises(UnauthorizedTenantAccess):
            service.sync_all(tenant_id, caller="intruder")

        session = session_factory()
        try:
            assert session.query(SalesSyncLog).count() == 0
        finally:
            session.close()
        assert extract.ledger() == {}

    def test_member_may_sync(self, service, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1")]))
        assert service.sync_all(tenant_id, caller=OWNER) == 1

    def test_unknown_tenant(self, service):
        with pytest.raises(TenantNotFoundError):
            service.sync_all(999)

    def test_non_member_gets_same_denial_for_unknown_tenant(self, service, tenant_id):
        with pytest.raises(UnauthorizedTenantAccess):
            service.sync_all(999, caller="intruder")
        with pytest.raises(UnauthorizedTenantAccess):
            service.sync_all(tenant_id, caller="intruder")
        with pytest.raises(UnauthorizedTenantAccess):
            service.catch_up_side_effects(999, caller="intruder")


# ────────────────────────────────────────────
# FAILURE HANDLING
# ────────────────────────────────────────────


class TestFailures:

    def test_timeout_rolls_back_every_write(self, session_factory, extract, tenant_id):
        extract.load(extract.order("o1", items=[extract.item("i1")], tax="0.80"))
        impatient = SalesSyncService(session_factory=session_factory, timeout_seconds=1e-9)

        with pytest.raises(SyncTimeoutError):
            impatient.sync_all(tenant_id)

        assert extract.ledger() == {}
        session = session_factory()
        try:
            status = session.query(SalesSyncStatus).filter_by(tenant_id=tenant_id).one()
            assert status.sync_status == "failed"
            assert status.error_count == 1
        finally:
            session.close()

    def test_failed_batch_pass_keeps_ledger_and_flags_pending(
        self, service, extract, tenant_id, session_factory, monkeypatch
    ):
        extract.load(extract.order("o1", items=[extract.item("i1")], tax="0.80"))

        def broken(*args, **kwargs):
            raise RuntimeError("aggregate table locked")

        monkeypatch.setattr(aggregation_service, "recompute_dates", broken)
        result = service.run(SyncScope(tenant_id=tenant_id))

        assert result.status == "partial"
        assert result.side_effects_pending is True
        assert result.rows_written == 2
        assert extract.ledger() == {"i1": Decimal("10.00"), "o1_tax": Decimal("0.80")}
        assert extract.daily() is None

        monkeypatch.undo()
        catch_up = service.catch_up_side_effects(tenant_id)

        assert catch_up.dates_aggregated == 1
        assert extract.daily().gross_revenue == Decimal("10.00")
        session = session_factory()
        try:
            status = session.query(SalesSyncStatus).filter_by(tenant_id=tenant_id, provider="all").one()
            assert status.side_effects_pending is False
            assert status.sync_status == "success"
        finally:
            session.close()

    def test_sync_log_records_counts(self, service, extract, tenant_id, session_factory):
        extract.load(extract.order("o1", items=[extract.item("i1")], tax="0.80"))
        service.sync_all(tenant_id)

        extract.load(extract.order("o1", items=[extract.item("i1")], tax="0"))
        service.sync_all(tenant_id)

        session = session_factory()
        try:
            logs = session.query(SalesSyncLog).order_by(SalesSyncLog.id).all()
            assert [entry.rows_written for entry in logs] == [2, 0]
            assert [entry.rows_retracted for entry in logs] == [0, 1]
            assert all(entry.status == "success" for entry in logs)
        finally:
            session.close()
