"""
Tests for sync scopes, range chunking and the per-tenant lock
"""
import threading
from datetime import date

import pytest

from app.exceptions import SyncTimeoutError, TenantSyncBusyError
from app.services.sales_sync_service import SyncDeadline, tenant_lock
from app.services.sync_scope import SyncScope, date_chunks


class TestDateChunks:

    def test_even_and_ragged_chunks(self):
        assert date_chunks(date(2026, 1, 1), date(2026, 1, 14), 7) == [
            (date(2026, 1, 1), date(2026, 1, 7)),
            (date(2026, 1, 8), date(2026, 1, 14)),
        ]
        assert date_chunks(date(2026, 1, 1), date(2026, 1, 10), 7)[-1] == (date(2026, 1, 8), date(2026, 1, 10))

    def test_single_day(self):
        assert date_chunks(date(2026, 1, 1), date(2026, 1, 1), 7) == [(date(2026, 1, 1), date(2026, 1, 1))]

    def test_inverted_range_is_empty(self):
        assert date_chunks(date(2026, 1, 2), date(2026, 1, 1), 7) == []

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            date_chunks(date(2026, 1, 1), date(2026, 1, 2), 0)


class TestSyncScope:

    def test_full_scope(self):
        scope = SyncScope(tenant_id=3)
        assert scope.is_full
        assert len(scope.order_filters()) == 1
        assert scope.describe() == "tenant=3 provider=all"

    def test_narrowed_scope(self):
        scope = SyncScope(tenant_id=3, provider="toast", start_date=date(2026, 2, 1),
                          end_date=date(2026, 2, 7), external_order_ids=("a", "b"))
        assert not scope.is_full
        assert len(scope.order_filters()) == 5
        assert scope.describe() == "tenant=3 provider=toast range=2026-02-01..2026-02-07 orders=2"


class TestTenantLock:

    def test_second_holder_times_out(self):
        held = threading.Event()
        release = threading.Event()

        def hold():
            with tenant_lock(701, timeout=1):
                held.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert held.wait(5)
            with pytest.raises(TenantSyncBusyError):
                with tenant_lock(701, timeout=0.05):
                    pass
        finally:
            release.set()
            worker.join()

    def test_other_tenants_are_not_blocked(self):
        held = threading.Event()
        release = threading.Event()

        def hold():
            with tenant_lock(702, timeout=1):
                held.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert held.wait(5)
            with tenant_lock(703, timeout=0.05):
                pass
        finally:
            release.set()
            worker.join()

    def test_reentrant_in_same_thread(self):
        with tenant_lock(704, timeout=0.05):
            with tenant_lock(704, timeout=0.05):
                pass


def test_deadline():
    SyncDeadline(1, 60).check("transform")
    with pytest.raises(SyncTimeoutError) as exc_info:
        SyncDeadline(1, -1).check("transform")
    assert exc_info.value.stage == "transform"
