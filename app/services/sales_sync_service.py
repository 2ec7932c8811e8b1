"""
Sales Sync Service

Orchestrates ledger reconciliation runs for a tenant:

    authorize -> retract stale rows -> transform extract -> upsert ledger
              -> release stale splits -> commit -> batch side effects

Bulk runs (sync_all / sync_range) switch per-row side effects off for the
duration of the transaction and run one classification batch and one
aggregate recompute per affected day after commit. Incremental runs
(sync_orders) leave the hooks on so each written row is classified and
aggregated immediately.

Runs for the same tenant are serialized with an in-process lock; runs for
different tenants proceed concurrently.
"""
import threading
import time
from contextlib import contextmanager, nullcontext
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.connectors import get_connector_class
from app.exceptions import (
    NormalizationError,
    SideEffectError,
    SyncTimeoutError,
    TenantNotFoundError,
    TenantSyncBusyError,
)
from app.models.base import SessionLocal
from app.models.pos_extract import ProviderOrder
from app.models.tenant import Tenant
from app.services import business_date_backfill, classification_service, extract_store
from app.services.authorization import require_tenant_access
from app.services.ledger_transform import LedgerKey, SaleDraft, build_order_drafts, dedupe_drafts
from app.services.ledger_writer import upsert_drafts
from app.services.reconciliation import release_stale_splits, retract_ineligible_rows
from app.services.side_effects import (
    BatchPassResult,
    SideEffectDispatcher,
    run_batch_side_effects,
    suppress_side_effects,
)
from app.services.sync_scope import SyncScope
from app.services.sync_tracking import SalesSyncResult, track_sales_sync
from app.utils.logger import log

settings = get_settings()

_tenant_locks: Dict[int, threading.RLock] = {}
_tenant_locks_guard = threading.Lock()


@contextmanager
def tenant_lock(tenant_id: int, timeout: float):
    """Serialize work for one tenant across threads."""
    with _tenant_locks_guard:
        lock = _tenant_locks.setdefault(tenant_id, threading.RLock())
    if not lock.acquire(timeout=timeout):
        raise TenantSyncBusyError(f"Tenant {tenant_id} is busy with another sync", tenant_id)
    try:
        yield
    finally:
        lock.release()


class SyncDeadline:
    """Wall-clock budget for one run, checked between passes and write batches"""

    def __init__(self, tenant_id: int, seconds: float):
        self.tenant_id = tenant_id
        self.seconds = seconds
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def check(self, stage: str) -> None:
        if self.elapsed > self.seconds:
            raise SyncTimeoutError(self.tenant_id, stage, self.elapsed)


class SalesSyncService:
    """Entry point for every ledger sync: API, scheduler and scripts all go through here"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        timeout_seconds: Optional[float] = None,
        classification_limit: Optional[int] = None,
        write_batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.timeout_seconds = timeout_seconds or settings.sync_timeout_seconds
        self.classification_limit = classification_limit or settings.classification_batch_limit
        self.write_batch_size = write_batch_size or settings.ledger_write_batch_size

    # Exposed operations

    def sync_all(self, tenant_id: int, caller: Optional[str] = None, provider: Optional[str] = None,
                 bulk: bool = True) -> int:
        """Full resync of the tenant's extract. Returns rows written."""
        scope = SyncScope(tenant_id=tenant_id, provider=provider)
        return self.run(scope, caller=caller, bulk=bulk, sync_type="bulk" if bulk else "incremental").rows_written

    def sync_range(self, tenant_id: int, start_date: date, end_date: date, caller: Optional[str] = None,
                   provider: Optional[str] = None, bulk: bool = True) -> int:
        """Resync orders whose service date falls in [start_date, end_date]. Returns rows written."""
        if start_date > end_date:
            raise ValueError(f"start_date {start_date} is after end_date {end_date}")
        scope = SyncScope(tenant_id=tenant_id, provider=provider, start_date=start_date, end_date=end_date)
        return self.run(scope, caller=caller, bulk=bulk, sync_type="range").rows_written

    def sync_orders(self, tenant_id: int, provider: str, external_order_ids: Sequence[str],
                    caller: Optional[str] = None) -> int:
        """Incremental sync of specific orders with per-row side effects. Returns rows written."""
        scope = SyncScope(tenant_id=tenant_id, provider=provider, external_order_ids=tuple(external_order_ids))
        return self.run(scope, caller=caller, bulk=False, sync_type="order").rows_written

    def sync_order(self, tenant_id: int, provider: str, external_order_id: str,
                   caller: Optional[str] = None) -> int:
        return self.sync_orders(tenant_id, provider, [external_order_id], caller=caller)

    def run(self, scope: SyncScope, caller: Optional[str] = None, bulk: bool = True,
            sync_type: str = "bulk") -> SalesSyncResult:
        """
        One reconciliation run for a scope.

        Raises:
            TenantNotFoundError, UnauthorizedTenantAccess: before anything is written
            SyncTimeoutError: the budget ran out; every ledger write was rolled back
        """
        with tenant_lock(scope.tenant_id, self.timeout_seconds):
            db = self.session_factory()
            try:
                require_tenant_access(db, scope.tenant_id, caller)
                tenant = self._load_tenant(db, scope.tenant_id)

                with track_sales_sync(
                    self.session_factory, scope.tenant_id, scope.provider, sync_type,
                    scope.start_date, scope.end_date,
                ) as result:
                    dispatcher = SideEffectDispatcher(scope.tenant_id)
                    self._reconcile(db, tenant, scope, dispatcher, bulk, result)

                    if bulk:
                        self._run_batch_pass(db, scope, dispatcher, caller is not None, result)
                    else:
                        result.rows_classified = dispatcher.rows_classified
                        result.dates_aggregated = len(dispatcher.touched_dates)

                log.bind(tenant_id=scope.tenant_id).info(
                    f"Sales sync {sync_type} done ({scope.describe()}): {result.rows_written} written, "
                    f"{result.rows_retracted} retracted, {result.splits_released} splits released, "
                    f"{result.dates_aggregated} days aggregated in {result.duration_seconds:.2f}s"
                )
                return result
            finally:
                db.close()

    def catch_up_side_effects(self, tenant_id: int, caller: Optional[str] = None, provider: Optional[str] = None,
                              start_date: Optional[date] = None, end_date: Optional[date] = None) -> BatchPassResult:
        """
        Re-run classification and aggregation for everything in scope.

        Use after a run whose batch pass failed; safe to repeat.
        """
        scope = SyncScope(tenant_id=tenant_id, provider=provider, start_date=start_date, end_date=end_date)
        with tenant_lock(tenant_id, self.timeout_seconds):
            db = self.session_factory()
            try:
                require_tenant_access(db, tenant_id, caller)
                self._load_tenant(db, tenant_id)

                with track_sales_sync(self.session_factory, tenant_id, provider, "catch_up",
                                      start_date, end_date) as result:
                    try:
                        batch = run_batch_side_effects(
                            db, scope, set(), True, self.classification_limit, discover=True
                        )
                        db.commit()
                    except SideEffectError:
                        db.rollback()
                        raise
                    result.rows_classified = batch.rows_classified
                    result.dates_aggregated = batch.dates_aggregated
                return batch
            finally:
                db.close()

    def classify_pending(self, tenant_id: int, max_rows: Optional[int] = None) -> int:
        """Scheduled classification for rows left uncategorized by background syncs."""
        with tenant_lock(tenant_id, self.timeout_seconds):
            db = self.session_factory()
            try:
                classified = classification_service.classify_batch(
                    db, tenant_id, max_rows or self.classification_limit
                )
                db.commit()
                return classified
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def ingest_orders(self, tenant_id: int, provider: str, payloads: List[Dict[str, Any]],
                      caller: Optional[str] = None) -> extract_store.IngestResult:
        """Normalize raw provider payloads and upsert them into the extract tables."""
        connector_class = get_connector_class(provider)
        with tenant_lock(tenant_id, self.timeout_seconds):
            db = self.session_factory()
            try:
                require_tenant_access(db, tenant_id, caller)
                tenant = self._load_tenant(db, tenant_id)

                normalized = []
                failed = 0
                for payload in payloads:
                    try:
                        normalized.append(connector_class.normalize_order(payload))
                    except NormalizationError as e:
                        failed += 1
                        log.warning(f"Skipping {provider} payload for tenant {tenant_id}: {e}")

                result = extract_store.ingest_orders(db, tenant_id, provider, normalized, tenant.timezone)
                result.orders_failed = failed
                db.commit()
                return result
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def rederive_business_dates(self, tenant_id: int, provider: Optional[str] = None,
                                dry_run: bool = False) -> business_date_backfill.DateBackfillResult:
        """Correct historical sale dates from the providers' business-day field."""
        with tenant_lock(tenant_id, self.timeout_seconds):
            db = self.session_factory()
            try:
                tenant = self._load_tenant(db, tenant_id)
                with track_sales_sync(self.session_factory, tenant_id, provider, "date_backfill") as result:
                    backfill = business_date_backfill.rederive_business_dates(db, tenant, provider, dry_run)
                    if dry_run:
                        db.rollback()
                    else:
                        db.commit()
                    result.rows_updated = backfill.rows_moved
                    result.dates_aggregated = backfill.dates_reaggregated
                return backfill
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    # Internals

    @staticmethod
    def _load_tenant(db: Session, tenant_id: int) -> Tenant:
        tenant = db.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    def _apply_statement_timeout(self, db: Session) -> None:
        # SQLite has no per-statement timeout; the deadline checks cover it
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL statement_timeout = {int(self.timeout_seconds * 1000)}"))

    @staticmethod
    def _collect_drafts(db: Session, tenant: Tenant, scope: SyncScope) -> Dict[LedgerKey, SaleDraft]:
        orders = db.query(ProviderOrder).options(
            selectinload(ProviderOrder.items),
            selectinload(ProviderOrder.payments),
        ).filter(*scope.order_filters()).order_by(ProviderOrder.id).all()

        drafts: List[SaleDraft] = []
        skipped = 0
        for order in orders:
            order_drafts = build_order_drafts(order, tenant.timezone)
            if not order_drafts and order.service_date is None:
                skipped += 1
            drafts.extend(order_drafts)

        if skipped:
            log.warning(f"{skipped} orders for tenant {tenant.id} have no resolvable sale date")
        return dedupe_drafts(drafts)

    def _reconcile(self, db: Session, tenant: Tenant, scope: SyncScope, dispatcher: SideEffectDispatcher,
                   bulk: bool, result: SalesSyncResult) -> None:
        """Retraction, upsert and split release as one transaction."""
        deadline = SyncDeadline(scope.tenant_id, self.timeout_seconds)
        try:
            self._apply_statement_timeout(db)
            with suppress_side_effects(db) if bulk else nullcontext():
                retraction = retract_ineligible_rows(db, scope, dispatcher)
                deadline.check("retraction")

                drafts = self._collect_drafts(db, tenant, scope)
                deadline.check("transform")

                write = upsert_drafts(db, drafts, dispatcher, self.write_batch_size, deadline.check)

                released = release_stale_splits(db, scope, dispatcher)
                deadline.check("split release")
            db.commit()
        except Exception:
            db.rollback()
            raise

        result.rows_created = write.created
        result.rows_updated = write.updated
        result.rows_retracted = retraction.rows_retracted
        result.retracted_by_rule = retraction.retracted_by_rule
        result.splits_released = released.parents_released

    def _run_batch_pass(self, db: Session, scope: SyncScope, dispatcher: SideEffectDispatcher,
                        classify: bool, result: SalesSyncResult) -> None:
        """Post-commit side effects. A failure leaves the committed ledger intact."""
        try:
            batch = run_batch_side_effects(
                db, scope, dispatcher.touched_dates, classify, self.classification_limit
            )
            db.commit()
        except SideEffectError as e:
            db.rollback()
            result.side_effects_pending = True
            result.error_message = str(e)
            log.bind(tenant_id=scope.tenant_id).error(
                f"Batch side effects failed after commit ({e.stage}); run catch_up_side_effects: {e}"
            )
            return

        result.rows_classified = batch.rows_classified
        result.dates_aggregated = batch.dates_aggregated
