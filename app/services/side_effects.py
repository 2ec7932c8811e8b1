"""
Ledger side effects: classification and daily aggregation

Both hooks run after every ledger write and check the bulk-mode switch
first. The switch lives in Session.info, so it is private to the session
running the bulk sync; concurrent writers on other sessions keep their
per-row side effects.

After a suppressed run the orchestrator calls run_batch_side_effects:
one classification batch for the tenant, then one aggregate recompute
per distinct (provider, date).
"""
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session

from app.exceptions import SideEffectError
from app.models.categorization import CategorizationRule
from app.models.sales_ledger import CanonicalSaleRow
from app.services import aggregation_service, classification_service
from app.services.aggregation_service import AggregateKey
from app.services.sync_scope import SyncScope
from app.utils.logger import log

SUPPRESS_FLAG = "skip_sales_side_effects"


def side_effects_suppressed(db: Session) -> bool:
    return bool(db.info.get(SUPPRESS_FLAG))


@contextmanager
def suppress_side_effects(db: Session):
    """
    Turn per-row side effects off for this session.

    The previous value is restored on exit, including when the body raises.
    """
    previous = db.info.get(SUPPRESS_FLAG)
    db.info[SUPPRESS_FLAG] = True
    try:
        yield
    finally:
        if previous is None:
            db.info.pop(SUPPRESS_FLAG, None)
        else:
            db.info[SUPPRESS_FLAG] = previous


@dataclass
class WrittenRow:
    """A ledger row inserted or changed by the upsert"""
    id: int
    tenant_id: int
    provider: str
    sale_date: date
    previous_sale_date: Optional[date] = None
    created: bool = True


class SideEffectDispatcher:
    """
    Fans ledger writes out to the classification and aggregation hooks.

    Every write and delete is recorded in touched_dates regardless of the
    switch, so the batch pass knows which days a suppressed run affected.
    One dispatcher serves one sync run.
    """

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id
        self.touched_dates: Set[AggregateKey] = set()
        self.rows_classified = 0
        self.aggregates_recomputed = 0
        self._rules: Optional[List[CategorizationRule]] = None

    def row_written(self, db: Session, row: WrittenRow) -> None:
        self.touched_dates.add((row.provider, row.sale_date))
        if row.previous_sale_date and row.previous_sale_date != row.sale_date:
            self.touched_dates.add((row.provider, row.previous_sale_date))

        self.classification_hook(db, row.id)
        self.aggregation_hook(db, row.provider, row.sale_date)
        if row.previous_sale_date and row.previous_sale_date != row.sale_date:
            self.aggregation_hook(db, row.provider, row.previous_sale_date)

    def row_deleted(self, db: Session, provider: str, sale_date: date) -> None:
        self.touched_dates.add((provider, sale_date))
        self.aggregation_hook(db, provider, sale_date)

    def dates_changed(self, db: Session, keys: Set[AggregateKey]) -> None:
        """Rows moved or reshaped without a write of their own (split release)."""
        self.touched_dates.update(keys)
        for provider, day in keys:
            self.aggregation_hook(db, provider, day)

    def classification_hook(self, db: Session, sale_id: int) -> None:
        if side_effects_suppressed(db):
            return
        sale = db.get(CanonicalSaleRow, sale_id, populate_existing=True)
        if sale is None:
            return
        if self._rules is None:
            self._rules = classification_service.load_active_rules(db, self.tenant_id)
        if classification_service.classify_row(db, sale, self._rules):
            self.rows_classified += 1
            db.flush()

    def aggregation_hook(self, db: Session, provider: str, day: date) -> None:
        if side_effects_suppressed(db):
            return
        aggregation_service.recompute_daily_sales(db, self.tenant_id, day, provider)
        self.aggregates_recomputed += 1


@dataclass
class BatchPassResult:
    rows_classified: int = 0
    dates_aggregated: int = 0
    classification_skipped: bool = False

    def to_dict(self) -> Dict:
        return {
            "rows_classified": self.rows_classified,
            "dates_aggregated": self.dates_aggregated,
            "classification_skipped": self.classification_skipped,
        }


def run_batch_side_effects(
    db: Session,
    scope: SyncScope,
    touched_dates: Set[AggregateKey],
    classify: bool,
    max_rows: int,
    discover: bool = False,
) -> BatchPassResult:
    """
    Classification batch plus one recompute per affected day.

    Affected days are the ones the run touched. With discover set, every
    day the scope already has in the ledger or in daily_sales is added,
    which is how a catch-up repairs whatever an earlier failed pass
    missed. Any failure is raised as SideEffectError; the caller decides
    whether to roll back.
    """
    result = BatchPassResult(classification_skipped=not classify)

    try:
        if classify:
            result.rows_classified = classification_service.classify_batch(db, scope.tenant_id, max_rows)
        else:
            log.info(f"Background sync for tenant {scope.tenant_id}: classification deferred to scheduled job")
    except Exception as e:
        raise SideEffectError(f"Batch classification failed: {e}", scope.tenant_id, stage="classification") from e

    try:
        keys = set(touched_dates)
        if discover and scope.external_order_ids is None:
            keys |= aggregation_service.discover_aggregate_dates(
                db, scope.tenant_id, scope.provider, scope.start_date, scope.end_date
            )
        result.dates_aggregated = aggregation_service.recompute_dates(db, scope.tenant_id, keys)
    except Exception as e:
        raise SideEffectError(f"Batch aggregation failed: {e}", scope.tenant_id, stage="aggregation") from e

    return result
