"""
Idempotent ledger upsert

Drafts are written with one multi-row INSERT ... ON CONFLICT per batch,
targeting the partial unique index on the canonical key (parent_sale_id
IS NULL). Conflicting rows are updated only when a mapped column actually
differs, and RETURNING reports exactly the rows inserted or changed, so a
re-sync of unchanged data writes nothing.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.exceptions import SalesLedgerError
from app.models.sales_ledger import CanonicalSaleRow
from app.services.ledger_transform import LedgerKey, SaleDraft
from app.services.side_effects import SideEffectDispatcher, WrittenRow
from app.utils.logger import log

KEY_COLUMNS = ("tenant_id", "provider", "external_order_id", "external_item_id")

# Columns an upsert compares; a conflict with no difference is a no-op
COMPARED_COLUMNS = (
    "item_name",
    "quantity",
    "unit_price",
    "total_price",
    "sale_date",
    "sale_time",
    "pos_category",
    "item_type",
    "adjustment_type",
)

# Classification columns are deliberately absent
UPDATED_COLUMNS = COMPARED_COLUMNS + ("raw_data", "synced_at", "updated_at")

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class WriteResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    written: List[WrittenRow] = field(default_factory=list)

    @property
    def rows_written(self) -> int:
        return self.created + self.updated


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    try:
        return _INSERT_BY_DIALECT[dialect]
    except KeyError:
        raise SalesLedgerError(f"Ledger upsert is not supported on the {dialect} dialect")


def build_upsert(db: Session, rows: List[Dict]):
    """INSERT ... ON CONFLICT (key) WHERE parent_sale_id IS NULL DO UPDATE ... WHERE changed"""
    table = CanonicalSaleRow.__table__
    stmt = _dialect_insert(db)(table).values(rows)
    excluded = stmt.excluded

    return stmt.on_conflict_do_update(
        index_elements=[table.c[name] for name in KEY_COLUMNS],
        index_where=table.c.parent_sale_id.is_(None),
        set_={name: excluded[name] for name in UPDATED_COLUMNS},
        where=or_(*[table.c[name].is_distinct_from(excluded[name]) for name in COMPARED_COLUMNS]),
    ).returning(
        table.c.id,
        table.c.provider,
        table.c.external_order_id,
        table.c.external_item_id,
        table.c.sale_date,
    )


def _existing_rows(db: Session, tenant_id: int, drafts: List[SaleDraft]) -> Dict[LedgerKey, Tuple[int, date]]:
    """Current (id, sale_date) of canonical rows for the batch's orders."""
    order_ids = sorted({d.external_order_id for d in drafts})
    rows = db.query(
        CanonicalSaleRow.id,
        CanonicalSaleRow.provider,
        CanonicalSaleRow.external_order_id,
        CanonicalSaleRow.external_item_id,
        CanonicalSaleRow.sale_date,
    ).filter(
        CanonicalSaleRow.tenant_id == tenant_id,
        CanonicalSaleRow.parent_sale_id.is_(None),
        CanonicalSaleRow.external_order_id.in_(order_ids),
    ).all()
    return {
        (tenant_id, r.provider, r.external_order_id, r.external_item_id): (r.id, r.sale_date)
        for r in rows
    }


def upsert_drafts(
    db: Session,
    drafts: Dict[LedgerKey, SaleDraft],
    dispatcher: Optional[SideEffectDispatcher] = None,
    batch_size: int = 500,
    checkpoint: Optional[Callable[[str], None]] = None,
) -> WriteResult:
    """
    Write drafts in batches and report what changed.

    Drafts must all belong to one tenant. checkpoint is called between
    batches so the caller can enforce its time budget.
    """
    result = WriteResult()
    if not drafts:
        return result

    ordered = sorted(drafts.values(), key=lambda d: d.key)
    tenant_id = ordered[0].tenant_id
    now = datetime.utcnow()

    for start in range(0, len(ordered), batch_size):
        batch = ordered[start:start + batch_size]
        existing = _existing_rows(db, tenant_id, batch)

        returned = db.execute(build_upsert(db, [d.to_row(now) for d in batch])).all()

        for row in returned:
            key = (tenant_id, row.provider, row.external_order_id, row.external_item_id)
            previous = existing.get(key)
            written = WrittenRow(
                id=row.id,
                tenant_id=tenant_id,
                provider=row.provider,
                sale_date=row.sale_date,
                previous_sale_date=previous[1] if previous else None,
                created=previous is None,
            )
            if written.created:
                result.created += 1
            else:
                result.updated += 1
            result.written.append(written)
            if dispatcher:
                dispatcher.row_written(db, written)

        result.unchanged += len(batch) - len(returned)

        if checkpoint:
            checkpoint(f"ledger upsert batch {start // batch_size + 1}")

    log.info(
        f"Ledger upsert for tenant {tenant_id}: {result.created} created, "
        f"{result.updated} updated, {result.unchanged} unchanged"
    )
    return result
