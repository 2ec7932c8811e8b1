#!/usr/bin/env python3
"""
Re-run classification and daily aggregation for a tenant.

Use after a sync reported side_effects_pending (its batch pass failed after
the ledger commit). Aggregates are recomputed from the ledger, so running
this more than once is harmless.

Usage:
    python scripts/catch_up_side_effects.py --tenant 3 [--start 2025-01-01 --end 2025-01-31]
    python scripts/catch_up_side_effects.py --pending
"""
import argparse
import sys
from datetime import date
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.models.base import SessionLocal
from app.models.sync_status import SalesSyncStatus
from app.services.sales_sync_service import SalesSyncService
from app.services.sync_tracking import ALL_PROVIDERS


def parse_args():
    parser = argparse.ArgumentParser(description="Catch up ledger side effects")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--tenant", type=int, help="Tenant id")
    target.add_argument("--pending", action="store_true",
                        help="Every tenant/provider whose last sync left side effects pending")
    parser.add_argument("--provider", default=None)
    parser.add_argument("--start", type=date.fromisoformat, default=None)
    parser.add_argument("--end", type=date.fromisoformat, default=None)
    return parser.parse_args()


def pending_targets():
    db = SessionLocal()
    try:
        rows = db.query(SalesSyncStatus).filter(SalesSyncStatus.side_effects_pending.is_(True)).all()
        return [(r.tenant_id, None if r.provider == ALL_PROVIDERS else r.provider) for r in rows]
    finally:
        db.close()


def main():
    args = parse_args()
    targets = pending_targets() if args.pending else [(args.tenant, args.provider)]

    if not targets:
        print("Nothing pending.")
        return

    service = SalesSyncService()
    for tenant_id, provider in targets:
        result = service.catch_up_side_effects(tenant_id, provider=provider, start_date=args.start, end_date=args.end)
        print(
            f"Tenant {tenant_id} ({provider or 'all providers'}): "
            f"{result.rows_classified} rows classified, {result.dates_aggregated} dates aggregated"
        )


if __name__ == "__main__":
    main()
