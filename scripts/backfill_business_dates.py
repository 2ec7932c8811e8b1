#!/usr/bin/env python3
"""
Re-derive ledger sale dates from the providers' business-day field.

Orders synced before business dates were honoured were dated by the UTC
timestamp and can sit on the wrong day. This moves their ledger rows to the
provider's business day and re-aggregates both the old and the new dates.
Safe to re-run: a second pass finds nothing to move.

Usage:
    python scripts/backfill_business_dates.py --tenant 3 [--provider toast] [--dry-run]
    python scripts/backfill_business_dates.py --all-tenants
"""
import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.models.base import SessionLocal
from app.models.tenant import Tenant
from app.services.sales_sync_service import SalesSyncService


def parse_args():
    parser = argparse.ArgumentParser(description="Move ledger rows onto provider business dates")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--tenant", type=int, help="Tenant id")
    target.add_argument("--all-tenants", action="store_true")
    parser.add_argument("--provider", default=None)
    parser.add_argument("--dry-run", action="store_true", help="Report what would move without writing")
    return parser.parse_args()


def main():
    args = parse_args()

    if args.all_tenants:
        db = SessionLocal()
        try:
            tenant_ids = [t.id for t in db.query(Tenant.id).order_by(Tenant.id).all()]
        finally:
            db.close()
    else:
        tenant_ids = [args.tenant]

    service = SalesSyncService()
    mode = "DRY RUN" if args.dry_run else "LIVE"
    print(f"Business date backfill ({mode}) for {len(tenant_ids)} tenant(s)")

    for tenant_id in tenant_ids:
        result = service.rederive_business_dates(tenant_id, provider=args.provider, dry_run=args.dry_run)
        print(
            f"  Tenant {tenant_id}: {result.orders_scanned} orders scanned, "
            f"{result.orders_corrected} corrected, {result.rows_moved} ledger rows moved, "
            f"{result.dates_reaggregated} dates re-aggregated"
        )

    print("Done.")


if __name__ == "__main__":
    main()
