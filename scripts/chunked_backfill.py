#!/usr/bin/env python3
"""
Chunked ledger backfill: resyncs a long date range in small windows so each
run stays inside the sync time budget.

Usage:
    python scripts/chunked_backfill.py --tenant 3 --start 2025-01-01 --end 2025-06-30
    python scripts/chunked_backfill.py --tenant 3 --days 90 --chunk-days 7 --provider toast

Each chunk is one sync_range call (bulk mode). Timeouts and lock
contention are retried with backoff; a chunk that still fails is reported
and the backfill moves on, so re-running the script fills the gaps.
"""
import argparse
import sys
from datetime import date, datetime, timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytz

from app.config import get_settings
from app.exceptions import SalesLedgerError
from app.services.sales_sync_service import SalesSyncService
from app.services.sync_scope import date_chunks
from app.utils.retry import retry_sync

settings = get_settings()
LOCAL_TZ = pytz.timezone(settings.default_timezone)


def print_header(text):
    print(f"\n{'='*70}")
    print(f"  {text}")
    print('='*70)


def print_status(msg):
    timestamp = datetime.now(LOCAL_TZ).strftime('%Y-%m-%d %H:%M:%S')
    print(f"[{timestamp}] {msg}")


def parse_args():
    parser = argparse.ArgumentParser(description="Resync the sales ledger in date chunks")
    parser.add_argument("--tenant", type=int, required=True, help="Tenant id")
    parser.add_argument("--provider", default=None, help="Limit to one provider (toast, square)")
    parser.add_argument("--start", type=date.fromisoformat, help="First service date (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="Last service date (YYYY-MM-DD), default today")
    parser.add_argument("--days", type=int, default=settings.initial_sync_days,
                        help="Days back from --end when --start is omitted")
    parser.add_argument("--chunk-days", type=int, default=settings.backfill_chunk_days)
    parser.add_argument("--user", default=None,
                        help="Run as this user (classification runs inline); default is background")
    return parser.parse_args()


def main():
    args = parse_args()
    end = args.end or datetime.now(LOCAL_TZ).date()
    start = args.start or end - timedelta(days=args.days - 1)
    chunks = date_chunks(start, end, args.chunk_days)

    print_header(f"Ledger backfill: tenant {args.tenant}, {start} to {end} ({len(chunks)} chunks)")

    service = SalesSyncService()

    @retry_sync(max_attempts=3, base_delay=5.0)
    def sync_chunk(chunk_start, chunk_end):
        return service.sync_range(args.tenant, chunk_start, chunk_end, caller=args.user, provider=args.provider)

    total_rows = 0
    failed = []
    for i, (chunk_start, chunk_end) in enumerate(chunks, 1):
        print_status(f"Chunk {i}/{len(chunks)}: {chunk_start} to {chunk_end}")
        try:
            rows = sync_chunk(chunk_start, chunk_end)
            total_rows += rows
            print_status(f"  ✅ {rows:,} rows written")
        except SalesLedgerError as e:
            failed.append((chunk_start, chunk_end))
            print_status(f"  ❌ Failed: {e}")

    print_header("Backfill complete")
    print(f"  Rows written: {total_rows:,}")
    print(f"  Failed chunks: {len(failed)}")
    for chunk_start, chunk_end in failed:
        print(f"    {chunk_start} to {chunk_end}")

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
