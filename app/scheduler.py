"""
Scheduler for POS pulls and ledger maintenance

Uses APScheduler to run:
- incremental provider pulls (every few minutes): fetch, ingest, per-order sync
- bulk ledger resync per tenant (cron): sync_all with side effects batched
- classification catch-up (interval): rows background syncs left uncategorized

Jobs run the synchronous ledger service in a worker thread so the event
loop stays free for the API.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
import asyncio

from sqlalchemy.orm import Session

from app.config import get_settings
from app.connectors import get_connector_class
from app.connectors.base import BasePosConnector
from app.models.base import SessionLocal
from app.models.tenant import PosConnection, Tenant
from app.services.sales_sync_service import SalesSyncService
from app.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


def build_connector(connection: PosConnection) -> BasePosConnector:
    connector_class = get_connector_class(connection.provider)
    return connector_class(access_token=connection.access_token, account_id=connection.external_account_id)


def pull_windows(connection: PosConnection, now: datetime) -> List[Tuple[datetime, datetime]]:
    """
    UTC windows to fetch for a connection.

    The first pull backfills initial_sync_days in backfill_chunk_days chunks;
    later pulls re-read from the last pull minus a buffer so late edits are seen.
    """
    if not connection.initial_sync_done:
        windows = []
        start = now - timedelta(days=settings.initial_sync_days)
        while start < now:
            end = min(start + timedelta(days=settings.backfill_chunk_days), now)
            windows.append((start, end))
            start = end
        return windows

    if connection.last_sync_time:
        start = connection.last_sync_time - timedelta(hours=settings.incremental_buffer_hours)
    else:
        start = now - timedelta(hours=settings.incremental_window_hours)
    return [(start, now)]


async def pull_connection(
    connection_id: int,
    service: Optional[SalesSyncService] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    connector: Optional[BasePosConnector] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Fetch new orders for one provider connection and reconcile them.

    Initial backfill chunks go through sync_range (bulk); incremental pulls
    go through sync_orders so each changed order is classified and
    aggregated as it lands. Runs without a caller: background context.
    """
    service = service or SalesSyncService(session_factory=session_factory)
    now = now or datetime.utcnow()

    db = session_factory()
    try:
        connection = db.get(PosConnection, connection_id)
        if connection is None or not connection.is_active:
            return {'success': False, 'error': f'Connection {connection_id} not found or inactive'}

        tenant_id = connection.tenant_id
        provider = connection.provider
        initial = not connection.initial_sync_done
        windows = pull_windows(connection, now)
        connector = connector or build_connector(connection)

        fetched = 0
        rows_written = 0
        try:
            for start, end in windows:
                payloads = await connector.fetch_orders(start, end)
                fetched += len(payloads)
                if not payloads:
                    continue

                ingest = await asyncio.to_thread(service.ingest_orders, tenant_id, provider, payloads)
                if initial:
                    # service_date is the local business day; pad the UTC window by a day each side
                    rows_written += await asyncio.to_thread(
                        service.sync_range, tenant_id,
                        (start - timedelta(days=1)).date(), (end + timedelta(days=1)).date(),
                        None, provider,
                    )
                elif ingest.order_ids:
                    rows_written += await asyncio.to_thread(
                        service.sync_orders, tenant_id, provider, ingest.order_ids
                    )
        except Exception as e:
            connection.last_error = str(e)
            connection.last_error_at = datetime.utcnow()
            db.commit()
            raise

        connection.last_sync_time = now
        connection.initial_sync_done = True
        connection.last_error = None
        db.commit()

        log.info(
            f"{provider} pull for tenant {tenant_id}: {fetched} orders fetched, "
            f"{rows_written} ledger rows written ({'initial' if initial else 'incremental'})"
        )
        return {
            'success': True,
            'tenant_id': tenant_id,
            'provider': provider,
            'orders_fetched': fetched,
            'rows_written': rows_written,
            'initial': initial,
        }
    finally:
        db.close()


# Jobs

async def incremental_pull_job():
    """Pull every active connection (every incremental_sync_minutes)"""
    db = SessionLocal()
    try:
        connection_ids = [c.id for c in db.query(PosConnection.id).filter(PosConnection.is_active.is_(True)).all()]
    finally:
        db.close()

    for connection_id in connection_ids:
        try:
            await pull_connection(connection_id)
        except Exception as e:
            log.error(f"POS pull failed for connection {connection_id}: {str(e)}")


async def bulk_sync_job():
    """Full ledger resync for every tenant (cron)"""
    service = SalesSyncService()
    for tenant_id in _tenant_ids():
        try:
            rows = await asyncio.to_thread(service.sync_all, tenant_id)
            log.info(f"Bulk sync for tenant {tenant_id}: {rows} rows written")
        except Exception as e:
            log.error(f"Bulk sync error for tenant {tenant_id}: {str(e)}")


async def classification_job():
    """Classify rows left pending by background syncs"""
    service = SalesSyncService()
    for tenant_id in _tenant_ids():
        try:
            classified = await asyncio.to_thread(service.classify_pending, tenant_id)
            if classified:
                log.info(f"Classified {classified} pending rows for tenant {tenant_id}")
        except Exception as e:
            log.error(f"Classification job error for tenant {tenant_id}: {str(e)}")


def _tenant_ids() -> List[int]:
    db = SessionLocal()
    try:
        return [t.id for t in db.query(Tenant.id).order_by(Tenant.id).all()]
    finally:
        db.close()


JOBS = {
    'pos_pull': incremental_pull_job,
    'bulk_sync': bulk_sync_job,
    'classification': classification_job,
}


def setup_scheduler():
    """Configure all scheduled jobs"""

    # ── Provider pulls ───────────────────────────────────
    scheduler.add_job(
        incremental_pull_job,
        trigger=IntervalTrigger(minutes=settings.incremental_sync_minutes),
        id='pos_pull',
        name='POS Incremental Pull',
        replace_existing=True,
        max_instances=1
    )

    # ── Bulk ledger resync ───────────────────────────────
    scheduler.add_job(
        bulk_sync_job,
        trigger=CronTrigger.from_crontab(settings.bulk_sync_schedule),
        id='bulk_sync',
        name='Ledger Bulk Resync',
        replace_existing=True,
        max_instances=1
    )

    # ── Classification catch-up ──────────────────────────
    scheduler.add_job(
        classification_job,
        trigger=IntervalTrigger(minutes=settings.classification_job_minutes),
        id='classification',
        name='Pending Row Classification',
        replace_existing=True,
        max_instances=1
    )

    log.info("Scheduler configured with POS sync jobs")


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    scheduler.shutdown()
    log.info("Scheduler stopped")


def run_job_now(job_name: str) -> dict:
    """
    Manually run one job to completion

    Args:
        job_name: pos_pull, bulk_sync or classification

    Returns:
        Dict with success flag
    """
    if job_name not in JOBS:
        return {
            'success': False,
            'error': f'Unknown job: {job_name}. Valid options: {", ".join(JOBS.keys())}'
        }

    try:
        log.info(f"Manually triggering {job_name}...")
        asyncio.run(JOBS[job_name]())
        return {
            'success': True,
            'message': f'{job_name} completed'
        }

    except Exception as e:
        log.error(f"Error running {job_name}: {str(e)}")
        return {
            'success': False,
            'error': str(e)
        }


def get_scheduled_jobs() -> list:
    """List configured jobs with their next run time"""
    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


# CLI for manual runs

if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m app.scheduler <command> [job_name]")
        print("\nCommands:")
        print("  run <job>   Run a job once")
        print("  list        List all scheduled jobs")
        print("\nJobs:")
        print("  " + ", ".join(JOBS.keys()))
        sys.exit(1)

    command = sys.argv[1]

    if command == "run":
        if len(sys.argv) < 3:
            print("Error: Please specify a job name")
            sys.exit(1)

        result = run_job_now(sys.argv[2])

        if result['success']:
            print(f"✓ {result['message']}")
        else:
            print(f"✗ Error: {result['error']}")
            sys.exit(1)

    elif command == "list":
        setup_scheduler()
        print("\nScheduled Jobs:")
        print("-" * 80)

        for job in get_scheduled_jobs():
            print(f"\nID:       {job['id']}")
            print(f"Name:     {job['name']}")
            print(f"Next Run: {job['next_run']}")
            print(f"Trigger:  {job['trigger']}")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
