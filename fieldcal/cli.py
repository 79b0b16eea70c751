"""CLI tools for calendar sync administration."""

import asyncio
import json

import click

from fieldcal.db.enums import SyncRunSource
from fieldcal.db.session import SessionLocal
from fieldcal.services import google_sync_service, hold_service, sync_health_service


@click.group()
def cli():
    """Field calendar CLI tools."""
    pass


@cli.command()
@click.option("--max-jobs", default=40, help="Max queued jobs to process (default: 40)")
@click.option("--max-accounts", default=20, help="Max due accounts to pull (default: 20)")
def sync_cycle(max_jobs: int, max_accounts: int):
    """
    Run one Google sync drain cycle now.

    Example:
        python -m fieldcal.cli sync-cycle --max-jobs 100
    """
    db = SessionLocal()
    try:
        result = asyncio.run(
            google_sync_service.run_sync_cycle(
                db,
                max_jobs=max_jobs,
                max_accounts=max_accounts,
                source=SyncRunSource.MANUAL,
            )
        )
        jobs = result["jobs"]
        accounts = result["accounts"]
        click.echo(f"✓ Sync run {result['run_id']} finished: {result['status']}")
        click.echo(
            f"  Jobs: {jobs['processed']} processed, {jobs['completed']} done, {jobs['failed']} failed"
        )
        click.echo(
            f"  Accounts: {accounts['processed']} pulled, {accounts['succeeded']} ok, {accounts['failed']} failed"
        )
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
    finally:
        db.close()


@cli.command()
@click.option("--limit", default=100, help="Max failed jobs to requeue (default: 100)")
def retry_failed(limit: int):
    """Requeue sync jobs in ERROR so the next cycle retries them."""
    db = SessionLocal()
    try:
        result = google_sync_service.retry_failed_jobs(db, limit=limit)
        click.echo(f"✓ Requeued {result['retried']} of {result['selected']} failed jobs")
    finally:
        db.close()


@cli.command()
@click.option("--stuck-minutes", default=30, help="Processing age that counts as stuck (default: 30)")
@click.option("--limit", default=100, help="Max jobs to release (default: 100)")
def clear_stuck(stuck_minutes: int, limit: int):
    """Release jobs left in PROCESSING by a crashed worker."""
    db = SessionLocal()
    try:
        result = google_sync_service.clear_stuck_jobs(
            db, stuck_minutes=stuck_minutes, limit=limit
        )
        click.echo(f"✓ Released {result['cleared']} of {result['selected']} stuck jobs")
    finally:
        db.close()


@cli.command()
@click.option("--window-hours", default=24, help="Reporting window in hours (default: 24)")
def health(window_hours: int):
    """Print the sync health snapshot as JSON."""
    db = SessionLocal()
    try:
        snapshot = sync_health_service.get_sync_health_snapshot(db, window_hours=window_hours)
        click.echo(json.dumps(snapshot, indent=2))
    finally:
        db.close()


@cli.command()
def check_alerts():
    """Evaluate sync alert thresholds and record an alert if one is breached."""
    db = SessionLocal()
    try:
        result = sync_health_service.evaluate_sync_alerts(db)
        raised = [name for name, flagged in result["flags"].items() if flagged]
        if not raised:
            click.echo("✓ No sync alerts")
            return
        click.echo(f"⚠ Raised: {', '.join(raised)}")
        if result["alert_emitted"]:
            click.echo("→ Alert recorded")
        else:
            click.echo("→ Alert already recorded within the dedupe window")
    finally:
        db.close()


@cli.command()
def expire_holds():
    """Mark active holds past their expiry as expired."""
    db = SessionLocal()
    try:
        expired = hold_service.expire_stale_holds(db)
        click.echo(f"✓ Expired {expired} holds")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
