"""
Background worker that drains the Google sync queue.

Usage:
    python -m fieldcal.worker

Each cycle processes due sync jobs, pulls due Google accounts and expires
stale holds. Run as a separate process alongside the API; the internal cron
endpoints perform the same work and are safe to run concurrently.
"""

import asyncio
import logging

from fieldcal.core.config import settings
from fieldcal.core.structured_logging import build_log_context
from fieldcal.db.enums import SyncRunSource
from fieldcal.db.session import SessionLocal
from fieldcal.services import google_sync_service, hold_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def run_once() -> None:
    """Run a single drain cycle in its own session."""
    with SessionLocal() as db:
        result = await google_sync_service.run_sync_cycle(
            db,
            max_jobs=settings.WORKER_MAX_JOBS,
            max_accounts=settings.WORKER_MAX_ACCOUNTS,
            source=SyncRunSource.WORKER,
        )
        jobs = result["jobs"]
        accounts = result["accounts"]
        if jobs["processed"] or accounts["processed"]:
            logger.info(
                "Sync run %s: jobs %d/%d ok, accounts %d/%d ok",
                result["run_id"],
                jobs["completed"],
                jobs["processed"],
                accounts["succeeded"],
                accounts["processed"],
            )

        expired = hold_service.expire_stale_holds(db)
        if expired:
            logger.info("Expired %d stale holds", expired)


async def worker_loop() -> None:
    """Main worker loop - runs a drain cycle every poll interval."""
    logger.info(
        "Worker starting (poll interval: %ss, max jobs: %s, max accounts: %s)",
        settings.WORKER_POLL_INTERVAL,
        settings.WORKER_MAX_JOBS,
        settings.WORKER_MAX_ACCOUNTS,
    )
    if not settings.FERNET_KEY:
        logger.warning("FERNET_KEY not set - Google tokens cannot be decrypted")

    while True:
        try:
            await run_once()
        except Exception as e:
            logger.error(
                "Error in worker loop: %s",
                type(e).__name__,
                extra=build_log_context(route="worker"),
            )

        await asyncio.sleep(settings.WORKER_POLL_INTERVAL)


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
