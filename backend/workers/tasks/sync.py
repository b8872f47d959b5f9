"""
Sync tasks for Celery workers.

These tasks run provider syncs on a schedule (hourly, every connection) or
on demand.  Each returns a plain dict with ``status`` in
completed | cancelled | failed | skipped.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and disposes any existing database connections
    to avoid 'Future attached to different loop' errors with asyncpg.
    """
    from models.database import dispose_engine

    # Dispose existing connections - they're tied to a previous (closed) event loop
    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _sync_integration(
    account_id: str, provider: str, orchestrator: Optional[Any] = None
) -> dict[str, Any]:
    """
    Internal async function to sync a single connection.

    Returns the run outcome and never raises, so one broken connection cannot
    stop a sweep over the others.
    """
    from connectors.errors import ErrorKind
    from services.integrations import IntegrationError, run_sync
    from services.sync_orchestrator import CredentialNotFoundError, SyncAlreadyRunningError

    base: dict[str, Any] = {"account_id": account_id, "provider": provider}
    try:
        logger.info("Starting sync for %s in account %s", provider, account_id)
        result = await run_sync(account_id, provider, orchestrator)
    except (IntegrationError, CredentialNotFoundError) as e:
        logger.warning("Cannot sync %s for account %s: %s", provider, account_id, e)
        return {**base, "status": "failed", "error": str(e), "error_kind": ErrorKind.FATAL.value}
    except SyncAlreadyRunningError as e:
        logger.info("Skipping %s for account %s: %s", provider, account_id, e)
        return {**base, "status": "skipped", "error": str(e)}
    except Exception as e:
        # Keep the sweep going for the other connections
        logger.exception("Sync crashed for %s in account %s", provider, account_id)
        return {**base, "status": "failed", "error": str(e), "error_kind": ErrorKind.FATAL.value}

    logger.info(
        "Finished sync for %s in account %s: %s",
        provider,
        account_id,
        result.status,
        extra={"records_synced": result.records_synced, "error_kind": result.error_kind},
    )
    return result.to_dict()


async def _get_all_connections() -> list[tuple[str, str]]:
    """Every stored (account_id, provider) pair that has a data adapter."""
    from connectors.registry import data_providers
    from services.credentials import CredentialStore

    syncable = set(data_providers())
    connections = await CredentialStore().list_connections()
    return [(account_id, provider) for account_id, provider in connections if provider in syncable]


@celery_app.task(bind=True, name="workers.tasks.sync.sync_integration")
def sync_integration(self: Any, account_id: str, provider: str) -> dict[str, Any]:
    """
    Celery task to sync a single connection.

    Args:
        account_id: Account that owns the connection
        provider: Provider name (e.g., 'hubspot', 'gmail')

    Returns:
        Dict with sync status, record count, and any error
    """
    logger.info("Task %s: Syncing %s for account %s", self.request.id, provider, account_id)
    return run_async(_sync_integration(account_id, provider))


async def _sync_all(connections: list[tuple[str, str]]) -> dict[str, Any]:
    started_at = datetime.utcnow()
    results: dict[str, dict[str, Any]] = {}
    total_synced = 0
    total_failed = 0

    for account_id, provider in connections:
        result = await _sync_integration(account_id, provider)
        results.setdefault(account_id, {})[provider] = result
        if result["status"] == "completed":
            total_synced += 1
        elif result["status"] == "failed":
            total_failed += 1

    logger.info(
        "Hourly sync complete: %d succeeded, %d failed",
        total_synced,
        total_failed,
    )
    return {
        "total_accounts": len(results),
        "total_connections_synced": total_synced,
        "total_connections_failed": total_failed,
        "started_at": started_at.isoformat(),
        "results": results,
    }


@celery_app.task(bind=True, name="workers.tasks.sync.sync_all_connections")
def sync_all_connections(self: Any) -> dict[str, Any]:
    """
    Celery task to sync every stored connection.

    This is the hourly sync task that runs via Beat schedule.
    """
    logger.info("Task %s: Starting hourly sync for all connections", self.request.id)

    async def _run() -> dict[str, Any]:
        return await _sync_all(await _get_all_connections())

    return run_async(_run())
