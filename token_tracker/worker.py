"""Background worker process: periodic transfer + balance syncs.

Can run alongside the web process against the same API key and database;
the shared rate gate keeps their combined explorer traffic within budget.

Usage:
    python -m token_tracker.worker
"""

import asyncio
import logging

from token_tracker.config import settings
from token_tracker.errors import ConfigError
from token_tracker.storage.database import init_db
from token_tracker.sync.runner import run_balance_sync, run_transfer_sync
from token_tracker.sync.state import balance_sync_state, transfer_sync_state
from token_tracker.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def sync_tick() -> None:
    if not await run_transfer_sync():
        logger.info("Transfer sync already running in this process, skipping")
    elif transfer_sync_state.error:
        logger.warning("Transfer sync ended with error: %s", transfer_sync_state.error)

    if not await run_balance_sync():
        logger.info("Balance sync already running in this process, skipping")
    elif balance_sync_state.error:
        logger.warning("Balance sync ended with error: %s", balance_sync_state.error)


async def sync_loop(interval: int | None = None) -> None:
    """Run a sync tick every ``interval`` seconds until cancelled."""
    interval = interval or settings.worker_interval_seconds
    logger.info("Sync loop started (interval=%ds)", interval)

    while True:
        try:
            await sync_tick()
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Sync loop error")

        await asyncio.sleep(interval)


async def main() -> None:
    setup_logging()
    if not settings.upstream_api_key:
        raise ConfigError("UPSTREAM_API_KEY is required to run the sync worker")

    await init_db()
    logger.info(
        "Worker starting (rps=%d, page_size=%d, network=%s)",
        settings.upstream_rps, settings.page_size, settings.network_tag,
    )
    await sync_loop()


if __name__ == "__main__":
    asyncio.run(main())
