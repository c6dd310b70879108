import asyncio
import logging

import uvicorn

from token_tracker.config import settings
from token_tracker.delivery.web.app import create_app
from token_tracker.storage.database import init_db
from token_tracker.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def main() -> None:
    setup_logging()
    logger.info("Starting Token Tracker")

    await init_db()
    logger.info("Database initialized")

    app = create_app()
    config = uvicorn.Config(
        app,
        host=settings.web_host,
        port=settings.web_port,
        log_level="info",
    )
    server = uvicorn.Server(config)

    tasks = [server.serve()]
    if settings.background_sync and settings.upstream_api_key:
        from token_tracker.worker import sync_loop

        tasks.append(sync_loop())
        logger.info(
            "Background sync enabled (every %ds)", settings.worker_interval_seconds
        )
    else:
        logger.info("Background sync disabled; run `python -m token_tracker.worker` or use the API")

    await asyncio.gather(*tasks)


if __name__ == "__main__":
    asyncio.run(main())
