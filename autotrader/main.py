"""Entry point for the autotrader."""

from __future__ import annotations

import asyncio
import logging

from autotrader.config import STORE_BACKEND, setup_logging
from autotrader.migrate import run_migration
from autotrader.scheduler import AutotraderScheduler

logger = logging.getLogger(__name__)


async def _main() -> None:
    setup_logging()
    logger.info("autotrader_starting")

    # Run schema migration before starting the scheduler
    if STORE_BACKEND == "clickhouse":
        try:
            await asyncio.to_thread(run_migration)
        except Exception:
            logger.error("migration_failed", exc_info=True)
            raise

    scheduler = AutotraderScheduler()
    await scheduler.start()


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
