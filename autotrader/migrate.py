"""Schema migration: reads SQL files and runs them against ClickHouse."""

from __future__ import annotations

import logging
from pathlib import Path

from autotrader.store import ClickHouseTradeStore

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).parent / "schema"
SCHEMA_FILES = ["001_init.sql"]


def run_migration(store: ClickHouseTradeStore | None = None) -> None:
    """Execute all schema migrations against ClickHouse."""
    store = store or ClickHouseTradeStore()

    for schema_file in SCHEMA_FILES:
        schema_path = SCHEMA_DIR / schema_file
        if not schema_path.exists():
            logger.warning("migration_skip", extra={"file": schema_file, "reason": "not found"})
            continue

        sql = schema_path.read_text()
        store.run_migration(sql)
        logger.info("migration_applied", extra={"file": schema_file})


if __name__ == "__main__":
    from autotrader.config import setup_logging

    setup_logging()
    run_migration()
