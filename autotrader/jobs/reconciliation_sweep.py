"""Job: reconciliation sweep.

Validates every open position against the broker every
RECONCILIATION_INTERVAL seconds, with at most RECONCILIATION_CONCURRENCY
broker queries in flight. Positions closed or resized outside this engine
are repaired by the reconciliation validator.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter

from autotrader.config import RECONCILIATION_CONCURRENCY
from autotrader.execution.reconciliation import ReconcileAction, ReconciliationValidator
from autotrader.models import Position
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)


async def run_reconciliation_sweep(
    store: TradeStore,
    validator: ReconciliationValidator,
    concurrency: int = RECONCILIATION_CONCURRENCY,
) -> dict[str, int]:
    """Reconcile all open positions. Returns a count per action."""
    positions = await store.list_positions(open_only=True)
    if not positions:
        return {}

    sem = asyncio.Semaphore(concurrency)
    counts: Counter[str] = Counter()

    async def _one(position: Position) -> None:
        async with sem:
            try:
                outcome = await validator.reconcile(position)
                counts[outcome.action.value] += 1
            except Exception:
                counts["error"] += 1
                logger.error(
                    "reconcile_position_error",
                    extra={"position_id": position.position_id},
                    exc_info=True,
                )

    await asyncio.gather(*(_one(p) for p in positions))

    drift = sum(
        counts[a.value] for a in (
            ReconcileAction.CLOSED_EXTERNAL,
            ReconcileAction.REDUCED_EXTERNAL,
            ReconcileAction.ADDED_EXTERNAL,
        )
    )
    log = logger.warning if drift or counts["error"] else logger.info
    log("reconciliation_sweep_complete", extra={"positions": len(positions), **counts})
    return dict(counts)
