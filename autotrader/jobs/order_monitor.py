"""Job: settle orders the broker accepted but had not filled.

Submission waits only briefly for a fill; an order still OPEN (or in any
non-terminal broker state) stays SUBMITTED in the ledger. Every
ORDER_MONITOR_INTERVAL seconds this job asks the broker for each SUBMITTED
row's order status, at most ORDER_MONITOR_CONCURRENCY queries in flight:

- COMPLETE: the row becomes EXECUTED and the fill is applied to the position
- REJECTED / CANCELLED: the row becomes FAILED / CANCELLED. A dead
  square-off exit releases its claim so the next poll retries
- Anything else: left for the next poll
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Optional

from autotrader.config import BROKER_QUERY_TIMEOUT, ORDER_MONITOR_CONCURRENCY
from autotrader.execution.gateway import BrokerGateway, OrderAck
from autotrader.execution.orchestrator import TradeOrchestrator
from autotrader.jobs.square_off import AutoSquareOffScheduler
from autotrader.models import ExecutionStatus, ExitReason, TradeExecution
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)


async def run_order_monitor(
    store: TradeStore,
    gateway: BrokerGateway,
    orchestrator: TradeOrchestrator,
    square_off: Optional[AutoSquareOffScheduler] = None,
    concurrency: int = ORDER_MONITOR_CONCURRENCY,
    query_timeout: float = BROKER_QUERY_TIMEOUT,
) -> dict[str, int]:
    """Poll every working order once. Returns a count per outcome."""
    working = await store.list_executions(status=ExecutionStatus.SUBMITTED, limit=100_000)
    if not working:
        return {}

    sem = asyncio.Semaphore(concurrency)
    counts: Counter[str] = Counter()

    async def _one(execution: TradeExecution) -> None:
        if not execution.broker_order_id:
            counts["no_order_id"] += 1
            logger.warning("working_order_without_id", extra={"execution_id": execution.execution_id})
            return
        async with sem:
            try:
                state = await asyncio.wait_for(
                    gateway.get_order(execution.user_id, execution.broker_order_id),
                    timeout=query_timeout,
                )
            except asyncio.TimeoutError:
                counts["query_failed"] += 1
                logger.warning("order_status_timeout", extra={"execution_id": execution.execution_id})
                return

        if not isinstance(state, OrderAck):
            counts["query_failed"] += 1
            logger.warning(
                "order_status_unavailable",
                extra={"execution_id": execution.execution_id, "error": state.message},
            )
            return

        try:
            if state.is_filled:
                done = await orchestrator.complete_order(execution, state)
                counts["executed" if done else "skipped"] += 1
            elif state.is_dead:
                done = await orchestrator.close_order(execution, state)
                counts["closed" if done else "skipped"] += 1
                if done is not None:
                    await _release_square_off(store, square_off, done)
            else:
                counts["working"] += 1
        except Exception:
            counts["error"] += 1
            logger.error(
                "order_monitor_error",
                extra={"execution_id": execution.execution_id},
                exc_info=True,
            )

    await asyncio.gather(*(_one(ex) for ex in working))

    log = logger.warning if counts["error"] or counts["closed"] else logger.info
    log("order_monitor_complete", extra={"orders": len(working), **counts})
    return dict(counts)


async def _release_square_off(
    store: TradeStore,
    square_off: Optional[AutoSquareOffScheduler],
    execution: TradeExecution,
) -> None:
    if square_off is None or execution.exit_reason != ExitReason.AUTO_SQUARE_OFF:
        return
    if not execution.position_id:
        return
    position = await store.get_position(execution.position_id)
    if position is not None and position.is_open:
        await square_off.release(position)
