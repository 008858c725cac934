"""Job: intraday auto-square-off.

Every SQUARE_OFF_POLL_INTERVAL seconds during market hours:

1. Query the store for open intraday positions with an exit time and no
   square-off in progress (nothing is cached between ticks, so a restart
   loses nothing)
2. A position is due once today's exchange-local time has reached its exit
   time, so a tick that runs late still fires
3. Claim each due position atomically, optionally reconcile it with the
   broker, and exit it through the orchestrator
4. On failure, release the claim so a later tick retries, up to
   SQUARE_OFF_MAX_ATTEMPTS. An exit the broker accepted but has not filled
   keeps the claim; the order monitor releases it if the order dies
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from autotrader.config import SQUARE_OFF_MAX_ATTEMPTS, SQUARE_OFF_PRE_VALIDATE
from autotrader.execution.emergency_stop import EmergencyStopController
from autotrader.execution.orchestrator import TradeOrchestrator
from autotrader.execution.reconciliation import ReconciliationValidator
from autotrader.market_hours import MARKET_TZ, is_market_open, market_now, parse_hhmm
from autotrader.models import ExecutionStatus, ExitReason, Position, TradeExecution
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)


class AutoSquareOffScheduler:
    """Closes intraday positions at their bot's exit time."""

    def __init__(
        self,
        store: TradeStore,
        stop: EmergencyStopController,
        orchestrator: Optional[TradeOrchestrator] = None,
        validator: Optional[ReconciliationValidator] = None,
        pre_validate: bool = SQUARE_OFF_PRE_VALIDATE,
        max_attempts: int = SQUARE_OFF_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = market_now,
        market_hours_only: bool = True,
    ) -> None:
        self.store = store
        self.stop = stop
        self.orchestrator = orchestrator
        self.validator = validator
        self.pre_validate = pre_validate
        self.max_attempts = max_attempts
        self.clock = clock
        self.market_hours_only = market_hours_only

    # Called by the position lifecycle manager. The store is the source of
    # truth, so these only record intent in the log.

    def register(self, position: Position) -> None:
        logger.info(
            "square_off_registered",
            extra={
                "position_id": position.position_id,
                "exit_time": position.scheduled_exit_time,
            },
        )

    def deregister(self, position: Position) -> None:
        logger.info("square_off_deregistered", extra={"position_id": position.position_id})

    @staticmethod
    def is_due(position: Position, now: datetime) -> bool:
        if not position.scheduled_exit_time:
            return False
        try:
            exit_at = parse_hhmm(position.scheduled_exit_time)
        except ValueError:
            logger.warning(
                "square_off_bad_exit_time",
                extra={
                    "position_id": position.position_id,
                    "exit_time": position.scheduled_exit_time,
                },
            )
            return False
        return now.astimezone(MARKET_TZ).time() >= exit_at

    async def run_tick(self, now: Optional[datetime] = None) -> list[TradeExecution]:
        """One poll. Returns the exits that executed."""
        if self.orchestrator is None:
            raise RuntimeError("square-off scheduler has no orchestrator")
        now = now or self.clock()
        if self.market_hours_only and not is_market_open(now):
            return []

        candidates = await self.store.list_square_off_candidates()
        due = [p for p in candidates if self.is_due(p, now)]
        if not due:
            return []

        logger.info("square_off_due", extra={"positions": len(due), "candidates": len(candidates)})
        results = await asyncio.gather(*(self._square_off(p) for p in due))
        return [ex for ex in results if ex is not None]

    async def _square_off(self, position: Position) -> Optional[TradeExecution]:
        if self.stop.is_stopped(position.bot_id):
            logger.info(
                "square_off_skipped_stopped",
                extra={"position_id": position.position_id, "bot_id": position.bot_id},
            )
            return None

        claimed = await self.store.claim_square_off(position.position_id)
        if claimed is None:
            return None

        try:
            if self.pre_validate and self.validator is not None:
                outcome = await self.validator.reconcile(claimed)
                if outcome.position is None or not outcome.position.is_open:
                    logger.info(
                        "square_off_closed_by_reconciliation",
                        extra={"position_id": claimed.position_id, "action": outcome.action.value},
                    )
                    return None
                claimed = outcome.position

            execution = await self.orchestrator.execute_exit(claimed, ExitReason.AUTO_SQUARE_OFF)
            if execution is None:
                return None
            if execution.status == ExecutionStatus.SUBMITTED:
                # Claim stays held until the order monitor settles the order
                logger.info(
                    "square_off_working",
                    extra={"position_id": claimed.position_id, "execution_id": execution.execution_id},
                )
                return None
            if execution.status == ExecutionStatus.EXECUTED:
                logger.info(
                    "square_off_executed",
                    extra={
                        "position_id": claimed.position_id,
                        "execution_id": execution.execution_id,
                        "attempt": claimed.square_off_attempts,
                    },
                )
                return execution
            logger.warning(
                "square_off_failed",
                extra={
                    "position_id": claimed.position_id,
                    "status": execution.status.value,
                    "error": execution.error,
                    "attempt": claimed.square_off_attempts,
                },
            )
        except Exception:
            logger.error(
                "square_off_error",
                extra={"position_id": claimed.position_id},
                exc_info=True,
            )

        await self.release(claimed)
        return None

    async def release(self, claimed: Position) -> None:
        """Let a later tick retry `claimed`, unless it has used up its attempts."""
        if claimed.square_off_attempts >= self.max_attempts:
            logger.error(
                "square_off_gave_up",
                extra={"position_id": claimed.position_id, "attempts": claimed.square_off_attempts},
            )
            return
        await self.store.release_square_off(claimed.position_id)
