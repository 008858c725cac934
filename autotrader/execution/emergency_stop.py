"""Emergency stop controller: global and per-bot trading halt.

The gate is a plain in-process flag read by every submission, so a stop
takes effect for the next order attempt without any cache to invalidate.
Activation also cancels every PENDING execution in scope and asks the
broker to cancel SUBMITTED ones that already carry an order id. Anything
the broker would not cancel is left for the reconciliation sweep.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, Field

from autotrader.config import BROKER_QUERY_TIMEOUT
from autotrader.errors import InvalidTransitionError
from autotrader.execution.gateway import BrokerGateway
from autotrader.models import ExecutionStatus, TradeExecution
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)

CANCEL_REASON = "emergency stop activated"


class StopReport(BaseModel):
    """What an activation did to in-flight executions."""

    scope: str
    cancelled: list[str] = Field(default_factory=list, description="PENDING rows cancelled.")
    broker_cancelled: list[str] = Field(default_factory=list, description="SUBMITTED rows cancelled at the broker.")
    unresolved: list[str] = Field(default_factory=list, description="SUBMITTED rows left for reconciliation.")


class EmergencyStopController:
    """Holds the stop gates and applies them to the execution ledger.

    Attributes:
        global_stop: Halts every bot when True.
        stopped_bots: Bots halted individually.
    """

    def __init__(self, store: TradeStore, gateway: BrokerGateway) -> None:
        self.store = store
        self.gateway = gateway
        self.global_stop = False
        self.stopped_bots: set[str] = set()

    async def load(self) -> None:
        """Restore gates persisted by a previous process."""
        self.global_stop, self.stopped_bots = await self.store.load_stop_state()
        if self.global_stop or self.stopped_bots:
            logger.warning(
                "emergency_stop_restored",
                extra={"global": self.global_stop, "bots": sorted(self.stopped_bots)},
            )

    def is_stopped(self, bot_id: Optional[str] = None) -> bool:
        return self.global_stop or (bot_id is not None and bot_id in self.stopped_bots)

    async def activate(self, bot_id: Optional[str] = None, reason: str = "") -> StopReport:
        """Close the gate for `bot_id` (or everything) and cancel in-flight work."""
        # Gate first: any attempt that checks after this line is blocked
        if bot_id is None:
            self.global_stop = True
        else:
            self.stopped_bots.add(bot_id)
        scope = bot_id or "global"
        logger.warning("emergency_stop_activated", extra={"scope": scope, "reason": reason})

        await self.store.save_stop_state(self.global_stop, self.stopped_bots)

        report = StopReport(scope=scope)
        pending = await self.store.list_executions(
            bot_id=bot_id, status=ExecutionStatus.PENDING, limit=10_000,
        )
        for ex in pending:
            if await self._cancel_row(ex):
                report.cancelled.append(ex.execution_id)

        submitted = await self.store.list_executions(
            bot_id=bot_id, status=ExecutionStatus.SUBMITTED, limit=10_000,
        )
        for ex in submitted:
            if not ex.broker_order_id:
                report.unresolved.append(ex.execution_id)
                continue
            if await self._cancel_at_broker(ex) and await self._cancel_row(ex):
                report.broker_cancelled.append(ex.execution_id)
            else:
                report.unresolved.append(ex.execution_id)

        logger.info(
            "emergency_stop_applied",
            extra={
                "scope": scope,
                "cancelled": len(report.cancelled),
                "broker_cancelled": len(report.broker_cancelled),
                "unresolved": len(report.unresolved),
            },
        )
        return report

    async def clear(self, bot_id: Optional[str] = None) -> None:
        """Reopen the gate. Cancelled executions stay cancelled."""
        if bot_id is None:
            self.global_stop = False
        else:
            self.stopped_bots.discard(bot_id)
        await self.store.save_stop_state(self.global_stop, self.stopped_bots)
        logger.info("emergency_stop_cleared", extra={"scope": bot_id or "global"})

    def status(self) -> dict:
        return {"global": self.global_stop, "bots": sorted(self.stopped_bots)}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _cancel_row(self, ex: TradeExecution) -> bool:
        try:
            ex.transition(ExecutionStatus.CANCELLED, is_emergency_exit=True, error=CANCEL_REASON)
            await self.store.update_execution(ex)
        except InvalidTransitionError:
            # Reached a terminal state between the listing and this write
            logger.info("emergency_cancel_skipped", extra={"execution_id": ex.execution_id})
            return False
        return True

    async def _cancel_at_broker(self, ex: TradeExecution) -> bool:
        try:
            ok = await asyncio.wait_for(
                self.gateway.cancel_order(ex.user_id, ex.broker_order_id),
                timeout=BROKER_QUERY_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.warning("broker_cancel_timeout", extra={"execution_id": ex.execution_id})
            return False
        if not ok:
            logger.warning(
                "broker_cancel_refused",
                extra={"execution_id": ex.execution_id, "order_id": ex.broker_order_id},
            )
        return ok
