"""Reconciliation validator: compares local positions with the broker.

Positions can change outside this engine (manual exits in the broker
terminal, RMS square-offs, partial fills the broker reports late). The
validator asks the broker what it actually holds and brings the local
position in line:

- missing at the broker: closed with a synthetic EXTERNAL exit
- smaller at the broker: reduced by a synthetic EXTERNAL partial exit
- larger at the broker: grown by the difference and flagged

A failed broker query counts as "not found", so an unreachable broker
during reconciliation closes the position locally.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from autotrader.config import BROKER_QUERY_TIMEOUT
from autotrader.execution.gateway import (
    BrokerGateway,
    BrokerPosition,
    PermanentBrokerError,
    PositionNotFound,
    TransientBrokerError,
)
from autotrader.execution.position_manager import PositionLifecycleManager
from autotrader.models import (
    ExecutionStatus,
    ExitReason,
    OrderType,
    Position,
    PositionSide,
    TradeExecution,
    TradeType,
    TransactionType,
    utcnow,
)
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)

EXTERNAL_ORDER_ID = "EXTERNAL"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    """Broker-side view of one local position."""

    position_id: str
    exists_at_broker: bool = False
    live_quantity: int = Field(default=0, description="Held quantity in the position's direction.")
    live_price: Optional[float] = None
    live_pnl: Optional[float] = None
    validation_error: Optional[str] = None
    validated_at: datetime = Field(default_factory=utcnow)


class ReconcileAction(str, Enum):
    NONE = "none"
    CLOSED_EXTERNAL = "closed_external"
    REDUCED_EXTERNAL = "reduced_external"
    ADDED_EXTERNAL = "added_external"
    SKIPPED = "skipped"


class ReconcileOutcome(BaseModel):
    action: ReconcileAction
    validation: Optional[ValidationResult] = None
    position: Optional[Position] = None


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class ReconciliationValidator:
    """Checks positions against the broker and repairs drift."""

    def __init__(
        self,
        store: TradeStore,
        gateway: BrokerGateway,
        positions: PositionLifecycleManager,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.positions = positions

    async def validate(self, position: Position) -> ValidationResult:
        """Ask the broker whether `position` still exists and at what size."""
        result = ValidationResult(position_id=position.position_id)
        try:
            live = await asyncio.wait_for(
                self.gateway.get_position(position.user_id, position.symbol, position.exchange),
                timeout=BROKER_QUERY_TIMEOUT,
            )
        except asyncio.TimeoutError:
            result.validation_error = "broker position query timed out"
            logger.warning(
                "position_validation_failed",
                extra={"position_id": position.position_id, "error": result.validation_error},
            )
            return result

        if isinstance(live, (TransientBrokerError, PermanentBrokerError)):
            result.validation_error = live.message
            logger.warning(
                "position_validation_failed",
                extra={"position_id": position.position_id, "error": live.message},
            )
            return result
        if isinstance(live, PositionNotFound):
            return result

        if not isinstance(live, BrokerPosition):
            result.validation_error = f"unexpected broker result {type(live).__name__}"
            logger.warning(
                "position_validation_failed",
                extra={"position_id": position.position_id, "error": result.validation_error},
            )
            return result

        directional = live.quantity * position.sign
        if directional > 0:
            result.exists_at_broker = True
            result.live_quantity = directional
        result.live_price = live.last_price
        result.live_pnl = live.pnl
        return result

    async def reconcile(self, position: Position) -> ReconcileOutcome:
        """Validate and repair one position under its slot lock."""
        async with self.positions.lock_for(position):
            current = await self.store.get_position(position.position_id)
            if current is None or not current.is_open:
                return ReconcileOutcome(action=ReconcileAction.SKIPPED, position=current)

            validation = await self.validate(current)

            if not validation.exists_at_broker:
                price = validation.live_price or current.average_price
                closed = await self._external_exit(
                    current, current.current_quantity, price,
                    note="position not found at broker",
                )
                logger.warning(
                    "position_closed_externally",
                    extra={
                        "position_id": closed.position_id,
                        "user_id": closed.user_id,
                        "symbol": closed.symbol,
                        "price": price,
                        "validation_error": validation.validation_error,
                    },
                )
                return ReconcileOutcome(
                    action=ReconcileAction.CLOSED_EXTERNAL, validation=validation, position=closed,
                )

            action = ReconcileAction.NONE
            local = current.current_quantity
            live = validation.live_quantity
            if live != local:
                price = validation.live_price or current.average_price
                note = f"broker quantity {live} != local {local}"
                logger.warning(
                    "position_quantity_mismatch",
                    extra={
                        "position_id": current.position_id,
                        "local_quantity": local,
                        "live_quantity": live,
                    },
                )
                if live < local:
                    current = await self._external_exit(current, local - live, price, note=note)
                    action = ReconcileAction.REDUCED_EXTERNAL
                else:
                    current = await self.positions.apply_external_add(current, live - local, price, note)
                    action = ReconcileAction.ADDED_EXTERNAL

            if validation.live_pnl is not None and current.is_open:
                current.unrealized_pnl = validation.live_pnl
                current = await self.positions.save(current)

            return ReconcileOutcome(action=action, validation=validation, position=current)

    async def _external_exit(
        self,
        position: Position,
        quantity: int,
        price: float,
        note: str,
    ) -> Position:
        # Ledger row for a fill that happened outside this engine; no order is sent
        full = quantity == position.current_quantity
        now = utcnow()
        execution = TradeExecution(
            user_id=position.user_id,
            bot_id=position.bot_id,
            allocation_id=position.allocation_id,
            symbol=position.symbol,
            exchange=position.exchange,
            instrument_type=position.instrument_type,
            product=position.product,
            quantity=quantity,
            order_type=OrderType.EXIT,
            transaction_type=(
                TransactionType.SELL if position.side == PositionSide.LONG else TransactionType.BUY
            ),
            broker_order_id=EXTERNAL_ORDER_ID,
            requested_price=price,
            executed_price=price,
            executed_quantity=quantity,
            status=ExecutionStatus.EXECUTED,
            trade_type=TradeType.EXIT if full else TradeType.PARTIAL_EXIT,
            exit_reason=ExitReason.EXTERNAL,
            position_id=position.position_id,
            submitted_at=now,
            executed_at=now,
        )
        await self.store.insert_execution(execution)

        position.reconciliation_note = note
        saved = await self.positions.apply_exit(execution, position, ExitReason.EXTERNAL)
        await self.store.update_execution(execution)
        return saved
