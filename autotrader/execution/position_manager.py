"""Position lifecycle manager: opens, grows, shrinks and closes positions.

A position moves through OPEN -> PARTIAL* -> CLOSED and is never deleted.
All quantity and P&L arithmetic lives here; the orchestrator and the
reconciliation validator only hand in executed ledger rows.

Concurrency: callers take `lock(key)` for the position slot, re-read the
position under it, then call apply_*. Every write also carries the version
that was read, so a stale copy fails with ConcurrentModificationError even
if a caller forgets the lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Optional

from autotrader.errors import PositionStateError
from autotrader.models import (
    Bot,
    ExecutionStatus,
    ExitExecution,
    ExitReason,
    Position,
    PositionSide,
    PositionStatus,
    TradeExecution,
    TransactionType,
    utcnow,
)
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)


def position_key(user_id: str, bot_id: str, symbol: str, exchange: str) -> str:
    """Lock key for the single open position a user may hold per bot instrument.

    Option positions are keyed by their underlying, so a NIFTY call and the
    NIFTY signal that opened it share one slot.
    """
    return f"{user_id}:{bot_id}:{exchange}:{symbol}"


class PositionLifecycleManager:
    """Applies executed fills to positions.

    Attributes:
        store: Persistence for positions.
        scheduler: Optional square-off scheduler notified when intraday
            positions open and close. Anything with register/deregister.
    """

    def __init__(self, store: TradeStore, scheduler: Any = None) -> None:
        self.store = store
        self.scheduler = scheduler
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, key: str) -> asyncio.Lock:
        return self._locks[key]

    def lock_for(self, position: Position) -> asyncio.Lock:
        return self._locks[position_key(
            position.user_id, position.bot_id, position.slot_symbol, position.exchange,
        )]

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def apply_entry(
        self,
        execution: TradeExecution,
        bot: Bot,
        stop_loss: Optional[float] = None,
        target: Optional[float] = None,
    ) -> Position:
        """Open a position from an executed entry, or grow the open one.

        Args:
            execution: EXECUTED entry row. Its position_id is set here.
            bot: The bot the entry belongs to (intraday and pyramiding rules).
            stop_loss: Optional protective level carried from the signal.
            target: Optional profit level carried from the signal.

        Returns:
            The stored position.

        Raises:
            PositionStateError: the execution is not a fill, or a position
                is already open and the bot does not allow adding to it.
        """
        if execution.status != ExecutionStatus.EXECUTED:
            raise PositionStateError(
                f"{execution.execution_id}: entry must be EXECUTED, is {execution.status.value}"
            )
        qty = execution.executed_quantity or execution.quantity
        price = execution.executed_price
        if qty <= 0 or price is None:
            raise PositionStateError(f"{execution.execution_id}: missing fill quantity or price")

        side = PositionSide.LONG if execution.transaction_type == TransactionType.BUY else PositionSide.SHORT
        existing = await self.store.find_open_position(
            execution.user_id, execution.bot_id, execution.slot_symbol, execution.exchange,
        )

        if existing is not None:
            return await self._grow(existing, execution, bot, side, qty, price)

        is_intraday = bot.is_intraday and bot.auto_square_off
        position = Position(
            user_id=execution.user_id,
            bot_id=execution.bot_id,
            allocation_id=execution.allocation_id,
            symbol=execution.symbol,
            exchange=execution.exchange,
            instrument_type=execution.instrument_type,
            underlying=execution.underlying,
            option_type=execution.option_type,
            product=execution.product,
            side=side,
            entry_execution_id=execution.execution_id,
            entry_signal_id=execution.signal_id,
            entry_price=price,
            entry_quantity=qty,
            entry_time=execution.executed_at or utcnow(),
            entry_order_id=execution.broker_order_id or "",
            current_quantity=qty,
            average_price=price,
            is_intraday=is_intraday,
            scheduled_exit_time=bot.intraday_exit_time if is_intraday else None,
            stop_loss=stop_loss,
            target=target,
            total_fees=execution.fees or 0.0,
        )
        position.check_invariants()
        await self.store.insert_position(position)
        execution.position_id = position.position_id

        logger.info(
            "position_opened",
            extra={
                "position_id": position.position_id,
                "user_id": position.user_id,
                "bot_id": position.bot_id,
                "symbol": position.symbol,
                "side": side.value,
                "quantity": qty,
                "price": price,
                "intraday": is_intraday,
            },
        )
        if is_intraday and self.scheduler is not None:
            self.scheduler.register(position)
        return position

    async def _grow(
        self,
        position: Position,
        execution: TradeExecution,
        bot: Bot,
        side: PositionSide,
        qty: int,
        price: float,
    ) -> Position:
        if position.side != side:
            raise PositionStateError(
                f"{position.position_id}: open {position.side.value}, entry is {side.value}"
            )
        if not bot.allow_multiple_positions:
            raise PositionStateError(f"{position.position_id}: position already open")

        held = position.current_quantity
        position.average_price = (position.average_price * held + price * qty) / (held + qty)
        position.entry_quantity += qty
        position.current_quantity += qty
        position.total_fees += execution.fees or 0.0
        position.status = position.derive_status()
        position.check_invariants()

        saved = await self.store.update_position(position, expected_version=position.version)
        execution.position_id = saved.position_id
        logger.info(
            "position_increased",
            extra={
                "position_id": saved.position_id,
                "added": qty,
                "quantity": saved.current_quantity,
                "average_price": saved.average_price,
            },
        )
        return saved

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    async def apply_exit(
        self,
        execution: TradeExecution,
        position: Position,
        reason: ExitReason,
    ) -> Position:
        """Shrink or close `position` by an executed exit.

        Realized P&L for the exit is (exit price - average price) x quantity,
        negated for shorts. The exit quantity is never clamped: exiting more
        than is held is an error.
        """
        if not position.is_open:
            raise PositionStateError(f"{position.position_id}: position is CLOSED")
        if execution.status != ExecutionStatus.EXECUTED:
            raise PositionStateError(
                f"{execution.execution_id}: exit must be EXECUTED, is {execution.status.value}"
            )
        qty = execution.executed_quantity or execution.quantity
        price = execution.executed_price
        if price is None:
            raise PositionStateError(f"{execution.execution_id}: missing fill price")
        if qty <= 0 or qty > position.current_quantity:
            raise PositionStateError(
                f"{position.position_id}: exit quantity {qty} exceeds open {position.current_quantity}"
            )

        pnl = (price - position.average_price) * qty * position.sign
        position.exit_executions.append(ExitExecution(
            execution_id=execution.execution_id,
            signal_id=execution.signal_id,
            quantity=qty,
            price=price,
            time=execution.executed_at or utcnow(),
            order_id=execution.broker_order_id or "",
            reason=reason,
            pnl=pnl,
            fees=execution.fees or 0.0,
        ))
        position.current_quantity -= qty
        position.realized_pnl += pnl
        if execution.fees:
            position.total_fees += execution.fees
        position.status = position.derive_status()

        if position.status == PositionStatus.CLOSED:
            position.closed_at = utcnow()
            position.exit_reason = reason
            position.unrealized_pnl = 0.0
            if reason == ExitReason.EMERGENCY:
                position.emergency_square_off = True
        position.check_invariants()

        saved = await self.store.update_position(position, expected_version=position.version)
        execution.position_id = saved.position_id
        execution.pnl = pnl

        logger.info(
            "position_closed" if saved.status == PositionStatus.CLOSED else "position_reduced",
            extra={
                "position_id": saved.position_id,
                "user_id": saved.user_id,
                "reason": reason.value,
                "quantity": qty,
                "remaining": saved.current_quantity,
                "price": price,
                "pnl": pnl,
                "realized_pnl": saved.realized_pnl,
            },
        )
        if saved.status == PositionStatus.CLOSED and saved.is_intraday and self.scheduler is not None:
            self.scheduler.deregister(saved)
        return saved

    # ------------------------------------------------------------------
    # Out-of-band adjustments
    # ------------------------------------------------------------------

    async def apply_external_add(
        self,
        position: Position,
        quantity: int,
        price: float,
        note: str,
    ) -> Position:
        """Grow a position by quantity the broker shows but we never ordered."""
        if not position.is_open:
            raise PositionStateError(f"{position.position_id}: position is CLOSED")
        if quantity <= 0:
            raise PositionStateError(f"{position.position_id}: external add must be positive")

        held = position.current_quantity
        position.average_price = (position.average_price * held + price * quantity) / (held + quantity)
        position.entry_quantity += quantity
        position.current_quantity += quantity
        position.status = position.derive_status()
        position.reconciliation_note = note
        position.check_invariants()
        return await self.store.update_position(position, expected_version=position.version)

    async def mark_to_market(self, position: Position, price: float) -> Position:
        position.mark_to_market(price)
        return await self.store.update_position(position, expected_version=position.version)

    async def save(self, position: Position) -> Position:
        """Persist non-quantity changes (notes, P&L copies) with a version check."""
        position.check_invariants()
        return await self.store.update_position(position, expected_version=position.version)
