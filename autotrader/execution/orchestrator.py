"""Trade execution orchestrator: fans one signal out to every subscriber.

For each active allocation of the signal's bot a task runs concurrently:

1. Idempotency: a (signal, user) that already has a ledger row is skipped.
   The check is repeated under the position lock so two concurrent runs of
   one signal still produce a single row per user
2. Eligibility: emergency stop, daily trade limit, trading window, broker
   connection, no order still working on the slot. A failed check is
   recorded as a FAILED row, never submitted
3. Intent: open, grow or exit the user's position for the instrument.
   Options bots pick and size a contract on the signal's underlying
4. Submit with retry on transient broker errors only
5. Apply the fill through the position lifecycle manager. An order the
   broker accepted but has not filled stays SUBMITTED; the order monitor
   job applies or closes it later through complete_order / close_order

Signal counters are written once, after every task resolves or the fan-out
ceiling elapses, and are derived from the ledger rather than from task
results so a re-run reports the same numbers. Late fills refresh them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from autotrader.config import (
    BROKER_ORDER_TIMEOUT,
    BROKER_QUERY_TIMEOUT,
    DEFAULT_PRODUCT,
    FANOUT_TIMEOUT,
)
from autotrader.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    PositionStateError,
    SignalValidationError,
)
from autotrader.execution.charges import DEFAULT_SCHEDULE, ChargeSchedule
from autotrader.execution.emergency_stop import EmergencyStopController
from autotrader.execution.gateway import (
    BrokerGateway,
    OrderAck,
    OrderRejected,
    OrderRequest,
    PermanentBrokerError,
    SubmitResult,
    TransientBrokerError,
)
from autotrader.execution.options import OptionSelector
from autotrader.execution.position_manager import PositionLifecycleManager, position_key
from autotrader.execution.retry import RetryPolicy
from autotrader.execution.sizing import compute_quantity
from autotrader.market_hours import local_day_start, market_now, within
from autotrader.models import (
    Bot,
    ExecutionStatus,
    ExitReason,
    OptionType,
    OrderType,
    Position,
    PositionSide,
    SignalAction,
    TradeExecution,
    TradeType,
    TransactionType,
    UserBotAllocation,
    WebhookSignal,
    utcnow,
)
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)

EMERGENCY_STOP_REASON = "emergency stop active"
TIMEOUT_REASON = "execution timed out"
WORKING_ORDER_REASON = "previous order still working"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class OrderIntent(BaseModel):
    """What one signal means for one user's current position."""

    trade_type: TradeType
    order_type: OrderType
    transaction_type: TransactionType
    symbol: str
    exchange: str
    quantity: int = 0
    price: Optional[float] = None
    position: Optional[Position] = None
    side: PositionSide = PositionSide.LONG
    underlying: Optional[str] = None
    option_type: Optional[OptionType] = None
    needs_contract: bool = False
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TradeOrchestrator:
    """Runs signals and system exits through the broker and the position book.

    Attributes:
        retry_policy: Decides which broker errors are retried and the backoff.
        fanout_timeout: Ceiling for one signal's fan-out, in seconds.
        clock: Returns the current aware datetime; injectable for tests.
        charges: Rate schedule for the fees attached to each fill.
    """

    def __init__(
        self,
        store: TradeStore,
        gateway: BrokerGateway,
        positions: PositionLifecycleManager,
        stop: EmergencyStopController,
        retry_policy: Optional[RetryPolicy] = None,
        fanout_timeout: float = FANOUT_TIMEOUT,
        order_timeout: float = BROKER_ORDER_TIMEOUT,
        query_timeout: float = BROKER_QUERY_TIMEOUT,
        clock: Callable[[], datetime] = market_now,
        sleep: Callable[[float], object] = asyncio.sleep,
        charges: ChargeSchedule = DEFAULT_SCHEDULE,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.positions = positions
        self.stop = stop
        self.retry_policy = retry_policy or RetryPolicy()
        self.fanout_timeout = fanout_timeout
        self.order_timeout = order_timeout
        self.query_timeout = query_timeout
        self.clock = clock
        self._sleep = sleep
        self.charges = charges
        self.options = OptionSelector(gateway, query_timeout=query_timeout)

    # ------------------------------------------------------------------
    # Signal fan-out
    # ------------------------------------------------------------------

    async def process_signal(
        self,
        signal: WebhookSignal,
        allocations: Optional[list[UserBotAllocation]] = None,
    ) -> WebhookSignal:
        """Execute `signal` for every allocation and write its counters.

        Args:
            signal: A recorded signal.
            allocations: Subscribers to target; defaults to the bot's active
                allocations from the store.

        Returns:
            The signal with counters and processed flag set.
        """
        if signal.processed:
            logger.info("signal_already_processed", extra={"signal_id": signal.signal_id})
            return signal

        bot = await self.store.get_bot(signal.bot_id)
        if bot is None:
            raise SignalValidationError(f"unknown bot {signal.bot_id}", status=404)

        if signal.emergency_stop and not self.stop.is_stopped(bot.bot_id):
            await self.stop.activate(bot.bot_id, reason=f"signal {signal.signal_id}")

        if allocations is None:
            allocations = await self.store.list_allocations(bot.bot_id)
        allocations = _one_per_user(allocations)

        logger.info(
            "signal_fanout_start",
            extra={
                "signal_id": signal.signal_id,
                "bot_id": bot.bot_id,
                "action": signal.action.value,
                "users": len(allocations),
            },
        )

        health = await self._connection_health([a.user_id for a in allocations])
        tasks = {
            asyncio.create_task(
                self._execute_for_user(signal, bot, alloc, health.get(alloc.user_id, False)),
                name=f"exec-{signal.signal_id}-{alloc.user_id}",
            ): alloc
            for alloc in allocations
        }

        timed_out: list[UserBotAllocation] = []
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self.fanout_timeout)
            for task in pending:
                task.cancel()
                timed_out.append(tasks[task])
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "user_execution_error",
                        extra={"signal_id": signal.signal_id, "user_id": tasks[task].user_id},
                        exc_info=task.exception(),
                    )

        for alloc in timed_out:
            await self._fail_timed_out(signal, alloc)

        return await self._finalize(signal, allocations)

    async def _finalize(
        self,
        signal: WebhookSignal,
        allocations: list[UserBotAllocation],
    ) -> WebhookSignal:
        signal.total_users_targeted = len(allocations)
        await self._count_outcomes(signal, {a.user_id for a in allocations})
        signal.processed = True
        signal.processed_at = utcnow()
        await self.store.update_signal(signal)

        logger.info(
            "signal_processed",
            extra={
                "signal_id": signal.signal_id,
                "total": signal.total_users_targeted,
                "successful": signal.successful_executions,
                "failed": signal.failed_executions,
            },
        )
        return signal

    async def refresh_signal_counters(self, signal_id: str) -> Optional[WebhookSignal]:
        """Recount a processed signal after one of its orders filled or died late."""
        signal = await self.store.get_signal(signal_id)
        if signal is None or not signal.processed:
            return signal
        await self._count_outcomes(signal)
        await self.store.update_signal(signal)
        logger.info(
            "signal_counters_refreshed",
            extra={
                "signal_id": signal_id,
                "successful": signal.successful_executions,
                "failed": signal.failed_executions,
            },
        )
        return signal

    async def _count_outcomes(self, signal: WebhookSignal, targeted: Optional[set[str]] = None) -> None:
        rows = await self.store.list_executions(signal_id=signal.signal_id, limit=100_000)
        executed_users = {ex.user_id for ex in rows if ex.status == ExecutionStatus.EXECUTED}
        if targeted is not None:
            executed_users &= targeted
        signal.successful_executions = min(len(executed_users), signal.total_users_targeted)
        signal.failed_executions = signal.total_users_targeted - signal.successful_executions

    async def _fail_timed_out(self, signal: WebhookSignal, alloc: UserBotAllocation) -> None:
        ex = await self.store.find_execution(signal.signal_id, alloc.user_id)
        if ex is None:
            ex = self._new_execution(
                bot_id=signal.bot_id, user_id=alloc.user_id, symbol=signal.symbol,
                exchange=signal.exchange, signal=signal, allocation=alloc,
                order_type=OrderType.BUY, transaction_type=TransactionType.BUY,
                quantity=0, trade_type=TradeType.ENTRY,
            )
            ex.status = ExecutionStatus.FAILED
            ex.error = TIMEOUT_REASON
            await self.store.insert_execution(ex)
        elif ex.status == ExecutionStatus.PENDING:
            try:
                ex.transition(ExecutionStatus.FAILED, error=TIMEOUT_REASON)
                await self.store.update_execution(ex)
            except InvalidTransitionError:
                logger.info("timeout_fail_skipped", extra={"execution_id": ex.execution_id})
                return
        elif ex.status == ExecutionStatus.SUBMITTED:
            # Accepted by the broker; the order monitor settles it
            logger.info("timeout_order_working", extra={"execution_id": ex.execution_id})
            return
        logger.warning(
            "user_execution_timeout",
            extra={"signal_id": signal.signal_id, "user_id": alloc.user_id},
        )

    async def _connection_health(self, user_ids: list[str]) -> dict[str, bool]:
        if not user_ids:
            return {}
        try:
            return await asyncio.wait_for(
                self.gateway.connection_health(user_ids), timeout=self.query_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("connection_health_timeout", extra={"users": len(user_ids)})
            return {uid: False for uid in user_ids}

    # ------------------------------------------------------------------
    # Per-user execution
    # ------------------------------------------------------------------

    async def _execute_for_user(
        self,
        signal: WebhookSignal,
        bot: Bot,
        alloc: UserBotAllocation,
        connected: bool,
    ) -> Optional[TradeExecution]:
        existing = await self.store.find_execution(signal.signal_id, alloc.user_id)
        if existing is not None:
            return _already_recorded(existing)

        exchange = bot.option_rules.exchange if bot.is_options else signal.exchange
        key = position_key(alloc.user_id, bot.bot_id, signal.symbol, exchange)
        async with self.positions.lock(key):
            # A concurrent run of the same signal may have written the row while we waited
            existing = await self.store.find_execution(signal.signal_id, alloc.user_id)
            if existing is not None:
                return _already_recorded(existing)

            intent = await self._resolve_intent(signal, bot, alloc, exchange)
            reason = await self._ineligible_reason(bot, alloc, intent, connected)
            if reason is None and intent.needs_contract:
                reason = await self._attach_contract(intent, signal, bot, alloc)

            execution = self._new_execution(
                bot_id=bot.bot_id, user_id=alloc.user_id, symbol=intent.symbol,
                exchange=intent.exchange, signal=signal, allocation=alloc,
                order_type=intent.order_type, transaction_type=intent.transaction_type,
                quantity=intent.quantity, trade_type=intent.trade_type,
                product=bot.product,
                instrument_type=bot.instrument_type if bot.is_options else signal.instrument_type,
            )
            execution.requested_price = intent.price
            execution.underlying = intent.underlying
            execution.option_type = intent.option_type
            if intent.position is not None:
                execution.position_id = intent.position.position_id
                execution.exit_reason = ExitReason.SIGNAL

            if reason is not None:
                return await self._record_failed(execution, reason)

            await self.store.insert_execution(execution)
            return await self._submit_and_apply(
                execution, bot, intent.position, ExitReason.SIGNAL,
                reference_price=intent.price,
                stop_loss=signal.stop_loss,
                target=signal.target,
            )

    async def _resolve_intent(
        self,
        signal: WebhookSignal,
        bot: Bot,
        alloc: UserBotAllocation,
        exchange: str,
    ) -> OrderIntent:
        open_pos = await self.store.find_open_position(
            alloc.user_id, bot.bot_id, signal.symbol, exchange,
        )
        intent = self._classify(signal, bot, alloc, open_pos, exchange)
        if intent.error is None and await self._has_working_order(
            alloc.user_id, bot.bot_id, signal.symbol,
        ):
            intent.error = WORKING_ORDER_REASON
        return intent

    def _classify(
        self,
        signal: WebhookSignal,
        bot: Bot,
        alloc: UserBotAllocation,
        open_pos: Optional[Position],
        exchange: str,
    ) -> OrderIntent:
        action = signal.action
        wanted = PositionSide.SHORT if action == SignalAction.SHORT else PositionSide.LONG

        exits = action in (SignalAction.SELL, SignalAction.EXIT)
        if open_pos is not None and not exits:
            exits = wanted != open_pos.direction

        if exits:
            if open_pos is None:
                return OrderIntent(
                    trade_type=TradeType.EXIT, order_type=OrderType.EXIT,
                    transaction_type=TransactionType.SELL,
                    symbol=signal.symbol, exchange=exchange,
                    error="no open position to exit",
                )
            intent = self._exit_intent(open_pos, signal.quantity)
            # An option's premium is unrelated to the underlying's price
            intent.price = None if open_pos.option_type else signal.price
            return intent

        if bot.is_options:
            # Bearish views are expressed by buying puts, so the order is always a BUY
            intent = OrderIntent(
                trade_type=TradeType.ENTRY, order_type=OrderType.BUY,
                transaction_type=TransactionType.BUY,
                symbol=signal.symbol, exchange=exchange,
                side=wanted, needs_contract=True,
            )
            if open_pos is not None:
                intent.error = "position already open"
            return intent

        txn = TransactionType.SELL if wanted == PositionSide.SHORT else TransactionType.BUY
        order_type = OrderType.SELL if wanted == PositionSide.SHORT else OrderType.BUY
        intent = OrderIntent(
            trade_type=TradeType.ENTRY, order_type=order_type, transaction_type=txn,
            symbol=signal.symbol, exchange=exchange, side=wanted, price=signal.price,
            quantity=compute_quantity(alloc, bot, signal.price),
        )
        if wanted == PositionSide.SHORT and not bot.allow_short:
            intent.error = "short selling not enabled for bot"
        elif open_pos is not None and not bot.allow_multiple_positions:
            intent.error = "position already open"
        elif intent.quantity <= 0:
            intent.error = "allocation too small for one lot"
        return intent

    @staticmethod
    def _exit_intent(position: Position, quantity: Optional[int]) -> OrderIntent:
        txn = TransactionType.SELL if position.side == PositionSide.LONG else TransactionType.BUY
        qty = quantity if quantity is not None else position.current_quantity
        intent = OrderIntent(
            trade_type=TradeType.PARTIAL_EXIT if qty < position.current_quantity else TradeType.EXIT,
            order_type=OrderType.EXIT,
            transaction_type=txn,
            symbol=position.symbol,
            exchange=position.exchange,
            quantity=qty,
            position=position,
            side=position.side,
            underlying=position.underlying,
            option_type=position.option_type,
        )
        if qty <= 0:
            intent.error = "exit quantity must be positive"
        elif qty > position.current_quantity:
            intent.error = (
                f"exit quantity {qty} exceeds open quantity {position.current_quantity}"
            )
        return intent

    async def _attach_contract(
        self,
        intent: OrderIntent,
        signal: WebhookSignal,
        bot: Bot,
        alloc: UserBotAllocation,
    ) -> Optional[str]:
        selection = await self.options.select(
            alloc.user_id, bot, alloc, signal.symbol, signal.price, intent.side,
            self.clock().date(),
        )
        if selection.error or selection.contract is None:
            return selection.error or "no option contract selected"
        contract = selection.contract
        intent.symbol = contract.symbol
        intent.underlying = signal.symbol
        intent.option_type = contract.option_type
        intent.price = contract.premium
        intent.quantity = selection.quantity
        return None

    async def _has_working_order(self, user_id: str, bot_id: str, slot_symbol: str) -> bool:
        working = await self.store.list_executions(
            user_id=user_id, bot_id=bot_id, status=ExecutionStatus.SUBMITTED,
        )
        return any(ex.slot_symbol == slot_symbol for ex in working)

    async def _ineligible_reason(
        self,
        bot: Bot,
        alloc: UserBotAllocation,
        intent: OrderIntent,
        connected: bool,
    ) -> Optional[str]:
        if self.stop.is_stopped(bot.bot_id):
            return EMERGENCY_STOP_REASON
        if intent.error:
            return intent.error
        if intent.trade_type == TradeType.ENTRY:
            now = self.clock()
            if alloc.max_trades_per_day > 0:
                taken = await self.store.count_user_trades_since(
                    alloc.user_id, bot.bot_id, local_day_start(now),
                )
                if taken >= alloc.max_trades_per_day:
                    return "daily trade limit reached"
            if not within(now, alloc.enabled_hours.start, alloc.enabled_hours.end):
                return "outside trading hours"
        if not connected:
            return "broker not connected"
        return None

    # ------------------------------------------------------------------
    # System exits
    # ------------------------------------------------------------------

    async def execute_exit(
        self,
        position: Position,
        reason: ExitReason,
        signal_id: Optional[str] = None,
        quantity: Optional[int] = None,
    ) -> Optional[TradeExecution]:
        """Exit `position` outside a signal fan-out (square-off, emergency, manual).

        Returns the exit's ledger row, or None if the position was already
        closed when the lock was acquired or an order on it is still working.
        """
        async with self.positions.lock_for(position):
            current = await self.store.get_position(position.position_id)
            if current is None or not current.is_open:
                logger.info("exit_skipped_closed", extra={"position_id": position.position_id})
                return None
            if await self._has_working_order(current.user_id, current.bot_id, current.slot_symbol):
                logger.info(
                    "exit_skipped_working",
                    extra={"position_id": current.position_id, "reason": reason.value},
                )
                return None

            bot = await self.store.get_bot(current.bot_id)
            if bot is None:
                raise PositionStateError(f"{current.position_id}: bot {current.bot_id} not found")

            intent = self._exit_intent(current, quantity)
            execution = self._new_execution(
                bot_id=current.bot_id, user_id=current.user_id, symbol=intent.symbol,
                exchange=intent.exchange, signal=None, allocation=None,
                order_type=intent.order_type, transaction_type=intent.transaction_type,
                quantity=intent.quantity, trade_type=intent.trade_type,
                product=current.product, instrument_type=current.instrument_type,
            )
            execution.signal_id = signal_id
            execution.allocation_id = current.allocation_id
            execution.position_id = current.position_id
            execution.underlying = current.underlying
            execution.option_type = current.option_type
            execution.exit_reason = reason
            execution.is_emergency_exit = reason == ExitReason.EMERGENCY

            if intent.error:
                return await self._record_failed(execution, intent.error)
            if reason != ExitReason.EMERGENCY and self.stop.is_stopped(current.bot_id):
                return await self._record_failed(execution, EMERGENCY_STOP_REASON)

            await self.store.insert_execution(execution)
            return await self._submit_and_apply(execution, bot, current, reason)

    async def emergency_square_off(self, bot_id: str) -> list[TradeExecution]:
        """Exit every open position of `bot_id` now, ignoring the stop gate."""
        open_positions = await self.store.list_positions(bot_id=bot_id, open_only=True)
        logger.warning(
            "emergency_square_off_start",
            extra={"bot_id": bot_id, "positions": len(open_positions)},
        )
        results = await asyncio.gather(
            *(self.execute_exit(p, ExitReason.EMERGENCY) for p in open_positions),
            return_exceptions=True,
        )
        executions: list[TradeExecution] = []
        for pos, res in zip(open_positions, results):
            if isinstance(res, BaseException):
                logger.error(
                    "emergency_exit_error",
                    extra={"position_id": pos.position_id},
                    exc_info=res,
                )
            elif res is not None:
                executions.append(res)
        return executions

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def _submit_and_apply(
        self,
        execution: TradeExecution,
        bot: Bot,
        position: Optional[Position],
        reason: ExitReason,
        reference_price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        target: Optional[float] = None,
    ) -> TradeExecution:
        request = OrderRequest(
            symbol=execution.symbol,
            exchange=execution.exchange,
            transaction_type=execution.transaction_type,
            quantity=execution.quantity,
            product=execution.product,
            price=reference_price,
            tag=execution.execution_id[:20],
        )
        bypass_stop = reason == ExitReason.EMERGENCY and execution.trade_type != TradeType.ENTRY
        ack = await self._submit_with_retry(execution, request, bypass_stop)
        if ack is None:
            return execution

        try:
            execution.transition(ExecutionStatus.SUBMITTED, broker_order_id=ack.order_id)
            await self.store.update_execution(execution)
        except InvalidTransitionError:
            # Cancelled by an emergency stop while the order was in flight
            logger.warning(
                "order_acked_after_cancel",
                extra={"execution_id": execution.execution_id, "order_id": ack.order_id},
            )
            try:
                await asyncio.wait_for(
                    self.gateway.cancel_order(execution.user_id, ack.order_id),
                    timeout=self.query_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("broker_cancel_timeout", extra={"order_id": ack.order_id})
            return await self.store.get_execution(execution.execution_id) or execution

        if ack.is_dead:
            await self._settle_dead(execution, ack)
            return execution
        if not ack.is_filled:
            logger.info(
                "order_working",
                extra={
                    "execution_id": execution.execution_id,
                    "user_id": execution.user_id,
                    "order_id": ack.order_id,
                    "status": ack.status,
                },
            )
            return execution

        fallback = request.price
        if fallback is None and position is not None:
            fallback = position.average_price
        await self._apply_fill(execution, ack, bot, position, reason, fallback, stop_loss, target)
        return execution

    async def _apply_fill(
        self,
        execution: TradeExecution,
        ack: OrderAck,
        bot: Bot,
        position: Optional[Position],
        reason: ExitReason,
        fallback_price: Optional[float],
        stop_loss: Optional[float] = None,
        target: Optional[float] = None,
    ) -> None:
        fill_price = ack.average_price or fallback_price
        quantity = ack.filled_quantity or execution.quantity
        fees = self.charges.compute(execution.transaction_type, quantity, fill_price or 0.0).total
        execution.transition(
            ExecutionStatus.EXECUTED,
            executed_price=fill_price,
            executed_quantity=quantity,
            fees=fees,
        )
        await self.store.update_execution(execution)
        logger.info(
            "order_executed",
            extra={
                "execution_id": execution.execution_id,
                "user_id": execution.user_id,
                "order_id": ack.order_id,
                "trade_type": execution.trade_type.value,
                "quantity": quantity,
                "price": fill_price,
                "fees": fees,
                "retries": execution.retry_count,
            },
        )

        try:
            if execution.trade_type == TradeType.ENTRY:
                await self.positions.apply_entry(execution, bot, stop_loss=stop_loss, target=target)
            elif position is None:
                raise PositionStateError(
                    f"{execution.execution_id}: position {execution.position_id} not found"
                )
            else:
                await self.positions.apply_exit(execution, position, reason)
        except (PositionStateError, ConcurrentModificationError) as e:
            execution.error = f"position update failed: {e}"
            logger.error(
                "position_update_failed",
                extra={"execution_id": execution.execution_id, "error": str(e)},
                exc_info=True,
            )
        await self.store.update_execution(execution)

    async def _settle_dead(self, execution: TradeExecution, ack: OrderAck) -> None:
        status = ExecutionStatus.CANCELLED if ack.status == "CANCELLED" else ExecutionStatus.FAILED
        detail = ack.message or ack.status.lower()
        execution.transition(status, error=f"order {ack.status.lower()}: {detail}")
        await self.store.update_execution(execution)
        logger.warning(
            "order_closed",
            extra={
                "execution_id": execution.execution_id,
                "user_id": execution.user_id,
                "order_id": ack.order_id,
                "status": status.value,
                "error": execution.error,
            },
        )

    # ------------------------------------------------------------------
    # Late fills
    # ------------------------------------------------------------------

    def _slot_lock(self, execution: TradeExecution) -> asyncio.Lock:
        return self.positions.lock(position_key(
            execution.user_id, execution.bot_id, execution.slot_symbol, execution.exchange,
        ))

    async def complete_order(self, execution: TradeExecution, ack: OrderAck) -> Optional[TradeExecution]:
        """Apply a fill reported after submission returned.

        Returns the EXECUTED row, or None if the row is no longer SUBMITTED.
        """
        async with self._slot_lock(execution):
            current = await self.store.get_execution(execution.execution_id)
            if current is None or current.status != ExecutionStatus.SUBMITTED:
                return None
            bot = await self.store.get_bot(current.bot_id)
            if bot is None:
                raise PositionStateError(f"{current.execution_id}: bot {current.bot_id} not found")

            position = None
            if current.trade_type != TradeType.ENTRY and current.position_id:
                position = await self.store.get_position(current.position_id)
            signal = await self.store.get_signal(current.signal_id) if current.signal_id else None

            fallback = current.requested_price
            if fallback is None and position is not None:
                fallback = position.average_price
            await self._apply_fill(
                current, ack, bot, position,
                current.exit_reason or ExitReason.SIGNAL,
                fallback,
                stop_loss=signal.stop_loss if signal else None,
                target=signal.target if signal else None,
            )

        if current.signal_id:
            await self.refresh_signal_counters(current.signal_id)
        return current

    async def close_order(self, execution: TradeExecution, ack: OrderAck) -> Optional[TradeExecution]:
        """Record a working order the broker rejected or cancelled.

        Returns the closed row, or None if the row is no longer SUBMITTED.
        """
        async with self._slot_lock(execution):
            current = await self.store.get_execution(execution.execution_id)
            if current is None or current.status != ExecutionStatus.SUBMITTED:
                return None
            await self._settle_dead(current, ack)

        if current.signal_id:
            await self.refresh_signal_counters(current.signal_id)
        return current

    async def _submit_with_retry(
        self,
        execution: TradeExecution,
        request: OrderRequest,
        bypass_stop: bool,
    ) -> Optional[OrderAck]:
        policy = self.retry_policy
        result: SubmitResult
        attempt = 0
        while True:
            attempt += 1
            current = await self.store.get_execution(execution.execution_id)
            if current is None or current.status == ExecutionStatus.CANCELLED:
                logger.info("execution_cancelled", extra={"execution_id": execution.execution_id})
                if current is not None:
                    execution.status = current.status
                    execution.error = current.error
                    execution.is_emergency_exit = current.is_emergency_exit
                return None
            if current.broker_order_id:
                # Reached the broker on an earlier attempt; never send it twice
                return OrderAck(order_id=current.broker_order_id, status="UNKNOWN")
            if not bypass_stop and self.stop.is_stopped(execution.bot_id):
                await self._mark_failed(execution, EMERGENCY_STOP_REASON)
                return None

            try:
                result = await asyncio.wait_for(
                    self.gateway.submit_order(execution.user_id, request),
                    timeout=self.order_timeout,
                )
            except asyncio.TimeoutError:
                result = TransientBrokerError(message="broker order timed out")

            if isinstance(result, OrderAck):
                return result

            if policy.should_retry(result, attempt):
                delay = policy.delay(attempt)
                execution.retry_count += 1
                await self._save_pending(execution)
                logger.warning(
                    "order_retry",
                    extra={
                        "execution_id": execution.execution_id,
                        "user_id": execution.user_id,
                        "attempt": attempt,
                        "backoff": delay,
                        "error": result.message,
                    },
                )
                await self._sleep(delay)
                continue

            await self._mark_failed(execution, _describe(result))
            return None

    # ------------------------------------------------------------------
    # Ledger helpers
    # ------------------------------------------------------------------

    def _new_execution(
        self,
        *,
        bot_id: str,
        user_id: str,
        symbol: str,
        exchange: str,
        signal: Optional[WebhookSignal],
        allocation: Optional[UserBotAllocation],
        order_type: OrderType,
        transaction_type: TransactionType,
        quantity: int,
        trade_type: TradeType,
        product: str = DEFAULT_PRODUCT,
        instrument_type: str = "FUTURES",
    ) -> TradeExecution:
        return TradeExecution(
            user_id=user_id,
            bot_id=bot_id,
            signal_id=signal.signal_id if signal else None,
            allocation_id=allocation.allocation_id if allocation else None,
            symbol=symbol,
            exchange=exchange,
            instrument_type=instrument_type,
            product=product,
            quantity=max(quantity, 0),
            order_type=order_type,
            transaction_type=transaction_type,
            requested_price=signal.price if signal else None,
            trade_type=trade_type,
        )

    async def _record_failed(self, execution: TradeExecution, reason: str) -> TradeExecution:
        execution.status = ExecutionStatus.FAILED
        execution.error = reason
        await self.store.insert_execution(execution)
        logger.info(
            "execution_rejected",
            extra={
                "execution_id": execution.execution_id,
                "user_id": execution.user_id,
                "bot_id": execution.bot_id,
                "reason": reason,
            },
        )
        return execution

    async def _save_pending(self, execution: TradeExecution) -> None:
        try:
            await self.store.update_execution(execution)
        except InvalidTransitionError:
            # Cancelled meanwhile; the next attempt's re-read stops the loop
            logger.info("retry_count_skipped", extra={"execution_id": execution.execution_id})

    async def _mark_failed(self, execution: TradeExecution, reason: str) -> None:
        try:
            execution.transition(ExecutionStatus.FAILED, error=reason)
            await self.store.update_execution(execution)
        except InvalidTransitionError:
            stored = await self.store.get_execution(execution.execution_id)
            if stored is not None:
                execution.status = stored.status
                execution.error = stored.error
            logger.info("fail_skipped", extra={"execution_id": execution.execution_id})
            return
        logger.warning(
            "order_failed",
            extra={
                "execution_id": execution.execution_id,
                "user_id": execution.user_id,
                "error": reason,
                "retries": execution.retry_count,
            },
        )


def _describe(result: SubmitResult) -> str:
    if isinstance(result, OrderRejected):
        return f"rejected: {result.reason}"
    if isinstance(result, PermanentBrokerError):
        return f"broker error: {result.message}"
    if isinstance(result, TransientBrokerError):
        return f"broker unavailable: {result.message}"
    return str(result)


def _one_per_user(allocations: list[UserBotAllocation]) -> list[UserBotAllocation]:
    seen: set[str] = set()
    out = []
    for alloc in allocations:
        if alloc.user_id in seen:
            logger.warning(
                "duplicate_allocation_skipped",
                extra={"allocation_id": alloc.allocation_id, "user_id": alloc.user_id},
            )
            continue
        seen.add(alloc.user_id)
        out.append(alloc)
    return out


def _already_recorded(execution: TradeExecution) -> TradeExecution:
    logger.info(
        "execution_exists",
        extra={
            "signal_id": execution.signal_id,
            "user_id": execution.user_id,
            "status": execution.status.value,
        },
    )
    return execution
