"""Shared fixtures: in-memory store, scripted broker, wired execution core."""

from __future__ import annotations

import asyncio
from datetime import datetime
from types import SimpleNamespace
from typing import Optional

import pytest

from autotrader.execution.emergency_stop import EmergencyStopController
from autotrader.execution.gateway import (
    BrokerGateway,
    BrokerPosition,
    OptionChainResult,
    OptionContract,
    OrderAck,
    OrderRequest,
    OrderStatusResult,
    PermanentBrokerError,
    PositionNotFound,
    PositionResult,
    SubmitResult,
)
from autotrader.execution.orchestrator import TradeOrchestrator
from autotrader.execution.position_manager import PositionLifecycleManager
from autotrader.execution.reconciliation import ReconciliationValidator
from autotrader.execution.retry import RetryPolicy
from autotrader.jobs.square_off import AutoSquareOffScheduler
from autotrader.market_hours import MARKET_TZ
from autotrader.models import Bot, OptionType, UserBotAllocation, WebhookSignal, SignalAction
from autotrader.store import InMemoryTradeStore

# Monday, inside the regular session
MARKET_MORNING = datetime(2024, 6, 3, 10, 0, tzinfo=MARKET_TZ)


class HANG:
    """Script entry: the broker call never returns (until cancelled)."""


class FakeGateway(BrokerGateway):
    """Broker double driven by per-user scripts.

    `script[user_id]` is consumed one entry per submit; once empty every
    submit fills at the request price. `orders` holds what get_order
    reports and can be rewritten to simulate a late fill or rejection.
    `chain` is returned by option_chain, filtered to the requested type.
    """

    def __init__(self) -> None:
        self.script: dict[str, list] = {}
        self.submissions: list[tuple[str, OrderRequest]] = []
        self.positions: dict[tuple[str, str, str], PositionResult] = {}
        self.health: dict[str, bool] = {}
        self.cancelled: list[str] = []
        self.cancel_ok = True
        self.health_calls = 0
        self.orders: dict[str, OrderStatusResult] = {}
        self.order_queries: list[str] = []
        self.chain: Optional[OptionChainResult] = None
        self.chain_requests: list[tuple[str, float, list[float]]] = []
        self._seq = 0

    async def submit_order(self, user_id: str, request: OrderRequest) -> SubmitResult:
        self.submissions.append((user_id, request))
        queue = self.script.get(user_id) or []
        if queue:
            step = queue.pop(0)
            if step is HANG:
                await asyncio.Event().wait()
            if isinstance(step, OrderAck):
                self.orders.setdefault(step.order_id, step)
            return step
        self._seq += 1
        ack = OrderAck(
            order_id=f"ord-{self._seq}",
            average_price=request.price,
            filled_quantity=request.quantity,
        )
        self.orders[ack.order_id] = ack
        return ack

    async def get_order(self, user_id: str, order_id: str) -> OrderStatusResult:
        self.order_queries.append(order_id)
        return self.orders.get(order_id, PermanentBrokerError(message=f"unknown order {order_id}"))

    async def option_chain(
        self,
        user_id: str,
        underlying: str,
        spot: float,
        strikes: list[float],
        option_type: OptionType,
    ) -> OptionChainResult:
        self.chain_requests.append((underlying, spot, strikes))
        if not isinstance(self.chain, list):
            return self.chain if self.chain is not None else []
        return [
            c.model_copy() for c in self.chain
            if isinstance(c, OptionContract) and c.option_type == option_type
        ]

    async def get_position(self, user_id: str, symbol: str, exchange: str) -> PositionResult:
        return self.positions.get(
            (user_id, symbol, exchange), PositionNotFound(symbol=symbol, exchange=exchange),
        )

    async def cancel_order(self, user_id: str, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return self.cancel_ok

    async def connection_health(self, user_ids: list[str]) -> dict[str, bool]:
        self.health_calls += 1
        return {uid: self.health.get(uid, True) for uid in user_ids}

    def hold(self, user_id: str, symbol: str, exchange: str, quantity: int, **kw) -> None:
        self.positions[(user_id, symbol, exchange)] = BrokerPosition(
            symbol=symbol, exchange=exchange, quantity=quantity, **kw,
        )

    def submitted_by(self, user_id: str) -> list[OrderRequest]:
        return [req for uid, req in self.submissions if uid == user_id]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store() -> InMemoryTradeStore:
    return InMemoryTradeStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def bot() -> Bot:
    return Bot(
        bot_id="bot-nifty",
        name="Nifty Momentum",
        symbol="NIFTYFUT",
        exchange="NFO",
        lot_size=1,
        intraday_exit_time="15:15",
    )


def make_allocation(user_id: str, bot_id: str = "bot-nifty", quantity: int = 50, **kw) -> UserBotAllocation:
    return UserBotAllocation(
        allocation_id=f"alloc-{user_id}",
        user_id=user_id,
        bot_id=bot_id,
        allocated_amount=100_000,
        quantity=quantity,
        max_trades_per_day=kw.pop("max_trades_per_day", 5),
        **kw,
    )


def make_signal(action: SignalAction, price: float = 22_000.0, quantity: Optional[int] = None, **kw) -> WebhookSignal:
    return WebhookSignal(
        bot_id=kw.pop("bot_id", "bot-nifty"),
        action=action,
        symbol=kw.pop("symbol", "NIFTYFUT"),
        exchange=kw.pop("exchange", "NFO"),
        price=price,
        quantity=quantity,
        **kw,
    )


@pytest.fixture
async def engine(store: InMemoryTradeStore, gateway: FakeGateway, bot: Bot) -> SimpleNamespace:
    """The execution core wired against the fakes, with zero-cost backoff."""
    await store.upsert_bot(bot)
    sleep = RecordingSleep()
    stop = EmergencyStopController(store, gateway)
    square_off = AutoSquareOffScheduler(store, stop, clock=lambda: MARKET_MORNING)
    positions = PositionLifecycleManager(store, scheduler=square_off)
    orchestrator = TradeOrchestrator(
        store,
        gateway,
        positions,
        stop,
        retry_policy=RetryPolicy(max_attempts=3, base_backoff=1.0, max_backoff=8.0),
        fanout_timeout=5.0,
        order_timeout=1.0,
        clock=lambda: MARKET_MORNING,
        sleep=sleep,
    )
    validator = ReconciliationValidator(store, gateway, positions)
    square_off.orchestrator = orchestrator
    square_off.validator = validator
    return SimpleNamespace(
        store=store,
        gateway=gateway,
        bot=bot,
        stop=stop,
        positions=positions,
        orchestrator=orchestrator,
        validator=validator,
        square_off=square_off,
        sleep=sleep,
    )
