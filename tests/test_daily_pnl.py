"""Tests for the end-of-day P&L snapshot job.

Tests cover:
  - Realized P&L from exits dated today plus unrealized on open positions
  - Charges on fills dated today netted out of the total
  - One snapshot per user and day
"""

from datetime import date, datetime

import pytest

from autotrader.jobs.daily_pnl import build_snapshot, run_daily_pnl
from autotrader.market_hours import MARKET_TZ
from autotrader.models import (
    ExecutionStatus,
    ExitExecution,
    OrderType,
    Position,
    PositionSide,
    PositionStatus,
    TradeExecution,
    TransactionType,
)

DAY = date(2024, 6, 3)
DAY_CLOSE = datetime(2024, 6, 3, 15, 15, tzinfo=MARKET_TZ)
YESTERDAY = datetime(2024, 5, 31, 15, 15, tzinfo=MARKET_TZ)


def _position(bot_id="bot-nifty", user_id="u1", exits=(), open_qty=0, unrealized=0.0):
    exited = sum(q for q, _, _ in exits)
    pos = Position(
        user_id=user_id, bot_id=bot_id, symbol="NIFTYFUT", exchange="NFO",
        side=PositionSide.LONG, entry_execution_id="EX0", entry_price=100.0,
        entry_quantity=exited + open_qty, current_quantity=open_qty, average_price=100.0,
        unrealized_pnl=unrealized,
        exit_executions=[
            ExitExecution(execution_id=f"EX{i}", quantity=q, price=100.0 + pnl / q, time=ts, pnl=pnl)
            for i, (q, pnl, ts) in enumerate(exits, start=1)
        ],
    )
    pos.status = pos.derive_status()
    if not pos.is_open:
        pos.closed_at = max(ts for _, _, ts in exits)
    return pos


class TestBuildSnapshot:

    def test_realized_today_plus_unrealized(self):
        closed = _position(exits=[(10, 200.0, DAY_CLOSE)])
        running = _position(bot_id="bot-bank", exits=[(5, -50.0, YESTERDAY)], open_qty=5, unrealized=30.0)

        snap = build_snapshot("u1", [closed, running], DAY)

        assert snap.realized_pnl == pytest.approx(200.0)
        assert snap.unrealized_pnl == pytest.approx(30.0)
        assert snap.total_pnl == pytest.approx(230.0)
        assert snap.bot_pnl == {"bot-nifty": 200.0, "bot-bank": 30.0}
        assert (snap.open_positions, snap.closed_positions) == (1, 1)

    def test_partial_exits_counted_individually(self):
        pos = _position(exits=[(4, 40.0, DAY_CLOSE), (6, -90.0, DAY_CLOSE)])
        snap = build_snapshot("u1", [pos], DAY)
        assert snap.realized_pnl == pytest.approx(-50.0)
        assert pos.status == PositionStatus.CLOSED

    def test_fees_netted(self):
        pos = _position(exits=[(10, 200.0, DAY_CLOSE)])
        snap = build_snapshot("u1", [pos], DAY, fees=41.234)
        assert snap.total_pnl == pytest.approx(200.0)
        assert snap.fees == pytest.approx(41.23)
        assert snap.net_pnl == pytest.approx(158.77)


class TestRunDailyPnl:

    async def test_written_once(self, store):
        await store.insert_position(_position(exits=[(10, 200.0, DAY_CLOSE)]))
        await store.insert_position(_position(user_id="u2", open_qty=10, unrealized=-15.0))
        await store.insert_position(_position(user_id="u3", exits=[(10, 99.0, YESTERDAY)]))

        assert await run_daily_pnl(store, day=DAY) == 2
        assert await run_daily_pnl(store, day=DAY) == 0

        assert (await store.get_daily_snapshot("u1", DAY)).total_pnl == pytest.approx(200.0)
        assert (await store.get_daily_snapshot("u2", DAY)).total_pnl == pytest.approx(-15.0)
        assert await store.get_daily_snapshot("u3", DAY) is None

    async def test_fees_from_todays_fills(self, store):
        await store.insert_position(_position(exits=[(10, 200.0, DAY_CLOSE)]))
        for n, (status, fees, ts) in enumerate([
            (ExecutionStatus.EXECUTED, 30.0, DAY_CLOSE),
            (ExecutionStatus.EXECUTED, 12.5, DAY_CLOSE),
            (ExecutionStatus.EXECUTED, 99.0, YESTERDAY),
            (ExecutionStatus.FAILED, None, None),
        ]):
            await store.insert_execution(TradeExecution(
                execution_id=f"EX-fee-{n}", user_id="u1", bot_id="bot-nifty",
                symbol="NIFTYFUT", exchange="NFO", quantity=10,
                order_type=OrderType.BUY, transaction_type=TransactionType.BUY,
                status=status, fees=fees, executed_at=ts,
            ))

        assert await run_daily_pnl(store, day=DAY) == 1

        snap = await store.get_daily_snapshot("u1", DAY)
        assert snap.fees == pytest.approx(42.5)
        assert snap.net_pnl == pytest.approx(157.5)
