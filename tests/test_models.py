"""Tests for the data model and exchange-local clock helpers.

Tests cover:
  - Ledger status machine: forward only, terminal states final
  - Position invariants and derived status
  - Execution ids fit the broker tag limit
  - Market-hours window and local day start
"""

from datetime import datetime, timezone

import pytest

from autotrader.errors import InvalidTransitionError, PositionStateError
from autotrader.market_hours import MARKET_TZ, is_market_open, local_day_start, parse_hhmm, within
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


def _execution(status=ExecutionStatus.PENDING):
    return TradeExecution(
        user_id="u1", bot_id="b", symbol="NIFTYFUT", exchange="NFO", quantity=1,
        order_type=OrderType.BUY, transaction_type=TransactionType.BUY, status=status,
    )


def _position(**kw):
    fields = dict(
        user_id="u1", bot_id="b", symbol="NIFTYFUT", exchange="NFO", side=PositionSide.LONG,
        entry_execution_id="EX1", entry_price=100.0, entry_quantity=10,
        current_quantity=10, average_price=100.0,
    )
    fields.update(kw)
    return Position(**fields)


# ============================================================
# Execution ledger
# ============================================================

class TestExecutionTransitions:

    def test_happy_path_stamps_times(self):
        ex = _execution()
        ex.transition(ExecutionStatus.SUBMITTED, broker_order_id="ord-1")
        assert ex.submitted_at is not None
        assert ex.broker_order_id == "ord-1"
        ex.transition(ExecutionStatus.EXECUTED, executed_price=101.0)
        assert ex.executed_at is not None
        assert ex.is_terminal

    @pytest.mark.parametrize("terminal", [
        ExecutionStatus.EXECUTED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED,
    ])
    def test_terminal_is_final(self, terminal):
        ex = _execution(status=terminal)
        for target in ExecutionStatus:
            with pytest.raises(InvalidTransitionError):
                ex.transition(target)

    def test_pending_cannot_skip_to_executed(self):
        ex = _execution()
        with pytest.raises(InvalidTransitionError):
            ex.transition(ExecutionStatus.EXECUTED)
        assert ex.status == ExecutionStatus.PENDING

    def test_ids_fit_order_tag(self):
        ex = _execution()
        assert ex.execution_id.startswith("EX")
        assert len(ex.execution_id) <= 20


# ============================================================
# Positions
# ============================================================

class TestPositionInvariants:

    def test_derived_status(self):
        pos = _position()
        assert pos.derive_status() == PositionStatus.OPEN
        pos.exit_executions.append(ExitExecution(execution_id="EX2", quantity=4, price=100.0))
        pos.current_quantity = 6
        assert pos.derive_status() == PositionStatus.PARTIAL

    def test_quantity_mismatch_detected(self):
        pos = _position(current_quantity=7)
        with pytest.raises(PositionStateError):
            pos.check_invariants()

    def test_status_mismatch_detected(self):
        pos = _position(status=PositionStatus.CLOSED)
        with pytest.raises(PositionStateError):
            pos.check_invariants()

    def test_mark_to_market_short(self):
        pos = _position(side=PositionSide.SHORT)
        pos.mark_to_market(95.0)
        assert pos.unrealized_pnl == pytest.approx(50.0)


# ============================================================
# Market hours
# ============================================================

class TestMarketHours:

    def test_parse(self):
        assert parse_hhmm(" 09:15 ").hour == 9
        with pytest.raises(ValueError):
            parse_hhmm("915")

    def test_within_uses_local_time(self):
        # 04:00 UTC is 09:30 in Kolkata
        now = datetime(2024, 6, 3, 4, 0, tzinfo=timezone.utc)
        assert within(now, "09:15", "15:30")
        assert not within(now, "10:00", "15:30")

    def test_weekend_closed(self):
        assert is_market_open(datetime(2024, 6, 3, 10, 0, tzinfo=MARKET_TZ))
        assert not is_market_open(datetime(2024, 6, 2, 10, 0, tzinfo=MARKET_TZ))
        assert not is_market_open(datetime(2024, 6, 3, 16, 0, tzinfo=MARKET_TZ))

    def test_local_day_start(self):
        now = datetime(2024, 6, 3, 1, 0, tzinfo=MARKET_TZ)
        start = local_day_start(now)
        assert start == datetime(2024, 6, 2, 18, 30, tzinfo=timezone.utc)
