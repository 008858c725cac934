"""Tests for the reconciliation validator and the sweep job.

Tests cover:
  - Directional quantity check against the broker's signed net quantity
  - Missing at broker: closed with a synthetic EXTERNAL exit, no order sent
  - Failed broker query treated as missing
  - Smaller / larger at broker: reduced or grown with a note
  - Matching position: unrealized P&L copied from the broker
  - Sweep counts outcomes per action
"""

import pytest

from autotrader.execution.gateway import OrderRejected, TransientBrokerError
from autotrader.execution.reconciliation import EXTERNAL_ORDER_ID, ReconcileAction
from autotrader.jobs.reconciliation_sweep import run_reconciliation_sweep
from autotrader.models import ExecutionStatus, ExitReason, PositionStatus, SignalAction, TradeType

from conftest import make_allocation, make_signal


async def _open(engine, *users, price=22_000.0):
    for uid in users:
        await engine.store.upsert_allocation(make_allocation(uid))
    signal = make_signal(SignalAction.BUY, price=price)
    await engine.store.insert_signal(signal)
    await engine.orchestrator.process_signal(signal)
    positions = await engine.store.list_positions(open_only=True)
    return sorted(positions, key=lambda p: p.user_id)


# ============================================================
# Validation
# ============================================================

class TestValidate:

    async def test_found(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.hold("u1", "NIFTYFUT", "NFO", 50, last_price=22_010.0, pnl=500.0)

        result = await engine.validator.validate(pos)

        assert result.exists_at_broker is True
        assert result.live_quantity == 50
        assert result.live_price == 22_010.0
        assert result.live_pnl == 500.0
        assert result.validation_error is None

    async def test_opposite_direction_not_found(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.hold("u1", "NIFTYFUT", "NFO", -50)

        result = await engine.validator.validate(pos)

        assert result.exists_at_broker is False
        assert result.live_quantity == 0

    async def test_query_error_recorded(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.positions[("u1", "NIFTYFUT", "NFO")] = TransientBrokerError(message="502")

        result = await engine.validator.validate(pos)

        assert result.exists_at_broker is False
        assert result.validation_error == "502"

    async def test_unexpected_result_recorded(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.positions[("u1", "NIFTYFUT", "NFO")] = OrderRejected(reason="x")

        result = await engine.validator.validate(pos)

        assert result.exists_at_broker is False
        assert "unexpected broker result OrderRejected" in result.validation_error


# ============================================================
# Repair
# ============================================================

class TestReconcile:

    async def test_missing_closes_external(self, engine):
        (pos,) = await _open(engine, "u1")
        submitted = len(engine.gateway.submissions)

        outcome = await engine.validator.reconcile(pos)

        assert outcome.action == ReconcileAction.CLOSED_EXTERNAL
        assert len(engine.gateway.submissions) == submitted
        closed = await engine.store.get_position(pos.position_id)
        assert closed.status == PositionStatus.CLOSED
        assert closed.exit_reason == ExitReason.EXTERNAL
        assert closed.realized_pnl == pytest.approx(0.0)

        rows = await engine.store.list_executions(user_id="u1")
        external = [r for r in rows if r.broker_order_id == EXTERNAL_ORDER_ID]
        assert len(external) == 1
        assert external[0].status == ExecutionStatus.EXECUTED
        assert external[0].trade_type == TradeType.EXIT
        assert external[0].exit_reason == ExitReason.EXTERNAL
        assert external[0].quantity == 50

    async def test_missing_uses_live_price_when_known(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.hold("u1", "NIFTYFUT", "NFO", 0, last_price=21_900.0)

        await engine.validator.reconcile(pos)

        closed = await engine.store.get_position(pos.position_id)
        assert closed.exit_executions[0].price == 21_900.0
        assert closed.realized_pnl == pytest.approx(-5_000.0)

    async def test_query_error_closes(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.positions[("u1", "NIFTYFUT", "NFO")] = TransientBrokerError(message="502")

        outcome = await engine.validator.reconcile(pos)

        assert outcome.action == ReconcileAction.CLOSED_EXTERNAL
        assert outcome.validation.validation_error == "502"
        assert not (await engine.store.get_position(pos.position_id)).is_open

    async def test_reduced_at_broker(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.hold("u1", "NIFTYFUT", "NFO", 30, last_price=22_000.0)

        outcome = await engine.validator.reconcile(pos)

        assert outcome.action == ReconcileAction.REDUCED_EXTERNAL
        after = await engine.store.get_position(pos.position_id)
        assert after.status == PositionStatus.PARTIAL
        assert after.current_quantity == 30
        assert after.exit_executions[-1].quantity == 20
        assert after.reconciliation_note == "broker quantity 30 != local 50"
        after.check_invariants()

    async def test_larger_at_broker(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.hold("u1", "NIFTYFUT", "NFO", 70, last_price=22_100.0)

        outcome = await engine.validator.reconcile(pos)

        assert outcome.action == ReconcileAction.ADDED_EXTERNAL
        after = await engine.store.get_position(pos.position_id)
        assert after.current_quantity == 70
        assert after.entry_quantity == 70
        assert after.reconciliation_note == "broker quantity 70 != local 50"
        after.check_invariants()

    async def test_matching_copies_pnl(self, engine):
        (pos,) = await _open(engine, "u1")
        engine.gateway.hold("u1", "NIFTYFUT", "NFO", 50, last_price=22_020.0, pnl=1_000.0)

        outcome = await engine.validator.reconcile(pos)

        assert outcome.action == ReconcileAction.NONE
        after = await engine.store.get_position(pos.position_id)
        assert after.unrealized_pnl == 1_000.0
        assert after.current_quantity == 50

    async def test_closed_position_skipped(self, engine):
        (pos,) = await _open(engine, "u1")
        await engine.validator.reconcile(pos)

        outcome = await engine.validator.reconcile(pos)

        assert outcome.action == ReconcileAction.SKIPPED


# ============================================================
# Sweep job
# ============================================================

class TestSweep:

    async def test_counts_per_action(self, engine):
        await _open(engine, "u1", "u2", "u3")
        engine.gateway.hold("u1", "NIFTYFUT", "NFO", 50)
        engine.gateway.hold("u2", "NIFTYFUT", "NFO", 20)

        counts = await run_reconciliation_sweep(engine.store, engine.validator, concurrency=2)

        assert counts == {"none": 1, "reduced_external": 1, "closed_external": 1}
        open_positions = await engine.store.list_positions(open_only=True)
        assert {p.user_id: p.current_quantity for p in open_positions} == {"u1": 50, "u2": 20}

    async def test_nothing_open(self, engine):
        assert await run_reconciliation_sweep(engine.store, engine.validator) == {}
