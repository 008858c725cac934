"""Tests for webhook signal intake.

Tests cover:
  - Payload validation errors map to 400 / 401 / 404
  - camelCase aliases and action spellings
  - Passphrase never persisted in the raw payload
  - Background fan-out completes on drain
"""

import pytest

from autotrader.errors import SignalValidationError
from autotrader.intake import SignalIntake, parse_action
from autotrader.models import ExecutionStatus, SignalAction

from conftest import make_allocation

PAYLOAD = {
    "botId": "bot-nifty",
    "symbol": "NIFTYFUT",
    "side": "BUY",
    "price": 22_000,
    "passphrase": "s3cret",
}


@pytest.fixture
def intake(engine):
    return SignalIntake(engine.store, engine.orchestrator, passphrase="s3cret")


# ============================================================
# Validation
# ============================================================

class TestValidate:

    async def test_valid_payload(self, intake):
        signal = await intake.validate({**PAYLOAD, "stopLoss": 21_900, "instrumentType": "FUTIDX"})
        assert signal.bot_id == "bot-nifty"
        assert signal.action == SignalAction.BUY
        assert signal.exchange == "NFO"
        assert signal.instrument_type == "FUTIDX"
        assert signal.stop_loss == 21_900
        assert "passphrase" not in signal.raw_payload
        assert signal.raw_payload["stopLoss"] == 21_900

    @pytest.mark.parametrize("change", [
        {"price": 0},
        {"price": -5},
        {"symbol": ""},
        {"quantity": 0},
        {"botId": None},
    ])
    async def test_bad_fields_are_400(self, intake, change):
        with pytest.raises(SignalValidationError) as exc:
            await intake.validate({**PAYLOAD, **change})
        assert exc.value.status == 400

    async def test_missing_price(self, intake):
        payload = {k: v for k, v in PAYLOAD.items() if k != "price"}
        with pytest.raises(SignalValidationError) as exc:
            await intake.validate(payload)
        assert exc.value.status == 400
        assert "price" in str(exc.value)

    async def test_unknown_side(self, intake):
        with pytest.raises(SignalValidationError, match="invalid side"):
            await intake.validate({**PAYLOAD, "side": "HOLD"})

    async def test_missing_side(self, intake):
        payload = {k: v for k, v in PAYLOAD.items() if k != "side"}
        with pytest.raises(SignalValidationError, match="missing side"):
            await intake.validate(payload)

    async def test_wrong_passphrase_is_401(self, intake):
        with pytest.raises(SignalValidationError) as exc:
            await intake.validate({**PAYLOAD, "passphrase": "guess"})
        assert exc.value.status == 401

    async def test_unknown_bot_is_404(self, intake):
        with pytest.raises(SignalValidationError) as exc:
            await intake.validate({**PAYLOAD, "botId": "bot-ghost"})
        assert exc.value.status == 404

    async def test_inactive_bot_is_404(self, intake, engine):
        engine.bot.is_active = False
        await engine.store.upsert_bot(engine.bot)
        with pytest.raises(SignalValidationError) as exc:
            await intake.validate(PAYLOAD)
        assert exc.value.status == 404

    async def test_no_passphrase_configured(self, engine):
        open_intake = SignalIntake(engine.store, engine.orchestrator, passphrase="")
        payload = {k: v for k, v in PAYLOAD.items() if k != "passphrase"}
        assert (await open_intake.validate(payload)).action == SignalAction.BUY


class TestParseAction:

    @pytest.mark.parametrize("raw,expected", [
        ("buy", SignalAction.BUY),
        (" LONG ", SignalAction.BUY),
        ("ENTRY", SignalAction.ENTRY),
        ("sell", SignalAction.SELL),
        ("close", SignalAction.EXIT),
        ("SELL_SHORT", SignalAction.SHORT),
    ])
    def test_spellings(self, raw, expected):
        assert parse_action(raw) == expected


# ============================================================
# Receive and fan-out
# ============================================================

class TestReceive:

    async def test_records_then_fans_out(self, intake, engine):
        await engine.store.upsert_allocation(make_allocation("u1"))
        await engine.store.upsert_allocation(make_allocation("u2"))

        signal = await intake.receive(PAYLOAD)
        assert await engine.store.get_signal(signal.signal_id) is not None

        await intake.drain()

        stored = await engine.store.get_signal(signal.signal_id)
        assert stored.processed is True
        assert stored.successful_executions == 2
        rows = await engine.store.list_executions(signal_id=signal.signal_id)
        assert {r.status for r in rows} == {ExecutionStatus.EXECUTED}

    async def test_rejected_payload_not_recorded(self, intake, engine):
        with pytest.raises(SignalValidationError):
            await intake.receive({**PAYLOAD, "price": 0})
        assert engine.store.signals == {}
