"""Tests for order sizing and the broker retry policy."""

import pytest

from autotrader.execution.gateway import OrderRejected, PermanentBrokerError, TransientBrokerError
from autotrader.execution.retry import NO_RETRY, RetryPolicy
from autotrader.execution.sizing import compute_quantity, round_to_lot
from autotrader.models import Bot, SizingMethod, UserBotAllocation


def _alloc(**kw):
    return UserBotAllocation(allocation_id="a1", user_id="u1", bot_id="b", **kw)


# ============================================================
# Sizing
# ============================================================

class TestSizing:

    @pytest.mark.parametrize("quantity,lot,expected", [
        (99.9, 1, 99),
        (149, 50, 100),
        (49, 50, 0),
        (-3, 1, 0),
    ])
    def test_round_to_lot(self, quantity, lot, expected):
        assert round_to_lot(quantity, lot) == expected

    def test_fixed_units(self):
        assert compute_quantity(_alloc(quantity=75), Bot(bot_id="b"), 100.0) == 75

    def test_fixed_lots(self):
        assert compute_quantity(_alloc(quantity=2), Bot(bot_id="b", lot_size=25), 100.0) == 50

    def test_fixed_defaults_to_one(self):
        assert compute_quantity(_alloc(), Bot(bot_id="b", lot_size=25), 100.0) == 25

    def test_risk_percentage(self):
        alloc = _alloc(
            allocated_amount=500_000,
            position_sizing_method=SizingMethod.RISK_PERCENTAGE,
            risk_percentage=2.0,
        )
        # 10,000 at risk / 180 per unit = 55.5 units -> 50 in lots of 25
        assert compute_quantity(alloc, Bot(bot_id="b", lot_size=25), 180.0) == 50

    def test_risk_percentage_needs_price(self):
        alloc = _alloc(allocated_amount=500_000, position_sizing_method=SizingMethod.RISK_PERCENTAGE)
        assert compute_quantity(alloc, Bot(bot_id="b"), None) == 0


# ============================================================
# Retry policy
# ============================================================

class TestRetryPolicy:

    def test_backoff_doubles_and_caps(self):
        policy = RetryPolicy(max_attempts=6, base_backoff=1.0, max_backoff=8.0)
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_only_transient_retried(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(TransientBrokerError(message="503"), 1)
        assert not policy.should_retry(PermanentBrokerError(message="token"), 1)
        assert not policy.should_retry(OrderRejected(reason="margin"), 1)

    def test_attempts_bounded(self):
        policy = RetryPolicy(max_attempts=3)
        err = TransientBrokerError(message="503")
        assert policy.should_retry(err, 2)
        assert not policy.should_retry(err, 3)
        assert not NO_RETRY.should_retry(err, 1)
