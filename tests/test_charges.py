"""Tests for per-order charges.

Tests cover:
  - Buy side: capped brokerage, stamp duty, no STT
  - Sell side: STT, no stamp duty
  - Brokerage below the cap on small orders
  - Custom schedule
"""

import pytest

from autotrader.execution.charges import DEFAULT_SCHEDULE, ChargeSchedule
from autotrader.models import TransactionType


class TestCompute:

    def test_buy(self):
        charges = DEFAULT_SCHEDULE.compute(TransactionType.BUY, 50, 22_000.0)

        assert charges.turnover == pytest.approx(1_100_000.0)
        assert charges.brokerage == pytest.approx(20.0)
        assert charges.exchange_charges == pytest.approx(20.9)
        assert charges.stt == 0.0
        assert charges.stamp_duty == pytest.approx(33.0)
        assert charges.sebi_charges == pytest.approx(1.1)
        assert charges.gst == pytest.approx(7.362)
        assert charges.total == pytest.approx(82.36)

    def test_sell(self):
        charges = DEFAULT_SCHEDULE.compute(TransactionType.SELL, 50, 22_100.0)

        assert charges.stt == pytest.approx(138.125)
        assert charges.stamp_duty == 0.0
        assert charges.total == pytest.approx(187.6)

    def test_brokerage_below_cap(self):
        charges = DEFAULT_SCHEDULE.compute(TransactionType.BUY, 75, 100.0)
        assert charges.brokerage == pytest.approx(2.25)

    def test_no_turnover(self):
        charges = DEFAULT_SCHEDULE.compute(TransactionType.SELL, 0, 22_000.0)
        assert charges.total == 0.0

    def test_flat_plan(self):
        schedule = ChargeSchedule(brokerage_rate=0.0, stt_rate=0.0, exchange_rate=0.0,
                                  stamp_rate=0.0, sebi_rate=0.0)
        assert schedule.compute(TransactionType.SELL, 50, 22_000.0).total == 0.0
