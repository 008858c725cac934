"""Statutory and broker charges for one filled order.

Charges are estimated from turnover (quantity x fill price) with the
Indian derivatives schedule:

- Brokerage: a percentage of turnover, capped per order
- Exchange transaction charges on turnover
- STT on the sell side only
- Stamp duty on the buy side only
- SEBI turnover fee
- GST on brokerage plus exchange charges

The total is attached to the execution as `fees` when it becomes EXECUTED
and accumulates into the position's `total_fees`.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel

from autotrader.config import (
    BROKERAGE_CAP,
    BROKERAGE_RATE,
    EXCHANGE_CHARGES_RATE,
    GST_RATE,
    SEBI_CHARGES_RATE,
    STAMP_DUTY_RATE,
    STT_RATE,
)
from autotrader.models import TransactionType


class ChargeBreakdown(BaseModel):
    turnover: float
    brokerage: float = 0.0
    exchange_charges: float = 0.0
    stt: float = 0.0
    stamp_duty: float = 0.0
    sebi_charges: float = 0.0
    gst: float = 0.0

    @property
    def total(self) -> float:
        return round(
            self.brokerage + self.exchange_charges + self.stt
            + self.stamp_duty + self.sebi_charges + self.gst,
            2,
        )


@dataclass(frozen=True)
class ChargeSchedule:
    """Rates applied to one order; override per broker plan."""

    brokerage_rate: float = BROKERAGE_RATE
    brokerage_cap: float = BROKERAGE_CAP
    exchange_rate: float = EXCHANGE_CHARGES_RATE
    stt_rate: float = STT_RATE
    stamp_rate: float = STAMP_DUTY_RATE
    sebi_rate: float = SEBI_CHARGES_RATE
    gst_rate: float = GST_RATE

    def compute(
        self,
        transaction_type: TransactionType,
        quantity: int,
        price: float,
    ) -> ChargeBreakdown:
        turnover = abs(quantity * price)
        if turnover == 0:
            return ChargeBreakdown(turnover=0.0)

        brokerage = min(turnover * self.brokerage_rate, self.brokerage_cap)
        exchange = turnover * self.exchange_rate
        is_sell = transaction_type == TransactionType.SELL
        return ChargeBreakdown(
            turnover=turnover,
            brokerage=brokerage,
            exchange_charges=exchange,
            stt=turnover * self.stt_rate if is_sell else 0.0,
            stamp_duty=0.0 if is_sell else turnover * self.stamp_rate,
            sebi_charges=turnover * self.sebi_rate,
            gst=(brokerage + exchange) * self.gst_rate,
        )


DEFAULT_SCHEDULE = ChargeSchedule()
