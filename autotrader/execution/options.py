"""Option contract selection for bots that trade index options.

A signal on the underlying (say NIFTY at 22,010) becomes a bought option:

1. ATM strike = price rounded to the bot's strike step
2. A ladder of strikes each side of ATM
3. Calls for bullish signals, puts for bearish ones
4. The nearest expiry, or the next one when the nearest is too close
5. Among quoted contracts at that expiry, the highest delta at or above the
   bot's minimum, ties broken on open interest
6. Size in whole lots from the premium: fixed lots capped by capital, or
   risk percentage of capital divided by the premium per lot

Delta is estimated with Black-Scholes at the bot's flat implied volatility.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import date
from typing import Optional

from pydantic import BaseModel

from autotrader.config import BROKER_QUERY_TIMEOUT
from autotrader.execution.gateway import BrokerGateway, OptionContract
from autotrader.models import (
    Bot,
    OptionRules,
    OptionType,
    PositionSide,
    SizingMethod,
    UserBotAllocation,
)

logger = logging.getLogger(__name__)


class OptionSelection(BaseModel):
    contract: Optional[OptionContract] = None
    quantity: int = 0
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def atm_strike(price: float, step: int) -> float:
    return math.floor(price / step + 0.5) * step


def strike_ladder(atm: float, step: int, each_side: int) -> list[float]:
    return [atm + i * step for i in range(-each_side, each_side + 1)]


def option_type_for(side: PositionSide) -> OptionType:
    return OptionType.CE if side == PositionSide.LONG else OptionType.PE


def select_expiry(expiries: list[date], today: date, min_days: int) -> Optional[date]:
    """Nearest expiry on or after today; the next one if the nearest is under `min_days` away."""
    upcoming = sorted(e for e in set(expiries) if e >= today)
    if not upcoming:
        return None
    if (upcoming[0] - today).days < min_days:
        return upcoming[1] if len(upcoming) > 1 else None
    return upcoming[0]


def estimate_delta(
    spot: float,
    strike: float,
    days: int,
    volatility: float,
    option_type: OptionType,
) -> float:
    """Absolute Black-Scholes delta with zero rates."""
    t = max(days, 1) / 365.0
    d1 = (math.log(spot / strike) + 0.5 * volatility ** 2 * t) / (volatility * math.sqrt(t))
    call_delta = 0.5 * math.erfc(-d1 / math.sqrt(2))
    return call_delta if option_type == OptionType.CE else 1.0 - call_delta


def best_contract(contracts: list[OptionContract], min_delta: float) -> Optional[OptionContract]:
    eligible = [
        c for c in contracts
        if c.delta is not None and c.delta >= min_delta and c.premium and c.premium > 0
    ]
    if not eligible:
        return None
    return max(eligible, key=lambda c: (c.delta, c.open_interest))


def size_lots(allocation: UserBotAllocation, contract: OptionContract) -> tuple[int, Optional[str]]:
    """Order quantity in units, or an error when capital cannot cover one lot."""
    per_lot = (contract.premium or 0.0) * contract.lot_size
    if per_lot <= 0:
        return 0, "contract has no premium"

    if allocation.position_sizing_method == SizingMethod.RISK_PERCENTAGE:
        budget = allocation.allocated_amount * allocation.risk_percentage / 100.0
        lots = int(budget // per_lot)
        if lots < 1:
            return 0, f"risk budget {budget:.2f} below one lot premium {per_lot:.2f}"
        return lots * contract.lot_size, None

    lots = allocation.quantity or 1
    if lots * per_lot > allocation.allocated_amount:
        return 0, (
            f"{lots} lots need {lots * per_lot:.2f}, "
            f"allocation is {allocation.allocated_amount:.2f}"
        )
    return lots * contract.lot_size, None


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class OptionSelector:
    """Picks and sizes the option contract for one user's entry."""

    def __init__(self, gateway: BrokerGateway, query_timeout: float = BROKER_QUERY_TIMEOUT) -> None:
        self.gateway = gateway
        self.query_timeout = query_timeout

    async def select(
        self,
        user_id: str,
        bot: Bot,
        allocation: UserBotAllocation,
        underlying: str,
        spot: Optional[float],
        side: PositionSide,
        today: date,
    ) -> OptionSelection:
        if not spot or spot <= 0:
            return OptionSelection(error="options entry needs the underlying price")

        rules: OptionRules = bot.option_rules
        option_type = option_type_for(side)
        strikes = strike_ladder(atm_strike(spot, rules.strike_step), rules.strike_step, rules.strikes_each_side)

        try:
            chain = await asyncio.wait_for(
                self.gateway.option_chain(user_id, underlying, spot, strikes, option_type),
                timeout=self.query_timeout,
            )
        except asyncio.TimeoutError:
            return OptionSelection(error="option chain query timed out")
        if not isinstance(chain, list):
            return OptionSelection(error=f"option chain unavailable: {chain.message}")

        expiry = select_expiry([c.expiry for c in chain], today, rules.min_days_to_expiry)
        if expiry is None:
            return OptionSelection(error=f"no usable {underlying} expiry")

        days = (expiry - today).days
        candidates = []
        for contract in chain:
            if contract.expiry != expiry or contract.option_type != option_type:
                continue
            contract.delta = estimate_delta(
                spot, contract.strike, days, rules.implied_volatility, option_type,
            )
            candidates.append(contract)

        contract = best_contract(candidates, rules.min_delta)
        if contract is None:
            highest = max((c.delta for c in candidates if c.delta is not None), default=0.0)
            return OptionSelection(
                error=f"no {option_type.value} with delta >= {rules.min_delta} (best {highest:.3f})",
            )

        quantity, error = size_lots(allocation, contract)
        if error:
            return OptionSelection(contract=contract, error=error)

        logger.info(
            "option_contract_selected",
            extra={
                "user_id": user_id,
                "bot_id": bot.bot_id,
                "symbol": contract.symbol,
                "strike": contract.strike,
                "expiry": contract.expiry.isoformat(),
                "delta": round(contract.delta or 0.0, 3),
                "premium": contract.premium,
                "quantity": quantity,
            },
        )
        return OptionSelection(contract=contract, quantity=quantity)
