"""Broker gateway contract and the paper-trading implementation.

The gateway is the only thing in the core that talks to a brokerage. It
never raises for broker-side outcomes: every call returns one of the typed
result variants below and the caller decides whether to retry, fail or
reconcile.

Two implementations exist:
- PaperGateway: fills at the requested price without touching a broker
- KiteGateway (autotrader.api.kite_client): Kite Connect v3 REST
"""

from __future__ import annotations

import abc
import logging
import time
from datetime import date, timedelta
from typing import Optional, Union

from pydantic import BaseModel, Field

from autotrader.config import OPTIONS_LOT_SIZE
from autotrader.market_hours import market_now
from autotrader.models import OptionType, TransactionType

logger = logging.getLogger(__name__)

FILLED_STATUS = "COMPLETE"
DEAD_STATUSES = frozenset({"REJECTED", "CANCELLED"})


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class OrderRequest(BaseModel):
    """Order sent to the broker on behalf of one user."""

    symbol: str = Field(..., description="Broker trading symbol.")
    exchange: str = Field(..., description="NSE, NFO, BSE, MCX ...")
    transaction_type: TransactionType
    quantity: int = Field(..., gt=0)
    order_type: str = Field(default="MARKET", description="MARKET or LIMIT.")
    product: str = Field(default="MIS", description="MIS, NRML or CNC.")
    price: Optional[float] = Field(default=None, description="Limit price or reference price.")
    tag: str = Field(default="", max_length=20, description="Echoed back by the broker.")


class OrderAck(BaseModel):
    """Broker accepted the order. Only a COMPLETE status is a fill."""

    order_id: str
    status: str = FILLED_STATUS
    average_price: Optional[float] = None
    filled_quantity: Optional[int] = None
    message: Optional[str] = None

    @property
    def is_filled(self) -> bool:
        return self.status == FILLED_STATUS

    @property
    def is_dead(self) -> bool:
        return self.status in DEAD_STATUSES


class TransientBrokerError(BaseModel):
    """Timeout, rate limit, 5xx or network failure. Safe to retry."""

    message: str
    status_code: Optional[int] = None


class PermanentBrokerError(BaseModel):
    """Authentication or account failure. Retrying will not help."""

    message: str
    status_code: Optional[int] = None


class OrderRejected(BaseModel):
    """Broker refused the order (margin, input, RMS)."""

    reason: str


class BrokerPosition(BaseModel):
    """Net position the broker reports for one instrument."""

    symbol: str
    exchange: str
    quantity: int = Field(..., description="Signed; negative for short.")
    average_price: float = 0.0
    last_price: Optional[float] = None
    pnl: Optional[float] = None


class PositionNotFound(BaseModel):
    symbol: str
    exchange: str


class OptionContract(BaseModel):
    """One listed option with the quote fields contract selection needs."""

    symbol: str
    exchange: str = "NFO"
    underlying: str
    strike: float
    expiry: date
    option_type: OptionType
    lot_size: int = Field(default=1, ge=1)
    premium: Optional[float] = None
    open_interest: int = 0
    delta: Optional[float] = Field(default=None, description="Absolute delta, set by the selector.")


SubmitResult = Union[OrderAck, TransientBrokerError, PermanentBrokerError, OrderRejected]
PositionResult = Union[BrokerPosition, PositionNotFound, TransientBrokerError, PermanentBrokerError]
OrderStatusResult = Union[OrderAck, TransientBrokerError, PermanentBrokerError]
OptionChainResult = Union[list[OptionContract], TransientBrokerError, PermanentBrokerError]


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class BrokerGateway(abc.ABC):
    """Everything the core needs from a brokerage."""

    @abc.abstractmethod
    async def submit_order(self, user_id: str, request: OrderRequest) -> SubmitResult:
        ...

    @abc.abstractmethod
    async def get_order(self, user_id: str, order_id: str) -> OrderStatusResult:
        """Latest status of an order placed earlier."""

    @abc.abstractmethod
    async def get_position(self, user_id: str, symbol: str, exchange: str) -> PositionResult:
        ...

    @abc.abstractmethod
    async def cancel_order(self, user_id: str, order_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def connection_health(self, user_ids: list[str]) -> dict[str, bool]:
        """Return a connected flag per user in a single batch."""

    async def option_chain(
        self,
        user_id: str,
        underlying: str,
        spot: float,
        strikes: list[float],
        option_type: OptionType,
    ) -> OptionChainResult:
        """Quoted contracts at `strikes` for the nearest expiries of `underlying`."""
        return PermanentBrokerError(message=f"{type(self).__name__} has no option chain")

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Paper gateway
# ---------------------------------------------------------------------------


class PaperGateway(BrokerGateway):
    """Dry-run gateway that fills every order at its reference price.

    Keeps a per-user net book so reconciliation behaves sensibly in paper
    mode: positions opened here are found, positions opened elsewhere are not.
    """

    def __init__(self, lot_size: int = OPTIONS_LOT_SIZE) -> None:
        self._book: dict[tuple[str, str, str], BrokerPosition] = {}
        self._orders: dict[str, OrderAck] = {}
        self._lot_size = lot_size
        self._seq = 0

    async def submit_order(self, user_id: str, request: OrderRequest) -> SubmitResult:
        self._seq += 1
        order_id = f"paper_{int(time.time() * 1000)}_{self._seq}"
        key = (user_id, request.symbol, request.exchange)
        held = self._book.get(key)
        price = request.price or (held.last_price if held else None) or 0.0
        signed = request.quantity if request.transaction_type == TransactionType.BUY else -request.quantity
        if held is None:
            held = BrokerPosition(
                symbol=request.symbol,
                exchange=request.exchange,
                quantity=0,
                average_price=price,
            )
        new_qty = held.quantity + signed
        if new_qty != 0 and abs(new_qty) > abs(held.quantity):
            total = abs(held.quantity) * held.average_price + request.quantity * price
            held.average_price = total / abs(new_qty)
        held.quantity = new_qty
        held.last_price = price
        if new_qty == 0:
            self._book.pop(key, None)
        else:
            self._book[key] = held

        logger.info(
            "order_dry_run",
            extra={
                "user_id": user_id,
                "order_id": order_id,
                "symbol": request.symbol,
                "side": request.transaction_type.value,
                "quantity": request.quantity,
                "price": price,
            },
        )
        ack = OrderAck(
            order_id=order_id,
            status=FILLED_STATUS,
            average_price=price or None,
            filled_quantity=request.quantity,
        )
        self._orders[order_id] = ack
        return ack

    async def get_order(self, user_id: str, order_id: str) -> OrderStatusResult:
        ack = self._orders.get(order_id)
        if ack is None:
            return PermanentBrokerError(message=f"unknown order {order_id}")
        return ack.model_copy()

    async def get_position(self, user_id: str, symbol: str, exchange: str) -> PositionResult:
        held = self._book.get((user_id, symbol, exchange))
        if held is None:
            return PositionNotFound(symbol=symbol, exchange=exchange)
        return held.model_copy()

    async def cancel_order(self, user_id: str, order_id: str) -> bool:
        logger.info("cancel_dry_run", extra={"user_id": user_id, "order_id": order_id})
        return True

    async def connection_health(self, user_ids: list[str]) -> dict[str, bool]:
        return {uid: True for uid in user_ids}

    async def option_chain(
        self,
        user_id: str,
        underlying: str,
        spot: float,
        strikes: list[float],
        option_type: OptionType,
    ) -> OptionChainResult:
        """Synthetic chain on the next two weekly (Thursday) expiries.

        Premium is intrinsic value plus a flat time value that shrinks with
        the square root of days to expiry; enough to exercise selection and
        sizing in paper runs.
        """
        today = market_now().date()
        first = today + timedelta(days=(3 - today.weekday()) % 7)
        contracts = []
        for expiry in (first, first + timedelta(days=7)):
            days = max((expiry - today).days, 1)
            time_value = spot * 0.15 * (days / 365) ** 0.5 * 0.4
            for strike in strikes:
                intrinsic = spot - strike if option_type == OptionType.CE else strike - spot
                contracts.append(OptionContract(
                    symbol=f"{underlying}{expiry:%y%b%d}{int(strike)}{option_type.value}".upper(),
                    underlying=underlying,
                    strike=strike,
                    expiry=expiry,
                    option_type=option_type,
                    lot_size=self._lot_size,
                    premium=round(max(intrinsic, 0.0) + time_value, 2),
                ))
        return contracts
