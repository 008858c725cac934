"""Broker gateway for Zerodha Kite Connect v3 (REST over httpx).

Every request is authenticated per user with `token api_key:access_token`.
Kite reports failures as `{"status": "error", "error_type": ..., "message": ...}`;
the error type decides which result variant the caller sees:

- NetworkException, DataException, HTTP 429 / 5xx, transport errors: transient
- TokenException, PermissionException: permanent
- OrderException, MarginException, InputException: order rejected
"""

from __future__ import annotations

import asyncio
import csv
import io
import logging
import time
from datetime import date
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from autotrader.config import (
    BROKER_ORDER_TIMEOUT,
    KITE_API_URL,
    KITE_API_VERSION,
    ORDER_CONFIRM_POLL,
    ORDER_CONFIRM_WAIT,
)
from autotrader.execution.gateway import (
    BrokerGateway,
    BrokerPosition,
    OptionChainResult,
    OptionContract,
    OrderAck,
    OrderRejected,
    OrderRequest,
    OrderStatusResult,
    PermanentBrokerError,
    PositionNotFound,
    PositionResult,
    SubmitResult,
    TransientBrokerError,
)
from autotrader.market_hours import market_now
from autotrader.models import BrokerCredentials, OptionType

logger = logging.getLogger(__name__)

CredentialProvider = Callable[[str], Awaitable[Optional[BrokerCredentials]]]
KiteError = Union[TransientBrokerError, PermanentBrokerError, OrderRejected]

_TRANSIENT_ERRORS = {"NetworkException", "DataException", "GeneralException"}
_PERMANENT_ERRORS = {"TokenException", "PermissionException", "UserException"}
_REJECTION_ERRORS = {"OrderException", "MarginException", "InputException"}


class KiteGateway(BrokerGateway):
    """Async Kite Connect client implementing the broker gateway contract."""

    def __init__(
        self,
        credentials: CredentialProvider,
        base_url: str = KITE_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        confirm_wait: float = ORDER_CONFIRM_WAIT,
        confirm_poll: float = ORDER_CONFIRM_POLL,
    ) -> None:
        self._credentials = credentials
        self._confirm_wait = confirm_wait
        self._confirm_poll = confirm_poll
        self._instrument_cache: dict[str, tuple[date, list[dict[str, str]]]] = {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=BROKER_ORDER_TIMEOUT,
            headers={"X-Kite-Version": KITE_API_VERSION},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(self, user_id: str, request: OrderRequest) -> SubmitResult:
        """POST /orders/regular, then poll the order history for the fill."""
        form: dict[str, Any] = {
            "tradingsymbol": request.symbol,
            "exchange": request.exchange,
            "transaction_type": request.transaction_type.value,
            "order_type": request.order_type,
            "quantity": request.quantity,
            "product": request.product,
            "validity": "DAY",
        }
        if request.order_type == "LIMIT" and request.price is not None:
            form["price"] = request.price
        if request.tag:
            form["tag"] = request.tag

        start = time.monotonic()
        data = await self._request(user_id, "POST", "/orders/regular", data=form)
        if not isinstance(data, dict):
            if isinstance(data, list):
                data = PermanentBrokerError(message="unexpected order response")
            logger.warning(
                "kite_order_error",
                extra={"user_id": user_id, "symbol": request.symbol, "error": _message(data)},
            )
            return data

        order_id = str(data.get("order_id", ""))
        ack = await self._confirm(user_id, order_id)
        logger.info(
            "kite_order_placed",
            extra={
                "user_id": user_id,
                "order_id": order_id,
                "symbol": request.symbol,
                "side": request.transaction_type.value,
                "quantity": request.quantity,
                "result": type(ack).__name__,
                "latency_ms": (time.monotonic() - start) * 1000,
            },
        )
        return ack

    async def _confirm(self, user_id: str, order_id: str) -> SubmitResult:
        """Wait briefly for a terminal status; an accepted order is never reported as failed."""
        deadline = time.monotonic() + self._confirm_wait
        last_status = "UNKNOWN"
        while True:
            state = await self.get_order(user_id, order_id)
            if isinstance(state, OrderAck):
                last_status = state.status
                if state.is_filled:
                    return state
                if state.is_dead:
                    return OrderRejected(reason=state.message or last_status.lower())
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self._confirm_poll)

        logger.info("kite_order_unconfirmed", extra={"order_id": order_id, "status": last_status})
        return OrderAck(order_id=order_id, status=last_status)

    async def get_order(self, user_id: str, order_id: str) -> OrderStatusResult:
        """GET /orders/{id}; the last history entry is the current state."""
        history = await self._request(user_id, "GET", f"/orders/{order_id}")
        if not isinstance(history, list):
            return _query_error(history, "unexpected order history response")
        if not history:
            return OrderAck(order_id=order_id, status="UNKNOWN")

        latest = history[-1]
        status = str(latest.get("status", "UNKNOWN"))
        ack = OrderAck(order_id=order_id, status=status)
        if ack.is_filled:
            ack.average_price = _float(latest.get("average_price"))
            ack.filled_quantity = _int(latest.get("filled_quantity"))
        elif ack.is_dead:
            ack.message = latest.get("status_message") or None
        return ack

    async def cancel_order(self, user_id: str, order_id: str) -> bool:
        data = await self._request(user_id, "DELETE", f"/orders/regular/{order_id}")
        ok = isinstance(data, dict)
        logger.info(
            "kite_order_cancelled",
            extra={"user_id": user_id, "order_id": order_id, "success": ok},
        )
        return ok

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------

    async def get_position(self, user_id: str, symbol: str, exchange: str) -> PositionResult:
        """GET /portfolio/positions and pick the net row for the instrument."""
        data = await self._request(user_id, "GET", "/portfolio/positions")
        if not isinstance(data, dict):
            return _query_error(data, "unexpected positions response")

        for row in data.get("net", []):
            if row.get("tradingsymbol") != symbol or row.get("exchange") != exchange:
                continue
            quantity = _int(row.get("quantity")) or 0
            if quantity == 0:
                break
            return BrokerPosition(
                symbol=symbol,
                exchange=exchange,
                quantity=quantity,
                average_price=_float(row.get("average_price")) or 0.0,
                last_price=_float(row.get("last_price")),
                pnl=_float(row.get("pnl")),
            )
        return PositionNotFound(symbol=symbol, exchange=exchange)

    async def connection_health(self, user_ids: list[str]) -> dict[str, bool]:
        """GET /user/profile for every user concurrently."""
        results = await asyncio.gather(
            *(self._request(uid, "GET", "/user/profile") for uid in user_ids)
        )
        health = {uid: isinstance(res, dict) for uid, res in zip(user_ids, results)}
        down = [uid for uid, ok in health.items() if not ok]
        if down:
            logger.warning("kite_users_disconnected", extra={"users": down})
        return health

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    async def option_chain(
        self,
        user_id: str,
        underlying: str,
        spot: float,
        strikes: list[float],
        option_type: OptionType,
    ) -> OptionChainResult:
        """Listed contracts from the instrument dump, priced with one /quote call."""
        rows = await self._instruments(user_id, "NFO")
        if not isinstance(rows, list):
            return _query_error(rows, "unexpected instruments response")

        wanted = {float(s) for s in strikes}
        today = market_now().date()
        listed = []
        for row in rows:
            if row.get("name") != underlying or row.get("instrument_type") != option_type.value:
                continue
            strike = _float(row.get("strike"))
            expiry = _date(row.get("expiry"))
            if strike not in wanted or expiry is None or expiry < today:
                continue
            listed.append(OptionContract(
                symbol=row["tradingsymbol"],
                exchange=row.get("exchange") or "NFO",
                underlying=underlying,
                strike=strike,
                expiry=expiry,
                option_type=option_type,
                lot_size=_int(row.get("lot_size")) or 1,
            ))

        # Selection only ever looks at the two nearest expiries
        nearest = sorted({c.expiry for c in listed})[:2]
        listed = [c for c in listed if c.expiry in nearest]
        if not listed:
            return []

        quotes = await self._request(
            user_id, "GET", "/quote",
            params=[("i", f"{c.exchange}:{c.symbol}") for c in listed],
        )
        if not isinstance(quotes, dict):
            return _query_error(quotes, "unexpected quote response")
        for contract in listed:
            quote = quotes.get(f"{contract.exchange}:{contract.symbol}") or {}
            contract.premium = _float(quote.get("last_price"))
            contract.open_interest = _int(quote.get("oi")) or 0

        logger.info(
            "kite_option_chain",
            extra={
                "underlying": underlying,
                "option_type": option_type.value,
                "contracts": len(listed),
                "expiries": [e.isoformat() for e in nearest],
            },
        )
        return listed

    async def _instruments(self, user_id: str, exchange: str) -> Union[list[dict[str, str]], KiteError]:
        """GET /instruments/{exchange} (CSV), cached until the trading day changes."""
        today = market_now().date()
        cached = self._instrument_cache.get(exchange)
        if cached is not None and cached[0] == today:
            return cached[1]

        resp = await self._send(user_id, "GET", f"/instruments/{exchange}")
        if not isinstance(resp, httpx.Response):
            return resp
        if resp.status_code >= 400:
            return _classify(resp.status_code, _json_dict(resp))

        rows = list(csv.DictReader(io.StringIO(resp.text)))
        self._instrument_cache[exchange] = (today, rows)
        logger.info("kite_instruments_loaded", extra={"exchange": exchange, "rows": len(rows)})
        return rows

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _send(
        self,
        user_id: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Union[httpx.Response, KiteError]:
        creds = await self._credentials(user_id)
        if creds is None:
            return PermanentBrokerError(message="no broker credentials")
        headers = {"Authorization": f"token {creds.api_key}:{creds.access_token}"}

        try:
            return await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException:
            return TransientBrokerError(message=f"{method} {path} timed out")
        except httpx.TransportError as exc:
            return TransientBrokerError(message=f"{method} {path}: {exc}")

    async def _request(
        self,
        user_id: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Union[dict, list, KiteError]:
        resp = await self._send(user_id, method, path, **kwargs)
        if not isinstance(resp, httpx.Response):
            return resp

        body = _json_dict(resp)
        if resp.status_code < 400 and body.get("status") == "success":
            return body.get("data", {})
        return _classify(resp.status_code, body)


def _json_dict(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _query_error(
    result: Union[dict, list, KiteError],
    unexpected: str,
) -> Union[TransientBrokerError, PermanentBrokerError]:
    """Narrow a failed read to the variants query callers handle."""
    if isinstance(result, OrderRejected):
        return PermanentBrokerError(message=result.reason)
    if isinstance(result, (TransientBrokerError, PermanentBrokerError)):
        return result
    return PermanentBrokerError(message=unexpected)


def _classify(status_code: int, body: dict) -> KiteError:
    error_type = body.get("error_type", "")
    message = body.get("message") or f"HTTP {status_code}"

    if status_code == 429 or status_code >= 500 or error_type in _TRANSIENT_ERRORS:
        return TransientBrokerError(message=message, status_code=status_code)
    if error_type in _REJECTION_ERRORS:
        return OrderRejected(reason=message)
    if status_code in (401, 403) or error_type in _PERMANENT_ERRORS:
        return PermanentBrokerError(message=message, status_code=status_code)
    if 400 <= status_code < 500:
        return OrderRejected(reason=message)
    return PermanentBrokerError(message=message, status_code=status_code)


def _message(result: KiteError) -> str:
    return result.reason if isinstance(result, OrderRejected) else result.message


def _float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        return None
