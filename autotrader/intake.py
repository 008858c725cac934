"""Signal intake: validates webhook payloads and starts the fan-out.

The payload is validated and recorded synchronously so the caller gets a
signal id (or a 4xx) immediately. Execution for the subscribers runs as a
background task; the HTTP layer answers 202 without waiting for it.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from autotrader.config import WEBHOOK_PASSPHRASE
from autotrader.errors import SignalValidationError
from autotrader.execution.orchestrator import TradeOrchestrator
from autotrader.models import SignalAction, WebhookSignal
from autotrader.store import TradeStore

logger = logging.getLogger(__name__)

# Alert templates in the wild use a few spellings for the same action
_ACTION_ALIASES = {
    "LONG": SignalAction.BUY,
    "SELL_SHORT": SignalAction.SHORT,
    "CLOSE": SignalAction.EXIT,
}


class SignalPayload(BaseModel):
    """Inbound webhook body. Accepts camelCase as sent by alerting tools."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    bot_id: str = Field(..., alias="botId", min_length=1)
    symbol: str = Field(..., min_length=1)
    exchange: Optional[str] = None
    instrument_type: Optional[str] = Field(default=None, alias="instrumentType")
    action: Optional[str] = None
    side: Optional[str] = None
    price: float = Field(..., gt=0)
    quantity: Optional[int] = Field(default=None, gt=0)
    stop_loss: Optional[float] = Field(default=None, alias="stopLoss", gt=0)
    target: Optional[float] = Field(default=None, gt=0)
    emergency_stop: bool = Field(default=False, alias="emergencyStop")
    passphrase: Optional[str] = None


def parse_action(raw: Optional[str]) -> SignalAction:
    if not raw:
        raise SignalValidationError("missing side/action")
    value = raw.strip().upper()
    if value in _ACTION_ALIASES:
        return _ACTION_ALIASES[value]
    try:
        return SignalAction(value)
    except ValueError:
        raise SignalValidationError(f"invalid side: {raw}") from None


class SignalIntake:
    """Entry point for signals from the webhook route."""

    def __init__(
        self,
        store: TradeStore,
        orchestrator: TradeOrchestrator,
        passphrase: str = WEBHOOK_PASSPHRASE,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self._passphrase = passphrase
        self._tasks: set[asyncio.Task] = set()

    async def receive(self, payload: dict[str, Any]) -> WebhookSignal:
        """Validate and record `payload`, then fan it out in the background.

        Raises:
            SignalValidationError: malformed payload (400), bad passphrase
                (401) or unknown / inactive bot (404). Never retried.
        """
        signal = await self.validate(payload)
        await self.store.insert_signal(signal)
        logger.info(
            "signal_received",
            extra={
                "signal_id": signal.signal_id,
                "bot_id": signal.bot_id,
                "action": signal.action.value,
                "symbol": signal.symbol,
                "price": signal.price,
                "emergency_stop": signal.emergency_stop,
            },
        )

        task = asyncio.create_task(self._fan_out(signal), name=f"fanout-{signal.signal_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return signal

    async def validate(self, payload: dict[str, Any]) -> WebhookSignal:
        try:
            body = SignalPayload.model_validate(payload)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise SignalValidationError(f"invalid payload: {fields}") from None

        if self._passphrase and not hmac.compare_digest(body.passphrase or "", self._passphrase):
            raise SignalValidationError("invalid passphrase", status=401)

        action = parse_action(body.side or body.action)

        bot = await self.store.get_bot(body.bot_id)
        if bot is None or not bot.is_active:
            raise SignalValidationError(f"no active bot {body.bot_id}", status=404)

        raw = payload.copy()
        raw.pop("passphrase", None)
        return WebhookSignal(
            bot_id=bot.bot_id,
            action=action,
            symbol=body.symbol,
            exchange=body.exchange or bot.exchange,
            instrument_type=body.instrument_type or bot.instrument_type,
            price=body.price,
            quantity=body.quantity,
            stop_loss=body.stop_loss,
            target=body.target,
            emergency_stop=body.emergency_stop,
            raw_payload=raw,
        )

    async def drain(self) -> None:
        """Wait for in-flight fan-outs (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _fan_out(self, signal: WebhookSignal) -> None:
        try:
            await self.orchestrator.process_signal(signal)
        except Exception:
            logger.error("signal_fanout_error", extra={"signal_id": signal.signal_id}, exc_info=True)
