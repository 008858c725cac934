"""HTTP surface: webhook intake, emergency controls and read-only views."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from autotrader.errors import SignalValidationError
from autotrader.models import ExecutionStatus

if TYPE_CHECKING:
    from autotrader.scheduler import AutotraderScheduler

logger = logging.getLogger(__name__)

SERVICE_KEY: web.AppKey[Any] = web.AppKey("service")


def create_app(service: AutotraderScheduler) -> web.Application:
    app = web.Application()
    app[SERVICE_KEY] = service
    app.router.add_post("/webhook/signal", _webhook_handler)
    app.router.add_post("/emergency-stop", _emergency_stop_handler)
    app.router.add_post("/emergency-square-off", _square_off_handler)
    app.router.add_get("/positions", _positions_handler)
    app.router.add_get("/executions", _executions_handler)
    app.router.add_get("/signals/{signal_id}", _signal_handler)
    app.router.add_get("/health", _health_handler)
    return app


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        # JSONDecodeError and UnicodeDecodeError both land here
        raise SignalValidationError("body is not valid JSON") from None
    if not isinstance(body, dict):
        raise SignalValidationError("body must be a JSON object")
    return body


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


async def _webhook_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    try:
        payload = await _json_body(request)
        signal = await service.intake.receive(payload)
    except SignalValidationError as exc:
        logger.info("signal_rejected", extra={"error": str(exc), "status": exc.status})
        return _error(str(exc), exc.status)

    return web.json_response(
        {
            "success": True,
            "signalId": signal.signal_id,
            "botId": signal.bot_id,
            "action": signal.action.value,
        },
        status=202,
    )


async def _signal_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    signal = await service.store.get_signal(request.match_info["signal_id"])
    if signal is None:
        return _error("signal not found", 404)
    return web.json_response(signal.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Emergency controls
# ---------------------------------------------------------------------------


async def _emergency_stop_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    try:
        body = await _json_body(request)
    except SignalValidationError as exc:
        return _error(str(exc), exc.status)

    bot_id = body.get("botId")
    is_global = _flag(body.get("global", False))
    if not bot_id and not is_global:
        return _error("botId or global is required", 400)
    scope = None if is_global else str(bot_id)

    if _flag(body.get("emergencyStop", True)):
        report = await service.stop.activate(scope, reason=str(body.get("reason", "api")))
        return web.json_response({
            "success": True,
            "emergencyStop": True,
            **report.model_dump(mode="json"),
        })

    await service.stop.clear(scope)
    return web.json_response({
        "success": True,
        "emergencyStop": False,
        "scope": scope or "global",
    })


async def _square_off_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    try:
        body = await _json_body(request)
    except SignalValidationError as exc:
        return _error(str(exc), exc.status)
    bot_id = body.get("botId")
    if not bot_id:
        return _error("botId is required", 400)

    executions = await service.orchestrator.emergency_square_off(str(bot_id))
    executed = [ex for ex in executions if ex.status == ExecutionStatus.EXECUTED]
    return web.json_response({
        "success": True,
        "botId": bot_id,
        "attempted": len(executions),
        "executed": len(executed),
        "executions": [ex.model_dump(mode="json") for ex in executions],
    })


# ---------------------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------------------


async def _positions_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    q = request.query
    positions = await service.store.list_positions(
        user_id=q.get("userId"),
        bot_id=q.get("botId"),
        open_only=_flag(q.get("open", "false")),
    )
    return web.json_response([p.model_dump(mode="json") for p in positions])


async def _executions_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    q = request.query
    try:
        status = ExecutionStatus(q["status"].upper()) if "status" in q else None
        limit = int(q.get("limit", "100"))
    except ValueError:
        return _error("invalid status or limit", 400)

    executions = await service.store.list_executions(
        signal_id=q.get("signalId"),
        user_id=q.get("userId"),
        bot_id=q.get("botId"),
        status=status,
        limit=max(1, min(limit, 1000)),
    )
    return web.json_response([ex.model_dump(mode="json") for ex in executions])


async def _health_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    return web.json_response({"status": "ok", **service.status()})
