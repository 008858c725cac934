"""Tests for the HTTP surface.

Tests cover:
  - POST /webhook/signal: 202 with a signal id, 4xx bodies on rejection
  - POST /emergency-stop: activate and clear, bot and global scope
  - POST /emergency-square-off
  - GET views: positions, executions, signals, health
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from autotrader.models import Bot
from autotrader.scheduler import AutotraderScheduler
from autotrader.server import create_app
from autotrader.store import InMemoryTradeStore

from conftest import MARKET_MORNING, FakeGateway, make_allocation


@pytest.fixture
async def service():
    svc = AutotraderScheduler(store=InMemoryTradeStore(), gateway=FakeGateway(), dry_run=True)
    svc.orchestrator.clock = lambda: MARKET_MORNING
    svc.intake._passphrase = ""
    await svc.store.upsert_bot(Bot(bot_id="bot-nifty", symbol="NIFTYFUT", exchange="NFO"))
    for uid in ("u1", "u2"):
        await svc.store.upsert_allocation(make_allocation(uid))
    return svc


@pytest.fixture
async def client(service):
    async with TestClient(TestServer(create_app(service))) as c:
        yield c


SIGNAL = {"botId": "bot-nifty", "symbol": "NIFTYFUT", "side": "BUY", "price": 22_000}


async def _send_signal(client, service, payload=SIGNAL):
    resp = await client.post("/webhook/signal", json=payload)
    body = await resp.json()
    await service.intake.drain()
    return resp, body


# ============================================================
# Webhook
# ============================================================

class TestWebhook:

    async def test_accepted(self, client, service):
        resp, body = await _send_signal(client, service)
        assert resp.status == 202
        assert body["success"] is True
        assert body["signalId"].startswith("SG")

        resp = await client.get(f"/signals/{body['signalId']}")
        signal = await resp.json()
        assert signal["processed"] is True
        assert signal["successful_executions"] == 2

    async def test_invalid_payload(self, client, service):
        resp, body = await _send_signal(client, service, {**SIGNAL, "price": -1})
        assert resp.status == 400
        assert body["success"] is False

    async def test_unknown_bot(self, client, service):
        resp, _ = await _send_signal(client, service, {**SIGNAL, "botId": "nope"})
        assert resp.status == 404

    async def test_not_json(self, client):
        resp = await client.post("/webhook/signal", data=b"side=BUY")
        assert resp.status == 400

    async def test_undecodable_body(self, client):
        resp = await client.post(
            "/webhook/signal",
            data=b"\xff\xfe\xfa",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert (await resp.json())["success"] is False

    async def test_signal_not_found(self, client):
        resp = await client.get("/signals/SGmissing")
        assert resp.status == 404


# ============================================================
# Emergency controls
# ============================================================

class TestEmergency:

    async def test_stop_and_clear(self, client, service):
        resp = await client.post("/emergency-stop", json={"botId": "bot-nifty", "reason": "drawdown"})
        body = await resp.json()
        assert resp.status == 200
        assert body["emergencyStop"] is True
        assert body["scope"] == "bot-nifty"
        assert service.stop.is_stopped("bot-nifty")

        resp = await client.post("/emergency-stop", json={"botId": "bot-nifty", "emergencyStop": False})
        assert (await resp.json())["emergencyStop"] is False
        assert not service.stop.is_stopped("bot-nifty")

    async def test_global_stop(self, client, service):
        resp = await client.post("/emergency-stop", json={"global": True})
        assert (await resp.json())["scope"] == "global"
        assert service.stop.is_stopped("anything")

    async def test_scope_required(self, client):
        resp = await client.post("/emergency-stop", json={})
        assert resp.status == 400

    async def test_square_off(self, client, service):
        await _send_signal(client, service)

        resp = await client.post("/emergency-square-off", json={"botId": "bot-nifty"})
        body = await resp.json()

        assert body["attempted"] == 2
        assert body["executed"] == 2
        assert await service.store.list_positions(open_only=True) == []


# ============================================================
# Views
# ============================================================

class TestViews:

    async def test_positions_and_executions(self, client, service):
        await _send_signal(client, service)

        resp = await client.get("/positions", params={"userId": "u1", "open": "true"})
        positions = await resp.json()
        assert len(positions) == 1
        assert positions[0]["current_quantity"] == 50

        resp = await client.get("/executions", params={"botId": "bot-nifty", "status": "executed"})
        assert len(await resp.json()) == 2

    async def test_bad_status_filter(self, client):
        resp = await client.get("/executions", params={"status": "LOST"})
        assert resp.status == 400

    async def test_health(self, client):
        resp = await client.get("/health")
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["mode"] == "DRY_RUN"
        assert body["emergency_stop"] == {"global": False, "bots": []}
