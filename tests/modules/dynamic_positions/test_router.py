"""
Dynamic Positions API Tests

Endpoints exercised through the ASGI app with services on app.state.
"""

import pytest
from decimal import Decimal
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from app.modules.dynamic_positions.router import router
from app.shared.exceptions import ExchangeError


OPEN_POSITION_BODY = {
    "contract": "BTC_USDT",
    "direction": "long",
    "stop_loss": "49000",
    "take_profit": "52000",
    "trade_size_usd": "1000",
    "leverage": 10,
}


@pytest.fixture
def app(orchestrator, planner, order_cleaner):
    application = FastAPI()
    application.include_router(router, prefix="/api/v1")
    application.state.orchestrator = orchestrator
    application.state.planner = planner
    application.state.order_cleaner = order_cleaner
    return application


@pytest.fixture
def http_client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ==================== READ ====================

@pytest.mark.asyncio
async def test_get_status(http_client):
    async with http_client as ac:
        response = await ac.get("/api/v1/dynamic-positions/status")

    assert response.status_code == 200
    body = response.json()
    assert body["error"] is None
    assert body["data"]["running"] is False
    assert body["data"]["active_position_count"] == 0


@pytest.mark.asyncio
async def test_get_unknown_position(http_client):
    async with http_client as ac:
        response = await ac.get("/api/v1/dynamic-positions/positions/unknown")

    assert response.status_code == 404
    body = response.json()
    assert body["data"] is None
    assert body["error"]["code"] == "POSITION_NOT_FOUND"


# ==================== OPEN POSITION ====================

@pytest.mark.asyncio
async def test_open_position(http_client, exchange):
    async with http_client as ac:
        response = await ac.post("/api/v1/dynamic-positions/positions", json=OPEN_POSITION_BODY)
        assert response.status_code == 201
        data = response.json()["data"]

        detail = await ac.get(f"/api/v1/dynamic-positions/positions/{data['position_id']}")

    assert data["quantity"] == 200
    assert data["strategy_type"] == "multi_tier"
    assert len(exchange.open_orders()) == 3

    assert detail.status_code == 200
    position = detail.json()["data"]["position"]
    assert position["phase"] == "initial"
    assert position["remaining_size"] == 200


@pytest.mark.asyncio
async def test_open_position_invalid_sides(http_client):
    body = {**OPEN_POSITION_BODY, "stop_loss": "53000"}

    async with http_client as ac:
        response = await ac.post("/api/v1/dynamic-positions/positions", json=body)

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_open_position_already_open(http_client, exchange):
    exchange.positions["BTC_USDT"] = 1

    async with http_client as ac:
        response = await ac.post("/api/v1/dynamic-positions/positions", json=OPEN_POSITION_BODY)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "POSITION_ALREADY_OPEN"


@pytest.mark.asyncio
async def test_open_position_partial_execution(http_client, exchange):
    exchange.trigger_errors = [None, ExchangeError("Order rejected")]

    async with http_client as ac:
        response = await ac.post("/api/v1/dynamic-positions/positions", json=OPEN_POSITION_BODY)

    assert response.status_code == 502
    body = response.json()
    assert body["error"]["code"] == "PARTIAL_EXECUTION"
    assert body["data"]["emergency_stop_order_id"] == "po-2"
    assert body["data"]["rollback_results"] == [
        {"order_id": "po-1", "success": True, "error": None}
    ]


# ==================== CONTROLS ====================

@pytest.mark.asyncio
async def test_start_and_stop(http_client, orchestrator):
    async with http_client as ac:
        started = await ac.post("/api/v1/dynamic-positions/start")
        again = await ac.post("/api/v1/dynamic-positions/start")
        stopped = await ac.post("/api/v1/dynamic-positions/stop")

    assert started.json()["data"]["started"] is True
    assert again.json()["data"]["started"] is False
    assert stopped.json()["data"]["stopped"] is True
    assert not orchestrator.is_running


@pytest.mark.asyncio
async def test_emergency_stop_without_body(http_client, store):
    async with http_client as ac:
        response = await ac.post("/api/v1/dynamic-positions/emergency-stop")

    assert response.status_code == 200
    assert "Operator emergency stop" in response.json()["message"]
    assert (await store.get_monitoring_state()).is_active is False


@pytest.mark.asyncio
async def test_cleanup_orphans(http_client, exchange):
    exchange.positions["BTC_USDT"] = 100
    exchange.add_order("keep", "BTC_USDT", Decimal("49000"))
    exchange.add_order("orphan", "ETH_USDT", Decimal("2900"))

    async with http_client as ac:
        response = await ac.post(
            "/api/v1/dynamic-positions/cleanup-orphans",
            json={"credential_ref": "default", "settle": "usdt"},
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["cancelled_orders"] == [{"id": "orphan", "contract": "ETH_USDT"}]
    assert data["orphaned_contracts"] == ["ETH_USDT"]
    assert exchange.cancelled == ["orphan"]


@pytest.mark.asyncio
async def test_cleanup_orphans_unknown_credentials(http_client):
    async with http_client as ac:
        response = await ac.post(
            "/api/v1/dynamic-positions/cleanup-orphans",
            json={"credential_ref": "missing"},
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "CREDENTIAL_NOT_FOUND"
