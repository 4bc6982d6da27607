import json

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from voice_led_bridge.api import create_app
from voice_led_bridge.config import Config
from voice_led_bridge.db import apply_migrations
from voice_led_bridge.gateway import PublishGateway
from voice_led_bridge.store import LightConfigStore


async def _store(tmp_path) -> LightConfigStore:
    db_path = tmp_path / "led-map.sqlite3"
    apply_migrations(db_path)
    return LightConfigStore(db_path, integrity_check_interval=0)


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def test_metrics_endpoint_is_open() -> None:
    app = create_app(Config(api_key="secret"), store=object())
    client = TestClient(app)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "voiceled_publish_total" in response.text


def test_auth_required_when_configured() -> None:
    app = create_app(Config(api_key="secret", api_bearer_token="bearer"), store=object())
    client = TestClient(app)

    assert client.get("/health").status_code == 401
    assert client.get("/health", headers={"X-API-Key": "secret"}).status_code == 200
    assert client.get("/health", headers={"Authorization": "ApiKey secret"}).status_code == 200
    assert client.get("/health", headers={"Authorization": "Bearer bearer"}).status_code == 200
    assert client.get("/health", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_health_reports_broker_state(fake_mqtt) -> None:
    gateway = PublishGateway(Config(), client=fake_mqtt)
    app = create_app(Config(), store=object(), gateway=gateway)
    client = TestClient(app)

    assert client.get("/health").json() == {"status": "ok", "broker": "disconnected"}


@pytest.mark.asyncio
async def test_user_crud_round_trip(tmp_path) -> None:
    store = await _store(tmp_path)
    app = create_app(Config(), store=store)
    try:
        async with _client(app) as client:
            created = await client.put(
                "/users/42",
                json={"username": "alice", "device": "kitchen", "led": 2, "color": "#FF0000"},
            )
            fetched = await client.get("/users/42")
            disabled = await client.post("/users/42/disable")
            enabled_only = await client.get("/users", params={"enabled_only": "true"})
            everyone = await client.get("/users")
            status = await client.get("/status")
            deleted = await client.delete("/users/42")
            missing = await client.get("/users/42")
            delete_again = await client.delete("/users/42")
    finally:
        await store.stop()

    assert created.status_code == 200
    body = created.json()
    assert body["user_id"] == "42"
    assert body["username"] == "alice"
    assert body["join_effect"] == "wakeup"
    assert body["brightness"] == 255
    assert body["enabled"] is True
    assert fetched.json()["color"] == "#FF0000"
    assert disabled.json()["enabled"] is False
    assert enabled_only.json() == []
    assert [row["user_id"] for row in everyone.json()] == ["42"]
    assert status.json() == {
        "broker": "unavailable",
        "users_total": 1,
        "users_enabled": 0,
        "users_disabled": 1,
    }
    assert deleted.status_code == 204
    assert missing.status_code == 404
    assert delete_again.status_code == 404


@pytest.mark.asyncio
async def test_invalid_upsert_returns_400(tmp_path) -> None:
    store = await _store(tmp_path)
    app = create_app(Config(), store=store)
    try:
        async with _client(app) as client:
            no_led = await client.put("/users/42", json={"device": "kitchen"})
            bad_color = await client.put("/users/42", json={"device": "kitchen", "led": 1, "color": "blue"})
            unknown = await client.put("/users/42", json={"device": "kitchen", "led": 1, "glitter": 1})
            listing = await client.get("/users")
    finally:
        await store.stop()

    assert no_led.status_code == 400
    assert "led is required" in no_led.json()["detail"]
    assert bad_color.status_code == 400
    assert unknown.status_code == 422
    assert listing.json() == []


@pytest.mark.asyncio
async def test_enable_unknown_user_returns_404(tmp_path) -> None:
    store = await _store(tmp_path)
    app = create_app(Config(), store=store)
    try:
        async with _client(app) as client:
            response = await client.post("/users/nobody/enable")
    finally:
        await store.stop()

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_preview_shows_command_without_publishing(tmp_path, fake_mqtt) -> None:
    store = await _store(tmp_path)
    gateway = PublishGateway(Config(), client=fake_mqtt)
    app = create_app(Config(), store=store, gateway=gateway)
    try:
        await store.upsert(
            "7",
            "bob",
            {"device": "hall", "led": 5, "color": "#00FF00", "join_effect": "solid", "brightness": 128},
        )
        async with _client(app) as client:
            join = await client.get("/users/7/preview", params={"kind": "join"})
            leave = await client.get("/users/7/preview", params={"kind": "leave"})
            bad_kind = await client.get("/users/7/preview", params={"kind": "move"})
    finally:
        await store.stop()

    assert join.json() == {
        "user_id": "7",
        "kind": "join",
        "effect": "solid",
        "topic": "lights/hall/control",
        "command": {"leds": [{"index": 5, "color": "#00FF00", "brightness": 128}]},
    }
    assert leave.json()["command"] == {"effect": "sleep", "led": 5, "duration": 4000}
    assert bad_kind.status_code == 400
    assert fake_mqtt.published == []


@pytest.mark.asyncio
async def test_test_endpoint_publishes(tmp_path, fake_mqtt) -> None:
    store = await _store(tmp_path)
    gateway = PublishGateway(Config(), client=fake_mqtt)
    await gateway.start()
    fake_mqtt.simulate_connect()
    app = create_app(Config(), store=store, gateway=gateway)
    try:
        await store.upsert("7", "bob", {"device": "hall", "led": 5, "leave_effect": "off"})
        async with _client(app) as client:
            response = await client.post("/users/7/test", params={"kind": "leave"})
    finally:
        await gateway.stop()
        await store.stop()

    body = response.json()
    assert response.status_code == 200
    assert body["status"] == "published"
    assert body["topic"] == "lights/hall/control"
    assert body["label"] == "bob"
    assert body["command"] == {"leds": [{"index": 5, "color": "#000000"}]}
    topic, payload, qos = fake_mqtt.published[0]
    assert json.loads(payload) == body["command"]


@pytest.mark.asyncio
async def test_test_endpoint_without_gateway(tmp_path) -> None:
    store = await _store(tmp_path)
    app = create_app(Config(), store=store)
    try:
        await store.upsert("7", "bob", {"device": "hall", "led": 5})
        async with _client(app) as client:
            response = await client.post("/users/7/test")
    finally:
        await store.stop()

    assert response.status_code == 503
