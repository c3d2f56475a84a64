import time
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from billing.api import create_app

USER = {"X-User-Id": "user-1"}
ADMIN = {"X-Admin-Token": "secret"}


@pytest.fixture()
def app(service, settings, registry):
    return create_app(service, settings, registry)


def client_for(app):
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.anyio("asyncio")
async def test_healthz(app, service):
    service.start_session("user-1", "vid-1")

    async with client_for(app) as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "active_sessions": 1, "connections": 0}


@pytest.mark.anyio("asyncio")
async def test_status_requires_identity_and_known_user(app):
    async with client_for(app) as client:
        missing = await client.get("/api/billing/status")
        unknown = await client.get("/api/billing/status", headers={"X-User-Id": "ghost"})
        ok = await client.get("/api/billing/status", headers=USER)

    assert missing.status_code == 401
    assert unknown.status_code == 404
    assert ok.status_code == 200
    body = ok.json()
    assert body["user_id"] == "user-1"
    assert body["pending_deduction"] == "0.000000"
    assert body["active_session"] is None


@pytest.mark.anyio("asyncio")
async def test_manifest_starts_session_and_chunks_are_charged(app, service):
    async with client_for(app) as client:
        manifest = await client.post(
            "/api/billing/segments",
            json={"video_id": "vid-1", "segment_name": "manifest.mpd"},
            headers=USER,
        )
        init = await client.post(
            "/api/billing/segments",
            json={"video_id": "vid-1", "segment_name": "init-stream0.m4s"},
            headers=USER,
        )
        chunk = await client.post(
            "/api/billing/segments",
            json={"videoId": "vid-1", "segmentName": "chunk-stream0-00001.m4s"},
            headers=USER,
        )

    assert manifest.status_code == 200
    assert manifest.json()["session"]["creator_id"] == "creator-1"
    assert init.json() == {"billable": False, "admitted": True}
    assert chunk.status_code == 200
    assert chunk.json()["admitted"] is True
    assert chunk.json()["pending_after"] == "0.000200"
    assert service.sessions.get_session("user-1").total_requests == 1


@pytest.mark.anyio("asyncio")
async def test_exhausted_balance_returns_payment_required(app, seeded):
    seeded.create_user("user-poor", balance=Decimal("0.0002"))
    headers = {"X-User-Id": "user-poor"}
    payload = {"video_id": "vid-1", "segment_name": "chunk-stream0-00001.m4s"}

    async with client_for(app) as client:
        first = await client.post("/api/billing/segments", json=payload, headers=headers)
        second = await client.post("/api/billing/segments", json=payload, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 402
    assert second.json()["reason"] == "insufficient balance"


@pytest.mark.anyio("asyncio")
async def test_segment_names_with_paths_are_rejected(app):
    async with client_for(app) as client:
        response = await client.post(
            "/api/billing/segments",
            json={"video_id": "vid-1", "segment_name": "../chunk-1.m4s"},
            headers=USER,
        )

    assert response.status_code == 422


@pytest.mark.anyio("asyncio")
async def test_session_lifecycle_endpoints(app, seeded, clock):
    async with client_for(app) as client:
        unknown = await client.post("/api/billing/sessions/start", json={"video_id": "nope"}, headers=USER)
        started = await client.post("/api/billing/sessions/start", json={"video_id": "vid-1"}, headers=USER)
        clock.advance(40)
        beat = await client.post(
            "/api/billing/sessions/heartbeat",
            json={"video_id": "vid-1", "playback_position": 40.0},
            headers=USER,
        )
        clock.advance(20)
        ended = await client.post("/api/billing/sessions/end", headers=USER)
        ended_again = await client.post("/api/billing/sessions/end", headers=USER)

    assert unknown.status_code == 404
    assert started.status_code == 200
    assert started.json()["session"]["video_id"] == "vid-1"
    assert beat.json()["session_active"] is True
    assert beat.json()["session"]["playback_position"] == 40.0
    settlement = ended.json()["settlement"]
    assert settlement["success"] is True
    assert settlement["watch_time_settled"] == "60.000"
    assert ended_again.json() == {"settlement": None}
    assert seeded.get_creator("creator-1")["watch_time_seconds"] == Decimal("60")


@pytest.mark.anyio("asyncio")
async def test_admin_endpoints_require_token(app):
    async with client_for(app) as client:
        settle = await client.post("/api/billing/settle", params={"user_id": "user-1"})
        listing = await client.get("/api/billing/sessions")
        credit = await client.post("/api/billing/users/user-1/credit", json={"amount": "1"})

    assert settle.status_code == 401
    assert listing.status_code == 401
    assert credit.status_code == 401


@pytest.mark.anyio("asyncio")
async def test_force_settle_endpoint(app, service, seeded):
    async with client_for(app) as client:
        no_session = await client.post("/api/billing/settle", params={"user_id": "user-1"}, headers=ADMIN)

        service.start_session("user-1", "vid-1")
        service.charge_for_request("user-1")
        settled = await client.post("/api/billing/settle", params={"user_id": "user-1"}, headers=ADMIN)
        listing = await client.get("/api/billing/sessions", headers=ADMIN)

    assert no_session.status_code == 503
    assert no_session.json()["success"] is False
    assert settled.status_code == 200
    assert settled.json()["amount_settled"] == "0.000200"
    assert seeded.read_balance("user-1") == Decimal("0.9998")
    assert [item["user_id"] for item in listing.json()["sessions"]] == ["user-1"]


@pytest.mark.anyio("asyncio")
async def test_credit_endpoint(app, seeded):
    async with client_for(app) as client:
        credited = await client.post("/api/billing/users/user-1/credit", json={"amount": "2.5"}, headers=ADMIN)
        missing = await client.post("/api/billing/users/ghost/credit", json={"amount": "1"}, headers=ADMIN)
        invalid = await client.post("/api/billing/users/user-1/credit", json={"amount": "-1"}, headers=ADMIN)

    assert credited.status_code == 200
    assert Decimal(credited.json()["balance"]) == Decimal("3.5")
    assert missing.status_code == 400
    assert invalid.status_code == 422


def test_websocket_session_flow(app, service, fast_ledger, notifier, registry):
    client = TestClient(app)
    with client.websocket_connect("/ws/billing?user_id=user-1") as socket:
        opened = socket.receive_json()
        assert opened["type"] == "status_update"
        assert opened["data"]["user_id"] == "user-1"
        assert registry.is_connected("user-1")

        socket.send_json({"type": "ping"})
        assert socket.receive_json() == {"type": "pong"}

        socket.send_json({"type": "start_session", "videoId": "vid-1"})
        started = socket.receive_json()
        assert started["type"] == "session_started"
        assert started["data"]["session"]["creator_id"] == "creator-1"

        service.charge_for_request("user-1")
        notifier.deliver_pending()
        pushed = socket.receive_json()
        assert pushed == {
            "type": "balance_update",
            "data": {"pending_deduction": "0.000200", "effective_balance": "0.999800"},
        }

        socket.send_json({"type": "heartbeat", "video_id": "vid-1", "playback_position": 3.5})
        ack = socket.receive_json()
        assert ack["type"] == "heartbeat_ack"
        assert ack["data"]["session_active"] is True

        socket.send_json({"type": "get_status"})
        status = socket.receive_json()
        assert status["type"] == "status_update"
        assert status["data"]["pending_deduction"] == "0.000200"

        socket.send_json({"type": "start_session"})
        assert socket.receive_json() == {"type": "error", "error": "videoId is required"}

        socket.send_json({"type": "rewind"})
        assert socket.receive_json()["type"] == "error"

        socket.send_json({"type": "end_session"})
        ended = socket.receive_json()
        assert ended["type"] == "session_ended"
        assert ended["data"]["settlement"]["amount_settled"] == "0.000200"

    assert not registry.is_connected("user-1")


def test_websocket_disconnect_ends_the_session(app, service, fast_ledger, seeded):
    client = TestClient(app)
    with client.websocket_connect("/ws/billing?user_id=user-1") as socket:
        socket.receive_json()
        socket.send_json({"type": "start_session", "video_id": "vid-1"})
        socket.receive_json()
        service.charge_for_request("user-1")

    deadline = time.monotonic() + 5
    while fast_ledger.get_session("user-1") is not None and time.monotonic() < deadline:
        time.sleep(0.01)
    assert fast_ledger.get_session("user-1") is None
    assert seeded.read_balance("user-1") == Decimal("0.9998")


def test_websocket_rejects_anonymous_connections(app):
    client = TestClient(app)
    with client.websocket_connect("/ws/billing") as socket:
        assert socket.receive_json() == {"type": "error", "error": "Not authenticated"}


@pytest.mark.anyio("asyncio")
async def test_chunk_without_manifest_opens_a_session(app, service, seeded, clock):
    async with client_for(app) as client:
        chunk = await client.post(
            "/api/billing/segments",
            json={"video_id": "vid-1", "segment_name": "chunk-stream0-00001.m4s"},
            headers=USER,
        )
        unknown = await client.post(
            "/api/billing/segments",
            json={"video_id": "missing", "segment_name": "chunk-stream0-00001.m4s"},
            headers=USER,
        )

    assert chunk.status_code == 200
    assert chunk.json()["admitted"] is True
    assert service.active_sessions() == ["user-1"]
    assert unknown.status_code == 404

    clock.advance(600)
    service.reaper.sweep_once()

    assert seeded.read_balance("user-1") == Decimal("0.9998")
