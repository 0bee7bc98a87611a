"""
Tests for the HTTP app: monitoring endpoints and the protocol command
endpoint.
"""

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from idea_queue.protocol.routes import open_session
from idea_queue.server import create_app
from idea_queue.subscribers import ensure_token, regenerate_token


@pytest.fixture
def app(db):
    return create_app(database=db)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


@pytest.fixture
def token(db, alice):
    return ensure_token(db, alice.id)


@pytest.fixture
def live_session(app, alice):
    return open_session(app.state.sessions, alice.id, lambda sid: f"http://testserver/cmd?session={sid}")


def drain(session):
    frames = []
    while not session.outbox.empty():
        frames.append(session.outbox.get_nowait())
    return frames


async def post_command(client, token, session_id, message):
    return await client.post(
        f"/stream/{token}/command",
        params={"session": session_id},
        content=message if isinstance(message, str) else json.dumps(message),
        headers={"Content-Type": "application/json"},
    )


class TestMonitoring:
    """Tests for health, stats and pass endpoints."""

    async def test_health(self, client, live_session):
        resp = await client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["live_sessions"] == 1

    async def test_stats(self, client, alice):
        resp = await client.get("/stats")

        assert resp.status_code == 200
        assert resp.json()["total_subscribers"] == 1
        assert resp.json()["total_items"] == 0

    async def test_scheduler_disabled(self, client):
        resp = await client.get("/scheduler")

        assert resp.json() == {"enabled": False, "next_run": None}

    async def test_manual_run(self, client, db):
        resp = await client.post("/run")

        assert resp.status_code == 200
        assert resp.json()["status"] == "started"
        assert db.get_stats()["total_runs"] == 1


class TestStreamAuth:
    """Tests for token checks."""

    async def test_open_with_bad_token(self, client):
        resp = await client.get("/stream/not-a-token/open")

        assert resp.status_code == 401

    async def test_command_with_bad_token(self, client, live_session):
        resp = await post_command(client, "not-a-token", live_session.session_id, {"jsonrpc": "2.0", "id": 1, "method": "ping"})

        assert resp.status_code == 401

    async def test_regenerated_token_rejects_old(self, client, db, alice, token, live_session):
        regenerate_token(db, alice.id)

        resp = await post_command(client, token, live_session.session_id, {"jsonrpc": "2.0", "id": 1, "method": "ping"})

        assert resp.status_code == 401


class TestCommands:
    """Tests for posting commands to a live session."""

    async def test_missing_session(self, client, token):
        resp = await client.post(f"/stream/{token}/command", content="{}")

        assert resp.status_code == 400

    async def test_unknown_session(self, client, token):
        resp = await post_command(client, token, "no-such-session", {"jsonrpc": "2.0", "id": 1, "method": "ping"})

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Session not found"

    async def test_other_subscribers_session(self, client, db, bob, live_session):
        bob_token = ensure_token(db, bob.id)

        resp = await post_command(client, bob_token, live_session.session_id, {"jsonrpc": "2.0", "id": 1, "method": "ping"})

        assert resp.status_code == 404

    async def test_closed_session(self, client, app, token, live_session):
        app.state.sessions.remove(live_session.session_id)

        resp = await post_command(client, token, live_session.session_id, {"jsonrpc": "2.0", "id": 1, "method": "ping"})

        assert resp.status_code == 404

    async def test_parse_error(self, client, token, live_session):
        resp = await post_command(client, token, live_session.session_id, "{not json")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == -32700

    async def test_reply_in_body_and_on_stream(self, client, token, live_session):
        drain(live_session)

        resp = await post_command(client, token, live_session.session_id, {
            "jsonrpc": "2.0", "id": 7, "method": "initialize", "params": {"protocolVersion": "2024-11-05"},
        })

        assert resp.status_code == 200
        assert resp.json()["id"] == 7
        frames = drain(live_session)
        assert len(frames) == 1
        assert frames[0].startswith("event: message\ndata: ")
        assert json.loads(frames[0].split("data: ", 1)[1]) == resp.json()

    async def test_notification_accepted(self, client, token, live_session):
        await post_command(client, token, live_session.session_id, {"jsonrpc": "2.0", "id": 1, "method": "initialize"})
        drain(live_session)

        resp = await post_command(client, token, live_session.session_id, {
            "jsonrpc": "2.0", "method": "notifications/initialized",
        })

        assert resp.status_code == 202
        assert drain(live_session) == []

    async def test_tool_call_through_endpoint(self, client, token, live_session):
        await post_command(client, token, live_session.session_id, {"jsonrpc": "2.0", "id": 1, "method": "initialize"})

        resp = await post_command(client, token, live_session.session_id, {
            "jsonrpc": "2.0", "id": 2, "method": "tools/call",
            "params": {"name": "get_preferences", "arguments": {}},
        })

        payload = json.loads(resp.json()["result"]["content"][0]["text"])
        assert payload["stats"] == {"total": 0, "yes": 0, "no": 0}
        assert payload["subscriber"] == {"name": "Alice"}
