"""Tests for the engine HTTP server, including end-to-end remote control."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import FakeTracker, make_issue
from issuepilot.cli import wire_engine
from issuepilot.engine.models import AuditEventType, EngineState
from issuepilot.retry import ReconnectBackoff, RetryPolicy
from issuepilot.transports.base import Command, CommandType
from issuepilot.transports.remote import RemoteTransport
from issuepilot.transports.server import EngineServer

TOKEN = "s3cret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
async def served(config, tracker, agent):
    """An engine behind a started server on a free port."""
    config.engine.approval_mode = "cli"
    engine, transport = wire_engine(config, tracker, agent)
    server = EngineServer(transport, host="127.0.0.1", port=0, auth_token=TOKEN,
                          keepalive_seconds=0.05)
    await server.start()
    yield server, engine, transport
    await transport.dispose()
    await server.stop()
    task = transport.task
    if task is not None and not task.done():
        task.cancel()


@pytest.fixture
async def http(served):
    server = served[0]
    async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server.port}") as client:
        yield client


async def _wait_for(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class TestAuth:
    async def test_missing_token(self, http):
        response = await http.post("/api/engine/command", json={"type": "start"})
        assert response.status_code == 401

    async def test_wrong_token(self, http):
        response = await http.get(
            "/api/engine/state", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    async def test_open_when_no_token_configured(self, config, tracker, agent):
        _, transport = wire_engine(config, tracker, agent)
        server = EngineServer(transport, port=0)
        await server.start()
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"http://127.0.0.1:{server.port}/api/engine/state")
            assert response.status_code == 200
        finally:
            await server.stop()


class TestCommandRoute:
    async def test_invalid_json(self, http):
        response = await http.post("/api/engine/command", content="nope", headers=AUTH)
        assert response.status_code == 400
        assert "Invalid JSON" in response.json()["error"]

    async def test_unknown_command(self, http):
        response = await http.post("/api/engine/command", json={"type": "pause"}, headers=AUTH)
        assert response.status_code == 400
        assert "pause" in response.json()["error"]

    async def test_not_an_object(self, http):
        response = await http.post("/api/engine/command", json=["start"], headers=AUTH)
        assert response.status_code == 400

    async def test_start_then_refused_while_waiting_for_approval(self, served, http):
        _, engine, _ = served

        first = await http.post(
            "/api/engine/command", json={"type": "start", "options": {"once": True}}, headers=AUTH
        )
        assert first.status_code == 200
        assert first.json() == {"ok": True}
        await _wait_for(lambda: engine.state == EngineState.AWAITING_APPROVAL)

        second = await http.post("/api/engine/command", json={"type": "start"}, headers=AUTH)
        assert second.status_code == 409
        assert second.json()["ok"] is False

        approve = await http.post("/api/engine/command", json={"type": "approve"}, headers=AUTH)
        assert approve.status_code == 200
        await _wait_for(lambda: engine.get_stats().items_completed == 1)


class TestReadRoutes:
    async def test_state_snapshot(self, served, http):
        _, engine, _ = served
        await http.post(
            "/api/engine/command", json={"type": "start", "options": {"once": True}}, headers=AUTH
        )
        await _wait_for(lambda: engine.state == EngineState.AWAITING_APPROVAL)

        body = (await http.get("/api/engine/state", headers=AUTH)).json()

        assert body["state"] == "awaiting_approval"
        assert body["item"]["number"] == 42
        assert body["plan"]["summary"] == "Add a health endpoint"
        assert body["branch"] is None
        assert body["stats"]["itemsCompleted"] == 0

    async def test_history_filtered_by_item(self, served, http):
        _, engine, _ = served
        engine.audit_log.record(AuditEventType.ITEM_SELECTED, 1)
        engine.audit_log.record(AuditEventType.ITEM_SELECTED, 2)

        everything = (await http.get("/api/engine/history", headers=AUTH)).json()["events"]
        only_two = (
            await http.get("/api/engine/history", params={"item": "2"}, headers=AUTH)
        ).json()["events"]

        assert len(everything) == 2
        assert [e["itemId"] for e in only_two] == [2]

    async def test_history_bad_item(self, http):
        response = await http.get("/api/engine/history?item=abc", headers=AUTH)
        assert response.status_code == 400

    async def test_unknown_route(self, http):
        response = await http.get("/api/engine/nothing", headers=AUTH)
        assert response.status_code == 404


class TestEndToEnd:
    async def test_remote_controller_drives_cycle(self, served):
        server, engine, _ = served
        remote = RemoteTransport(
            f"http://127.0.0.1:{server.port}",
            TOKEN,
            retry_policy=RetryPolicy(max_retries=1, base_delay_seconds=0.01, max_delay_seconds=0.01),
            reconnect_backoff=ReconnectBackoff(0.05, 0.1),
        )
        states, events, plans = [], [], []
        remote.on_state_update(lambda u: states.append(u.state))
        remote.on_event(events.append)

        def on_plan(plan):
            plans.append(plan)
            asyncio.create_task(remote.send_command(Command(CommandType.APPROVE)))

        remote.on_approval_request(on_plan)
        try:
            remote.connect()
            await _wait_for(lambda: server.stream_count == 1)

            result = await remote.send_command(Command(CommandType.START, once=True))
            assert result.ok
            await _wait_for(lambda: any(e.type == AuditEventType.ISSUE_CLOSED for e in events))
        finally:
            await remote.dispose()

        assert plans[0].item_number == 42
        assert states[0] == EngineState.SELECTING_ISSUE
        assert EngineState.MERGING in states
        assert engine.get_stats().items_completed == 1

    async def test_keepalive_comments_sent(self, served):
        server = served[0]
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        writer.write(
            f"GET /api/engine/events HTTP/1.1\r\nHost: x\r\nAuthorization: Bearer {TOKEN}\r\n\r\n"
            .encode()
        )
        await writer.drain()

        data = b""
        while b": keepalive" not in data:
            data += await asyncio.wait_for(reader.read(1024), timeout=2)

        assert data.startswith(b"HTTP/1.1 200 OK")
        assert b"text/event-stream" in data
        writer.close()

    async def test_stop_closes_streams(self, config, agent):
        _, transport = wire_engine(config, FakeTracker([make_issue()]), agent)
        server = EngineServer(transport, port=0)
        await server.start()
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        writer.write(b"GET /api/engine/events HTTP/1.1\r\nHost: x\r\n\r\n")
        await writer.drain()
        await _wait_for(lambda: server.stream_count == 1)

        await server.stop()
        rest = await asyncio.wait_for(reader.read(), timeout=2)

        assert server.stream_count == 0
        assert rest.startswith(b"HTTP/1.1 200 OK")
        writer.close()
