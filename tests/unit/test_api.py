#!/usr/bin/env python3
"""HTTP control API routes"""

import json
import logging

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from mcp_orchestrator import api_handlers
from mcp_orchestrator.api_handlers import create_app, error_response, status_for_error
from mcp_orchestrator.errors import AuthError, CommunicationError, ConfigError, ErrorCode, ProcessError
from mcp_orchestrator.orchestrator import Orchestrator
from mcp_orchestrator.settings import Settings
from mcp_orchestrator.state import ServerState

from tests.fakes import http_config, oauth_config

FS_DOCUMENT = {"mcpServers": {"files": {"command": "npx", "args": ["-y", "@modelcontextprotocol/server-filesystem"]}}}


@pytest_asyncio.fixture
async def client(storage, process_adapter, http_adapter, browser):
    settings = Settings()
    settings.supervisor.health_check_enabled = False
    settings.registry.auto_fetch_capabilities = False
    settings.server.shutdown_timeout = 0.05
    orchestrator = Orchestrator(settings, storage=storage, process_adapter=process_adapter,
                                http_adapter=http_adapter, browser=browser)
    await orchestrator.initialize()
    test_client = TestClient(TestServer(create_app(orchestrator)))
    await test_client.start_server()
    try:
        yield test_client
    finally:
        await test_client.close()
        await orchestrator.dispose()


async def _add_files_server(client) -> str:
    resp = await client.post("/servers", data=json.dumps(FS_DOCUMENT))
    assert resp.status == 201
    body = await resp.json()
    return body["servers"][0]["id"]


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status == 200
    assert (await resp.json())["status"] == "ok"


@pytest.mark.asyncio
async def test_add_then_list(client):
    server_id = await _add_files_server(client)

    resp = await client.get("/status")
    status = await resp.json()
    assert status["total"] == 1
    assert status["servers"][0]["id"] == server_id
    assert status["servers"][0]["state"] == "IDLE"


@pytest.mark.asyncio
async def test_add_rejects_empty_and_invalid_bodies(client):
    resp = await client.post("/servers", data="")
    assert resp.status == 400

    resp = await client.post("/servers", data=json.dumps({"servers": {}}))
    body = await resp.json()
    assert resp.status == 400
    assert body["code"] == ErrorCode.INVALID_CONFIG.value
    assert body["recoverable"] is False
    assert body["requiresAuth"] is False


@pytest.mark.asyncio
async def test_start_and_stop(client, process_adapter):
    server_id = await _add_files_server(client)

    resp = await client.post(f"/servers/{server_id}/start")
    assert resp.status == 200
    assert (await resp.json())["server"]["state"] == "RUNNING"
    assert process_adapter.spawned[0]["command"] == "npx"

    resp = await client.post(f"/servers/{server_id}/stop")
    assert (await resp.json())["server"]["state"] == "STOPPED"


@pytest.mark.asyncio
async def test_unknown_server_is_404(client):
    for method, path in [("GET", "/servers/nope"), ("POST", "/servers/nope/start"),
                         ("DELETE", "/servers/nope")]:
        resp = await client.request(method, path)
        assert resp.status == 404, path
        assert (await resp.json())["code"] == ErrorCode.SERVER_NOT_FOUND.value


@pytest.mark.asyncio
async def test_server_detail_includes_history(client):
    server_id = await _add_files_server(client)
    await client.post(f"/servers/{server_id}/start")

    resp = await client.get(f"/servers/{server_id}")
    detail = await resp.json()
    assert [h["state"] for h in detail["history"]][-1] == "RUNNING"
    assert detail["supervision"]["restartAttempts"] == 0
    assert "STOP" in detail["availableEvents"]
    assert "STARTED" not in detail["availableEvents"]


@pytest.mark.asyncio
async def test_patch_updates_fields(client):
    server_id = await _add_files_server(client)

    resp = await client.patch(f"/servers/{server_id}", json={"description": "Local files", "enabled": True})
    body = await resp.json()
    assert resp.status == 200
    assert body["server"]["description"] == "Local files"
    assert body["server"]["enabled"] is True

    resp = await client.patch(f"/servers/{server_id}", json=["not", "an", "object"])
    assert resp.status == 400


@pytest.mark.asyncio
async def test_delete_removes_server(client, storage):
    server_id = await _add_files_server(client)

    resp = await client.delete(f"/servers/{server_id}")
    assert resp.status == 200
    assert storage.configs["mcp_servers.json"] == []


@pytest.mark.asyncio
async def test_discover_rejects_stdio_servers(client):
    server_id = await _add_files_server(client)

    resp = await client.post(f"/servers/{server_id}/discover")
    assert resp.status == 400


@pytest.mark.asyncio
async def test_authenticate_returns_authorization_url(client, browser, monkeypatch):
    monkeypatch.setattr(api_handlers, "AUTH_START_GRACE", 0.05)
    orchestrator = client.server.app["orchestrator"]
    await orchestrator.registry.add(http_config("remote", auth=oauth_config()))

    resp = await client.post("/servers/remote/authenticate")
    body = await resp.json()

    assert resp.status == 202
    assert body["status"] == "authenticating"
    assert body["authorizationUrl"].startswith("https://auth.example.com/authorize?")
    assert body["authorizationUrl"] == browser.last_url
    assert orchestrator.registry.get_state("remote") == ServerState.AUTHENTICATING
    assert list(orchestrator.token_manager.pending_flows().values()) == ["remote"]


@pytest.mark.asyncio
async def test_failed_authentication_is_logged(client, caplog):
    server_id = await _add_files_server(client)

    with caplog.at_level(logging.WARNING, logger="mcp_orchestrator.api_handlers"):
        resp = await client.post(f"/servers/{server_id}/authenticate")

    assert resp.status == 400
    assert f"[{server_id}] authentication failed" in caplog.text


@pytest.mark.asyncio
async def test_callback_with_unknown_state(client):
    resp = await client.get("/oauth/callback", params={"code": "abc", "state": "unknown"})
    assert resp.status == 401
    assert "Authorization failed" in await resp.text()


@pytest.mark.parametrize("error,status", [
    (ConfigError("x", ErrorCode.SERVER_NOT_FOUND), 404),
    (ConfigError("x", ErrorCode.DUPLICATE_SERVER), 409),
    (ConfigError("x", ErrorCode.INVALID_CONFIG), 400),
    (AuthError("x", ErrorCode.TOKEN_EXPIRED), 401),
    (ProcessError("x", ErrorCode.PROCESS_START_FAILED), 500),
])
def test_status_for_error(error, status):
    assert status_for_error(error) == status


@pytest.mark.parametrize("error,recoverable,needs_auth", [
    (CommunicationError("x", ErrorCode.CONNECTION_LOST), True, False),
    (AuthError("x", ErrorCode.TOKEN_EXPIRED), True, True),
    (AuthError("x", ErrorCode.AUTH_REQUIRED), False, True),
    (ConfigError("x", ErrorCode.INVALID_CONFIG), False, False),
    (ValueError("boom"), False, False),
])
def test_error_body_flags_recovery_and_auth(error, recoverable, needs_auth):
    resp = error_response(error)
    body = json.loads(resp.body)
    assert body["success"] is False
    assert body["recoverable"] is recoverable
    assert body["requiresAuth"] is needs_auth
