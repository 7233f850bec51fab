#!/usr/bin/env python3
"""
Token manager tests: validation, refresh, the PKCE authorization flow and
background refresh. The token endpoint is an httpx.MockTransport.
"""

import asyncio
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from mcp_orchestrator import token_manager as token_manager_module
from mcp_orchestrator.errors import AuthError, ErrorCode
from mcp_orchestrator.models import OAuthFlowState
from mcp_orchestrator.pkce import generate_code_challenge
from mcp_orchestrator.token_manager import FLOW_STATE_PREFIX, TokenManager

from tests.fakes import http_config, oauth_config, token_client, tokens_expiring_in


class TokenEndpoint:
    """Mock token endpoint counting grants by type."""

    def __init__(self, status: int = 200, expires_in: int = 3600, refresh_token=None):
        self.status = status
        self.expires_in = expires_in
        self.refresh_token = refresh_token
        self.forms = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        form["_authorization"] = request.headers.get("authorization")
        self.forms.append(form)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "invalid_grant"})
        body = {"access_token": f"access-{len(self.forms) + 1}", "token_type": "Bearer",
                "expires_in": self.expires_in}
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        return httpx.Response(200, json=body)

    def grants(self, grant_type: str):
        return [f for f in self.forms if f.get("grant_type") == grant_type]


@pytest.fixture
def endpoint():
    return TokenEndpoint()


@pytest.fixture
def manager(storage, browser, endpoint):
    return TokenManager(storage, browser, flow_timeout=5.0, http_client=token_client(endpoint))


def _server(tokens=None, **oauth):
    return http_config("remote", auth=oauth_config(tokens=tokens, **oauth))


async def _wait_for_url(browser):
    for _ in range(200):
        if browser.last_url:
            return browser.last_url
        await asyncio.sleep(0.005)
    raise AssertionError("authorization URL never opened")


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ===== Validation =====

@pytest.mark.asyncio
async def test_valid_token_is_returned_without_refresh(manager, endpoint):
    config = _server(tokens_expiring_in(3600))
    assert await manager.ensure_valid_token(config) == "access-1"
    assert endpoint.forms == []


@pytest.mark.asyncio
async def test_near_expiry_refreshes_exactly_once(manager, endpoint):
    config = _server(tokens_expiring_in(60))

    token = await manager.ensure_valid_token(config)

    assert len(endpoint.grants("refresh_token")) == 1
    assert token == "access-2"
    assert config.oauth.tokens.access_token == "access-2"
    # not rotated by the server, so the old refresh token is kept
    assert config.oauth.tokens.refresh_token == "refresh-1"
    assert await manager.ensure_valid_token(config) == "access-2"
    assert len(endpoint.grants("refresh_token")) == 1


@pytest.mark.asyncio
async def test_failed_near_expiry_refresh_keeps_current_token(storage, browser):
    endpoint = TokenEndpoint(status=400)
    manager = TokenManager(storage, browser, http_client=token_client(endpoint))
    config = _server(tokens_expiring_in(60))

    assert await manager.ensure_valid_token(config) == "access-1"


@pytest.mark.asyncio
async def test_expired_and_missing_tokens(manager):
    with pytest.raises(AuthError) as expired:
        await manager.ensure_valid_token(_server(tokens_expiring_in(-10)))
    assert expired.value.code == ErrorCode.TOKEN_EXPIRED

    with pytest.raises(AuthError) as missing:
        await manager.ensure_valid_token(_server())
    assert missing.value.code == ErrorCode.AUTH_REQUIRED


def test_needs_auth(manager):
    assert manager.needs_auth(_server()) is True
    assert manager.needs_auth(_server(tokens_expiring_in(-10, refresh_token=None))) is True
    assert manager.needs_auth(_server(tokens_expiring_in(-10))) is False
    assert manager.needs_auth(_server(tokens_expiring_in(3600))) is False
    assert manager.needs_auth(http_config("plain")) is False


@pytest.mark.asyncio
async def test_refresh_uses_basic_auth_for_confidential_clients(manager, endpoint):
    config = _server(tokens_expiring_in(3600), client_secret="s3cret")

    result = await manager.refresh_token(config)

    assert result.success
    assert endpoint.forms[0]["_authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_refresh_without_refresh_token_fails_without_request(manager, endpoint):
    result = await manager.refresh_token(_server(tokens_expiring_in(3600, refresh_token=None)))
    assert result.success is False
    assert endpoint.forms == []


# ===== Authorization flow =====

def test_authorization_url_parameters(manager):
    oauth = oauth_config(auth_url="https://auth.example.com/authorize?tenant=1", scopes=["read", "write"])
    url = manager.build_authorization_url(oauth, "challenge", "state-1", "mcp-app://oauth/callback")

    assert url.startswith("https://auth.example.com/authorize?tenant=1&")
    query = _query(url)
    assert query["response_type"] == "code"
    assert query["code_challenge_method"] == "S256"
    assert query["client_id"] == "client-1"
    assert query["scope"] == "read write"
    assert query["redirect_uri"] == "mcp-app://oauth/callback"


@pytest.mark.asyncio
async def test_authenticate_and_callback(manager, browser, endpoint, storage):
    flow = asyncio.ensure_future(manager.authenticate(_server()))
    query = _query(await _wait_for_url(browser))
    state = query["state"]
    assert f"{FLOW_STATE_PREFIX}{state}" in storage.data
    assert manager.pending_flows() == {state: "remote"}
    assert manager.pending_authorization_url("remote") == browser.last_url
    assert manager.pending_authorization_url("other") is None

    await manager.handle_callback(f"mcp-app://oauth/callback?code=abc&state={state}")
    tokens = await flow

    assert tokens.access_token == "access-2"
    exchange = endpoint.grants("authorization_code")[0]
    assert exchange["code"] == "abc"
    assert generate_code_challenge(exchange["code_verifier"]) == query["code_challenge"]
    assert f"{FLOW_STATE_PREFIX}{state}" not in storage.data
    assert manager.pending_flows() == {}
    assert manager.pending_authorization_url("remote") is None


@pytest.mark.asyncio
async def test_protocol_handler_delivers_callback(manager, browser):
    flow = asyncio.ensure_future(manager.authenticate(_server()))
    state = _query(await _wait_for_url(browser))["state"]

    browser.handlers["mcp-app"](f"mcp-app://oauth/callback?code=abc&state={state}")
    tokens = await asyncio.wait_for(flow, timeout=1.0)

    assert tokens.access_token == "access-2"


@pytest.mark.asyncio
async def test_provider_error_fails_the_flow(manager, browser):
    flow = asyncio.ensure_future(manager.authenticate(_server()))
    state = _query(await _wait_for_url(browser))["state"]

    await manager.handle_callback(
        f"mcp-app://oauth/callback?error=access_denied&error_description=User+denied&state={state}")

    with pytest.raises(AuthError) as info:
        await flow
    assert info.value.code == ErrorCode.AUTH_FAILED
    assert "User denied" in info.value.message


@pytest.mark.asyncio
async def test_failed_code_exchange_fails_the_flow(storage, browser):
    manager = TokenManager(storage, browser, flow_timeout=5.0, http_client=token_client(TokenEndpoint(status=400)))
    flow = asyncio.ensure_future(manager.authenticate(_server()))
    state = _query(await _wait_for_url(browser))["state"]

    with pytest.raises(AuthError) as callback_error:
        await manager.handle_callback(f"mcp-app://oauth/callback?code=abc&state={state}")
    assert callback_error.value.code == ErrorCode.OAUTH_CODE_EXCHANGE_FAILED

    with pytest.raises(AuthError):
        await flow


@pytest.mark.asyncio
async def test_unknown_state_is_rejected(manager):
    with pytest.raises(AuthError) as info:
        await manager.handle_callback("mcp-app://oauth/callback?code=abc&state=unknown")
    assert info.value.code == ErrorCode.OAUTH_STATE_INVALID


@pytest.mark.asyncio
async def test_missing_code_is_rejected(manager):
    with pytest.raises(AuthError) as info:
        await manager.handle_callback("mcp-app://oauth/callback?state=abc")
    assert info.value.code == ErrorCode.OAUTH_CALLBACK_INVALID


@pytest.mark.asyncio
async def test_expired_state_is_rejected_and_deleted(manager, storage):
    stale = OAuthFlowState(server_id="remote", code_verifier="v" * 64, expires_at=time.time() - 1,
                           redirect_uri="mcp-app://oauth/callback")
    await storage.write(f"{FLOW_STATE_PREFIX}old", stale.to_dict())

    with pytest.raises(AuthError) as info:
        await manager.handle_callback("mcp-app://oauth/callback?code=abc&state=old")

    assert info.value.code == ErrorCode.OAUTH_STATE_INVALID
    assert await storage.read(f"{FLOW_STATE_PREFIX}old") is None


@pytest.mark.asyncio
async def test_flow_times_out(storage, browser):
    manager = TokenManager(storage, browser, flow_timeout=0.05,
                           http_client=token_client(TokenEndpoint()))

    with pytest.raises(AuthError) as info:
        await manager.authenticate(_server())

    assert info.value.code == ErrorCode.OAUTH_TIMEOUT
    assert manager.pending_flows() == {}
    assert not any(k.startswith(FLOW_STATE_PREFIX) for k in storage.data)


@pytest.mark.asyncio
async def test_incomplete_oauth_config_cannot_authenticate(manager):
    with pytest.raises(AuthError) as info:
        await manager.authenticate(_server(token_url=""))
    assert info.value.code == ErrorCode.AUTH_REQUIRED


# ===== Background refresh =====

@pytest.mark.asyncio
async def test_background_refresh_notifies_and_reschedules(storage, browser, monkeypatch):
    monkeypatch.setattr(token_manager_module, "MIN_REFRESH_DELAY", 0.01)
    endpoint = TokenEndpoint(expires_in=7200, refresh_token="refresh-2")
    manager = TokenManager(storage, browser, refresh_buffer=3600, http_client=token_client(endpoint))
    refreshed = []

    async def _on_refresh(server_id, tokens):
        refreshed.append((server_id, tokens))

    manager.on_token_refresh(_on_refresh)
    manager.schedule_background_refresh(_server(tokens_expiring_in(60)))
    assert manager.has_scheduled_refresh("remote")

    for _ in range(100):
        if refreshed:
            break
        await asyncio.sleep(0.01)

    assert [(sid, t.refresh_token) for sid, t in refreshed] == [("remote", "refresh-2")]
    # next refresh is due an hour before the new expiry
    next_at = manager.get_scheduled_refresh("remote")
    assert next_at == pytest.approx(time.time() + 3600, abs=5)
    await manager.dispose()
    assert not manager.has_scheduled_refresh("remote")


@pytest.mark.asyncio
async def test_expired_tokens_are_not_scheduled(manager):
    manager.schedule_background_refresh(_server(tokens_expiring_in(-5)))
    manager.schedule_background_refresh(_server(tokens_expiring_in(3600, refresh_token=None)))
    assert not manager.has_scheduled_refresh("remote")


@pytest.mark.asyncio
async def test_unsubscribed_callbacks_are_not_called(storage, browser, monkeypatch):
    monkeypatch.setattr(token_manager_module, "MIN_REFRESH_DELAY", 0.01)
    manager = TokenManager(storage, browser, refresh_buffer=3600,
                           http_client=token_client(TokenEndpoint(expires_in=7200)))
    calls = []
    unsubscribe = manager.on_token_refresh(lambda server_id, tokens: calls.append(server_id))
    unsubscribe()

    await manager._perform_background_refresh(_server(tokens_expiring_in(60)))

    assert calls == []
    await manager.dispose()


@pytest.mark.asyncio
async def test_background_refresh_uses_config_current_at_fire_time(storage, browser, monkeypatch):
    monkeypatch.setattr(token_manager_module, "MIN_REFRESH_DELAY", 0.01)
    endpoint = TokenEndpoint(expires_in=7200)
    manager = TokenManager(storage, browser, refresh_buffer=3600, http_client=token_client(endpoint))
    replaced = _server(tokens_expiring_in(60, refresh_token="refresh-rotated"), client_id="client-2")
    manager.set_config_lookup(lambda server_id: replaced if server_id == "remote" else None)

    manager.schedule_background_refresh(_server(tokens_expiring_in(60)))
    for _ in range(100):
        if endpoint.forms:
            break
        await asyncio.sleep(0.01)

    grant = endpoint.grants("refresh_token")[0]
    assert grant["refresh_token"] == "refresh-rotated"
    assert grant["client_id"] == "client-2"
    await manager.dispose()


@pytest.mark.asyncio
async def test_background_refresh_is_dropped_for_removed_server(storage, browser, monkeypatch):
    monkeypatch.setattr(token_manager_module, "MIN_REFRESH_DELAY", 0.01)
    endpoint = TokenEndpoint(expires_in=7200)
    manager = TokenManager(storage, browser, refresh_buffer=3600, http_client=token_client(endpoint))
    manager.set_config_lookup(lambda server_id: None)

    manager.schedule_background_refresh(_server(tokens_expiring_in(60)))
    await asyncio.sleep(0.1)

    assert endpoint.forms == []
    assert not manager.has_scheduled_refresh("remote")
    await manager.dispose()
