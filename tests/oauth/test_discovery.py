#!/usr/bin/env python3
"""
OAuth discovery against a mocked remote MCP server
Probe -> protected resource metadata -> auth server metadata -> DCR
"""

import json

import httpx
import pytest

from mcp_orchestrator.discovery import (
    discover_oauth_config,
    fetch_auth_server_metadata,
    probe_for_oauth,
)

from tests.fakes import token_client

MCP_URL = "https://mcp.example.com/mcp"
REDIRECT_URI = "http://127.0.0.1:5859/oauth/callback"
RESOURCE_METADATA_URL = "https://mcp.example.com/.well-known/oauth-protected-resource"

AUTH_METADATA = {
    "issuer": "https://auth.example.com/",
    "authorization_endpoint": "https://auth.example.com/authorize",
    "token_endpoint": "https://auth.example.com/token",
    "registration_endpoint": "https://auth.example.com/register",
    "scopes_supported": ["read", "write"],
    "response_types_supported": ["code"],
}


class FakeAuthServer:
    """Routes requests by method and URL, recording every call."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls.append((request.method, url))
        route = self.routes.get((request.method, url))
        if route is None:
            return httpx.Response(404)
        if callable(route):
            return route(request)
        return route


def _unauthorized(request):
    return httpx.Response(401, headers={
        "WWW-Authenticate": f'Bearer resource_metadata="{RESOURCE_METADATA_URL}"'})


def _standard_routes(overrides=None):
    routes = {
        ("POST", MCP_URL): _unauthorized,
        ("GET", RESOURCE_METADATA_URL): httpx.Response(200, json={
            "resource": MCP_URL,
            "authorization_servers": ["https://auth.example.com"],
        }),
        ("GET", "https://auth.example.com/.well-known/oauth-authorization-server"):
            httpx.Response(200, json=AUTH_METADATA),
        ("POST", "https://auth.example.com/register"):
            httpx.Response(201, json={"client_id": "dyn-client", "client_secret": "dyn-secret"}),
    }
    routes.update(overrides or {})
    return routes


@pytest.mark.asyncio
async def test_probe_reads_resource_metadata_hint():
    server = FakeAuthServer(_standard_routes())
    async with token_client(server) as client:
        probe = await probe_for_oauth(MCP_URL, client)

    assert probe.requires_auth is True
    assert probe.resource_metadata_url == RESOURCE_METADATA_URL


@pytest.mark.asyncio
async def test_probe_without_401_means_no_oauth():
    server = FakeAuthServer({("POST", MCP_URL): httpx.Response(200, json={"jsonrpc": "2.0", "id": 1})})
    async with token_client(server) as client:
        result = await discover_oauth_config(MCP_URL, REDIRECT_URI, client=client)

    assert result.success is False
    assert "does not require" in result.error


@pytest.mark.asyncio
async def test_full_discovery_registers_a_client():
    server = FakeAuthServer(_standard_routes())
    async with token_client(server) as client:
        result = await discover_oauth_config(MCP_URL, REDIRECT_URI, client_name="Test Client", client=client)

    assert result.success is True
    config = result.config
    assert config.client_id == "dyn-client"
    assert config.client_secret == "dyn-secret"
    assert config.auth_url == "https://auth.example.com/authorize"
    assert config.token_url == "https://auth.example.com/token"
    assert config.scopes == ["read", "write"]
    assert config.resource_metadata_url == RESOURCE_METADATA_URL


@pytest.mark.asyncio
async def test_registration_request_is_public_client():
    seen = {}

    def _register(request):
        seen.update(json.loads(request.content))
        return httpx.Response(201, json={"client_id": "dyn-client"})

    server = FakeAuthServer(_standard_routes({("POST", "https://auth.example.com/register"): _register}))
    async with token_client(server) as client:
        await discover_oauth_config(MCP_URL, REDIRECT_URI, client_name="Test Client", client=client)

    assert seen["client_name"] == "Test Client"
    assert seen["redirect_uris"] == [REDIRECT_URI]
    assert seen["token_endpoint_auth_method"] == "none"
    assert "refresh_token" in seen["grant_types"]


@pytest.mark.asyncio
async def test_failed_registration_falls_back_to_known_client():
    server = FakeAuthServer(_standard_routes({
        ("POST", "https://auth.example.com/register"): httpx.Response(400, json={"error": "invalid_client_metadata"}),
    }))
    async with token_client(server) as client:
        result = await discover_oauth_config(MCP_URL, REDIRECT_URI, client=client,
                                             fallback_client_id="preconfigured")

    assert result.success is True
    assert result.config.client_id == "preconfigured"
    assert result.config.client_secret is None


@pytest.mark.asyncio
async def test_missing_resource_metadata_uses_mcp_origin():
    routes = _standard_routes()
    del routes[("GET", RESOURCE_METADATA_URL)]
    routes[("POST", MCP_URL)] = httpx.Response(401)
    routes[("GET", "https://mcp.example.com/.well-known/oauth-authorization-server")] = \
        httpx.Response(200, json=AUTH_METADATA)
    server = FakeAuthServer(routes)
    async with token_client(server) as client:
        result = await discover_oauth_config(MCP_URL, REDIRECT_URI, client=client)

    assert result.success is True
    assert ("GET", "https://mcp.example.com/.well-known/oauth-authorization-server") in server.calls


@pytest.mark.asyncio
async def test_auth_server_metadata_is_path_aware():
    tenant_url = "https://auth.example.com/.well-known/oauth-authorization-server/tenant-1"
    server = FakeAuthServer({("GET", tenant_url): httpx.Response(200, json=AUTH_METADATA)})
    async with token_client(server) as client:
        metadata = await fetch_auth_server_metadata("https://auth.example.com/tenant-1", client)

    assert metadata is not None
    assert server.calls[0] == ("GET", tenant_url)


@pytest.mark.asyncio
async def test_openid_configuration_fallback():
    server = FakeAuthServer({
        ("GET", "https://auth.example.com/.well-known/openid-configuration"): httpx.Response(200, json=AUTH_METADATA),
    })
    async with token_client(server) as client:
        metadata = await fetch_auth_server_metadata("https://auth.example.com", client)

    assert str(metadata.token_endpoint) == "https://auth.example.com/token"


@pytest.mark.asyncio
async def test_no_metadata_anywhere_fails():
    server = FakeAuthServer({("POST", MCP_URL): httpx.Response(401)})
    async with token_client(server) as client:
        result = await discover_oauth_config(MCP_URL, REDIRECT_URI, client=client)

    assert result.success is False
    assert "metadata" in result.error
