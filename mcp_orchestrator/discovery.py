#!/usr/bin/env python3
"""
OAuth discovery for remote MCP servers

1. Probe the MCP endpoint with an initialize request (401 => OAuth required)
2. RFC 9728 protected resource metadata -> authorization server list
3. RFC 8414 authorization server metadata (falls back to OpenID configuration)
4. RFC 7591 dynamic client registration when a registration endpoint exists

DCR failure is not fatal: the caller may fall back to a pre-known client id.
"""

import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from mcp.shared.auth import OAuthClientMetadata, OAuthMetadata, ProtectedResourceMetadata
from mcp.types import LATEST_PROTOCOL_VERSION
from pydantic import ValidationError

from .errors import AuthError, ErrorCode
from .logging_utils import log_event
from .models import OAuthConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
RESOURCE_METADATA_RE = re.compile(r'resource_metadata="([^"]+)"')


@dataclass
class ProbeResult:
    requires_auth: bool
    resource_metadata_url: Optional[str] = None
    www_authenticate: Optional[str] = None


@dataclass
class ClientRegistration:
    client_id: str
    client_secret: Optional[str] = None
    registration_access_token: Optional[str] = None


@dataclass
class OAuthDiscoveryResult:
    success: bool
    config: Optional[OAuthConfig] = None
    error: Optional[str] = None


@asynccontextmanager
async def _client_scope(client: Optional[httpx.AsyncClient]) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, follow_redirects=True) as owned:
        yield owned


def _origin(url: str) -> str:
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}"


async def probe_for_oauth(mcp_url: str, client: Optional[httpx.AsyncClient] = None) -> ProbeResult:
    body = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "probe", "version": "1.0.0"},
        },
    }
    headers = {"Content-Type": "application/json", "Accept": "application/json, text/event-stream"}
    try:
        async with _client_scope(client) as http:
            resp = await http.post(mcp_url, json=body, headers=headers)
    except httpx.HTTPError as e:
        logger.warning(f"OAuth probe of {mcp_url} failed: {type(e).__name__}: {e}")
        return ProbeResult(requires_auth=False)

    if resp.status_code != 401:
        return ProbeResult(requires_auth=False)
    www_auth = resp.headers.get("www-authenticate")
    match = RESOURCE_METADATA_RE.search(www_auth or "")
    return ProbeResult(requires_auth=True, resource_metadata_url=match.group(1) if match else None,
                       www_authenticate=www_auth)


async def _get_json(http: httpx.AsyncClient, url: str) -> Optional[Dict[str, Any]]:
    try:
        resp = await http.get(url, headers={"Accept": "application/json"})
    except httpx.HTTPError as e:
        logger.debug(f"GET {url} failed: {e}")
        return None
    if resp.status_code != 200:
        logger.debug(f"GET {url} -> {resp.status_code}")
        return None
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


async def fetch_resource_metadata(resource_url: str, metadata_url: Optional[str] = None,
                                  client: Optional[httpx.AsyncClient] = None) -> Optional[ProtectedResourceMetadata]:
    candidates = []
    if metadata_url:
        candidates.append(metadata_url)
    candidates.append(f"{_origin(resource_url)}/.well-known/oauth-protected-resource")
    async with _client_scope(client) as http:
        for url in candidates:
            data = await _get_json(http, url)
            if data is None:
                continue
            try:
                return ProtectedResourceMetadata.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Invalid protected resource metadata at {url}: {e.error_count()} error(s)")
    return None


async def fetch_auth_server_metadata(auth_server_url: str,
                                     client: Optional[httpx.AsyncClient] = None) -> Optional[OAuthMetadata]:
    origin = _origin(auth_server_url)
    path = urlparse(str(auth_server_url)).path.rstrip("/")
    candidates: List[str] = []
    if path:
        candidates.append(f"{origin}/.well-known/oauth-authorization-server{path}")
    candidates.append(f"{origin}/.well-known/oauth-authorization-server")
    candidates.append(f"{origin}/.well-known/openid-configuration")
    async with _client_scope(client) as http:
        for url in candidates:
            data = await _get_json(http, url)
            if data is None:
                continue
            try:
                return OAuthMetadata.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Invalid authorization server metadata at {url}: {e.error_count()} error(s)")
    return None


async def register_client(registration_endpoint: str, client_name: str, redirect_uri: str,
                          client: Optional[httpx.AsyncClient] = None,
                          scope: Optional[str] = None) -> ClientRegistration:
    metadata = OAuthClientMetadata(
        client_name=client_name,
        redirect_uris=[redirect_uri],
        token_endpoint_auth_method="none",
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        scope=scope,
    )
    async with _client_scope(client) as http:
        try:
            resp = await http.post(registration_endpoint,
                                   json=metadata.model_dump(mode="json", exclude_none=True))
        except httpx.HTTPError as e:
            raise AuthError(f"Client registration request failed: {e}",
                            ErrorCode.CLIENT_REGISTRATION_FAILED, cause=e)
    if resp.status_code not in (200, 201):
        raise AuthError(f"Client registration failed: HTTP {resp.status_code} {resp.text[:200]}",
                        ErrorCode.CLIENT_REGISTRATION_FAILED)
    try:
        data = resp.json()
    except ValueError as e:
        raise AuthError("Client registration returned invalid JSON",
                        ErrorCode.CLIENT_REGISTRATION_FAILED, cause=e)
    if not isinstance(data, dict) or not data.get("client_id"):
        raise AuthError("Client registration response has no client_id",
                        ErrorCode.CLIENT_REGISTRATION_FAILED)
    return ClientRegistration(
        client_id=data["client_id"],
        client_secret=data.get("client_secret"),
        registration_access_token=data.get("registration_access_token"),
    )


async def discover_oauth_config(mcp_url: str, redirect_uri: str, client_name: str = "MCP Orchestrator",
                                client: Optional[httpx.AsyncClient] = None,
                                fallback_client_id: Optional[str] = None) -> OAuthDiscoveryResult:
    """Run the full discovery sequence against an MCP endpoint."""
    start = time.perf_counter()
    async with _client_scope(client) as http:
        probe = await probe_for_oauth(mcp_url, http)
        if not probe.requires_auth:
            log_event(mcp_url, "oauth_discovery", "http", start, status="not_required")
            return OAuthDiscoveryResult(success=False, error="Server does not require OAuth authentication")

        resource = await fetch_resource_metadata(mcp_url, probe.resource_metadata_url, http)
        if resource is not None and resource.authorization_servers:
            auth_server_url = str(resource.authorization_servers[0])
        else:
            # Servers predating RFC 9728 host the metadata on their own origin
            logger.info(f"No protected resource metadata for {mcp_url}, using its origin as auth server")
            auth_server_url = _origin(mcp_url)

        metadata = await fetch_auth_server_metadata(auth_server_url, http)
        if metadata is None:
            log_event(mcp_url, "oauth_discovery", "http", start, status="no_metadata")
            return OAuthDiscoveryResult(success=False, error="Failed to fetch authorization server metadata")

        client_id = fallback_client_id or ""
        client_secret = None
        registration_token = None
        registered = False
        scopes = list(metadata.scopes_supported or [])
        if metadata.registration_endpoint is not None:
            try:
                registration = await register_client(str(metadata.registration_endpoint), client_name,
                                                     redirect_uri, http,
                                                     scope=" ".join(scopes) if scopes else None)
                client_id = registration.client_id
                client_secret = registration.client_secret
                registration_token = registration.registration_access_token
                registered = True
            except AuthError as e:
                logger.warning(f"Dynamic client registration failed for {mcp_url}: {e.message}")

    config = OAuthConfig(
        client_id=client_id,
        client_secret=client_secret,
        auth_url=str(metadata.authorization_endpoint),
        token_url=str(metadata.token_endpoint),
        scopes=scopes,
        registration_access_token=registration_token,
        resource_metadata_url=probe.resource_metadata_url,
    )
    log_event(mcp_url, "oauth_discovery", "http", start, status="ok", registered=registered)
    return OAuthDiscoveryResult(success=True, config=config)
