#!/usr/bin/env python3
"""Test doubles for transports plus config builders."""

import asyncio
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from mcp_orchestrator.errors import AuthError, CommunicationError, ErrorCode
from mcp_orchestrator.models import (
    HttpTransport,
    OAuthConfig,
    OAuthTokens,
    ServerConfig,
    ServerInstance,
    StdioTransport,
)
from mcp_orchestrator.state_machine import StateMachine
from mcp_orchestrator.transports import HttpAdapter, ProcessAdapter, TransportHandle

DEFAULT_CAPABILITIES = {
    "tools/list": {"tools": [{"name": "echo", "inputSchema": {"type": "object"}}]},
    "resources/list": {"resources": []},
    "prompts/list": {"prompts": [{"name": "greet"}]},
}


class FakeHandle(TransportHandle):
    """Transport handle driven entirely by the test."""

    def __init__(self, server_id: str, transport_type: str = "stdio", hang_on_kill: bool = False,
                 responses: Optional[Mapping[str, Any]] = None):
        super().__init__(server_id)
        self.transport_type = transport_type
        self.hang_on_kill = hang_on_kill
        self.responses = dict(DEFAULT_CAPABILITIES if responses is None else responses)
        self.kill_calls: List[bool] = []
        self.requests: List[str] = []
        self.bearer_token: Optional[str] = None
        self.server_info = {"capabilities": {"tools": {}, "resources": {}, "prompts": {}}}

    async def request(self, method, params=None, timeout=30.0):
        self.requests.append(method)
        if method == "ping":
            if isinstance(self.responses.get("ping"), Exception):
                raise self.responses["ping"]
            return {}
        if method in self.responses:
            value = self.responses[method]
            if isinstance(value, Exception):
                raise value
            return value
        raise CommunicationError("Method not found", ErrorCode.JSONRPC_ERROR,
                                 server_id=self.server_id, jsonrpc_code=-32601)

    async def notify(self, method, params=None):
        self.requests.append(method)

    async def kill(self, force: bool = False):
        self.kill_calls.append(force)
        if self.hang_on_kill and not force:
            await asyncio.Event().wait()
        self._mark_exited(-9 if force else 0)

    def set_bearer_token(self, token: str):
        self.bearer_token = token

    def crash(self, code: int = 1):
        self._mark_exited(code)

    def exit_cleanly(self):
        self._mark_exited(0)


class FakeProcessAdapter(ProcessAdapter):

    def __init__(self):
        self.spawned: List[Dict[str, Any]] = []
        self.handles: List[FakeHandle] = []
        self.fail_with: Optional[BaseException] = None
        self.hang_on_kill = False
        self.responses: Optional[Dict[str, Any]] = None
        # exit code of a process that dies before the manager subscribes, next spawn only
        self.exit_on_next_spawn: Optional[int] = None

    @property
    def last_handle(self) -> Optional[FakeHandle]:
        return self.handles[-1] if self.handles else None

    async def spawn(self, server_id, transport, env=None):
        self.spawned.append({"server_id": server_id, "command": transport.command, "env": dict(env or {})})
        if self.fail_with is not None:
            raise self.fail_with
        handle = FakeHandle(server_id, "stdio", hang_on_kill=self.hang_on_kill, responses=self.responses)
        self.handles.append(handle)
        if self.exit_on_next_spawn is not None:
            handle.crash(self.exit_on_next_spawn)
            self.exit_on_next_spawn = None
        return handle


class FakeHttpAdapter(HttpAdapter):

    def __init__(self):
        self.connections: List[Dict[str, Any]] = []
        self.handles: List[FakeHandle] = []
        self.require_auth = False

    @property
    def last_handle(self) -> Optional[FakeHandle]:
        return self.handles[-1] if self.handles else None

    async def connect(self, server_id, transport, bearer_token=None, headers=None):
        self.connections.append({"server_id": server_id, "url": transport.url,
                                 "bearer_token": bearer_token, "headers": dict(headers or {})})
        if self.require_auth and not bearer_token:
            raise AuthError("Server requires authentication", ErrorCode.AUTH_REQUIRED, server_id=server_id)
        handle = FakeHandle(server_id, "http")
        handle.bearer_token = bearer_token
        self.handles.append(handle)
        return handle


def stdio_config(server_id: str = "srv-stdio", **kwargs) -> ServerConfig:
    return ServerConfig(id=server_id, name=kwargs.pop("name", server_id),
                        transport=StdioTransport(command="node", args=["server.js"]), **kwargs)


def http_config(server_id: str = "srv-http", url: str = "https://mcp.example.com/mcp", **kwargs) -> ServerConfig:
    return ServerConfig(id=server_id, name=kwargs.pop("name", server_id),
                        transport=HttpTransport(url=url), **kwargs)


def oauth_config(tokens: Optional[OAuthTokens] = None, **kwargs) -> OAuthConfig:
    values = dict(client_id="client-1", auth_url="https://auth.example.com/authorize",
                  token_url="https://auth.example.com/token", scopes=["read"], tokens=tokens)
    values.update(kwargs)
    return OAuthConfig(**values)


def tokens_expiring_in(seconds: float, refresh_token: Optional[str] = "refresh-1",
                       access_token: str = "access-1") -> OAuthTokens:
    return OAuthTokens(access_token=access_token, refresh_token=refresh_token, expires_at=time.time() + seconds)


def make_instance(config: ServerConfig) -> ServerInstance:
    return ServerInstance(config=config, state_machine=StateMachine(config.id, config.status))


def token_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def settle(rounds: int = 5):
    """Let scheduled callbacks and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


