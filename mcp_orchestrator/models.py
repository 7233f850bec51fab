#!/usr/bin/env python3
"""
Data model: server configuration, auth blocks, OAuth tokens and runtime instances

Configs are plain dataclasses with from_dict/to_dict. The persisted JSON uses
camelCase keys so the files stay compatible with the desktop host.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from mcp.shared.auth import OAuthToken
from pydantic import ValidationError

from .errors import AuthError, ConfigError, ErrorCode
from .state import ServerState, parse_state

if TYPE_CHECKING:
    from .state_machine import StateMachine
    from .transports import TransportHandle

logger = logging.getLogger(__name__)

CATEGORIES = ("database", "filesystem", "development", "communication",
              "productivity", "ai", "api", "other")


# -------- Transports --------
@dataclass
class StdioTransport:
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    type = "stdio"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": "stdio", "command": self.command, "args": list(self.args)}
        if self.env:
            data["env"] = dict(self.env)
        if self.cwd:
            data["cwd"] = self.cwd
        return data


@dataclass
class HttpTransport:
    url: str
    headers: Dict[str, str] = field(default_factory=dict)

    type = "http"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": "http", "url": self.url}
        if self.headers:
            data["headers"] = dict(self.headers)
        return data


Transport = Union[StdioTransport, HttpTransport]


def transport_from_dict(data: Mapping[str, Any]) -> Transport:
    kind = data.get("type")
    if kind == "stdio":
        return StdioTransport(
            command=data.get("command") or "",
            args=[str(a) for a in data.get("args") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
        )
    if kind in ("http", "streamable-http", "sse"):
        return HttpTransport(url=data.get("url") or "",
                             headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()})
    raise ConfigError(f"Unknown transport type: {kind!r}", ErrorCode.INVALID_TRANSPORT)


# -------- OAuth tokens / flow state --------
@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: Optional[float] = None
    scope: Optional[str] = None

    def expires_in(self, now: Optional[float] = None) -> Optional[float]:
        if self.expires_at is None:
            return None
        return self.expires_at - (now if now is not None else time.time())

    def is_expired(self, now: Optional[float] = None) -> bool:
        remaining = self.expires_in(now)
        return remaining is not None and remaining <= 0

    @classmethod
    def from_token_response(cls, payload: Mapping[str, Any], previous: Optional["OAuthTokens"] = None,
                            now: Optional[float] = None) -> "OAuthTokens":
        """Build tokens from a token endpoint response.

        expires_in is converted to an absolute expiry. When the server does not
        rotate the refresh token, the previous one is kept.
        """
        try:
            token = OAuthToken.model_validate(dict(payload))
        except ValidationError as e:
            raise AuthError(f"Malformed token response: {e.errors()[0].get('msg', e)}",
                            ErrorCode.INVALID_RESPONSE, cause=e)
        issued = now if now is not None else time.time()
        expires_at = issued + token.expires_in if token.expires_in is not None else None
        refresh = token.refresh_token or (previous.refresh_token if previous else None)
        return cls(
            access_token=token.access_token,
            refresh_token=refresh,
            token_type=token.token_type or "Bearer",
            expires_at=expires_at,
            scope=token.scope or (previous.scope if previous else None),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"accessToken": self.access_token, "tokenType": self.token_type}
        if self.refresh_token:
            data["refreshToken"] = self.refresh_token
        if self.expires_at is not None:
            data["expiresAt"] = self.expires_at
        if self.scope:
            data["scope"] = self.scope
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OAuthTokens":
        return cls(
            access_token=data.get("accessToken") or "",
            refresh_token=data.get("refreshToken"),
            token_type=data.get("tokenType") or "Bearer",
            expires_at=data.get("expiresAt"),
            scope=data.get("scope"),
        )


@dataclass
class OAuthFlowState:
    server_id: str
    code_verifier: str
    expires_at: float
    redirect_uri: str

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serverId": self.server_id,
            "codeVerifier": self.code_verifier,
            "expiresAt": self.expires_at,
            "redirectUri": self.redirect_uri,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OAuthFlowState":
        return cls(
            server_id=data["serverId"],
            code_verifier=data["codeVerifier"],
            expires_at=float(data["expiresAt"]),
            redirect_uri=data["redirectUri"],
        )


# -------- Auth blocks --------
@dataclass
class NoAuth:
    type = "none"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "none"}


@dataclass
class TokenAuth:
    """Static token sent as a header (http) or environment variable (stdio)."""
    token: str
    header_name: str = "Authorization"
    prefix: str = "Bearer"

    type = "token"

    def header_value(self) -> str:
        return f"{self.prefix} {self.token}" if self.prefix else self.token

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "token", "token": self.token, "headerName": self.header_name, "prefix": self.prefix}


@dataclass
class OAuthConfig:
    client_id: str = ""
    client_secret: Optional[str] = None
    auth_url: str = ""
    token_url: str = ""
    scopes: List[str] = field(default_factory=list)
    tokens: Optional[OAuthTokens] = None
    registration_access_token: Optional[str] = None
    resource_metadata_url: Optional[str] = None

    type = "oauth"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": "oauth",
            "clientId": self.client_id,
            "authUrl": self.auth_url,
            "tokenUrl": self.token_url,
            "scopes": list(self.scopes),
        }
        if self.client_secret:
            data["clientSecret"] = self.client_secret
        if self.tokens is not None:
            data["tokens"] = self.tokens.to_dict()
        if self.registration_access_token:
            data["registrationAccessToken"] = self.registration_access_token
        if self.resource_metadata_url:
            data["resourceMetadataUrl"] = self.resource_metadata_url
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OAuthConfig":
        tokens = data.get("tokens")
        scopes = data.get("scopes") or []
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            client_id=data.get("clientId") or "",
            client_secret=data.get("clientSecret"),
            auth_url=data.get("authUrl") or "",
            token_url=data.get("tokenUrl") or "",
            scopes=list(scopes),
            tokens=OAuthTokens.from_dict(tokens) if tokens else None,
            registration_access_token=data.get("registrationAccessToken"),
            resource_metadata_url=data.get("resourceMetadataUrl"),
        )


Auth = Union[NoAuth, TokenAuth, OAuthConfig]


def auth_from_dict(data: Optional[Mapping[str, Any]]) -> Auth:
    if not data:
        return NoAuth()
    kind = data.get("type", "none")
    if kind == "oauth":
        return OAuthConfig.from_dict(data)
    if kind == "token":
        return TokenAuth(token=data.get("token") or "",
                         header_name=data.get("headerName") or "Authorization",
                         prefix=data.get("prefix", "Bearer"))
    if kind == "none":
        return NoAuth()
    raise ConfigError(f"Unknown auth type: {kind!r}")


# -------- Server config --------
@dataclass
class ServerConfig:
    """Durable, user-authored server configuration"""
    id: str
    name: str
    transport: Transport
    enabled: bool = False
    auth: Auth = field(default_factory=NoAuth)
    category: str = "other"
    description: Optional[str] = None
    status: ServerState = ServerState.IDLE

    @property
    def oauth(self) -> Optional[OAuthConfig]:
        return self.auth if isinstance(self.auth, OAuthConfig) else None

    def copy(self, **changes: Any) -> "ServerConfig":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "transport": self.transport.to_dict(),
            "category": self.category,
            "status": self.status.value,
        }
        if not isinstance(self.auth, NoAuth):
            data["auth"] = self.auth.to_dict()
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerConfig":
        server_id = data.get("id")
        if not server_id:
            raise ConfigError("Server config is missing an id", ErrorCode.MISSING_SERVER_ID)
        transport = data.get("transport")
        if not isinstance(transport, Mapping):
            raise ConfigError("Server config is missing a transport", ErrorCode.MISSING_TRANSPORT,
                              server_id=server_id)
        return cls(
            id=str(server_id),
            name=data.get("name") or str(server_id),
            transport=transport_from_dict(transport),
            enabled=bool(data.get("enabled", False)),
            auth=auth_from_dict(data.get("auth")),
            category=data.get("category") or "other",
            description=data.get("description"),
            status=parse_state(data.get("status")),
        )


# -------- Runtime --------
@dataclass
class Capabilities:
    tools: List[Dict[str, Any]] = field(default_factory=list)
    resources: List[Dict[str, Any]] = field(default_factory=list)
    prompts: List[Dict[str, Any]] = field(default_factory=list)
    fetched_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tools": self.tools,
            "resources": self.resources,
            "prompts": self.prompts,
            "fetchedAt": self.fetched_at,
        }


@dataclass
class ServerInstance:
    """Runtime pairing of a config with its state machine and live handle"""
    config: ServerConfig
    state_machine: "StateMachine"
    handle: Optional["TransportHandle"] = None
    capabilities: Optional[Capabilities] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def state(self) -> ServerState:
        return self.state_machine.state

    def is_live(self) -> bool:
        return self.handle is not None and self.handle.is_running
