#!/usr/bin/env python3
"""
OAuth Token Manager
Handles the token lifecycle for OAuth-protected MCP servers:

- token validation and near-expiry refresh (ensure_valid_token / needs_auth)
- PKCE authorization-code flow (authenticate + handle_callback)
- background refresh scheduling with subscriber notification
- discovery of OAuth endpoints for servers that have no auth config yet

Flow state is persisted under ``oauth_state_{state}`` with an absolute expiry
so that a restarted process still rejects stale callbacks.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from .browser import BrowserAdapter
from .discovery import OAuthDiscoveryResult, discover_oauth_config
from .errors import AuthError, ErrorCode, MCPError
from .logging_utils import log_event, mask_token
from .models import OAuthConfig, OAuthFlowState, OAuthTokens, ServerConfig
from .pkce import generate_pkce, generate_state
from .storage import StorageAdapter

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_SCHEME = "mcp-app"
DEFAULT_REFRESH_BUFFER = 5 * 60.0
DEFAULT_FLOW_TIMEOUT = 5 * 60.0
MIN_REFRESH_DELAY = 10.0
FLOW_STATE_PREFIX = "oauth_state_"

TokenRefreshCallback = Callable[[str, OAuthTokens], Union[None, Awaitable[None]]]
ConfigLookup = Callable[[str], Optional[ServerConfig]]


@dataclass
class TokenRefreshResult:
    success: bool
    tokens: Optional[OAuthTokens] = None
    error: Optional[str] = None


@dataclass
class _PendingFlow:
    server_id: str
    oauth: OAuthConfig
    future: "asyncio.Future[OAuthTokens]"
    authorization_url: str


@dataclass
class _RefreshSchedule:
    server_id: str
    task: asyncio.Task
    scheduled_at: float


def _oauth_of(config: ServerConfig) -> Optional[OAuthConfig]:
    return config.auth if isinstance(config.auth, OAuthConfig) else None


class TokenManager:

    def __init__(self, storage: StorageAdapter, browser: BrowserAdapter,
                 callback_scheme: str = DEFAULT_CALLBACK_SCHEME,
                 redirect_uri: Optional[str] = None,
                 refresh_buffer: float = DEFAULT_REFRESH_BUFFER,
                 flow_timeout: float = DEFAULT_FLOW_TIMEOUT,
                 http_client: Optional[httpx.AsyncClient] = None,
                 client_name: str = "MCP Orchestrator"):
        self.storage = storage
        self.browser = browser
        self.callback_scheme = callback_scheme
        self.redirect_uri = redirect_uri or f"{callback_scheme}://oauth/callback"
        self.refresh_buffer = refresh_buffer
        self.flow_timeout = flow_timeout
        self.client_name = client_name
        self._http = http_client
        self._owns_http = http_client is None
        self._pending: Dict[str, _PendingFlow] = {}
        self._refresh_schedules: Dict[str, _RefreshSchedule] = {}
        self._refresh_callbacks: Set[TokenRefreshCallback] = set()
        self._config_lookup: Optional[ConfigLookup] = None
        self._protocol_cleanup: Optional[Callable[[], None]] = None
        self._callback_tasks: Set[asyncio.Task] = set()

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=15)
        return self._http

    # -------- Validation --------
    async def ensure_valid_token(self, config: ServerConfig) -> str:
        """Return a usable access token for config, refreshing it when close to expiry.

        Raises AuthError(AUTH_REQUIRED) when there is no token and
        AuthError(TOKEN_EXPIRED) when the token has already expired.
        """
        oauth = _oauth_of(config)
        if oauth is None:
            raise AuthError("Server does not use OAuth", ErrorCode.AUTH_REQUIRED, server_id=config.id)
        tokens = oauth.tokens
        if tokens is None or not tokens.access_token:
            raise AuthError("No access token available", ErrorCode.AUTH_REQUIRED, server_id=config.id)

        if tokens.expires_at is not None:
            now = time.time()
            if now >= tokens.expires_at:
                raise AuthError("Token has expired", ErrorCode.TOKEN_EXPIRED, server_id=config.id)
            if now >= tokens.expires_at - self.refresh_buffer and tokens.refresh_token:
                result = await self.refresh_token(config)
                if result.success and result.tokens is not None:
                    oauth.tokens = result.tokens
                    return result.tokens.access_token
                logger.warning(f"[{config.id}] refresh near expiry failed, keeping current token: {result.error}")
        return tokens.access_token

    def needs_auth(self, config: ServerConfig) -> bool:
        oauth = _oauth_of(config)
        if oauth is None:
            return False
        tokens = oauth.tokens
        if tokens is None or not tokens.access_token:
            return True
        return tokens.is_expired() and not tokens.refresh_token

    # -------- Refresh --------
    async def refresh_token(self, config: ServerConfig) -> TokenRefreshResult:
        oauth = _oauth_of(config)
        if oauth is None:
            return TokenRefreshResult(False, error="Server does not use OAuth")
        tokens = oauth.tokens
        if tokens is None or not tokens.refresh_token:
            return TokenRefreshResult(False, error="No refresh token available")
        if not oauth.token_url:
            return TokenRefreshResult(False, error="No token URL configured")

        start = time.perf_counter()
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": tokens.refresh_token,
        }
        if oauth.client_id:
            payload["client_id"] = oauth.client_id
        auth = (oauth.client_id, oauth.client_secret) if oauth.client_id and oauth.client_secret else None
        try:
            resp = await self.http.post(oauth.token_url, data=payload, auth=auth,
                                        headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            log_event(config.id, "token_refresh", None, start, status="error", error=type(e).__name__)
            return TokenRefreshResult(False, error=f"Token refresh request failed: {e}")

        if resp.status_code != 200:
            log_event(config.id, "token_refresh", None, start, status="http_error", code=resp.status_code)
            return TokenRefreshResult(False, error=f"Token refresh failed: {resp.status_code} {resp.text[:200]}")
        try:
            new_tokens = OAuthTokens.from_token_response(resp.json(), previous=tokens)
        except (ValueError, MCPError) as e:
            log_event(config.id, "token_refresh", None, start, status="invalid_response")
            return TokenRefreshResult(False, error=f"Invalid token response: {e}")

        remaining = new_tokens.expires_in()
        log_event(config.id, "token_refresh", None, start, status="refreshed",
                  token=mask_token(new_tokens.access_token),
                  remaining=int(remaining) if remaining is not None else None)
        return TokenRefreshResult(True, tokens=new_tokens)

    def on_token_refresh(self, callback: TokenRefreshCallback) -> Callable[[], None]:
        """Register a callback for background refreshes. Returns an unsubscribe."""
        self._refresh_callbacks.add(callback)
        return lambda: self._refresh_callbacks.discard(callback)

    def set_config_lookup(self, lookup: Optional[ConfigLookup]):
        """Resolve the live config of a server when a scheduled refresh fires."""
        self._config_lookup = lookup

    def schedule_background_refresh(self, config: ServerConfig):
        oauth = _oauth_of(config)
        if oauth is None or oauth.tokens is None:
            return
        tokens = oauth.tokens
        if tokens.expires_at is None or not tokens.refresh_token:
            return

        self.cancel_background_refresh(config.id)
        now = time.time()
        if tokens.expires_at <= now:
            logger.info(f"[{config.id}] token already expired, not scheduling background refresh")
            return
        refresh_at = tokens.expires_at - self.refresh_buffer
        delay = max(refresh_at - now, MIN_REFRESH_DELAY)

        async def _fire():
            await asyncio.sleep(delay)
            schedule = self._refresh_schedules.get(config.id)
            if schedule is not None and schedule.task is asyncio.current_task():
                del self._refresh_schedules[config.id]
            current = self._current_config(config)
            if current is None:
                logger.info(f"[{config.id}] server no longer uses OAuth, dropping background refresh")
                return
            await self._perform_background_refresh(current)

        task = asyncio.get_running_loop().create_task(_fire())
        self._refresh_schedules[config.id] = _RefreshSchedule(config.id, task, now + delay)
        log_event(config.id, "oauth_refresh_schedule", None, time.perf_counter(), status="scheduled",
                  delay=round(delay, 1))

    def cancel_background_refresh(self, server_id: str):
        schedule = self._refresh_schedules.pop(server_id, None)
        if schedule is not None:
            schedule.task.cancel()

    def has_scheduled_refresh(self, server_id: str) -> bool:
        return server_id in self._refresh_schedules

    def get_scheduled_refresh(self, server_id: str) -> Optional[float]:
        schedule = self._refresh_schedules.get(server_id)
        return schedule.scheduled_at if schedule else None

    def _current_config(self, config: ServerConfig) -> Optional[ServerConfig]:
        if self._config_lookup is None:
            return config
        current = self._config_lookup(config.id)
        if current is None or _oauth_of(current) is None:
            return None
        return current

    async def _perform_background_refresh(self, config: ServerConfig):
        result = await self.refresh_token(config)
        if not result.success or result.tokens is None:
            # ensure_valid_token will retry on the next start
            logger.warning(f"[{config.id}] background token refresh failed: {result.error}")
            return

        for callback in list(self._refresh_callbacks):
            try:
                outcome = callback(config.id, result.tokens)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception(f"[{config.id}] token refresh callback failed")

        if result.tokens.expires_at is not None:
            oauth = _oauth_of(config)
            updated = config.copy(auth=replace(oauth, tokens=result.tokens))
            self.schedule_background_refresh(updated)

    # -------- Authorization flow --------
    def build_authorization_url(self, oauth: OAuthConfig, code_challenge: str, state: str,
                                redirect_uri: str) -> str:
        params = {
            "response_type": "code",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
            "redirect_uri": redirect_uri,
        }
        if oauth.client_id:
            params["client_id"] = oauth.client_id
        if oauth.scopes:
            params["scope"] = " ".join(oauth.scopes)
        separator = "&" if urlparse(oauth.auth_url).query else "?"
        return f"{oauth.auth_url}{separator}{urlencode(params)}"

    async def authenticate(self, config: ServerConfig) -> OAuthTokens:
        """Run the PKCE authorization-code flow and return the granted tokens.

        Opens the authorization URL in the browser and waits (up to
        flow_timeout) for handle_callback to deliver the redirect.
        """
        oauth = _oauth_of(config)
        if oauth is None:
            raise AuthError("Server does not use OAuth", ErrorCode.AUTH_REQUIRED, server_id=config.id)
        if not oauth.auth_url or not oauth.token_url:
            raise AuthError("OAuth configuration incomplete", ErrorCode.AUTH_REQUIRED, server_id=config.id)

        start = time.perf_counter()
        pkce = generate_pkce()
        state = generate_state()
        flow = OAuthFlowState(
            server_id=config.id,
            code_verifier=pkce.code_verifier,
            expires_at=time.time() + self.flow_timeout,
            redirect_uri=self.redirect_uri,
        )
        await self.storage.write(f"{FLOW_STATE_PREFIX}{state}", flow.to_dict())

        auth_url = self.build_authorization_url(oauth, pkce.code_challenge, state, self.redirect_uri)
        self.ensure_protocol_handler()

        future: "asyncio.Future[OAuthTokens]" = asyncio.get_running_loop().create_future()
        self._pending[state] = _PendingFlow(config.id, oauth, future, auth_url)
        try:
            try:
                await self.browser.open(auth_url)
            except Exception as e:
                raise AuthError(f"Failed to open browser: {e}", ErrorCode.AUTH_FAILED,
                                server_id=config.id, cause=e)
            log_event(config.id, "oauth_redirect", None, start, status="opened")
            try:
                tokens = await asyncio.wait_for(future, timeout=self.flow_timeout)
            except asyncio.TimeoutError:
                log_event(config.id, "oauth_flow", None, start, status="timeout")
                raise AuthError("OAuth flow timed out", ErrorCode.OAUTH_TIMEOUT, server_id=config.id)
            log_event(config.id, "oauth_flow", None, start, status="ok", token=mask_token(tokens.access_token))
            return tokens
        finally:
            self._pending.pop(state, None)
            await self.storage.delete(f"{FLOW_STATE_PREFIX}{state}")

    async def handle_callback(self, callback_url: str):
        """Complete a pending flow from its redirect URL."""
        query = parse_qs(urlparse(callback_url).query)
        code = (query.get("code") or [None])[0]
        state = (query.get("state") or [None])[0]
        error = (query.get("error") or [None])[0]

        if error:
            description = (query.get("error_description") or [error])[0]
            pending = self._pending.get(state) if state else None
            if pending is not None and not pending.future.done():
                pending.future.set_exception(
                    AuthError(description, ErrorCode.AUTH_FAILED, server_id=pending.server_id))
            logger.warning(f"OAuth provider returned error={error}: {description}")
            return

        if not code or not state:
            raise AuthError("Invalid callback: missing code or state", ErrorCode.OAUTH_CALLBACK_INVALID)

        key = f"{FLOW_STATE_PREFIX}{state}"
        stored = await self.storage.read(key)
        if not stored:
            raise AuthError("Invalid state: not found", ErrorCode.OAUTH_STATE_INVALID)
        try:
            flow = OAuthFlowState.from_dict(stored)
            if flow.is_expired():
                raise AuthError("OAuth state expired", ErrorCode.OAUTH_STATE_INVALID, server_id=flow.server_id)
            pending = self._pending.get(state)
            if pending is None or pending.future.done():
                raise AuthError("No pending authentication for state", ErrorCode.OAUTH_STATE_INVALID,
                                server_id=flow.server_id)
            try:
                tokens = await self._exchange_code(pending.oauth, code, flow)
            except AuthError as e:
                if not pending.future.done():
                    pending.future.set_exception(e)
                raise
            if not pending.future.done():
                pending.future.set_result(tokens)
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError("Stored OAuth state is malformed", ErrorCode.OAUTH_STATE_INVALID, cause=e)
        finally:
            await self.storage.delete(key)

    async def _exchange_code(self, oauth: OAuthConfig, code: str, flow: OAuthFlowState) -> OAuthTokens:
        start = time.perf_counter()
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": flow.code_verifier,
            "redirect_uri": flow.redirect_uri,
        }
        if oauth.client_id:
            payload["client_id"] = oauth.client_id
        auth = (oauth.client_id, oauth.client_secret) if oauth.client_id and oauth.client_secret else None
        try:
            resp = await self.http.post(oauth.token_url, data=payload, auth=auth,
                                        headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise AuthError(f"Token exchange request failed: {e}", ErrorCode.OAUTH_CODE_EXCHANGE_FAILED,
                            server_id=flow.server_id, cause=e)
        if resp.status_code != 200:
            log_event(flow.server_id, "oauth_exchange", None, start, status="http_error", code=resp.status_code)
            raise AuthError(f"Token exchange failed: {resp.status_code} {resp.text[:200]}",
                            ErrorCode.OAUTH_CODE_EXCHANGE_FAILED, server_id=flow.server_id)
        try:
            tokens = OAuthTokens.from_token_response(resp.json())
        except ValueError as e:
            raise AuthError("Token endpoint returned invalid JSON", ErrorCode.OAUTH_CODE_EXCHANGE_FAILED,
                            server_id=flow.server_id, cause=e)
        except MCPError as e:
            raise AuthError(e.message, ErrorCode.OAUTH_CODE_EXCHANGE_FAILED, server_id=flow.server_id, cause=e)
        log_event(flow.server_id, "oauth_exchange", None, start, status="ok")
        return tokens

    def ensure_protocol_handler(self):
        if self._protocol_cleanup is not None:
            return

        def _on_callback(url: str):
            task = asyncio.get_running_loop().create_task(self.handle_callback(url))
            self._callback_tasks.add(task)

            def _done(t: asyncio.Task):
                self._callback_tasks.discard(t)
                if not t.cancelled() and t.exception() is not None:
                    logger.warning(f"OAuth callback rejected: {t.exception()}")

            task.add_done_callback(_done)

        self._protocol_cleanup = self.browser.register_protocol_handler(self.callback_scheme, _on_callback)

    # -------- Discovery --------
    async def discover(self, mcp_url: str, fallback_client_id: Optional[str] = None) -> OAuthDiscoveryResult:
        return await discover_oauth_config(mcp_url, self.redirect_uri, self.client_name,
                                           client=self.http, fallback_client_id=fallback_client_id)

    def pending_flows(self) -> Dict[str, str]:
        """state -> server id for every in-flight authorization."""
        return {state: flow.server_id for state, flow in self._pending.items()}

    def pending_authorization_url(self, server_id: str) -> Optional[str]:
        """Authorization URL of the newest in-flight flow for server_id."""
        url = None
        for flow in self._pending.values():
            if flow.server_id == server_id:
                url = flow.authorization_url
        return url

    async def dispose(self):
        for flow in list(self._pending.values()):
            if not flow.future.done():
                flow.future.set_exception(
                    AuthError("Token manager disposed", ErrorCode.AUTH_FAILED, server_id=flow.server_id))
        self._pending.clear()

        for schedule in list(self._refresh_schedules.values()):
            schedule.task.cancel()
        self._refresh_schedules.clear()
        self._refresh_callbacks.clear()
        self._config_lookup = None

        for task in list(self._callback_tasks):
            task.cancel()
        self._callback_tasks.clear()

        if self._protocol_cleanup is not None:
            self._protocol_cleanup()
            self._protocol_cleanup = None

        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
