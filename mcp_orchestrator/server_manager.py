#!/usr/bin/env python3
"""
Server Manager
Drives one server's state machine through validate -> start and stop using
a transport adapter and, for OAuth servers, the token manager.

Besides explicit start/stop, the only other writer of state is the exit
notification of the instance's current transport handle.
"""

import asyncio
import logging
import time
from typing import Dict, Optional

from .errors import (
    AuthError,
    ConfigError,
    ErrorCode,
    InvalidTransitionError,
    MCPError,
    ProcessError,
)
from .logging_utils import log_event
from .models import (
    HttpTransport,
    OAuthTokens,
    ServerConfig,
    ServerInstance,
    StdioTransport,
    TokenAuth,
)
from .state import ServerState, StateEvent, can_start, can_stop, is_transient_state
from .token_manager import TokenManager
from .transports import HttpAdapter, ProcessAdapter, TransportHandle

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 5.0
OAUTH_ENV_VAR = "OAUTH_ACCESS_TOKEN"
TOKEN_ENV_VAR = "MCP_AUTH_TOKEN"


class _Credentials:
    """What a transport needs to authenticate: env for stdio, bearer/headers for http."""

    def __init__(self):
        self.env: Dict[str, str] = {}
        self.bearer_token: Optional[str] = None
        self.headers: Dict[str, str] = {}


class ServerManager:

    def __init__(self, process_adapter: ProcessAdapter, http_adapter: HttpAdapter,
                 token_manager: Optional[TokenManager] = None,
                 shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT):
        self.process_adapter = process_adapter
        self.http_adapter = http_adapter
        self.token_manager = token_manager
        self.shutdown_timeout = shutdown_timeout

    # -------- Validation --------
    @staticmethod
    def validate_config(config: ServerConfig):
        """Structural check of the transport; raises ConfigError."""
        if not config.id:
            raise ConfigError("Server ID is required", ErrorCode.MISSING_SERVER_ID)
        transport = config.transport
        if transport is None:
            raise ConfigError("Transport is required", ErrorCode.MISSING_TRANSPORT, server_id=config.id)
        if isinstance(transport, StdioTransport):
            if not transport.command or not transport.command.strip():
                raise ConfigError("Command is required for stdio transport", ErrorCode.INVALID_TRANSPORT,
                                  server_id=config.id)
        elif isinstance(transport, HttpTransport):
            if not transport.url or not transport.url.strip():
                raise ConfigError("URL is required for HTTP transport", ErrorCode.INVALID_TRANSPORT,
                                  server_id=config.id)
        else:
            raise ConfigError(f"Unknown transport type: {type(transport).__name__}",
                              ErrorCode.INVALID_TRANSPORT, server_id=config.id)

    # -------- Start --------
    async def start(self, instance: ServerInstance, force_restart: bool = False,
                    skip_validation: bool = False):
        machine = instance.state_machine
        state = machine.state
        if state == ServerState.RUNNING and not force_restart:
            logger.debug(f"[{instance.id}] already running")
            return
        if not can_start(state):
            if not force_restart:
                raise InvalidTransitionError(f"Cannot start server in state {state.value}",
                                             server_id=instance.id, from_state=state.value,
                                             event=StateEvent.START.value)
            await self.stop(instance, force=True)

        event = StateEvent.VALIDATE if machine.state == ServerState.IDLE else StateEvent.START
        machine.transition(event)
        await self._launch_from_validating(instance, skip_validation)

    async def resume_after_auth(self, instance: ServerInstance, tokens: OAuthTokens):
        """Continue a start once an OAuth flow has produced tokens (AUTHENTICATING -> VALIDATING)."""
        oauth = instance.config.oauth
        if oauth is not None:
            oauth.tokens = tokens
        instance.state_machine.transition(StateEvent.AUTH_SUCCESS)
        await self._launch_from_validating(instance, skip_validation=False)

    def require_auth(self, instance: ServerInstance):
        """Move a startable server into AUTH_REQUIRED through VALIDATING."""
        machine = instance.state_machine
        if machine.state == ServerState.AUTH_REQUIRED:
            return
        if not can_start(machine.state):
            raise InvalidTransitionError(f"Cannot authenticate server in state {machine.state.value}",
                                         server_id=instance.id, from_state=machine.state.value,
                                         event=StateEvent.AUTHENTICATE.value)
        machine.transition(StateEvent.VALIDATE if machine.state == ServerState.IDLE else StateEvent.START)
        machine.transition(StateEvent.AUTH_REQUIRED, error="Authentication required",
                           error_code=ErrorCode.AUTH_REQUIRED.value)

    async def _launch_from_validating(self, instance: ServerInstance, skip_validation: bool):
        machine = instance.state_machine
        config = instance.config
        start = time.perf_counter()

        if not skip_validation:
            try:
                self.validate_config(config)
            except ConfigError as e:
                machine.transition(StateEvent.INVALID, error=e.message, error_code=e.code.value)
                log_event(config.id, "start", config.transport.type, start, status="invalid", error=e.code.name)
                raise

        try:
            credentials = await self._resolve_credentials(instance)
        except AuthError:
            raise
        except Exception as e:
            error = MCPError.wrap(e, config.id)
            self._fail(instance, error)
            raise error

        machine.transition(StateEvent.VALID)
        try:
            handle = await self._open_transport(config, credentials)
        except asyncio.CancelledError:
            self._fail(instance, MCPError("Start cancelled", ErrorCode.PROCESS_START_FAILED, server_id=config.id))
            raise
        except Exception as e:
            error = MCPError.wrap(e, config.id, ErrorCode.PROCESS_START_FAILED)
            self._fail(instance, error)
            log_event(config.id, "start", config.transport.type, start, status="error", error=error.code.name)
            raise error

        instance.handle = handle
        handle.on_exit(lambda code, h=handle: self._handle_exit(instance, h, code))
        handle.on_stderr(lambda line: logger.debug(f"[{config.id}] stderr: {line}"))
        if not handle.is_running:
            # Exited between connect and subscribe
            self._handle_exit(instance, handle, handle.exit_code)
            raise ProcessError("Server exited during startup", ErrorCode.PROCESS_CRASHED,
                               server_id=config.id, exit_code=handle.exit_code)

        machine.transition(StateEvent.STARTED, connected_at=time.time(), error=None,
                           error_code=None, exit_code=None)
        log_event(config.id, "start", config.transport.type, start)

    async def _resolve_credentials(self, instance: ServerInstance) -> _Credentials:
        config = instance.config
        machine = instance.state_machine
        creds = _Credentials()

        if isinstance(config.auth, TokenAuth):
            if isinstance(config.transport, StdioTransport):
                creds.env[TOKEN_ENV_VAR] = config.auth.token
            else:
                creds.headers[config.auth.header_name] = config.auth.header_value()
            return creds

        oauth = config.oauth
        if oauth is None:
            return creds

        tm = self.token_manager
        if tm is None or tm.needs_auth(config):
            machine.transition(StateEvent.AUTH_REQUIRED, error="Authentication required",
                               error_code=ErrorCode.AUTH_REQUIRED.value)
            raise AuthError("Authentication required", ErrorCode.AUTH_REQUIRED, server_id=config.id)

        try:
            token = await tm.ensure_valid_token(config)
        except AuthError as e:
            token = None
            if e.code == ErrorCode.TOKEN_EXPIRED and oauth.tokens and oauth.tokens.refresh_token:
                result = await tm.refresh_token(config)
                if result.success and result.tokens is not None:
                    oauth.tokens = result.tokens
                    token = result.tokens.access_token
            if token is None:
                machine.transition(StateEvent.AUTH_REQUIRED, error=e.message, error_code=e.code.value)
                raise

        if isinstance(config.transport, StdioTransport):
            creds.env[OAUTH_ENV_VAR] = token
        else:
            creds.bearer_token = token
        return creds

    async def _open_transport(self, config: ServerConfig, creds: _Credentials) -> TransportHandle:
        transport = config.transport
        if isinstance(transport, StdioTransport):
            return await self.process_adapter.spawn(config.id, transport, env=creds.env or None)
        return await self.http_adapter.connect(config.id, transport, bearer_token=creds.bearer_token,
                                               headers=creds.headers or None)

    def _fail(self, instance: ServerInstance, error: MCPError):
        machine = instance.state_machine
        patch = {"error": error.message, "error_code": error.code.value}
        if isinstance(error, ProcessError) and error.exit_code is not None:
            patch["exit_code"] = error.exit_code
        if not is_transient_state(machine.state):
            return
        if machine.can_transition(StateEvent.ERROR):
            machine.transition(StateEvent.ERROR, **patch)
        else:
            machine.force_state(ServerState.ERROR, **patch)

    # -------- Exit notifications --------
    def _handle_exit(self, instance: ServerInstance, handle: TransportHandle, code: Optional[int]):
        if instance.handle is not handle:
            # Detached by stop() or replaced by a newer start
            return
        instance.handle = None
        machine = instance.state_machine
        crashed = code is not None and code != 0
        logger.info(f"[{instance.id}] transport closed with code {code}")
        if crashed:
            patch = {"exit_code": code, "error": f"Process exited with code {code}",
                     "error_code": ErrorCode.PROCESS_CRASHED.value}
            if machine.can_transition(StateEvent.CRASHED):
                machine.transition(StateEvent.CRASHED, **patch)
            else:
                machine.force_state(ServerState.CRASHED, **patch)
        elif machine.can_transition(StateEvent.STOPPED):
            machine.transition(StateEvent.STOPPED, exit_code=code)
        elif machine.can_transition(StateEvent.STOP):
            machine.transition(StateEvent.STOP)
            machine.transition(StateEvent.STOPPED, exit_code=code)
        else:
            machine.force_state(ServerState.STOPPED, exit_code=code)

    # -------- Stop --------
    async def stop(self, instance: ServerInstance, force: bool = False, timeout: Optional[float] = None):
        machine = instance.state_machine
        state = machine.state
        if state in (ServerState.IDLE, ServerState.STOPPED):
            return
        if not can_stop(state) and not force:
            raise InvalidTransitionError(f"Cannot stop server in state {state.value}",
                                         server_id=instance.id, from_state=state.value,
                                         event=StateEvent.STOP.value)

        start = time.perf_counter()
        timeout = self.shutdown_timeout if timeout is None else timeout
        handle = instance.handle
        instance.handle = None
        forced_kill = False
        try:
            graceful = machine.can_transition(StateEvent.STOP)
            if graceful:
                machine.transition(StateEvent.STOP)
            forced_kill = await self._kill(instance.id, handle, timeout)
            if graceful:
                machine.transition(StateEvent.STOPPED)
            else:
                machine.force_state(ServerState.STOPPED)
        except BaseException as e:
            if machine.state != ServerState.STOPPED:
                machine.force_state(ServerState.STOPPED, error=str(e) or type(e).__name__)
            log_event(instance.id, "stop", instance.config.transport.type, start, status="error",
                      error=type(e).__name__)
            raise
        log_event(instance.id, "stop", instance.config.transport.type, start,
                  status="forced" if forced_kill else "ok")

    async def _kill(self, server_id: str, handle: Optional[TransportHandle], timeout: float) -> bool:
        """Race a graceful kill against timeout, then force once. Returns True if forced."""
        if handle is None or not handle.is_running:
            return False
        try:
            await asyncio.wait_for(handle.kill(), timeout=timeout)
            return False
        except asyncio.TimeoutError:
            logger.warning(f"[{server_id}] did not exit within {timeout}s, killing")
        try:
            await asyncio.wait_for(handle.kill(force=True), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ProcessError("Process did not die after forced kill", ErrorCode.PROCESS_KILL_FAILED,
                               server_id=server_id, cause=e)
        return True

    async def restart(self, instance: ServerInstance):
        await self.stop(instance, force=True)
        await self.start(instance)

    # -------- Runtime helpers --------
    def describe(self, instance: ServerInstance) -> Dict[str, object]:
        handle = instance.handle
        info: Dict[str, object] = {"connected": handle is not None and handle.is_running}
        if handle is not None:
            info["transport"] = handle.transport_type
            pid = getattr(handle, "pid", None)
            if pid is not None:
                info["pid"] = pid
            session_id = getattr(handle, "session_id", None)
            if session_id:
                info["session"] = True
        return info

