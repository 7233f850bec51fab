#!/usr/bin/env python3
"""
Server Registry
Owns the set of configured MCP servers, each paired with its own state
machine and live transport handle.

- CRUD with write-through persistence of the full config array
- start/stop/restart serialized per server id through the instance lock
- replay of the persisted array on initialize, with recovery of servers
  that were RUNNING in a previous process or stuck mid-transition
- republishes state changes and lifecycle events to subscribers
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from .config_parser import ConfigParser, Document
from .errors import AuthError, CommunicationError, ConfigError, ErrorCode, MCPError
from .events import EventEmitter, Unsubscribe
from .logging_utils import log_event
from .models import (
    Capabilities,
    HttpTransport,
    OAuthConfig,
    OAuthTokens,
    ServerConfig,
    ServerInstance,
    auth_from_dict,
    transport_from_dict,
)
from .server_manager import ServerManager
from .state import (
    ERROR_STATES,
    ServerState,
    StateEvent,
    StateHistoryEntry,
    StateMetadata,
    is_transient_state,
)
from .state_machine import DEFAULT_MAX_HISTORY, StateChange, StateMachine
from .storage import StorageAdapter

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "mcp_servers.json"

SERVER_ADDED = "server_added"
SERVER_UPDATED = "server_updated"
SERVER_REMOVED = "server_removed"
STATE_CHANGED = "state_changed"
SERVER_STARTED = "server_started"
SERVER_STOPPED = "server_stopped"
SERVER_ERROR = "server_error"
CAPABILITIES_UPDATED = "capabilities_updated"

UPDATABLE_FIELDS = ("name", "enabled", "transport", "auth", "category", "description")


@dataclass
class RegistryEvent:
    type: str
    server_id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "serverId": self.server_id, **self.data}


class Registry:

    def __init__(self, storage: StorageAdapter, server_manager: ServerManager,
                 config_name: str = DEFAULT_CONFIG_NAME, auto_recover: bool = True,
                 auto_fetch_capabilities: bool = True, max_history: int = DEFAULT_MAX_HISTORY):
        self.storage = storage
        self.server_manager = server_manager
        self.config_name = config_name
        self.auto_recover = auto_recover
        self.auto_fetch_capabilities = auto_fetch_capabilities
        self.max_history = max_history
        self.parser = ConfigParser()

        self._instances: Dict[str, ServerInstance] = {}
        self._state_unsubscribers: Dict[str, Unsubscribe] = {}
        self._events: EventEmitter[RegistryEvent] = EventEmitter("registry")
        self._watch_cleanup: Optional[Callable[[], Any]] = None
        self._background: Set[asyncio.Task] = set()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self):
        if self._initialized:
            return
        self._initialized = True

        for config in await self._load_configs():
            if config.id in self._instances:
                logger.warning(f"Skipping duplicate persisted server id {config.id}")
                continue
            self._create_instance(config)
        logger.info(f"Registry loaded {len(self._instances)} server(s) from {self.config_name}")

        self._watch_cleanup = self.storage.watch_config(self.config_name, self._handle_config_change)

        if self.auto_recover:
            await self._recover_servers()

    async def dispose(self):
        if self._watch_cleanup is not None:
            self._watch_cleanup()
            self._watch_cleanup = None
        await self.stop_all()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        for unsubscribe in self._state_unsubscribers.values():
            unsubscribe()
        self._state_unsubscribers.clear()
        for instance in self._instances.values():
            instance.state_machine.dispose()
        self._instances.clear()
        self._events.clear()
        self._initialized = False

    async def _load_configs(self) -> List[ServerConfig]:
        document = await self.storage.read_config(self.config_name)
        if document is None:
            return []
        if not isinstance(document, list):
            # Hand-written files may use the mcpServers shape
            return self.parser.parse(document)
        configs = []
        for index, item in enumerate(document):
            try:
                configs.append(ServerConfig.from_dict(item))
            except (MCPError, AttributeError, TypeError) as e:
                logger.error(f"Skipping invalid persisted server at index {index}: {e}")
        return configs

    async def _recover_servers(self):
        for instance in list(self._instances.values()):
            state = instance.state
            if state == ServerState.RUNNING:
                # No connection survives a restart of this process, for either transport
                logger.info(f"Recovering server: {instance.config.name}")
                instance.state_machine.force_state(ServerState.IDLE)
                if instance.config.enabled:
                    try:
                        await self.start(instance.id)
                    except MCPError as e:
                        logger.error(f"Failed to recover server {instance.config.name}: {e}")
            elif is_transient_state(state):
                logger.debug(f"Resetting stuck server {instance.config.name} from state {state.value}")
                instance.state_machine.force_state(ServerState.IDLE)

    # ------------------------------------------------------------------
    # Instances and events
    # ------------------------------------------------------------------
    def _create_instance(self, config: ServerConfig) -> ServerInstance:
        machine = StateMachine(config.id, initial_state=config.status, max_history=self.max_history)
        instance = ServerInstance(config=config, state_machine=machine)
        self._instances[config.id] = instance
        self._state_unsubscribers[config.id] = machine.subscribe(self._on_state_change)
        return instance

    def _on_state_change(self, change: StateChange):
        instance = self._instances.get(change.server_id)
        if instance is None:
            return
        instance.config.status = change.state
        self._emit(STATE_CHANGED, change.server_id,
                   state=change.state.value,
                   previousState=change.previous_state.value,
                   event=change.event.value,
                   forced=change.forced,
                   metadata=change.metadata.to_dict())
        if change.state in ERROR_STATES:
            self._emit(SERVER_ERROR, change.server_id, state=change.state.value,
                       error=change.metadata.error, code=change.metadata.error_code,
                       exitCode=change.metadata.exit_code)
        if change.state == ServerState.CRASHED:
            # Crashes arrive outside any registry call
            self._spawn(self._persist())

    def _emit(self, kind: str, server_id: str, **data):
        self._events.emit(RegistryEvent(kind, server_id, data))

    def subscribe(self, listener: Callable[[RegistryEvent], Any]) -> Unsubscribe:
        return self._events.subscribe(listener)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)

        def _done(t: asyncio.Task):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Registry background task failed: {t.exception()!r}")

        task.add_done_callback(_done)
        return task

    async def _persist(self):
        await self.storage.write_config(self.config_name, [c.to_dict() for c in self.get_configs()])

    def _require(self, server_id: str) -> ServerInstance:
        instance = self._instances.get(server_id)
        if instance is None:
            raise ConfigError(f"Server not found: {server_id}", ErrorCode.SERVER_NOT_FOUND, server_id=server_id)
        return instance

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    async def add(self, config: ServerConfig) -> ServerConfig:
        if config.id in self._instances:
            raise ConfigError(f"Server already exists: {config.id}", ErrorCode.DUPLICATE_SERVER,
                              server_id=config.id)
        self.parser.validate_server(config)
        if is_transient_state(config.status) or config.status == ServerState.RUNNING:
            config.status = ServerState.IDLE
        self._create_instance(config)
        await self._persist()
        self._emit(SERVER_ADDED, config.id, server=config.to_dict())
        logger.info(f"Added server {config.name} ({config.id})")
        return config

    async def import_config(self, document: Document) -> List[ServerConfig]:
        """Parse any supported config shape and add every server in it."""
        configs = self.parser.parse(document)
        for config in configs:
            if config.id in self._instances:
                raise ConfigError(f"Server already exists: {config.id}", ErrorCode.DUPLICATE_SERVER,
                                  server_id=config.id)
        added = []
        for config in configs:
            added.append(await self.add(config))
        return added

    async def update(self, server_id: str, **changes: Any) -> ServerConfig:
        instance = self._require(server_id)
        if "id" in changes and changes.pop("id") != server_id:
            raise ConfigError("Server id cannot be changed", ErrorCode.INVALID_CONFIG, server_id=server_id)
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ConfigError(f"Unknown fields: {', '.join(sorted(unknown))}", ErrorCode.INVALID_CONFIG,
                              server_id=server_id)
        if isinstance(changes.get("transport"), Mapping):
            changes["transport"] = transport_from_dict(changes["transport"])
        if isinstance(changes.get("auth"), Mapping):
            changes["auth"] = auth_from_dict(changes["auth"])

        async with instance.lock:
            current = instance.config
            updated = current.copy(**changes)
            self.parser.validate_server(updated)
            transport_changed = "transport" in changes and updated.transport != current.transport
            if transport_changed and instance.state not in (ServerState.IDLE, ServerState.STOPPED):
                logger.info(f"Transport of {server_id} changed, stopping it first")
                await self.server_manager.stop(instance, force=True)
                self._emit(SERVER_STOPPED, server_id, reason="transport_changed")
            updated.status = instance.state
            instance.config = updated
            if transport_changed:
                instance.capabilities = None
            await self._persist()
        self._emit(SERVER_UPDATED, server_id, server=updated.to_dict(), changes=sorted(changes))
        return updated

    async def remove(self, server_id: str):
        instance = self._require(server_id)
        async with instance.lock:
            try:
                await self.server_manager.stop(instance, force=True)
            except MCPError as e:
                logger.warning(f"Error stopping {server_id} during removal: {e}")
            unsubscribe = self._state_unsubscribers.pop(server_id, None)
            if unsubscribe is not None:
                unsubscribe()
            instance.state_machine.dispose()
            self._instances.pop(server_id, None)
            await self._persist()
        self._emit(SERVER_REMOVED, server_id)
        logger.info(f"Removed server {server_id}")

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    async def start(self, server_id: str, force_restart: bool = False):
        instance = self._require(server_id)
        async with instance.lock:
            was_running = instance.state == ServerState.RUNNING
            try:
                await self.server_manager.start(instance, force_restart=force_restart)
            finally:
                await self._persist()
            if was_running and not force_restart:
                return
        self._emit(SERVER_STARTED, server_id)
        self._after_start(instance)

    def _after_start(self, instance: ServerInstance):
        if self.auto_fetch_capabilities:
            self._spawn(self.fetch_capabilities(instance.id))

    async def stop(self, server_id: str, force: bool = False):
        instance = self._require(server_id)
        async with instance.lock:
            was = instance.state
            try:
                await self.server_manager.stop(instance, force=force)
            finally:
                await self._persist()
        if was not in (ServerState.IDLE, ServerState.STOPPED):
            self._emit(SERVER_STOPPED, server_id)

    async def restart(self, server_id: str):
        instance = self._require(server_id)
        async with instance.lock:
            try:
                await self.server_manager.stop(instance, force=True)
                self._emit(SERVER_STOPPED, server_id)
                await self.server_manager.start(instance)
            finally:
                await self._persist()
        self._emit(SERVER_STARTED, server_id)
        self._after_start(instance)

    async def stop_all(self):
        targets = [i for i in self._instances.values()
                   if i.state not in (ServerState.IDLE, ServerState.STOPPED)]
        if not targets:
            return
        results = await asyncio.gather(*(self.stop(i.id, force=True) for i in targets), return_exceptions=True)
        for instance, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to stop {instance.id}: {result}")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @property
    def token_manager(self):
        return self.server_manager.token_manager

    async def discover_oauth(self, server_id: str) -> OAuthConfig:
        """Discover OAuth endpoints (and register a client) for an http server."""
        instance = self._require(server_id)
        config = instance.config
        if not isinstance(config.transport, HttpTransport):
            raise ConfigError("OAuth discovery requires an http transport", ErrorCode.INVALID_TRANSPORT,
                              server_id=server_id)
        if self.token_manager is None:
            raise AuthError("No token manager configured", ErrorCode.OAUTH_DISCOVERY_FAILED, server_id=server_id)
        existing = config.oauth
        result = await self.token_manager.discover(config.transport.url,
                                                   fallback_client_id=existing.client_id if existing else None)
        if not result.success or result.config is None:
            raise AuthError(result.error or "OAuth discovery failed", ErrorCode.OAUTH_DISCOVERY_FAILED,
                            server_id=server_id)
        oauth = result.config
        if existing is not None and existing.tokens is not None:
            oauth.tokens = existing.tokens
        async with instance.lock:
            instance.config = instance.config.copy(auth=oauth)
            await self._persist()
        self._emit(SERVER_UPDATED, server_id, server=instance.config.to_dict(), changes=["auth"])
        return oauth

    async def authenticate(self, server_id: str):
        """Run the OAuth flow for a server and start it with the granted tokens."""
        instance = self._require(server_id)
        if instance.config.oauth is None:
            await self.discover_oauth(server_id)
        if self.token_manager is None:
            raise AuthError("No token manager configured", ErrorCode.AUTH_FAILED, server_id=server_id)

        start = time.perf_counter()
        machine = instance.state_machine
        async with instance.lock:
            self.server_manager.require_auth(instance)
            machine.transition(StateEvent.AUTHENTICATE)
            await self._persist()

        # The lock is not held while the user is in the browser
        try:
            tokens = await self.token_manager.authenticate(instance.config)
        except MCPError as e:
            if machine.state == ServerState.AUTHENTICATING:
                machine.transition(StateEvent.AUTH_FAILED, error=e.message, error_code=e.code.value)
            await self._persist()
            log_event(server_id, "authenticate", instance.config.transport.type, start,
                      status="failed", error=e.code.name)
            raise
        except asyncio.CancelledError:
            if machine.state == ServerState.AUTHENTICATING:
                machine.transition(StateEvent.AUTH_FAILED, error="Authentication cancelled")
            raise

        async with instance.lock:
            if machine.state != ServerState.AUTHENTICATING:
                # Reset or removed while the flow was pending; keep the tokens for the next start
                if instance.config.oauth is not None:
                    instance.config.oauth.tokens = tokens
                await self._persist()
                return
            try:
                await self.server_manager.resume_after_auth(instance, tokens)
            finally:
                await self._persist()
        log_event(server_id, "authenticate", instance.config.transport.type, start)
        self._emit(SERVER_STARTED, server_id)
        self._after_start(instance)

    async def apply_refreshed_tokens(self, server_id: str, tokens: OAuthTokens):
        """Store tokens refreshed in the background and hand them to the live connection."""
        instance = self._instances.get(server_id)
        if instance is None or instance.config.oauth is None:
            return
        async with instance.lock:
            machine = instance.state_machine
            running = machine.state == ServerState.RUNNING
            if running:
                machine.transition(StateEvent.REFRESH_TOKEN)
            instance.config.oauth.tokens = tokens
            if instance.handle is not None:
                instance.handle.set_bearer_token(tokens.access_token)
            if running and machine.state == ServerState.TOKEN_REFRESHING:
                machine.transition(StateEvent.TOKEN_REFRESHED, token_refreshed_at=time.time())
            await self._persist()
        self._emit(SERVER_UPDATED, server_id, server=instance.config.to_dict(), changes=["auth.tokens"])

    # ------------------------------------------------------------------
    # Capabilities and health
    # ------------------------------------------------------------------
    async def fetch_capabilities(self, server_id: str) -> Optional[Capabilities]:
        instance = self._instances.get(server_id)
        if instance is None or instance.handle is None or not instance.handle.is_running:
            return None
        handle = instance.handle
        advertised = (handle.server_info or {}).get("capabilities")
        start = time.perf_counter()

        async def _list(method: str, key: str) -> List[Dict[str, Any]]:
            if advertised is not None and key not in advertised:
                return []
            try:
                result = await handle.request(method)
            except CommunicationError as e:
                logger.debug(f"[{server_id}] {method} failed: {e}")
                return []
            return list(result.get(key) or [])

        try:
            tools = await _list("tools/list", "tools")
            resources = await _list("resources/list", "resources")
            prompts = await _list("prompts/list", "prompts")
        except MCPError as e:
            log_event(server_id, "capabilities", handle.transport_type, start, status="error", error=e.code.name)
            return None

        capabilities = Capabilities(tools=tools, resources=resources, prompts=prompts, fetched_at=time.time())
        instance.capabilities = capabilities
        log_event(server_id, "capabilities", handle.transport_type, start,
                  tools=len(tools), resources=len(resources), prompts=len(prompts))
        self._emit(CAPABILITIES_UPDATED, server_id, capabilities=capabilities.to_dict())
        return capabilities

    async def check_health(self, server_id: str) -> bool:
        instance = self._instances.get(server_id)
        if instance is None or instance.state != ServerState.RUNNING:
            return False
        handle = instance.handle
        if handle is None or not handle.is_running:
            return False
        return await handle.ping()

    async def mark_unhealthy(self, server_id: str, reason: str) -> bool:
        """Tear down a RUNNING server that failed its health check (-> RUNTIME_ERROR)."""
        instance = self._instances.get(server_id)
        if instance is None:
            return False
        async with instance.lock:
            if instance.state != ServerState.RUNNING:
                return False
            handle = instance.handle
            instance.handle = None
            instance.state_machine.transition(StateEvent.ERROR, error=reason,
                                              error_code=ErrorCode.CONNECTION_LOST.value)
            if handle is not None:
                try:
                    await asyncio.wait_for(handle.kill(force=True), timeout=self.server_manager.shutdown_timeout)
                except (asyncio.TimeoutError, MCPError) as e:
                    logger.warning(f"[{server_id}] kill after failed health check: {e!r}")
            await self._persist()
        return True

    # ------------------------------------------------------------------
    # External config changes
    # ------------------------------------------------------------------
    def _handle_config_change(self, document: Any):
        if not isinstance(document, list):
            logger.warning("Ignoring external config change that is not a server array")
            return
        seen = set()
        for item in document:
            try:
                config = ServerConfig.from_dict(item)
            except (MCPError, AttributeError, TypeError) as e:
                logger.warning(f"Ignoring invalid server in external config change: {e}")
                continue
            seen.add(config.id)
            instance = self._instances.get(config.id)
            if instance is None:
                config.status = ServerState.IDLE
                self._create_instance(config)
                self._emit(SERVER_ADDED, config.id, server=config.to_dict(), external=True)
                continue
            config.status = instance.state
            if config.to_dict() == instance.config.to_dict():
                continue
            if instance.is_live() or instance.lock.locked():
                logger.info(f"Not applying external change to live server {config.id}")
                continue
            instance.config = config
            self._emit(SERVER_UPDATED, config.id, server=config.to_dict(), external=True)
        for removed in set(self._instances) - seen:
            logger.info(f"Server {removed} disappeared from {self.config_name}; keeping it until removed explicitly")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, server_id: str) -> Optional[ServerInstance]:
        return self._instances.get(server_id)

    def get_all(self) -> List[ServerInstance]:
        return list(self._instances.values())

    def get_configs(self) -> List[ServerConfig]:
        return [i.config for i in self._instances.values()]

    def get_running(self) -> List[ServerInstance]:
        return [i for i in self._instances.values() if i.state == ServerState.RUNNING]

    def get_state(self, server_id: str) -> Optional[ServerState]:
        instance = self._instances.get(server_id)
        return instance.state if instance else None

    def get_metadata(self, server_id: str) -> Optional[StateMetadata]:
        instance = self._instances.get(server_id)
        return instance.state_machine.metadata if instance else None

    def get_history(self, server_id: str) -> List[StateHistoryEntry]:
        instance = self._instances.get(server_id)
        return instance.state_machine.history if instance else []

    def get_capabilities(self, server_id: str) -> Optional[Capabilities]:
        instance = self._instances.get(server_id)
        return instance.capabilities if instance else None

    def __contains__(self, server_id: str) -> bool:
        return server_id in self._instances

    def __len__(self) -> int:
        return len(self._instances)
