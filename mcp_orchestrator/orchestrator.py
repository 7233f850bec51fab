#!/usr/bin/env python3
"""
Orchestrator
Builds the token manager, server manager, registry and supervisor from
Settings and wires their events together:

    registry state RUNNING   -> supervise, on_server_started, schedule token refresh
    registry state CRASHED   -> supervisor.on_server_crashed
    registry server_stopped  -> supervisor.on_server_stopped, cancel token refresh
    registry server_removed  -> unsupervise
    supervisor restart       -> registry.start
    supervisor health check  -> registry.check_health
    token refreshed          -> registry.apply_refreshed_tokens

    async with Orchestrator(settings) as orch:
        await orch.registry.import_config(text)
        await orch.registry.start(server_id)
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from .browser import BrowserAdapter, SystemBrowser
from .models import OAuthTokens, TokenAuth
from .registry import (
    SERVER_REMOVED,
    SERVER_STOPPED,
    STATE_CHANGED,
    Registry,
    RegistryEvent,
)
from .server_manager import ServerManager
from .settings import Settings
from .state import ServerState, requires_attention
from .storage import JsonFileStorage, StorageAdapter
from .supervisor import HEALTH_CHECK_FAILED, RESTART_ABANDONED, Supervisor, SupervisorEvent
from .token_manager import TokenManager
from .transports import HttpAdapter, ProcessAdapter, StdioProcessAdapter, StreamableHttpAdapter

logger = logging.getLogger(__name__)


class Orchestrator:

    def __init__(self, settings: Optional[Settings] = None, storage: Optional[StorageAdapter] = None,
                 process_adapter: Optional[ProcessAdapter] = None,
                 http_adapter: Optional[HttpAdapter] = None,
                 browser: Optional[BrowserAdapter] = None):
        self.settings = settings or Settings()
        s = self.settings

        self.storage = storage or JsonFileStorage(s.data_dir, poll_interval=s.registry.watch_interval)
        self.browser = browser or SystemBrowser(loopback_port=s.token.loopback_port)
        self.token_manager = TokenManager(
            self.storage,
            self.browser,
            callback_scheme=s.token.callback_scheme,
            redirect_uri=self._redirect_uri(),
            refresh_buffer=s.token.refresh_buffer,
            flow_timeout=s.token.flow_timeout,
            client_name=s.token.client_name,
        )
        self.server_manager = ServerManager(
            process_adapter or StdioProcessAdapter(timeout=s.server.request_timeout),
            http_adapter or StreamableHttpAdapter(timeout=s.server.request_timeout),
            token_manager=self.token_manager,
            shutdown_timeout=s.server.shutdown_timeout,
        )
        self.registry = Registry(
            self.storage,
            self.server_manager,
            config_name=s.registry.config_name,
            auto_recover=s.registry.auto_recover,
            auto_fetch_capabilities=s.registry.auto_fetch_capabilities,
            max_history=s.registry.max_history,
        )
        sup = s.supervisor
        self.supervisor = Supervisor(
            auto_restart=sup.auto_restart,
            max_restart_attempts=sup.max_restart_attempts,
            restart_delay=sup.restart_delay,
            restart_backoff_multiplier=sup.restart_backoff_multiplier,
            max_restart_delay=sup.max_restart_delay,
            health_check_enabled=sup.health_check_enabled,
            health_check_interval=sup.health_check_interval,
            health_check_timeout=sup.health_check_timeout,
        )
        self.restart_unhealthy = sup.restart_unhealthy

        self._unsubscribers: List[Callable[[], Any]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._initialized = False
        self.started_at: Optional[float] = None

    def _redirect_uri(self) -> Optional[str]:
        s = self.settings
        if s.token.redirect_uri:
            return s.token.redirect_uri
        loopback = getattr(self.browser, "loopback_redirect_uri", None)
        if loopback:
            return loopback
        if isinstance(self.browser, SystemBrowser):
            # The control API serves /oauth/callback
            return f"http://{s.api.host}:{s.api.port}/oauth/callback"
        return None

    # -------- Lifecycle --------
    async def initialize(self):
        if self._initialized:
            return
        self._initialized = True
        self._wire()
        await self.registry.initialize()
        self.supervisor.start_health_checks()
        self.started_at = time.time()
        logger.info(f"Orchestrator ready with {len(self.registry)} server(s)")

    async def dispose(self):
        if not self._initialized:
            return
        self._initialized = False
        # No restarts may fire while everything is being stopped
        self.supervisor.dispose()
        try:
            await self.registry.dispose()
        finally:
            await self.token_manager.dispose()
            for unsubscribe in self._unsubscribers:
                unsubscribe()
            self._unsubscribers.clear()
            for task in list(self._tasks):
                task.cancel()
            self._tasks.clear()
        logger.info("Orchestrator disposed")

    async def __aenter__(self) -> "Orchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.dispose()

    # -------- Wiring --------
    def _wire(self):
        self.supervisor.set_restart_callback(self.registry.start)
        self.supervisor.set_health_check_callback(self.registry.check_health)
        self.token_manager.set_config_lookup(self._config_for)
        self._unsubscribers.append(self.registry.subscribe(self._on_registry_event))
        self._unsubscribers.append(self.supervisor.subscribe(self._on_supervisor_event))
        self._unsubscribers.append(self.token_manager.on_token_refresh(self._on_token_refreshed))

    def _on_registry_event(self, event: RegistryEvent):
        server_id = event.server_id
        if event.type == STATE_CHANGED:
            state = event.data.get("state")
            if state == ServerState.RUNNING.value and event.data.get("previousState") == ServerState.STARTING.value:
                instance = self.registry.get(server_id)
                if instance is None:
                    return
                self.supervisor.supervise(instance.config)
                self.supervisor.on_server_started(server_id)
                oauth = instance.config.oauth
                if oauth is not None and oauth.tokens is not None:
                    self.token_manager.schedule_background_refresh(instance.config)
            elif state == ServerState.CRASHED.value:
                exit_code = (event.data.get("metadata") or {}).get("exit_code")
                self.supervisor.on_server_crashed(server_id, exit_code)
            elif state == ServerState.STOPPED.value:
                # Also covers a clean exit the server initiated itself
                self.supervisor.on_server_stopped(server_id)
                self.token_manager.cancel_background_refresh(server_id)
        elif event.type == SERVER_STOPPED:
            self.supervisor.on_server_stopped(server_id)
            self.token_manager.cancel_background_refresh(server_id)
        elif event.type == SERVER_REMOVED:
            self.supervisor.unsupervise(server_id)
            self.token_manager.cancel_background_refresh(server_id)

    def _on_supervisor_event(self, event: SupervisorEvent):
        if event.type == RESTART_ABANDONED:
            logger.error(f"Giving up on {event.server_id}: {event.data.get('reason')}")
        elif event.type == HEALTH_CHECK_FAILED and self.restart_unhealthy:
            self._spawn(self._restart_unhealthy(event.server_id, event.data.get("error") or "Health check failed"))

    async def _restart_unhealthy(self, server_id: str, reason: str):
        if await self.registry.mark_unhealthy(server_id, reason):
            self.supervisor.on_server_crashed(server_id, None)

    def _config_for(self, server_id: str):
        instance = self.registry.get(server_id)
        return instance.config if instance is not None else None

    async def _on_token_refreshed(self, server_id: str, tokens: OAuthTokens):
        await self.registry.apply_refreshed_tokens(server_id, tokens)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task):
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Orchestrator task failed: {t.exception()!r}")

        task.add_done_callback(_done)
        return task

    # -------- Queries --------
    def describe_server(self, server_id: str, include_history: bool = False) -> Optional[Dict[str, Any]]:
        instance = self.registry.get(server_id)
        if instance is None:
            return None
        record = self.supervisor.get_record(server_id)
        data: Dict[str, Any] = {
            **instance.config.to_dict(),
            "state": instance.state.value,
            "needsAttention": requires_attention(instance.state),
            "availableEvents": [e.value for e in instance.state_machine.available_events()],
            "metadata": instance.state_machine.metadata.to_dict(),
            "runtime": self.server_manager.describe(instance),
            "supervision": record.to_dict() if record else None,
            "tokenRefreshAt": self.token_manager.get_scheduled_refresh(server_id),
        }
        oauth = instance.config.oauth
        if oauth is not None:
            # Never expose token material through status output
            data["auth"] = {
                "type": "oauth",
                "clientId": oauth.client_id,
                "hasTokens": oauth.tokens is not None,
                "expiresAt": oauth.tokens.expires_at if oauth.tokens else None,
            }
        elif isinstance(instance.config.auth, TokenAuth):
            data["auth"] = {"type": "token"}
        capabilities = instance.capabilities
        if include_history:
            data["history"] = [entry.to_dict() for entry in instance.state_machine.history]
            data["capabilities"] = capabilities.to_dict() if capabilities else None
        else:
            data["capabilityCounts"] = {
                "tools": len(capabilities.tools),
                "resources": len(capabilities.resources),
                "prompts": len(capabilities.prompts),
            } if capabilities else None
        return data

    def status(self) -> Dict[str, Any]:
        servers = [self.describe_server(i.id) for i in self.registry.get_all()]
        return {
            "startedAt": self.started_at,
            "uptime": round(time.time() - self.started_at, 1) if self.started_at else None,
            "total": len(servers),
            "running": len(self.registry.get_running()),
            "pendingAuth": self.token_manager.pending_flows(),
            "servers": servers,
        }
