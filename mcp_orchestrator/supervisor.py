#!/usr/bin/env python3
"""
Supervisor
Crash recovery and liveness checking for supervised servers.

- on_server_crashed schedules a restart with exponential backoff
  (delay = min(restart_delay * multiplier ** attempts, max_restart_delay))
- on_server_started resets the attempt counter, on_server_stopped cancels
  any pending restart (an intentional stop is never treated as a crash)
- a crash reported while a restart attempt is running belongs to that
  attempt, so it is rescheduled once
- an optional interval loop runs the health-check callback for every
  supervised server that is not waiting for a restart

Timers are asyncio tasks; cancelling one that has not fired guarantees its
body never runs. dispose() cancels every timer.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .events import EventEmitter, Unsubscribe
from .models import ServerConfig

logger = logging.getLogger(__name__)

RestartCallback = Callable[[str], Awaitable[Any]]
HealthCheckCallback = Callable[[str], Awaitable[bool]]

RESTART_SCHEDULED = "restart_scheduled"
RESTART_ATTEMPTED = "restart_attempted"
RESTART_SUCCEEDED = "restart_succeeded"
RESTART_FAILED = "restart_failed"
RESTART_ABANDONED = "restart_abandoned"
HEALTH_CHECK_STARTED = "health_check_started"
HEALTH_CHECK_PASSED = "health_check_passed"
HEALTH_CHECK_FAILED = "health_check_failed"


@dataclass
class SupervisorEvent:
    type: str
    server_id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "serverId": self.server_id, **self.data}


@dataclass
class SupervisionRecord:
    server_id: str
    restart_attempts: int = 0
    last_crash_time: Optional[float] = None
    restart_task: Optional[asyncio.Task] = None
    health_check_task: Optional[asyncio.Task] = None
    is_healthy: bool = False
    restart_in_flight: bool = False
    crashed_during_restart: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restartAttempts": self.restart_attempts,
            "lastCrashTime": self.last_crash_time,
            "restartPending": self.restart_task is not None,
            "isHealthy": self.is_healthy,
        }


class Supervisor:

    def __init__(self, auto_restart: bool = True, max_restart_attempts: int = 3,
                 restart_delay: float = 5.0, restart_backoff_multiplier: float = 2.0,
                 max_restart_delay: float = 60.0, health_check_enabled: bool = True,
                 health_check_interval: float = 30.0, health_check_timeout: float = 10.0):
        self.auto_restart = auto_restart
        self.max_restart_attempts = max_restart_attempts
        self.restart_delay = restart_delay
        self.restart_backoff_multiplier = restart_backoff_multiplier
        self.max_restart_delay = max_restart_delay
        self.health_check_enabled = health_check_enabled
        self.health_check_interval = health_check_interval
        self.health_check_timeout = health_check_timeout

        self._records: Dict[str, SupervisionRecord] = {}
        self._events: EventEmitter[SupervisorEvent] = EventEmitter("supervisor")
        self._restart_callback: Optional[RestartCallback] = None
        self._health_callback: Optional[HealthCheckCallback] = None
        self._health_loop: Optional[asyncio.Task] = None
        self._disposed = False

    # -------- wiring --------
    def set_restart_callback(self, callback: RestartCallback):
        self._restart_callback = callback

    def set_health_check_callback(self, callback: HealthCheckCallback):
        self._health_callback = callback

    def subscribe(self, listener: Callable[[SupervisorEvent], Any]) -> Unsubscribe:
        return self._events.subscribe(listener)

    def _emit(self, kind: str, server_id: str, **data):
        self._events.emit(SupervisorEvent(kind, server_id, data))

    # -------- tracking --------
    def supervise(self, config: ServerConfig):
        if config.id in self._records:
            return
        self._records[config.id] = SupervisionRecord(server_id=config.id)
        logger.debug(f"Supervising server: {config.id}")

    def unsupervise(self, server_id: str):
        record = self._records.pop(server_id, None)
        if record is None:
            return
        self._cancel(record)
        logger.debug(f"Stopped supervising server: {server_id}")

    @staticmethod
    def _cancel(record: SupervisionRecord):
        if record.restart_task is not None:
            record.restart_task.cancel()
            record.restart_task = None
        if record.health_check_task is not None:
            record.health_check_task.cancel()
            record.health_check_task = None

    def get_record(self, server_id: str) -> Optional[SupervisionRecord]:
        return self._records.get(server_id)

    def is_healthy(self, server_id: str) -> bool:
        record = self._records.get(server_id)
        return record.is_healthy if record else False

    def get_supervised_servers(self) -> List[str]:
        return list(self._records)

    # -------- lifecycle notifications --------
    def on_server_crashed(self, server_id: str, exit_code: Optional[int]):
        record = self._records.get(server_id)
        if record is None or self._disposed:
            return
        record.last_crash_time = time.time()
        record.is_healthy = False
        logger.warning(f"Server crashed: {server_id} (exit code: {exit_code})")
        if record.restart_in_flight:
            # The attempt in progress schedules the follow-up itself
            record.crashed_during_restart = True
            return

        if not self.auto_restart:
            self._emit(RESTART_ABANDONED, server_id, reason="Auto-restart disabled")
            return
        if record.restart_attempts >= self.max_restart_attempts:
            self._emit(RESTART_ABANDONED, server_id,
                       reason=f"Max restart attempts ({self.max_restart_attempts}) reached")
            return
        self._schedule_restart(record)

    def on_server_started(self, server_id: str):
        record = self._records.get(server_id)
        if record is None:
            return
        record.restart_attempts = 0
        record.is_healthy = True
        logger.info(f"Server started successfully: {server_id}")

    def on_server_stopped(self, server_id: str):
        record = self._records.get(server_id)
        if record is None:
            return
        if record.restart_task is not None:
            record.restart_task.cancel()
            record.restart_task = None
        record.restart_attempts = 0
        record.is_healthy = False

    # -------- restarts --------
    def compute_restart_delay(self, attempts: int) -> float:
        return min(self.restart_delay * self.restart_backoff_multiplier ** attempts, self.max_restart_delay)

    def _schedule_restart(self, record: SupervisionRecord):
        if self._restart_callback is None:
            logger.warning(f"No restart callback set, cannot restart {record.server_id}")
            return
        if record.restart_task is not None:
            record.restart_task.cancel()

        delay = self.compute_restart_delay(record.restart_attempts)
        record.restart_attempts += 1
        self._emit(RESTART_SCHEDULED, record.server_id, delay=delay, attempt=record.restart_attempts)
        logger.info(f"Scheduling restart for {record.server_id} in {delay:.1f}s "
                    f"(attempt {record.restart_attempts}/{self.max_restart_attempts})")

        async def _fire():
            await asyncio.sleep(delay)
            if record.restart_task is asyncio.current_task():
                record.restart_task = None
            await self._perform_restart(record.server_id)

        record.restart_task = asyncio.get_running_loop().create_task(_fire())

    async def _perform_restart(self, server_id: str):
        record = self._records.get(server_id)
        if record is None or self._restart_callback is None or self._disposed:
            return
        self._emit(RESTART_ATTEMPTED, server_id, attempt=record.restart_attempts)
        record.restart_in_flight = True
        record.crashed_during_restart = False
        try:
            await self._restart_callback(server_id)
        except asyncio.CancelledError:
            record.restart_in_flight = False
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            record.restart_in_flight = False
            will_retry = record.restart_attempts < self.max_restart_attempts
            self._emit(RESTART_FAILED, server_id, error=message, will_retry=will_retry)
            logger.error(f"Restart failed for {server_id}: {message}")
            if self._records.get(server_id) is not record or self._disposed:
                return
            if will_retry:
                self._schedule_restart(record)
            else:
                self._emit(RESTART_ABANDONED, server_id, reason="All restart attempts failed")
            return
        record.restart_in_flight = False
        # the attempt counter resets when the registry reports the start
        self._emit(RESTART_SUCCEEDED, server_id)
        if record.crashed_during_restart and self._records.get(server_id) is record:
            self.on_server_crashed(server_id, None)

    # -------- health checks --------
    def start_health_checks(self):
        if not self.health_check_enabled or self._health_loop is not None or self._disposed:
            return
        self._health_loop = asyncio.get_running_loop().create_task(self._health_check_loop())
        logger.info(f"Started health check loop (every {self.health_check_interval}s)")

    def stop_health_checks(self):
        if self._health_loop is not None:
            self._health_loop.cancel()
            self._health_loop = None
            logger.info("Stopped health check loop")

    async def _health_check_loop(self):
        while True:
            await asyncio.sleep(self.health_check_interval)
            await self.perform_health_checks()

    async def perform_health_checks(self):
        if self._health_callback is None:
            return
        for server_id, record in list(self._records.items()):
            if record.restart_task is not None:
                continue
            await self.check_server_health(server_id)

    async def check_server_health(self, server_id: str) -> bool:
        record = self._records.get(server_id)
        if record is None or self._health_callback is None:
            return False
        if record.health_check_task is not None and not record.health_check_task.done():
            # one check in flight per server
            return record.is_healthy

        self._emit(HEALTH_CHECK_STARTED, server_id)
        task = asyncio.get_running_loop().create_task(self._health_callback(server_id))
        record.health_check_task = task
        try:
            healthy = bool(await asyncio.wait_for(task, timeout=self.health_check_timeout))
        except asyncio.TimeoutError:
            record.is_healthy = False
            self._emit(HEALTH_CHECK_FAILED, server_id, error="Health check timeout")
            logger.warning(f"Health check timed out for {server_id}")
            return False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            record.is_healthy = False
            message = str(e) or type(e).__name__
            self._emit(HEALTH_CHECK_FAILED, server_id, error=message)
            logger.warning(f"Health check failed for {server_id}: {message}")
            return False
        finally:
            if record.health_check_task is task:
                record.health_check_task = None

        record.is_healthy = healthy
        if healthy:
            self._emit(HEALTH_CHECK_PASSED, server_id)
        else:
            self._emit(HEALTH_CHECK_FAILED, server_id, error="Server unhealthy")
        return healthy

    def dispose(self):
        self._disposed = True
        self.stop_health_checks()
        for record in self._records.values():
            self._cancel(record)
        self._records.clear()
        self._events.clear()
