#!/usr/bin/env python3
"""Restart backoff, cancellation and health checks."""

import asyncio

import pytest

from mcp_orchestrator.errors import ErrorCode, ProcessError
from mcp_orchestrator.supervisor import (
    HEALTH_CHECK_FAILED,
    HEALTH_CHECK_PASSED,
    RESTART_ABANDONED,
    RESTART_FAILED,
    RESTART_SCHEDULED,
    RESTART_SUCCEEDED,
    Supervisor,
)

from tests.fakes import stdio_config


def _collect(supervisor: Supervisor):
    events = []
    supervisor.subscribe(events.append)
    return events


def test_default_backoff_sequence():
    supervisor = Supervisor()
    assert [supervisor.compute_restart_delay(n) for n in range(6)] == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0]


@pytest.mark.asyncio
async def test_failing_restarts_back_off_then_abandon():
    supervisor = Supervisor(restart_delay=0.01, max_restart_attempts=3, health_check_enabled=False)
    events = _collect(supervisor)
    abandoned = asyncio.Event()
    supervisor.subscribe(lambda e: abandoned.set() if e.type == RESTART_ABANDONED else None)
    calls = []

    async def restart(server_id):
        calls.append(server_id)
        raise RuntimeError("still broken")

    supervisor.set_restart_callback(restart)
    supervisor.supervise(stdio_config("s1"))
    supervisor.on_server_crashed("s1", 1)
    await asyncio.wait_for(abandoned.wait(), timeout=2)

    delays = [e.data["delay"] for e in events if e.type == RESTART_SCHEDULED]
    assert delays == pytest.approx([0.01, 0.02, 0.04])
    assert calls == ["s1", "s1", "s1"]
    failures = [e for e in events if e.type == RESTART_FAILED]
    assert [f.data["will_retry"] for f in failures] == [True, True, False]
    supervisor.dispose()


@pytest.mark.asyncio
async def test_crash_during_restart_attempt_is_scheduled_once():
    supervisor = Supervisor(restart_delay=0.01, max_restart_attempts=3, health_check_enabled=False)
    events = _collect(supervisor)
    done = asyncio.Event()
    supervisor.subscribe(lambda e: done.set() if e.type == RESTART_SUCCEEDED else None)
    calls = []

    async def restart(server_id):
        calls.append(server_id)
        if len(calls) == 1:
            # process exits between connect and subscribe: CRASHED is reported, then start raises
            supervisor.on_server_crashed(server_id, 1)
            raise ProcessError("Server exited during startup", ErrorCode.PROCESS_CRASHED, server_id=server_id)

    supervisor.set_restart_callback(restart)
    supervisor.supervise(stdio_config("s1"))
    supervisor.on_server_crashed("s1", 1)
    await asyncio.wait_for(done.wait(), timeout=2)

    delays = [e.data["delay"] for e in events if e.type == RESTART_SCHEDULED]
    assert delays == pytest.approx([0.01, 0.02])
    assert calls == ["s1", "s1"]
    assert supervisor.get_record("s1").restart_attempts == 2
    supervisor.dispose()


@pytest.mark.asyncio
async def test_crash_after_successful_restart_attempt_is_rescheduled():
    supervisor = Supervisor(restart_delay=0.01, max_restart_attempts=3, health_check_enabled=False)
    events = _collect(supervisor)
    done = asyncio.Event()
    supervisor.subscribe(lambda e: done.set() if e.type == RESTART_SUCCEEDED else None)

    async def restart(server_id):
        supervisor.on_server_crashed(server_id, 1)

    supervisor.set_restart_callback(restart)
    supervisor.supervise(stdio_config("s1"))
    supervisor.on_server_crashed("s1", 1)
    await asyncio.wait_for(done.wait(), timeout=2)

    scheduled = [e for e in events if e.type == RESTART_SCHEDULED]
    assert [e.data["attempt"] for e in scheduled] == [1, 2]
    supervisor.dispose()

@pytest.mark.asyncio
async def test_successful_restart_keeps_counter_until_started():
    supervisor = Supervisor(restart_delay=0.01, health_check_enabled=False)
    events = _collect(supervisor)
    done = asyncio.Event()
    supervisor.subscribe(lambda e: done.set() if e.type == RESTART_SUCCEEDED else None)

    async def restart(server_id):
        return None

    supervisor.set_restart_callback(restart)
    supervisor.supervise(stdio_config("s1"))
    supervisor.on_server_crashed("s1", 137)
    await asyncio.wait_for(done.wait(), timeout=2)

    assert supervisor.get_record("s1").restart_attempts == 1
    supervisor.on_server_started("s1")
    assert supervisor.get_record("s1").restart_attempts == 0
    assert supervisor.is_healthy("s1")
    assert events[0].type == RESTART_SCHEDULED
    supervisor.dispose()


@pytest.mark.asyncio
async def test_stop_cancels_pending_restart():
    supervisor = Supervisor(restart_delay=0.05, health_check_enabled=False)
    calls = []

    async def restart(server_id):
        calls.append(server_id)

    supervisor.set_restart_callback(restart)
    supervisor.supervise(stdio_config("s1"))
    supervisor.on_server_crashed("s1", 1)
    assert supervisor.get_record("s1").restart_task is not None

    supervisor.on_server_stopped("s1")
    await asyncio.sleep(0.1)

    assert calls == []
    assert supervisor.get_record("s1").restart_attempts == 0


@pytest.mark.asyncio
async def test_auto_restart_disabled_abandons_immediately():
    supervisor = Supervisor(auto_restart=False, health_check_enabled=False)
    events = _collect(supervisor)
    supervisor.supervise(stdio_config("s1"))
    supervisor.on_server_crashed("s1", 1)

    assert [e.type for e in events] == [RESTART_ABANDONED]


@pytest.mark.asyncio
async def test_dispose_cancels_every_timer():
    supervisor = Supervisor(restart_delay=0.05, health_check_interval=0.01)
    calls = []

    async def restart(server_id):
        calls.append(server_id)

    async def healthy(server_id):
        calls.append(f"health:{server_id}")
        return True

    supervisor.set_restart_callback(restart)
    supervisor.set_health_check_callback(healthy)
    supervisor.supervise(stdio_config("s1"))
    supervisor.on_server_crashed("s1", 1)
    supervisor.start_health_checks()
    supervisor.dispose()
    await asyncio.sleep(0.1)

    assert calls == []
    assert supervisor.get_supervised_servers() == []


@pytest.mark.asyncio
async def test_health_check_timeout_marks_unhealthy():
    supervisor = Supervisor(health_check_timeout=0.02)
    events = _collect(supervisor)

    async def hangs(server_id):
        await asyncio.sleep(1)
        return True

    supervisor.set_health_check_callback(hangs)
    supervisor.supervise(stdio_config("s1"))
    supervisor.on_server_started("s1")

    assert await supervisor.check_server_health("s1") is False
    assert not supervisor.is_healthy("s1")
    assert events[-1].type == HEALTH_CHECK_FAILED
    assert supervisor.get_record("s1").health_check_task is None
    supervisor.dispose()


@pytest.mark.asyncio
async def test_health_checks_skip_servers_waiting_for_restart():
    supervisor = Supervisor(restart_delay=10.0)
    checked = []

    async def healthy(server_id):
        checked.append(server_id)
        return True

    async def restart(server_id):
        return None

    supervisor.set_restart_callback(restart)
    supervisor.set_health_check_callback(healthy)
    supervisor.supervise(stdio_config("a"))
    supervisor.supervise(stdio_config("b"))
    supervisor.on_server_crashed("a", 1)

    events = _collect(supervisor)
    await supervisor.perform_health_checks()

    assert checked == ["b"]
    assert [e.type for e in events if e.type == HEALTH_CHECK_PASSED] == [HEALTH_CHECK_PASSED]
    supervisor.dispose()
