#!/usr/bin/env python3
"""Shared fixtures for the orchestrator tests."""

import pytest
import pytest_asyncio
import httpx

from mcp_orchestrator.browser import RecordingBrowser
from mcp_orchestrator.registry import Registry
from mcp_orchestrator.server_manager import ServerManager
from mcp_orchestrator.storage import MemoryStorage
from mcp_orchestrator.token_manager import TokenManager

from tests.fakes import FakeHttpAdapter, FakeProcessAdapter, token_client


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def browser():
    return RecordingBrowser()


@pytest.fixture
def process_adapter():
    return FakeProcessAdapter()


@pytest.fixture
def http_adapter():
    return FakeHttpAdapter()


@pytest.fixture
def token_manager(storage, browser):
    return TokenManager(storage, browser, flow_timeout=5.0,
                        http_client=token_client(lambda request: httpx.Response(500)))


@pytest.fixture
def server_manager(process_adapter, http_adapter, token_manager):
    return ServerManager(process_adapter, http_adapter, token_manager=token_manager, shutdown_timeout=0.05)


@pytest_asyncio.fixture
async def registry(storage, server_manager):
    reg = Registry(storage, server_manager, auto_fetch_capabilities=False)
    await reg.initialize()
    yield reg
    await reg.dispose()
