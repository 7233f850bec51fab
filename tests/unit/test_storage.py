#!/usr/bin/env python3
"""JSON file storage: atomic config writes, key/value entries and the watcher."""

import asyncio
import json

import pytest

from mcp_orchestrator.errors import ErrorCode, StorageError
from mcp_orchestrator.storage import JsonFileStorage


@pytest.mark.asyncio
async def test_config_roundtrip_and_no_temp_files(tmp_path):
    storage = JsonFileStorage(tmp_path)
    await storage.write_config("mcp_servers.json", [{"id": "a"}])

    assert await storage.read_config("mcp_servers.json") == [{"id": "a"}]
    assert await storage.read_config("missing.json") is None
    assert sorted(p.name for p in tmp_path.iterdir()) == ["mcp_servers.json"]


@pytest.mark.asyncio
async def test_key_value_entries_live_under_kv(tmp_path):
    storage = JsonFileStorage(tmp_path)
    await storage.write("oauth_state_abc/../x", {"serverId": "a"})

    files = list((tmp_path / "kv").iterdir())
    assert len(files) == 1
    assert await storage.read("oauth_state_abc/../x") == {"serverId": "a"}

    await storage.delete("oauth_state_abc/../x")
    await storage.delete("oauth_state_abc/../x")
    assert await storage.read("oauth_state_abc/../x") is None


@pytest.mark.asyncio
async def test_corrupt_config_raises_storage_error(tmp_path):
    (tmp_path / "mcp_servers.json").write_text("{broken")
    storage = JsonFileStorage(tmp_path)

    with pytest.raises(StorageError) as info:
        await storage.read_config("mcp_servers.json")
    assert info.value.code == ErrorCode.STORAGE_READ_ERROR


@pytest.mark.asyncio
async def test_watcher_reports_external_changes_only(tmp_path):
    storage = JsonFileStorage(tmp_path, poll_interval=0.01)
    await storage.write_config("mcp_servers.json", [])
    seen = []
    cleanup = storage.watch_config("mcp_servers.json", seen.append)

    await asyncio.sleep(0.05)
    await storage.write_config("mcp_servers.json", [{"id": "own"}])
    await asyncio.sleep(0.05)
    assert seen == []

    path = tmp_path / "mcp_servers.json"
    path.write_text(json.dumps([{"id": "external"}, {"id": "second"}]))
    await asyncio.sleep(0.1)
    cleanup()

    assert seen == [[{"id": "external"}, {"id": "second"}]]
