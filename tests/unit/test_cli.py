#!/usr/bin/env python3
"""CLI validate/import commands"""

import json

from mcp_orchestrator.cli import main
from mcp_orchestrator.settings import SETTINGS_ENV_VAR

DOCUMENT = {"mcpServers": {
    "files": {"command": "npx", "args": ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]},
    "remote": {"url": "https://mcp.example.com/mcp"},
}}


def test_validate_reports_valid_document(tmp_path, capsys):
    path = tmp_path / "servers.json"
    path.write_text(json.dumps(DOCUMENT))

    assert main(["validate", str(path)]) == 0
    assert json.loads(capsys.readouterr().out) == {"valid": True, "format": "mcpServers", "count": 2}


def test_validate_rejects_unknown_shape(tmp_path, capsys):
    path = tmp_path / "servers.json"
    path.write_text(json.dumps({"servers": []}))

    assert main(["validate", str(path)]) == 1
    assert json.loads(capsys.readouterr().out)["valid"] is False


def test_import_persists_servers(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv(SETTINGS_ENV_VAR, raising=False)
    data_dir = tmp_path / "data"
    settings = tmp_path / "settings.toml"
    settings.write_text(f"[registry]\ndata_dir = \"{data_dir.as_posix()}\"\n")
    source = tmp_path / "servers.json"
    source.write_text(json.dumps(DOCUMENT))

    assert main(["import", str(source), "--settings", str(settings)]) == 0

    persisted = json.loads((data_dir / "mcp_servers.json").read_text())
    assert sorted(s["name"] for s in persisted) == ["files", "remote"]
    assert all(s["status"] == "IDLE" for s in persisted)
    assert "Imported 2 server(s)" in capsys.readouterr().out


def test_import_with_broken_settings_fails(tmp_path, monkeypatch):
    monkeypatch.delenv(SETTINGS_ENV_VAR, raising=False)
    settings = tmp_path / "settings.toml"
    settings.write_text("[registry\n")

    assert main(["import", str(tmp_path / "servers.json"), "--settings", str(settings)]) == 2
