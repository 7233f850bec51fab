#!/usr/bin/env python3
"""
Command line interface

    mcp-orchestrator serve --port 5859
    mcp-orchestrator status
    mcp-orchestrator validate servers.json
    mcp-orchestrator import servers.json
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import aiohttp

from .config_parser import ConfigParser
from .errors import MCPError
from .logging_utils import configure_logging
from .registry import Registry
from .server_manager import ServerManager
from .settings import Settings
from .storage import JsonFileStorage
from .transports import StdioProcessAdapter, StreamableHttpAdapter

logger = logging.getLogger(__name__)


async def cli_status(host: str, port: int) -> int:
    """CLI command to get status from a running orchestrator"""
    url = f"http://{host}:{port}/status"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                data = await resp.json()
    except aiohttp.ClientError as e:
        print(f"Could not reach orchestrator at {url}: {e}", file=sys.stderr)
        return 1
    print(json.dumps(data, indent=2))
    return 0


def cli_validate(path: str) -> int:
    text = Path(path).read_text()
    result = ConfigParser().validate(text)
    print(json.dumps(result, indent=2))
    return 0 if result["valid"] else 1


async def cli_import(path: str, settings: Settings) -> int:
    """Add every server in a config file to the persisted registry"""
    storage = JsonFileStorage(settings.data_dir)
    manager = ServerManager(StdioProcessAdapter(), StreamableHttpAdapter())
    registry = Registry(storage, manager, config_name=settings.registry.config_name, auto_recover=False)
    await registry.initialize()
    try:
        added = await registry.import_config(Path(path).read_text())
    except MCPError as e:
        print(f"Import failed: {e}", file=sys.stderr)
        return 1
    finally:
        await registry.dispose()
    for config in added:
        print(f"{config.id}  {config.name}  ({config.transport.type}, {config.category})")
    print(f"Imported {len(added)} server(s) into {storage.config_path(settings.registry.config_name)}")
    return 0


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description='MCP Orchestrator - lifecycle, supervision and OAuth for MCP servers')
    parser.add_argument('--log-level', default=None, help='Override the settings log level')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    serve_parser = subparsers.add_parser('serve', help='Run the orchestrator with its HTTP API')
    serve_parser.add_argument('--host', type=str, default=None, help='Host/interface to bind (default from settings)')
    serve_parser.add_argument('--port', type=int, default=None, help='Port to listen on (default from settings)')
    serve_parser.add_argument('--settings', type=str, default=None, help='Path to settings.toml')
    serve_parser.add_argument('--disable-signals', action='store_true',
                              help='Do not register SIGINT/SIGTERM handlers (embedding)')

    status_parser = subparsers.add_parser('status', help='Show server status from a running orchestrator')
    status_parser.add_argument('--host', type=str, default='127.0.0.1')
    status_parser.add_argument('--port', type=int, default=5859)

    validate_parser = subparsers.add_parser('validate', help='Validate a server config file')
    validate_parser.add_argument('file')

    import_parser = subparsers.add_parser('import', help='Import servers from a config file')
    import_parser.add_argument('file')
    import_parser.add_argument('--settings', type=str, default=None, help='Path to settings.toml')

    args = parser.parse_args(argv)

    if args.command in ('serve', 'import'):
        try:
            settings = Settings.load(args.settings)
        except MCPError as e:
            print(str(e), file=sys.stderr)
            return 2
        configure_logging(args.log_level or settings.api.log_level)
    else:
        configure_logging(args.log_level or "WARNING")

    if args.command == 'serve':
        from .api_handlers import serve
        asyncio.run(serve(settings, host=args.host, port=args.port, disable_signals=args.disable_signals))
        return 0
    if args.command == 'status':
        return asyncio.run(cli_status(args.host, args.port))
    if args.command == 'validate':
        return cli_validate(args.file)
    if args.command == 'import':
        return asyncio.run(cli_import(args.file, settings))
    parser.print_help()
    return 0


if __name__ == '__main__':
    sys.exit(main())
