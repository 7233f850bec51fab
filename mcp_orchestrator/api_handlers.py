#!/usr/bin/env python3
"""
HTTP control API for the orchestrator
All handlers read the orchestrator from app['orchestrator'].
"""

import asyncio
import json
import logging
import signal
import time
from typing import Optional

import aiohttp_cors
from aiohttp import web

from .errors import ErrorCode, MCPError, is_recoverable, requires_auth
from .orchestrator import Orchestrator
from .settings import Settings

logger = logging.getLogger(__name__)

# How long POST /servers/{id}/authenticate waits for an early failure before answering 202
AUTH_START_GRACE = 1.0

_STATUS_BY_CODE = {
    ErrorCode.SERVER_NOT_FOUND: 404,
    ErrorCode.DUPLICATE_SERVER: 409,
    ErrorCode.INVALID_TRANSITION: 409,
}


def status_for_error(error: MCPError) -> int:
    if error.code in _STATUS_BY_CODE:
        return _STATUS_BY_CODE[error.code]
    group = error.code.value[len("MCP_")]
    if group == "1":
        return 400
    if group == "3":
        return 401
    return 500


def error_response(error: Exception) -> web.Response:
    if not isinstance(error, MCPError):
        logger.exception("Unexpected API error", exc_info=error)
        error = MCPError.wrap(error)
    return web.json_response({"success": False, "error": error.message, "code": error.code.value,
                              "recoverable": is_recoverable(error), "requiresAuth": requires_auth(error)},
                             status=status_for_error(error))


def _orchestrator(request) -> Orchestrator:
    return request.app['orchestrator']


def _server_id(request) -> str:
    return request.match_info['server_id']


def _not_found(server_id: str) -> web.Response:
    return web.json_response({"success": False, "error": f"Server not found: {server_id}",
                              "code": ErrorCode.SERVER_NOT_FOUND.value}, status=404)


# ===== Status =====

async def health_handler(request):
    """GET /health - liveness"""
    return web.json_response({"status": "ok", "timestamp": time.time()})


async def status_handler(request):
    """GET /status - all servers with state and supervision"""
    return web.json_response(_orchestrator(request).status())


async def server_handler(request):
    """GET /servers/{server_id} - one server with history and capabilities"""
    server_id = _server_id(request)
    data = _orchestrator(request).describe_server(server_id, include_history=True)
    if data is None:
        return _not_found(server_id)
    return web.json_response(data)


# ===== Server management =====

async def add_servers_handler(request):
    """POST /servers - import a config document"""
    orchestrator = _orchestrator(request)
    body = await request.text()
    if not body.strip():
        return web.json_response({"success": False, "error": "Request body is empty",
                                  "code": ErrorCode.INVALID_CONFIG.value}, status=400)
    try:
        added = await orchestrator.registry.import_config(body)
    except MCPError as e:
        return error_response(e)
    return web.json_response({
        "success": True,
        "servers": [orchestrator.describe_server(c.id) for c in added],
    }, status=201)


async def update_server_handler(request):
    """PATCH /servers/{server_id}"""
    orchestrator = _orchestrator(request)
    try:
        changes = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"success": False, "error": "Body must be a JSON object",
                                  "code": ErrorCode.INVALID_CONFIG.value}, status=400)
    if not isinstance(changes, dict):
        return web.json_response({"success": False, "error": "Body must be a JSON object",
                                  "code": ErrorCode.INVALID_CONFIG.value}, status=400)
    server_id = _server_id(request)
    try:
        await orchestrator.registry.update(server_id, **changes)
    except MCPError as e:
        return error_response(e)
    return web.json_response({"success": True, "server": orchestrator.describe_server(server_id)})


async def delete_server_handler(request):
    """DELETE /servers/{server_id}"""
    server_id = _server_id(request)
    try:
        await _orchestrator(request).registry.remove(server_id)
    except MCPError as e:
        return error_response(e)
    return web.json_response({"success": True, "serverId": server_id})


# ===== Lifecycle =====

async def _lifecycle(request, action: str):
    orchestrator = _orchestrator(request)
    server_id = _server_id(request)
    registry = orchestrator.registry
    try:
        if action == "start":
            await registry.start(server_id)
        elif action == "stop":
            await registry.stop(server_id)
        else:
            await registry.restart(server_id)
    except MCPError as e:
        return error_response(e)
    return web.json_response({"success": True, "server": orchestrator.describe_server(server_id)})


async def start_handler(request):
    """POST /servers/{server_id}/start"""
    return await _lifecycle(request, "start")


async def stop_handler(request):
    """POST /servers/{server_id}/stop"""
    return await _lifecycle(request, "stop")


async def restart_handler(request):
    """POST /servers/{server_id}/restart"""
    return await _lifecycle(request, "restart")


# ===== OAuth =====

async def authenticate_handler(request):
    """POST /servers/{server_id}/authenticate - begin the OAuth flow

    The flow completes when the provider redirects to /oauth/callback, so the
    handler answers 202 once the flow is underway.
    """
    orchestrator = _orchestrator(request)
    server_id = _server_id(request)
    if orchestrator.registry.get(server_id) is None:
        return _not_found(server_id)

    task = asyncio.get_running_loop().create_task(orchestrator.registry.authenticate(server_id))
    tasks = request.app['auth_tasks']
    tasks.add(task)

    def _done(t: asyncio.Task):
        tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.warning(f"[{server_id}] authentication failed: {t.exception()}")

    task.add_done_callback(_done)

    done, _ = await asyncio.wait({task}, timeout=AUTH_START_GRACE)
    if done:
        error = task.exception()
        if error is not None:
            return error_response(error)
        return web.json_response({"success": True, "server": orchestrator.describe_server(server_id)})

    response = {"success": True, "status": "authenticating", "serverId": server_id}
    authorization_url = orchestrator.token_manager.pending_authorization_url(server_id)
    if authorization_url:
        response["authorizationUrl"] = authorization_url
    return web.json_response(response, status=202)


async def discover_handler(request):
    """POST /servers/{server_id}/discover - OAuth discovery for an http server"""
    orchestrator = _orchestrator(request)
    server_id = _server_id(request)
    try:
        oauth = await orchestrator.registry.discover_oauth(server_id)
    except MCPError as e:
        return error_response(e)
    return web.json_response({
        "success": True,
        "serverId": server_id,
        "authUrl": oauth.auth_url,
        "tokenUrl": oauth.token_url,
        "clientId": oauth.client_id,
        "scopes": oauth.scopes,
    })


async def oauth_callback_handler(request):
    """GET /oauth/callback - provider redirect target"""
    if "error" in request.query:
        await _orchestrator(request).token_manager.handle_callback(str(request.url))
        description = request.query.get("error_description", request.query["error"])
        return web.Response(text=f"Authorization failed: {description}. You can close this window.",
                            status=400)
    try:
        await _orchestrator(request).token_manager.handle_callback(str(request.url))
    except MCPError as e:
        logger.warning(f"OAuth callback rejected: {e}")
        return web.Response(text=f"Authorization failed: {e.message}", status=status_for_error(e))
    return web.Response(text="Authorization successful! You can close this window.")


def create_app(orchestrator: Orchestrator) -> web.Application:
    """Create the aiohttp application for orchestrator"""
    app = web.Application()

    @web.middleware
    async def _req_logger(request, handler):
        start = time.perf_counter()
        try:
            resp = await handler(request)
        except Exception as e:
            logger.info(f"HTTP {request.method} {request.path} status=ERR error={type(e).__name__} "
                        f"ms={(time.perf_counter()-start)*1000:.1f}")
            raise
        logger.info(f"HTTP {request.method} {request.path} status={resp.status} "
                    f"ms={(time.perf_counter()-start)*1000:.1f}")
        return resp

    app.middlewares.append(_req_logger)
    app['orchestrator'] = orchestrator
    app['auth_tasks'] = set()

    async def _cancel_auth_tasks(app):
        for task in list(app['auth_tasks']):
            task.cancel()

    app.on_shutdown.append(_cancel_auth_tasks)

    cors = aiohttp_cors.setup(app, defaults={
        "*": aiohttp_cors.ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            allow_methods="*"
        )
    })

    cors.add(app.router.add_get('/health', health_handler))
    cors.add(app.router.add_get('/status', status_handler))

    cors.add(app.router.add_post('/servers', add_servers_handler))
    server = cors.add(app.router.add_resource('/servers/{server_id}'))
    cors.add(server.add_route('GET', server_handler))
    cors.add(server.add_route('PATCH', update_server_handler))
    cors.add(server.add_route('DELETE', delete_server_handler))

    cors.add(app.router.add_post('/servers/{server_id}/start', start_handler))
    cors.add(app.router.add_post('/servers/{server_id}/stop', stop_handler))
    cors.add(app.router.add_post('/servers/{server_id}/restart', restart_handler))
    cors.add(app.router.add_post('/servers/{server_id}/authenticate', authenticate_handler))
    cors.add(app.router.add_post('/servers/{server_id}/discover', discover_handler))

    app.router.add_get('/oauth/callback', oauth_callback_handler)
    return app


async def serve(settings: Optional[Settings] = None, host: Optional[str] = None, port: Optional[int] = None,
                disable_signals: bool = False):
    """Run the orchestrator and its HTTP API until SIGINT/SIGTERM.

    Signals set an asyncio.Event so the coroutine unwinds normally and
    shutdown runs once. Pass disable_signals=True when embedding.
    """
    settings = settings or Settings.load()
    host = host or settings.api.host
    port = port or settings.api.port
    if settings.api.host != host or settings.api.port != port:
        settings.api.host, settings.api.port = host, port

    orchestrator = Orchestrator(settings)
    await orchestrator.initialize()

    app = create_app(orchestrator)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"MCP Orchestrator API started on http://{host}:{port}")

    shutdown_event = asyncio.Event()

    def _graceful(sig: int, frame=None):
        if not shutdown_event.is_set():
            logger.info(f"Signal {signal.Signals(sig).name} received - initiating graceful shutdown")
            shutdown_event.set()

    if not disable_signals:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, _graceful, signal.SIGINT)
            loop.add_signal_handler(signal.SIGTERM, _graceful, signal.SIGTERM)
        except NotImplementedError:
            # Windows event loops
            signal.signal(signal.SIGINT, _graceful)
            signal.signal(signal.SIGTERM, _graceful)

    try:
        await shutdown_event.wait()
    finally:
        logger.info("Shutdown event set - cleaning up server")
        try:
            await runner.cleanup()
        finally:
            await orchestrator.dispose()
            logger.info("Server shutdown complete")
