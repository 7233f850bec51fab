#!/usr/bin/env python3
"""
Browser adapters for the OAuth redirect round-trip

SystemBrowser opens URLs with the webbrowser module. Custom URL schemes cannot
be registered from a portable Python process, so callbacks arrive either
through deliver() (a host that receives the deep link forwards it) or through
an optional aiohttp loopback server listening on /oauth/callback.
"""

import asyncio
import logging
import webbrowser
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from aiohttp import web

logger = logging.getLogger(__name__)

CallbackHandler = Callable[[str], None]


class BrowserAdapter(ABC):

    @abstractmethod
    async def open(self, url: str) -> None:
        ...

    @abstractmethod
    def register_protocol_handler(self, scheme: str, callback: CallbackHandler) -> Callable[[], None]:
        """Route redirects for scheme to callback. Returns a cleanup."""


class SystemBrowser(BrowserAdapter):

    def __init__(self, loopback_host: str = "127.0.0.1", loopback_port: Optional[int] = None):
        self.loopback_host = loopback_host
        self.loopback_port = loopback_port
        self._handlers: Dict[str, CallbackHandler] = {}
        self._runner: Optional[web.AppRunner] = None
        self._startup: Optional[asyncio.Task] = None

    @property
    def loopback_redirect_uri(self) -> Optional[str]:
        if self.loopback_port is None:
            return None
        return f"http://{self.loopback_host}:{self.loopback_port}/oauth/callback"

    async def open(self, url: str) -> None:
        logger.info(f"Opening authorization URL in system browser: {url.split('?')[0]}")
        opened = await asyncio.get_running_loop().run_in_executor(None, webbrowser.open, url)
        if not opened:
            logger.warning("No browser available; open this URL manually:")
            logger.warning(url)

    def register_protocol_handler(self, scheme: str, callback: CallbackHandler) -> Callable[[], None]:
        self._handlers[scheme] = callback
        if self.loopback_port is not None and self._startup is None:
            self._startup = asyncio.get_running_loop().create_task(self._start_loopback())

        def cleanup():
            if self._handlers.get(scheme) is callback:
                del self._handlers[scheme]
            if not self._handlers:
                self._stop_loopback()

        return cleanup

    def deliver(self, url: str) -> bool:
        """Hand a received redirect URL to the handler registered for its scheme."""
        scheme = url.split(":", 1)[0].lower()
        handler = self._handlers.get(scheme)
        if handler is None and len(self._handlers) == 1 and scheme in ("http", "https"):
            handler = next(iter(self._handlers.values()))
        if handler is None:
            logger.warning(f"No protocol handler registered for scheme {scheme!r}")
            return False
        handler(url)
        return True

    # -------- Loopback server --------
    async def _callback_handler(self, request: web.Request) -> web.Response:
        query = request.query
        if not self.deliver(str(request.url)):
            return web.Response(text="No authorization in progress", status=409)
        if "error" in query:
            logger.error(f"OAuth error: {query['error']} - {query.get('error_description', '')}")
            return web.Response(text="Authorization failed. You can close this window.", status=400)
        return web.Response(text="Authorization successful! You can close this window.", status=200)

    async def _start_loopback(self):
        app = web.Application()
        app.router.add_get("/oauth/callback", self._callback_handler)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self.loopback_host, self.loopback_port)
        await site.start()
        self._runner = runner
        logger.info(f"OAuth callback server listening on {self.loopback_redirect_uri}")

    def _stop_loopback(self):
        startup, runner = self._startup, self._runner
        self._startup = None
        self._runner = None
        if startup is not None and not startup.done():
            startup.cancel()
        if runner is not None:
            asyncio.get_running_loop().create_task(runner.cleanup())


class RecordingBrowser(BrowserAdapter):
    """Browser that records opened URLs instead of launching anything.

    Used by headless deployments (the URL is logged and exposed through the
    API) and by tests.
    """

    def __init__(self):
        self.opened: List[str] = []
        self.handlers: Dict[str, CallbackHandler] = {}

    async def open(self, url: str) -> None:
        self.opened.append(url)
        logger.info(f"Authorization URL ready: {url}")

    def register_protocol_handler(self, scheme: str, callback: CallbackHandler) -> Callable[[], None]:
        self.handlers[scheme] = callback
        return lambda: self.handlers.pop(scheme, None)

    @property
    def last_url(self) -> Optional[str]:
        return self.opened[-1] if self.opened else None
