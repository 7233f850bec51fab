#!/usr/bin/env python3
"""
Transport adapters for MCP servers

- StdioProcessAdapter: local child process owned by the orchestrator, its
  stdin/stdout bridged into an mcp ClientSession (stderr is forwarded to
  subscribers line by line)
- StreamableHttpAdapter: remote endpoint reached through the SDK's
  streamable_http_client and a ClientSession

Each handle keeps its session open inside one runner task so the SDK's task
groups are entered and exited by the same task. Both handles share the same
exit/kill semantics so the server manager can drive either one through the
state machine.
"""

import asyncio
import contextlib
import logging
import os
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import anyio
import httpx
from mcp import ClientSession
from mcp import types
from mcp.client.streamable_http import streamable_http_client
from mcp.shared.exceptions import McpError
from mcp.shared.message import SessionMessage
from pydantic import ValidationError

from .errors import AuthError, CommunicationError, ErrorCode, MCPError, ProcessError
from .logging_utils import log_event
from .models import HttpTransport, StdioTransport

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SSE_READ_TIMEOUT = 300.0
FORCE_CLOSE_TIMEOUT = 2.0
# Large tools/list replies arrive as one line
STDIO_LINE_LIMIT = 16 * 1024 * 1024

CLIENT_INFO = types.Implementation(name="mcp-orchestrator", version="0.1.0")

# Requests a handle can send, with the SDK result model each one returns
RESULT_TYPES = {
    "ping": types.EmptyResult,
    "tools/list": types.ListToolsResult,
    "resources/list": types.ListResourcesResult,
    "prompts/list": types.ListPromptsResult,
}

ExitCallback = Callable[[Optional[int]], None]
StderrCallback = Callable[[str], None]
MessageCallback = Callable[[Dict[str, Any]], None]


def _leaf_errors(error: BaseException) -> Iterator[BaseException]:
    """Flatten the exception groups raised by anyio task groups."""
    nested = getattr(error, "exceptions", None)
    if nested:
        for inner in nested:
            yield from _leaf_errors(inner)
    else:
        yield error


def _from_mcp_error(server_id: str, error: McpError) -> CommunicationError:
    code = error.error.code
    if code == types.CONNECTION_CLOSED:
        return CommunicationError("Connection closed", ErrorCode.CONNECTION_CLOSED,
                                  server_id=server_id, cause=error)
    if code == httpx.codes.REQUEST_TIMEOUT:
        return CommunicationError(error.error.message, ErrorCode.REQUEST_TIMEOUT,
                                  server_id=server_id, cause=error)
    return CommunicationError(f"JSON-RPC error {code}: {error.error.message}", ErrorCode.JSONRPC_ERROR,
                              server_id=server_id, cause=error, jsonrpc_code=code)


class TransportHandle(ABC):
    """A live connection to one MCP server."""

    transport_type = "unknown"

    def __init__(self, server_id: str):
        self.server_id = server_id
        self.exit_code: Optional[int] = None
        self.server_info: Dict[str, Any] = {}
        self._closed = False
        self._exit_listeners: List[ExitCallback] = []
        self._stderr_listeners: List[StderrCallback] = []
        self._message_listeners: List[MessageCallback] = []

    @property
    def is_running(self) -> bool:
        return not self._closed

    # -------- subscriptions --------
    def on_exit(self, callback: ExitCallback) -> Callable[[], None]:
        self._exit_listeners.append(callback)
        return lambda: self._exit_listeners.remove(callback) if callback in self._exit_listeners else None

    def on_stderr(self, callback: StderrCallback) -> Callable[[], None]:
        self._stderr_listeners.append(callback)
        return lambda: self._stderr_listeners.remove(callback) if callback in self._stderr_listeners else None

    def on_message(self, callback: MessageCallback) -> Callable[[], None]:
        self._message_listeners.append(callback)
        return lambda: self._message_listeners.remove(callback) if callback in self._message_listeners else None

    def _emit(self, listeners: List[Callable], value: Any):
        for listener in list(listeners):
            try:
                listener(value)
            except Exception:
                logger.exception(f"[{self.server_id}] transport listener failed")

    def _mark_exited(self, code: Optional[int]):
        """Record the exit and notify listeners exactly once."""
        if self._closed:
            return
        self._closed = True
        self.exit_code = code
        self._emit(self._exit_listeners, code)

    # -------- protocol --------
    @abstractmethod
    async def request(self, method: str, params: Optional[Mapping[str, Any]] = None,
                      timeout: float = DEFAULT_REQUEST_TIMEOUT) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def notify(self, method: str, params: Optional[Mapping[str, Any]] = None) -> None:
        ...

    @abstractmethod
    async def kill(self, force: bool = False) -> None:
        """Shut the connection down. Returns once it is gone."""

    async def ping(self, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> bool:
        await self.request("ping", timeout=timeout)
        return True

    def set_bearer_token(self, token: str):
        """Update the credential used for subsequent requests (no-op for stdio)."""


class SessionHandle(TransportHandle):
    """TransportHandle whose protocol side is an mcp ClientSession."""

    def __init__(self, server_id: str, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        super().__init__(server_id)
        self.request_timeout = request_timeout
        self.session: Optional[ClientSession] = None
        self._closing = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None

    @abstractmethod
    async def _open_streams(self, stack: contextlib.AsyncExitStack) -> Tuple[Any, Any]:
        """Enter the transport into stack and return its (read, write) streams."""

    @abstractmethod
    def _runner_finished(self, error: Optional[BaseException]):
        ...

    def _translate(self, error: BaseException) -> MCPError:
        for leaf in _leaf_errors(error):
            if isinstance(leaf, MCPError):
                return leaf
            if isinstance(leaf, McpError):
                return _from_mcp_error(self.server_id, leaf)
        if isinstance(error, RuntimeError):
            # ClientSession rejects unsupported protocol versions this way
            return CommunicationError(str(error), ErrorCode.INVALID_RESPONSE, server_id=self.server_id, cause=error)
        return CommunicationError(str(error) or type(error).__name__, ErrorCode.CONNECTION_FAILED,
                                  server_id=self.server_id, cause=error)

    async def start(self) -> Dict[str, Any]:
        """Open the session and run the initialize handshake."""
        loop = asyncio.get_running_loop()
        ready = loop.create_future()
        self._runner = loop.create_task(self._run(ready))
        return await ready

    async def _run(self, ready: asyncio.Future):
        error: Optional[BaseException] = None
        try:
            async with contextlib.AsyncExitStack() as stack:
                read_stream, write_stream = await self._open_streams(stack)
                self.session = await stack.enter_async_context(ClientSession(
                    read_stream, write_stream,
                    read_timeout_seconds=timedelta(seconds=self.request_timeout),
                    message_handler=self._handle_session_message,
                    client_info=CLIENT_INFO,
                ))
                result = await self.session.initialize()
                self.server_info = result.model_dump(by_alias=True, mode="json", exclude_none=True)
                ready.set_result(self.server_info)
                await self._closing.wait()
        except Exception as e:
            error = e
            if not ready.done():
                ready.set_exception(self._translate(e))
            else:
                logger.warning(f"[{self.server_id}] session ended: {self._translate(e)}")
        finally:
            self.session = None
            if not ready.done():
                ready.set_exception(CommunicationError("Session closed during initialization",
                                                       ErrorCode.CONNECTION_CLOSED, server_id=self.server_id))
            self._runner_finished(error)

    async def _handle_session_message(self, message: Any) -> None:
        if isinstance(message, Exception):
            logger.debug(f"[{self.server_id}] transport error: {message}")
        elif isinstance(message, types.ServerNotification):
            self._emit(self._message_listeners,
                       message.root.model_dump(by_alias=True, mode="json", exclude_none=True))

    def _require_session(self) -> ClientSession:
        if self.session is None or self._closing.is_set():
            raise CommunicationError("Session is not open", ErrorCode.CONNECTION_CLOSED, server_id=self.server_id)
        return self.session

    async def request(self, method: str, params: Optional[Mapping[str, Any]] = None,
                      timeout: float = DEFAULT_REQUEST_TIMEOUT) -> Dict[str, Any]:
        session = self._require_session()
        result_type = RESULT_TYPES.get(method)
        if result_type is None:
            raise CommunicationError(f"Method not supported: {method}", ErrorCode.JSONRPC_ERROR,
                                     server_id=self.server_id, jsonrpc_code=types.METHOD_NOT_FOUND)
        payload: Dict[str, Any] = {"method": method}
        if params is not None:
            payload["params"] = dict(params)
        request = types.ClientRequest.model_validate(payload)

        call = asyncio.ensure_future(session.send_request(
            request, result_type, request_read_timeout_seconds=timedelta(seconds=timeout)))
        try:
            waiting = {call} if self._runner is None else {call, self._runner}
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            if call not in done:
                raise CommunicationError("Connection closed before the response arrived",
                                         ErrorCode.CONNECTION_CLOSED, server_id=self.server_id)
            result = call.result()
        except McpError as e:
            raise _from_mcp_error(self.server_id, e)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            raise CommunicationError("Connection closed", ErrorCode.CONNECTION_CLOSED,
                                     server_id=self.server_id, cause=e)
        finally:
            if not call.done():
                call.cancel()
        return result.model_dump(by_alias=True, mode="json", exclude_none=True)

    async def notify(self, method: str, params: Optional[Mapping[str, Any]] = None) -> None:
        session = self._require_session()
        payload: Dict[str, Any] = {"method": method}
        if params is not None:
            payload["params"] = dict(params)
        try:
            notification = types.ClientNotification.model_validate(payload)
        except ValidationError as e:
            raise CommunicationError(f"Unknown notification: {method}", ErrorCode.JSONRPC_ERROR,
                                     server_id=self.server_id, cause=e)
        await session.send_notification(notification)


# ============================================================================
# stdio
# ============================================================================

class StdioHandle(SessionHandle):

    transport_type = "stdio"

    def __init__(self, server_id: str, process: asyncio.subprocess.Process,
                 request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        super().__init__(server_id, request_timeout)
        self.process = process
        loop = asyncio.get_running_loop()
        self._stderr_task = loop.create_task(self._read_stderr())
        self._wait_task = loop.create_task(self._wait())

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    async def _open_streams(self, stack: contextlib.AsyncExitStack) -> Tuple[Any, Any]:
        read_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_reader = anyio.create_memory_object_stream(0)
        pumps = await stack.enter_async_context(anyio.create_task_group())
        # Runs before the task group exits, after the session has closed
        stack.callback(pumps.cancel_scope.cancel)
        pumps.start_soon(self._pump_stdout, read_writer)
        pumps.start_soon(self._pump_stdin, write_reader)
        return read_stream, write_stream

    async def _pump_stdout(self, writer):
        assert self.process.stdout is not None
        async with writer:
            while True:
                line = await self.process.stdout.readline()
                if not line:
                    return
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = types.JSONRPCMessage.model_validate_json(text)
                except ValidationError:
                    # Servers sometimes log to stdout, treat it like stderr
                    self._emit(self._stderr_listeners, text)
                    continue
                try:
                    await writer.send(SessionMessage(message))
                except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                    return

    async def _pump_stdin(self, reader):
        stdin = self.process.stdin
        assert stdin is not None
        async with reader:
            async for session_message in reader:
                data = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                if stdin.is_closing():
                    return
                try:
                    stdin.write(data.encode("utf-8") + b"\n")
                    await stdin.drain()
                except (BrokenPipeError, ConnectionResetError) as e:
                    logger.debug(f"[{self.server_id}] stdin closed: {e}")
                    return

    async def _read_stderr(self):
        assert self.process.stderr is not None
        while True:
            line = await self.process.stderr.readline()
            if not line:
                return
            self._emit(self._stderr_listeners, line.decode("utf-8", errors="replace").rstrip())

    async def _wait(self):
        code = await self.process.wait()
        logger.info(f"[{self.server_id}] process exited with code {code}")
        self._closing.set()
        if self._runner is not None:
            await asyncio.wait({self._runner})
        await asyncio.wait({self._stderr_task}, timeout=1.0)
        self._mark_exited(code)

    def _runner_finished(self, error: Optional[BaseException]):
        # The process watcher reports the exit; a broken session takes the process down with it
        if error is not None and self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()

    async def kill(self, force: bool = False) -> None:
        if self.process.returncode is None:
            try:
                if force:
                    self.process.kill()
                else:
                    if self.process.stdin is not None and not self.process.stdin.is_closing():
                        self.process.stdin.close()
                    self.process.terminate()
            except ProcessLookupError:
                pass
        await asyncio.shield(self._wait_task)


class ProcessAdapter(ABC):

    @abstractmethod
    async def spawn(self, server_id: str, transport: StdioTransport,
                    env: Optional[Mapping[str, str]] = None) -> TransportHandle:
        ...


class StdioProcessAdapter(ProcessAdapter):

    def __init__(self, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.timeout = timeout

    async def spawn(self, server_id: str, transport: StdioTransport,
                    env: Optional[Mapping[str, str]] = None) -> TransportHandle:
        start = time.perf_counter()
        merged_env = dict(os.environ)
        merged_env.update(transport.env or {})
        merged_env.update(env or {})
        try:
            process = await asyncio.create_subprocess_exec(
                transport.command, *transport.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                cwd=transport.cwd or None,
                limit=STDIO_LINE_LIMIT,
            )
        except FileNotFoundError as e:
            log_event(server_id, "spawn", "stdio", start, status="not_found", command=transport.command)
            raise ProcessError(f"Command not found: {transport.command}", ErrorCode.COMMAND_NOT_FOUND,
                               server_id=server_id, cause=e)
        except OSError as e:
            log_event(server_id, "spawn", "stdio", start, status="error", error=type(e).__name__)
            raise ProcessError(f"Failed to start {transport.command}: {e}", ErrorCode.PROCESS_START_FAILED,
                               server_id=server_id, cause=e)

        handle = StdioHandle(server_id, process, request_timeout=self.timeout)
        log_event(server_id, "spawn", "stdio", start, pid=process.pid)
        try:
            await handle.start()
        except BaseException:
            await handle.kill(force=True)
            raise
        return handle


# ============================================================================
# Streamable HTTP
# ============================================================================

class HttpHandle(SessionHandle):

    transport_type = "http"

    def __init__(self, server_id: str, url: str, client: httpx.AsyncClient,
                 request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        super().__init__(server_id, request_timeout)
        self.url = url
        self.client = client
        self._get_session_id: Optional[Callable[[], Optional[str]]] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._get_session_id() if self._get_session_id is not None else None

    def set_bearer_token(self, token: str):
        self.client.headers["Authorization"] = f"Bearer {token}"

    async def _open_streams(self, stack: contextlib.AsyncExitStack) -> Tuple[Any, Any]:
        await stack.enter_async_context(self.client)
        read_stream, write_stream, self._get_session_id = await stack.enter_async_context(
            streamable_http_client(self.url, http_client=self.client))
        return read_stream, write_stream

    def _translate(self, error: BaseException) -> MCPError:
        connected = bool(self.server_info)
        for leaf in _leaf_errors(error):
            if isinstance(leaf, httpx.HTTPStatusError):
                status = leaf.response.status_code
                if status == 401:
                    return AuthError("Server rejected credentials (401)", ErrorCode.AUTH_REQUIRED,
                                     server_id=self.server_id, cause=leaf)
                return CommunicationError(f"HTTP {status} from {self.url}", ErrorCode.CONNECTION_FAILED,
                                          server_id=self.server_id, cause=leaf)
            if isinstance(leaf, httpx.TimeoutException):
                return CommunicationError(f"Request to {self.url} timed out", ErrorCode.REQUEST_TIMEOUT,
                                          server_id=self.server_id, cause=leaf)
            if isinstance(leaf, httpx.TransportError):
                code = ErrorCode.CONNECTION_LOST if connected else ErrorCode.CONNECTION_FAILED
                return CommunicationError(f"Connection to {self.url} failed: {leaf}", code,
                                          server_id=self.server_id, cause=leaf)
        return super()._translate(error)

    def _runner_finished(self, error: Optional[BaseException]):
        # A session that dies on its own is reported like a crashed process
        self._mark_exited(0 if error is None else 1)

    async def kill(self, force: bool = False) -> None:
        if self._runner is None:
            self._mark_exited(0)
            return
        self._closing.set()
        done, _ = await asyncio.wait({self._runner}, timeout=FORCE_CLOSE_TIMEOUT if force else None)
        if not done:
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
            self._mark_exited(0)


class HttpAdapter(ABC):

    @abstractmethod
    async def connect(self, server_id: str, transport: HttpTransport, bearer_token: Optional[str] = None,
                      headers: Optional[Mapping[str, str]] = None) -> TransportHandle:
        ...


class StreamableHttpAdapter(HttpAdapter):

    def __init__(self, timeout: float = DEFAULT_REQUEST_TIMEOUT,
                 sse_read_timeout: float = DEFAULT_SSE_READ_TIMEOUT,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.sse_read_timeout = sse_read_timeout
        self.http_transport = http_transport

    async def connect(self, server_id: str, transport: HttpTransport, bearer_token: Optional[str] = None,
                      headers: Optional[Mapping[str, str]] = None) -> TransportHandle:
        start = time.perf_counter()
        client_headers = dict(transport.headers or {})
        client_headers.update(headers or {})
        if bearer_token:
            client_headers["Authorization"] = f"Bearer {bearer_token}"
        client = httpx.AsyncClient(headers=client_headers,
                                   timeout=httpx.Timeout(self.timeout, read=self.sse_read_timeout),
                                   transport=self.http_transport)
        handle = HttpHandle(server_id, transport.url, client, request_timeout=self.timeout)
        try:
            await handle.start()
        except MCPError as e:
            log_event(server_id, "connect", "http", start, status="error", error=e.code.name)
            raise
        log_event(server_id, "connect", "http", start, session=bool(handle.session_id))
        return handle
