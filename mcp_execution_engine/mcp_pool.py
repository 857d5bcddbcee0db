"""Long-lived MCP server processes spoken to over line-delimited JSON-RPC."""

from __future__ import annotations

import asyncio
import contextvars
import enum
import inspect
import itertools
import json
import logging
import os
import signal
from asyncio import subprocess as aio_subprocess
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from mcp.types import METHOD_NOT_FOUND

from .config import MCPServerInfo
from .errors import (
    Cancelled,
    MCPBufferOverflow,
    MCPConnectError,
    MCPConnectionClosed,
    MCPError,
    MCPProtocolError,
    MCPRequestTimeout,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcp-execution-engine", "version": "0.1.0"}
DEFAULT_STARTUP_TIMEOUT = 5.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_BUFFER_CAP = 10 * 1024 * 1024
DEFAULT_GRACE = 5.0
STDERR_SENTINEL = "\n...[stderr truncated]"
_READ_CHUNK = 64 * 1024

# Execution that issued the current request; used to cancel an execution's calls.
current_origin: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mcp_execution_origin", default=None
)


class ConnectionState(enum.Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.READY, ConnectionState.CLOSING, ConnectionState.CLOSED},
    ConnectionState.READY: {ConnectionState.CLOSING, ConnectionState.CLOSED},
    ConnectionState.CLOSING: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


@dataclass
class _PendingRequest:
    future: "asyncio.Future[Any]"
    timer: asyncio.TimerHandle
    method: str
    origin: Optional[str]


def _classify(message: object) -> Optional[str]:
    """Return request/notification/response for well-formed JSON-RPC 2.0 objects."""

    if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
        return None
    has_id = isinstance(message.get("id"), (int, str)) and not isinstance(message.get("id"), bool)
    if isinstance(message.get("method"), str):
        return "request" if has_id else "notification"
    if has_id and (("result" in message) != ("error" in message)):
        return "response"
    return None


class MCPConnection:
    """One child process plus its pending-request registry."""

    def __init__(
        self,
        info: MCPServerInfo,
        *,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        buffer_cap: int = DEFAULT_BUFFER_CAP,
        grace: float = DEFAULT_GRACE,
    ) -> None:
        self.info = info
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.buffer_cap = buffer_cap
        self.grace = grace
        self.failure: Optional[MCPError] = None
        self._state = ConnectionState.CONNECTING
        self._process: Optional[aio_subprocess.Process] = None
        self._pending: Dict[Union[int, str], _PendingRequest] = {}
        self._ids = itertools.count(1)
        self._write_lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._closed = asyncio.Event()
        self._stderr = bytearray()
        self._stderr_truncated = False
        self._tasks: List[asyncio.Task[None]] = []
        self._teardown_task: Optional[asyncio.Task[None]] = None

    @property
    def server(self) -> str:
        return self.info.name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def stderr(self) -> str:
        text = self._stderr.decode(errors="replace")
        return text + STDERR_SENTINEL if self._stderr_truncated else text

    def _transition(self, target: ConnectionState) -> None:
        if target is self._state:
            return
        if target not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal connection transition {self._state.value} -> {target.value}")
        logger.debug("MCP server %s: %s -> %s", self.server, self._state.value, target.value)
        self._state = target
        if target is ConnectionState.CLOSED:
            self._closed.set()

    async def connect(self) -> None:
        """Spawn the server and complete the MCP handshake."""

        if self._state is not ConnectionState.CONNECTING or self._process is not None:
            raise MCPConnectError(f"Connection to {self.server} cannot be reused")
        env = dict(os.environ)
        env.update(self.info.env)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.info.command,
                *self.info.args,
                stdin=aio_subprocess.PIPE,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                env=env,
                cwd=self.info.cwd,
            )
        except OSError as exc:
            self._transition(ConnectionState.CLOSED)
            raise MCPConnectError(f"Failed to start MCP server {self.server}: {exc}") from exc

        self._tasks = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]

        init_future = asyncio.ensure_future(
            self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
                timeout=self.request_timeout,
            )
        )
        ready_wait = asyncio.ensure_future(self._ready.wait())
        closed_wait = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({ready_wait, closed_wait}, timeout=self.startup_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready_wait.cancel()
            closed_wait.cancel()

        if not self._ready.is_set():
            cause = self.failure or MCPConnectError(
                f"MCP server {self.server} sent no JSON-RPC message within {self.startup_timeout}s"
            )
            await self._teardown(cause)
            init_future.cancel()
            with suppress(asyncio.CancelledError, MCPError):
                await init_future
            raise MCPConnectError(str(cause), stderr=self.stderr) from cause

        try:
            await init_future
            await self.notify("notifications/initialized")
        except MCPError as exc:
            await self._teardown(exc)
            raise MCPConnectError(f"MCP handshake with {self.server} failed: {exc}", stderr=self.stderr) from exc
        logger.info("Connected to MCP server %s", self.server)

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Any:
        if self._state is not ConnectionState.READY:
            raise MCPConnectionClosed(f"MCP server {self.server} is {self._state.value}")
        return await self._request(method, params, timeout=timeout)

    async def _request(self, method: str, params: Optional[Dict[str, Any]], *, timeout: Optional[float]) -> Any:
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            raise MCPConnectionClosed(f"MCP server {self.server} is {self._state.value}")
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        limit = self.request_timeout if timeout is None else timeout
        future: "asyncio.Future[Any]" = loop.create_future()
        timer = loop.call_later(limit, self._expire, request_id, limit)
        self._pending[request_id] = _PendingRequest(future, timer, method, current_origin.get())

        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._write(message)
        except MCPError as exc:
            self._settle(request_id, error=exc)
        try:
            return await future
        except asyncio.CancelledError:
            self._discard(request_id)
            raise

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def _write(self, message: Dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise MCPConnectionClosed(f"MCP server {self.server} is not running")
        data = json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"
        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
                raise MCPConnectionClosed(f"MCP server {self.server} stdin closed: {exc}") from exc

    def _expire(self, request_id: Union[int, str], limit: float) -> None:
        entry = self._pending.pop(request_id, None)
        if entry and not entry.future.done():
            entry.future.set_exception(
                MCPRequestTimeout(f"{entry.method} on {self.server} timed out after {limit:g}s")
            )

    def _discard(self, request_id: Union[int, str]) -> None:
        entry = self._pending.pop(request_id, None)
        if entry:
            entry.timer.cancel()

    def _settle(self, request_id: Union[int, str], *, result: Any = None, error: Optional[BaseException] = None) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            if error is not None:
                entry.future.set_exception(error)
            else:
                entry.future.set_result(result)
        return True

    def reject_origin(self, origin: str, error: BaseException) -> int:
        """Reject every pending request issued on behalf of ``origin``."""

        matching = [key for key, entry in self._pending.items() if entry.origin == origin]
        for key in matching:
            self._settle(key, error=error)
        return len(matching)

    def _reject_all(self, error_factory: Callable[[], BaseException]) -> None:
        for key in list(self._pending):
            self._settle(key, error=error_factory())
        self._pending.clear()

    async def _read_stdout(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        buffer = bytearray()
        overflowed = False
        while True:
            chunk = await process.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            if overflowed:
                continue
            buffer.extend(chunk)
            while True:
                newline = buffer.find(b"\n")
                if newline < 0:
                    break
                line = bytes(buffer[:newline])
                del buffer[: newline + 1]
                self._handle_line(line)
            if len(buffer) > self.buffer_cap:
                overflowed = True
                buffer.clear()
                self._fail(
                    MCPBufferOverflow(
                        f"MCP server {self.server} exceeded the {self.buffer_cap} byte stdout buffer"
                    )
                )
        if self._state in (ConnectionState.CONNECTING, ConnectionState.READY):
            self._fail(MCPConnectionClosed(f"MCP server {self.server} exited"))

    async def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            room = self.buffer_cap - len(self._stderr)
            if room > 0:
                self._stderr.extend(chunk[:room])
            if len(chunk) > room:
                self._stderr_truncated = True

    def _handle_line(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except ValueError:
            logger.debug("MCP server %s stdout: %s", self.server, text[:200])
            return
        kind = _classify(message)
        if kind is None:
            logger.debug("MCP server %s sent a non JSON-RPC payload", self.server)
            return

        if not self._ready.is_set():
            self._ready.set()
            if self._state is ConnectionState.CONNECTING:
                self._transition(ConnectionState.READY)

        if kind == "response":
            request_id = message["id"]
            error = message.get("error")
            if error is not None:
                error_obj = error if isinstance(error, dict) else {"message": str(error)}
                exc: Optional[BaseException] = MCPProtocolError(
                    str(error_obj.get("message", "MCP error")),
                    code=int(error_obj.get("code", 0) or 0),
                    data=error_obj.get("data"),
                )
                settled = self._settle(request_id, error=exc)
            else:
                settled = self._settle(request_id, result=message.get("result"))
            if not settled:
                logger.warning("Dropping MCP response with unknown id %r from %s", request_id, self.server)
        elif kind == "request":
            asyncio.ensure_future(self._answer_server_request(message))
        else:
            logger.debug("MCP notification from %s: %s", self.server, message.get("method"))

    async def _answer_server_request(self, message: Dict[str, Any]) -> None:
        if message.get("method") == "ping":
            reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Unsupported method: {message.get('method')}"},
            }
        with suppress(MCPError):
            await self._write(reply)

    def _fail(self, error: MCPError) -> None:
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        logger.warning("%s", error)
        self.failure = error
        self._teardown_task = asyncio.ensure_future(self._teardown(error))

    async def disconnect(self) -> None:
        """SIGTERM, wait for the grace window, then SIGKILL. Safe to repeat."""

        await self._teardown(MCPConnectionClosed(f"Connection to {self.server} closed"))

    async def _teardown(self, cause: MCPError) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        if self._state is ConnectionState.CLOSING:
            await self._closed.wait()
            return
        self._transition(ConnectionState.CLOSING)
        message = f"MCP server {self.server} closed: {cause}"
        self._reject_all(lambda: MCPConnectionClosed(message))

        process = self._process
        if process is not None:
            if process.stdin is not None:
                with suppress(Exception):
                    process.stdin.close()
            if process.returncode is None:
                with suppress(ProcessLookupError):
                    process.send_signal(signal.SIGTERM)
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.grace)
                except asyncio.TimeoutError:
                    logger.warning("MCP server %s ignored SIGTERM; killing", self.server)
                    with suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

        current = asyncio.current_task()
        for task in self._tasks:
            if task is current:
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.grace)
            except asyncio.TimeoutError:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._tasks = []
        self._pending.clear()
        self._transition(ConnectionState.CLOSED)
        logger.info("Disconnected MCP server %s", self.server)


ReconnectHook = Callable[[str], Union[None, Awaitable[None]]]


class MCPClientPool:
    """One lazily started connection per registered server."""

    def __init__(
        self,
        servers: Optional[Mapping[str, MCPServerInfo]] = None,
        *,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        buffer_cap: int = DEFAULT_BUFFER_CAP,
        grace: float = DEFAULT_GRACE,
        connect_retries: int = 2,
        connect_backoff: float = 0.5,
        on_reconnect: Optional[ReconnectHook] = None,
    ) -> None:
        self._servers: Dict[str, MCPServerInfo] = dict(servers or {})
        self._connections: Dict[str, MCPConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._reconnects: Dict[str, int] = {}
        self._ever_connected: set[str] = set()
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.buffer_cap = buffer_cap
        self.grace = grace
        self.connect_retries = max(0, connect_retries)
        self.connect_backoff = connect_backoff
        self.on_reconnect = on_reconnect
        self._shut_down = False

    def register(self, info: MCPServerInfo) -> None:
        self._servers[info.name] = info

    def servers(self) -> List[str]:
        return sorted(self._servers)

    def server_info(self, server: str) -> Optional[MCPServerInfo]:
        return self._servers.get(server)

    def priorities(self) -> Dict[str, int]:
        return {name: info.priority for name, info in self._servers.items()}

    def connection(self, server: str) -> Optional[MCPConnection]:
        return self._connections.get(server)

    async def connect(self, server: str) -> MCPConnection:
        if self._shut_down:
            raise MCPConnectionClosed("MCP client pool is shut down")
        info = self._servers.get(server)
        if info is None:
            raise MCPConnectError(f"Unknown MCP server: {server}")
        lock = self._locks.setdefault(server, asyncio.Lock())
        async with lock:
            existing = self._connections.get(server)
            if existing is not None and existing.state is ConnectionState.READY:
                return existing

            last_error: Optional[MCPError] = None
            for attempt in range(self.connect_retries + 1):
                if attempt:
                    delay = self.connect_backoff * (2 ** (attempt - 1))
                    logger.info("Retrying MCP server %s in %.2fs", server, delay)
                    await asyncio.sleep(delay)
                connection = MCPConnection(
                    info,
                    startup_timeout=self.startup_timeout,
                    request_timeout=self.request_timeout,
                    buffer_cap=self.buffer_cap,
                    grace=self.grace,
                )
                self._connections[server] = connection
                try:
                    await connection.connect()
                except MCPError as exc:
                    last_error = exc
                    logger.warning("Connecting to MCP server %s failed: %s", server, exc)
                    continue
                break
            else:
                raise last_error or MCPConnectError(f"Could not connect to MCP server {server}")

        if server in self._ever_connected:
            self._reconnects[server] = self._reconnects.get(server, 0) + 1
            await self._fire_reconnect(server)
        self._ever_connected.add(server)
        return connection

    async def _fire_reconnect(self, server: str) -> None:
        if self.on_reconnect is None:
            return
        outcome = self.on_reconnect(server)
        if inspect.isawaitable(outcome):
            await outcome

    async def request(
        self,
        server: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        connection = await self.connect(server)
        return await connection.request(method, params, timeout=timeout)

    async def list_tools(self, server: str) -> List[Dict[str, Any]]:
        tools: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"cursor": cursor} if cursor else {}
            result = await self.request(server, "tools/list", params)
            if not isinstance(result, dict):
                raise MCPProtocolError(f"tools/list on {server} returned {type(result).__name__}")
            batch = result.get("tools", [])
            if isinstance(batch, list):
                tools.extend(item for item in batch if isinstance(item, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, qualified_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        server, _, tool = qualified_name.partition(".")
        if not tool:
            raise MCPProtocolError(f"Tool name {qualified_name!r} is not qualified as server.tool")
        return await self.request(server, "tools/call", {"name": tool, "arguments": arguments or {}})

    def cancel_origin(self, origin: str) -> int:
        """Reject the pending requests an execution issued with ``Cancelled``."""

        total = 0
        for connection in self._connections.values():
            total += connection.reject_origin(origin, Cancelled(f"Execution {origin} was cancelled"))
        return total

    async def disconnect(self, server: str) -> None:
        connection = self._connections.get(server)
        if connection is not None:
            await connection.disconnect()

    async def disconnect_all(self) -> None:
        connections = list(self._connections.values())
        if connections:
            await asyncio.gather(*(connection.disconnect() for connection in connections))

    async def shutdown(self) -> None:
        self._shut_down = True
        await self.disconnect_all()

    def stats(self) -> Dict[str, object]:
        per_server: Dict[str, object] = {}
        for name in self.servers():
            connection = self._connections.get(name)
            per_server[name] = {
                "state": connection.state.value if connection else "idle",
                "pending": connection.pending_count if connection else 0,
                "reconnects": self._reconnects.get(name, 0),
            }
        return {"servers": len(self._servers), "connections": per_server}
