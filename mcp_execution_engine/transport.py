"""The ``callTool`` transport injected into sandboxes and its host-side router."""

from __future__ import annotations

import json
import logging
import textwrap
from typing import Dict, Iterable, List, Optional

from .errors import EngineError
from .models import NetworkPolicy

logger = logging.getLogger(__name__)

NETWORK_ENV = "MCP_SANDBOX_NETWORK"
PY_TRANSPORT_MODULE = "mcp_transport.py"
TS_TRANSPORT_MODULE = "mcp-transport.ts"

PY_TRANSPORT_SOURCE = textwrap.dedent(
    """
    import asyncio
    import atexit
    import json
    import os
    import resource
    import socket
    import sys

    _PENDING = {}
    _COUNTER = 0
    _READER = None


    class ToolCallError(RuntimeError):
        def __init__(self, kind, message):
            super().__init__(f"{kind}: {message}")
            self.kind = kind


    def _send(message):
        sys.__stdout__.write(json.dumps(message, separators=(",", ":"), default=str) + "\\n")
        sys.__stdout__.flush()


    async def _stdin_reader():
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        transport = None
        try:
            transport, _ = await loop.connect_read_pipe(lambda: protocol, sys.stdin)
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line.decode())
                except ValueError:
                    continue
                if not isinstance(message, dict) or message.get("type") != "rpc_response":
                    continue
                future = _PENDING.pop(message.get("id"), None)
                if future is None or future.done():
                    continue
                if message.get("success", False):
                    future.set_result((message.get("payload") or {}).get("result"))
                else:
                    future.set_exception(
                        ToolCallError(message.get("kind", "ToolError"), message.get("error", "RPC error"))
                    )
        finally:
            if transport is not None:
                transport.close()
            for future in list(_PENDING.values()):
                if not future.done():
                    future.set_exception(ToolCallError("MCPConnectionClosed", "RPC channel closed"))
            _PENDING.clear()


    async def call_tool(name, arguments=None):
        global _COUNTER, _READER
        if _READER is None:
            _READER = asyncio.ensure_future(_stdin_reader())
        _COUNTER += 1
        request_id = _COUNTER
        future = asyncio.get_running_loop().create_future()
        _PENDING[request_id] = future
        _send(
            {
                "type": "rpc_request",
                "id": request_id,
                "payload": {"type": "call_tool", "tool": name, "arguments": arguments or {}},
            }
        )
        return await future


    def _install_network_guard():
        policy = json.loads(os.environ.get("__NETWORK_ENV__") or '{"mode": "none", "entries": []}')
        mode = policy.get("mode", "none")
        entries = {str(entry).lower() for entry in policy.get("entries", [])}
        allowed = set(entries)
        blocked = set(entries)
        original_getaddrinfo = socket.getaddrinfo
        original_connect = socket.socket.connect
        original_connect_ex = socket.socket.connect_ex

        def _permitted(host):
            host = str(host).lower()
            if mode == "whitelist":
                return host in allowed
            if mode == "blacklist":
                return host not in blocked
            return False

        def _deny(host):
            raise PermissionError(f"network egress to {host} blocked by sandbox policy ({mode})")

        def guarded_getaddrinfo(host, *args, **kwargs):
            if host is not None and not _permitted(host):
                _deny(host)
            results = original_getaddrinfo(host, *args, **kwargs)
            if host is not None:
                for item in results:
                    address = str(item[4][0]).lower()
                    if mode == "whitelist":
                        allowed.add(address)
            return results

        def _check(address):
            if isinstance(address, tuple) and address and not _permitted(address[0]):
                _deny(address[0])

        def guarded_connect(self, address):
            if self.family in (socket.AF_INET, socket.AF_INET6):
                _check(address)
            return original_connect(self, address)

        def guarded_connect_ex(self, address):
            if self.family in (socket.AF_INET, socket.AF_INET6):
                _check(address)
            return original_connect_ex(self, address)

        socket.getaddrinfo = guarded_getaddrinfo
        socket.socket.connect = guarded_connect
        socket.socket.connect_ex = guarded_connect_ex


    def _report_metrics():
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        _send({"type": "metrics", "maxrss": peak if sys.platform == "darwin" else peak * 1024})


    _install_network_guard()
    atexit.register(_report_metrics)
    """
).lstrip().replace("__NETWORK_ENV__", NETWORK_ENV)

TS_TRANSPORT_SOURCE = textwrap.dedent(
    """
    import * as fs from "node:fs";
    import * as readline from "node:readline";

    process.on("exit", () => {
      fs.writeSync(1, JSON.stringify({ type: "metrics", maxrss: process.resourceUsage().maxRSS * 1024 }) + "\\n");
    });

    type Pending = { resolve: (value: unknown) => void; reject: (error: Error) => void };

    const pending = new Map<number, Pending>();
    let counter = 0;
    let lines: readline.Interface | null = null;

    class ToolCallError extends Error {
      kind: string;
      constructor(kind: string, message: string) {
        super(`${kind}: ${message}`);
        this.name = "ToolCallError";
        this.kind = kind;
      }
    }

    function ensureReader(): void {
      if (lines) {
        return;
      }
      lines = readline.createInterface({ input: process.stdin });
      lines.on("line", (line: string) => {
        let message: any;
        try {
          message = JSON.parse(line);
        } catch {
          return;
        }
        if (!message || message.type !== "rpc_response") {
          return;
        }
        const entry = pending.get(message.id);
        if (!entry) {
          return;
        }
        pending.delete(message.id);
        if (message.success) {
          entry.resolve(message.payload?.result);
        } else {
          entry.reject(new ToolCallError(message.kind ?? "ToolError", message.error ?? "RPC error"));
        }
        if (pending.size === 0 && lines) {
          lines.close();
          lines = null;
        }
      });
      lines.on("close", () => {
        for (const [id, entry] of pending) {
          pending.delete(id);
          entry.reject(new ToolCallError("MCPConnectionClosed", "RPC channel closed"));
        }
      });
    }

    export function callTool(name: string, args: Record<string, unknown>): Promise<unknown> {
      ensureReader();
      counter += 1;
      const id = counter;
      return new Promise((resolve, reject) => {
        pending.set(id, { resolve, reject });
        const payload = { type: "call_tool", tool: name, arguments: args };
        process.stdout.write(JSON.stringify({ type: "rpc_request", id, payload }) + "\\n");
      });
    }
    """
).lstrip()


def transport_files(dialect: str) -> Dict[str, str]:
    """Files the sandbox writes next to the wrapper for ``dialect``."""

    if dialect == "ts":
        return {TS_TRANSPORT_MODULE: TS_TRANSPORT_SOURCE}
    return {PY_TRANSPORT_MODULE: PY_TRANSPORT_SOURCE}


def network_env(policy: NetworkPolicy) -> Dict[str, str]:
    return {NETWORK_ENV: json.dumps({"mode": policy.mode, "entries": list(policy.entries)})}


class ToolRouter:
    """Host-side handler for ``rpc_request`` messages from one sandbox.

    Only the tools the wrapper binds are reachable.
    """

    def __init__(self, pool: object, allowed_tools: Iterable[str]) -> None:
        self.pool = pool
        self.allowed_tools = frozenset(allowed_tools)
        self.calls = 0
        self.failures: List[EngineError] = []

    @property
    def last_failure(self) -> Optional[EngineError]:
        return self.failures[-1] if self.failures else None

    async def handle(self, request: Dict[str, object]) -> Dict[str, object]:
        req_type = request.get("type")
        if req_type != "call_tool":
            return {"success": False, "error": f"Unknown RPC type: {req_type}", "kind": "PolicyViolation"}

        tool = request.get("tool")
        if not isinstance(tool, str) or tool not in self.allowed_tools:
            return {
                "success": False,
                "error": f"Tool {tool!r} is not bound by this wrapper",
                "kind": "PolicyViolation",
            }
        arguments = request.get("arguments", {})
        if not isinstance(arguments, dict):
            return {"success": False, "error": "Arguments must be an object", "kind": "PolicyViolation"}

        try:
            result = await self.pool.call_tool(tool, arguments)  # type: ignore[attr-defined]
        except EngineError as exc:
            logger.debug("Tool call %s failed", tool, exc_info=True)
            self.failures.append(exc)
            return {"success": False, "error": str(exc), "kind": exc.kind}
        self.calls += 1
        return {"success": True, "result": result}
