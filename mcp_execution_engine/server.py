"""MCP stdio server exposing the execution engine to an assistant."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

try:  # Prefer the official encoder when available
    import toon_format as _toon_format
    _toon_encode = _toon_format.encode
except ImportError:  # pragma: no cover - fallback for environments without toon
    _toon_encode = None

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

from .approval import format_request
from .config import ENGINE_NAME, EngineConfig, discover_registry, load_registry
from .models import DIALECTS, APPROVAL_MODES, BACKENDS, ApprovalOptions, ExecutionOptions, ExecutionResult
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

MAX_SEARCH_LIMIT = 25

engine: Optional[Orchestrator] = None
app = Server(ENGINE_NAME)


def _render_toon_block(payload: Dict[str, object]) -> str:
    """Encode a payload in TOON format, falling back to JSON when unavailable."""

    if _toon_encode is not None:
        try:
            body = _toon_encode(payload)
        except Exception:  # pragma: no cover - encoder bugs must not break responses
            logger.debug("Failed to encode payload as TOON", exc_info=True)
        else:
            body = body.rstrip()
            return f"```toon\n{body}\n```" if body else "```toon\n```"

    fallback = json.dumps(payload, indent=2, sort_keys=True, default=str)
    return f"```json\n{fallback}\n```"


def _output_mode() -> str:
    return os.environ.get("MCP_ENGINE_OUTPUT_MODE", "compact").strip().lower()


def _render_compact_output(payload: Dict[str, object]) -> str:
    """Render a terse, token-efficient textual summary."""

    lines: List[str] = []
    status = str(payload.get("status", ""))
    if status and status != "success":
        lines.append(f"status: {status}")
    if payload.get("summary"):
        lines.append(str(payload["summary"]))
    if payload.get("error"):
        lines.append(f"error: {payload['error']}")
    if payload.get("approvalRequestId"):
        lines.append(f"approval: {payload['approvalRequestId']}")
    text = payload.get("text")
    if isinstance(text, str) and text:
        lines.append(text)
    return "\n".join(lines).strip() or status or "success"


def _is_empty_field(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, set, dict, str)):
        return len(value) == 0
    return False


def _build_tool_response(status: str, payload: Dict[str, object]) -> CallToolResult:
    """Render a tool response in compact text (default) or TOON format."""

    payload = {"status": status, **payload}
    payload = {key: value for key, value in payload.items() if not _is_empty_field(value)}
    is_error = status != "success"
    if _output_mode() == "compact":
        message = _render_compact_output(payload)
    else:
        message = _render_toon_block(payload)
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        structuredContent=payload,
        isError=is_error,
    )


def _error_response(status: str, message: str) -> CallToolResult:
    return _build_tool_response(status, {"summary": message, "error": message})


def _execution_payload(result: ExecutionResult) -> Dict[str, object]:
    payload = result.to_dict()
    payload.pop("output", None)
    metadata = payload.pop("metadata", {})
    if isinstance(metadata, dict) and metadata.get("approvalRequestId"):
        payload["approvalRequestId"] = metadata["approvalRequestId"]
    if isinstance(metadata, dict):
        payload["metadata"] = {
            key: value for key, value in metadata.items() if key in ("executionId", "cached", "backend", "errorKind", "anomalies")
        }
    return payload


def _execution_status(result: ExecutionResult) -> str:
    if result.success:
        return "success"
    kind = result.metadata.get("errorKind")
    if kind == "ApprovalRequired":
        return "approval_required"
    if kind == "SandboxTimeout":
        return "timeout"
    return "error"


def _require_engine() -> Orchestrator:
    if engine is None:
        raise RuntimeError("Execution engine is not initialised")
    return engine


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="execute_intent",
            description=(
                "Describe a task in plain language; the engine finds matching MCP tools, "
                "generates a wrapper, checks it and runs it in a sandbox, returning a compact summary."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "intent": {"type": "string", "description": "What to do, e.g. 'read README.md'"},
                    "dialect": {"type": "string", "enum": list(DIALECTS), "description": "Wrapper language"},
                    "approvalMode": {"type": "string", "enum": list(APPROVAL_MODES)},
                    "autoApproveHigh": {"type": "boolean", "description": "Allow high-risk wrappers to run"},
                    "backend": {"type": "string", "enum": list(BACKENDS)},
                    "timeoutMs": {"type": "integer", "minimum": 1000, "maximum": 300000},
                },
                "required": ["intent"],
            },
        ),
        Tool(
            name="search_tools",
            description="Rank the indexed MCP tools against a query.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "limit": {"type": "integer", "minimum": 1, "maximum": MAX_SEARCH_LIMIT, "default": 5},
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="engine_stats",
            description="Counters from the index, cache, workspaces, audit log and MCP pool.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="approval_status",
            description="Show an approval request created when a wrapper was blocked.",
            inputSchema={
                "type": "object",
                "properties": {"id": {"type": "string"}},
                "required": ["id"],
            },
        ),
    ]


def _options_from_arguments(arguments: Dict[str, object]) -> ExecutionOptions:
    dialect = arguments.get("dialect")
    if dialect is not None and dialect not in DIALECTS:
        raise ValueError(f"'dialect' must be one of {', '.join(DIALECTS)}")
    mode = arguments.get("approvalMode")
    if mode is not None and mode not in APPROVAL_MODES:
        raise ValueError(f"'approvalMode' must be one of {', '.join(APPROVAL_MODES)}")
    auto_high = arguments.get("autoApproveHigh", False)
    if not isinstance(auto_high, bool):
        raise ValueError("'autoApproveHigh' must be a boolean")
    sandbox: Dict[str, object] = {}
    backend = arguments.get("backend")
    if backend is not None:
        if backend not in BACKENDS:
            raise ValueError(f"'backend' must be one of {', '.join(BACKENDS)}")
        sandbox["backend"] = backend
    timeout_ms = arguments.get("timeoutMs")
    if timeout_ms is not None:
        if not isinstance(timeout_ms, int) or isinstance(timeout_ms, bool):
            raise ValueError("'timeoutMs' must be an integer")
        sandbox["timeoutMs"] = timeout_ms
    return ExecutionOptions(
        dialect=str(dialect) if dialect else None,
        sandbox=sandbox or None,
        approval=ApprovalOptions(mode=str(mode) if mode else None, auto_approve_high=auto_high),
    )


@app.call_tool()
async def call_tool(name: str, arguments: Dict[str, object]) -> CallToolResult:
    try:
        current = _require_engine()
    except RuntimeError as exc:
        return _error_response("error", str(exc))

    if name == "execute_intent":
        intent = arguments.get("intent")
        if not isinstance(intent, str) or not intent.strip():
            return _error_response("validation_error", "Missing 'intent' argument")
        try:
            options = _options_from_arguments(arguments)
        except ValueError as exc:
            return _error_response("validation_error", str(exc))
        result = await current.execute(intent, options)
        return _build_tool_response(_execution_status(result), _execution_payload(result))

    if name == "search_tools":
        query = arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            return _error_response("validation_error", "Missing 'query' argument")
        limit = arguments.get("limit", 5)
        if not isinstance(limit, int) or isinstance(limit, bool):
            return _error_response("validation_error", "'limit' must be an integer")
        limit = max(1, min(MAX_SEARCH_LIMIT, limit))
        matches = current.search_tools(query, limit)
        lines = [f"{descriptor.qualified_name}: {descriptor.description}".rstrip(": ") for descriptor in matches]
        return _build_tool_response(
            "success",
            {
                "summary": f"{len(matches)} matching tool(s)",
                "tools": [descriptor.to_dict() for descriptor in matches],
                "text": "\n".join(lines),
            },
        )

    if name == "engine_stats":
        return _build_tool_response("success", {"summary": "Engine statistics", "stats": current.stats()})

    if name == "approval_status":
        request_id = arguments.get("id")
        if not isinstance(request_id, str) or not request_id:
            return _error_response("validation_error", "Missing 'id' argument")
        request = current.gate.get(request_id)
        if request is None:
            return _error_response("error", f"Unknown approval request: {request_id}")
        return _build_tool_response(
            "success",
            {"summary": f"Approval request {request.status}", "request": request.to_dict(), "text": format_request(request)},
        )

    return _error_response("error", f"Unknown tool: {name}")


def build_engine() -> Orchestrator:
    """Create an orchestrator from the environment and the discovered server registry."""

    registry_path = os.environ.get("MCP_ENGINE_REGISTRY")
    if registry_path:
        servers = load_registry(Path(registry_path).expanduser())
    else:
        servers = discover_registry()
    config = EngineConfig.from_env()
    config.tools_dir = os.environ.get("MCP_ENGINE_TOOLS_DIR") or config.tools_dir
    return Orchestrator(config, servers=servers)


async def main() -> None:
    global engine
    logging.basicConfig(level=os.environ.get("MCP_ENGINE_LOG_LEVEL", "INFO"))
    engine = build_engine()
    await engine.initialize()
    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())
    finally:
        await engine.shutdown()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()
