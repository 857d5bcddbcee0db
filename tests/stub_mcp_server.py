import asyncio
import json
import sys
from io import TextIOWrapper
from pathlib import Path
from typing import Any, cast

import anyio
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

ROLE = sys.argv[1] if len(sys.argv) > 1 else "fs"
CONTACTS = {"alice": {"name": "Alice", "email": "alice@example.com"}}

app = Server(f"stub-{ROLE}")


@app.list_tools()
async def list_tools() -> list[Tool]:
    if ROLE == "crm":
        return [
            Tool(
                name="lookup_contact",
                description="Look up a customer contact record by name",
                inputSchema={
                    "type": "object",
                    "properties": {"name": {"type": "string", "description": "Customer name"}},
                    "required": ["name"],
                },
            )
        ]
    return [
        Tool(
            name="read",
            description="Read a file and return its contents",
            inputSchema={
                "type": "object",
                "properties": {"path": {"type": "string", "description": "File path to read"}},
                "required": ["path"],
            },
        ),
        Tool(
            name="list_directory",
            description="List the entries of a directory",
            inputSchema={
                "type": "object",
                "properties": {"dir": {"type": "string"}},
                "required": ["dir"],
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: dict | None) -> CallToolResult:
    args = arguments or {}
    if ROLE == "crm" and name == "lookup_contact":
        contact = CONTACTS.get(str(args.get("name", "")).lower())
        if contact is None:
            return CallToolResult(content=[TextContent(type="text", text="not found")], isError=True)
        return CallToolResult(content=[TextContent(type="text", text=json.dumps({"email": contact["email"]}))])
    if ROLE == "fs" and name == "read":
        try:
            text = Path(str(args.get("path", ""))).read_text()
        except OSError as exc:
            return CallToolResult(content=[TextContent(type="text", text=str(exc))], isError=True)
        return CallToolResult(content=[TextContent(type="text", text=text)])
    if ROLE == "fs" and name == "list_directory":
        entries = sorted(item.name for item in Path(str(args.get("dir", "."))).iterdir())
        return CallToolResult(content=[TextContent(type="text", text="\n".join(entries))])
    return CallToolResult(content=[TextContent(type="text", text=f"Unknown tool: {name}")], isError=True)


async def main() -> None:
    stdin_stream = anyio.wrap_file(TextIOWrapper(sys.stdin.buffer, encoding="utf-8"))

    class _FilteredAsyncFile:
        def __init__(self, wrapped):
            self._wrapped = wrapped
            self._iterator = wrapped.__aiter__()

        def __getattr__(self, name):
            return getattr(self._wrapped, name)

        def __aiter__(self):
            return self

        async def __anext__(self):
            while True:
                line = await self._iterator.__anext__()
                if not line.strip():
                    continue
                return line

        async def aclose(self):
            await self._wrapped.aclose()

    filtered_stdin = _FilteredAsyncFile(stdin_stream)

    async with stdio_server(stdin=cast(Any, filtered_stdin)) as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


if __name__ == "__main__":
    asyncio.run(main())
