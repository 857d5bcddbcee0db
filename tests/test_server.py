import re
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

try:  # pragma: no cover - runtime import with graceful fallback
    from toon_format import decode as toon_decode  # type: ignore[import-not-found]
except ImportError:  # pragma: no cover - dependency missing during static analysis
    toon_decode = None  # type: ignore[assignment]

import mcp_execution_engine.server as server_module
from mcp_execution_engine.approval import ApprovalGate
from mcp_execution_engine.models import (
    ExecutionMetrics,
    ExecutionResult,
    RiskAssessment,
    ToolDescriptor,
    ValidationReport,
    WrapperProgram,
)


def _extract_toon_body(text: str) -> str:
    match = re.search(r"```toon\s*\n(.*?)\n```", text, re.DOTALL)
    if not match:
        raise AssertionError(f"No TOON block found in: {text!r}")
    return match.group(1).strip()


def fake_engine(result: ExecutionResult) -> MagicMock:
    engine = MagicMock()
    engine.execute = AsyncMock(return_value=result)
    engine.gate = ApprovalGate()
    engine.search_tools.return_value = [
        ToolDescriptor(server="fs", name="read", description="Read a file", category="filesystem")
    ]
    engine.stats.return_value = {"executions": {"total": 3}}
    return engine


SUCCESS = ExecutionResult(
    success=True,
    summary="fs.read: 1 content item(s), 30 bytes",
    output={"content": [{"type": "text", "text": "hello"}]},
    metrics=ExecutionMetrics(120.5, 2048, 9),
    metadata={"executionId": "exec-1", "workspaceId": "ws-1", "backend": "process"},
)


class ServerToolTests(unittest.IsolatedAsyncioTestCase):
    async def call(self, engine, name, arguments, mode="compact"):
        with patch.dict("os.environ", {"MCP_ENGINE_OUTPUT_MODE": mode}, clear=False):
            with patch.object(server_module, "engine", engine):
                return await server_module.call_tool(name, arguments)

    async def test_tools_are_listed(self) -> None:
        tools = await server_module.list_tools()
        self.assertEqual(
            [tool.name for tool in tools], ["execute_intent", "search_tools", "engine_stats", "approval_status"]
        )

    async def test_execute_success_is_compact(self) -> None:
        engine = fake_engine(SUCCESS)
        response = await self.call(engine, "execute_intent", {"intent": "read README.md", "timeoutMs": 5000})

        self.assertFalse(response.isError)
        self.assertEqual(response.content[0].text, "fs.read: 1 content item(s), 30 bytes")
        structured = response.structuredContent
        self.assertEqual(structured["status"], "success")
        self.assertEqual(structured["metadata"], {"executionId": "exec-1", "backend": "process"})
        self.assertNotIn("error", structured)
        self.assertNotIn("output", structured)
        self.assertNotIn("hello", response.content[0].text)
        intent, options = engine.execute.await_args.args
        self.assertEqual(intent, "read README.md")
        self.assertEqual(options.sandbox, {"timeoutMs": 5000})
        self.assertFalse(options.approval.auto_approve_high)

    async def test_approval_required_surfaces_request_id(self) -> None:
        blocked = ExecutionResult(
            success=False,
            summary="Execution failed",
            error="Execution requires approval (high risk blocked in balanced mode); request approval-1",
            metadata={"executionId": "exec-2", "errorKind": "ApprovalRequired", "approvalRequestId": "approval-1"},
        )
        response = await self.call(fake_engine(blocked), "execute_intent", {"intent": "drop it"})
        self.assertTrue(response.isError)
        self.assertEqual(response.structuredContent["status"], "approval_required")
        self.assertIn("approval: approval-1", response.content[0].text)
        self.assertTrue(response.content[0].text.startswith("status: approval_required"))

    async def test_timeout_status(self) -> None:
        timed_out = ExecutionResult(
            success=False,
            summary="Execution failed",
            error="Execution timed out after 1s",
            metadata={"errorKind": "SandboxTimeout"},
        )
        response = await self.call(fake_engine(timed_out), "execute_intent", {"intent": "slow thing"})
        self.assertEqual(response.structuredContent["status"], "timeout")

    async def test_toon_mode_renders_block(self) -> None:
        if toon_decode is None:
            self.skipTest("toon-format not installed")
        response = await self.call(fake_engine(SUCCESS), "engine_stats", {}, mode="toon")
        decoded = toon_decode(_extract_toon_body(response.content[0].text))
        self.assertEqual(decoded["status"], "success")
        self.assertEqual(decoded["stats"], {"executions": {"total": 3}})

    async def test_toon_payload_omits_tool_output(self) -> None:
        with patch.object(server_module, "_toon_encode", None):
            response = await self.call(fake_engine(SUCCESS), "execute_intent", {"intent": "read README.md"}, mode="toon")
        self.assertNotIn("output", response.structuredContent)
        self.assertNotIn("hello", response.content[0].text)
        self.assertIn("fs.read: 1 content item(s), 30 bytes", response.content[0].text)

    async def test_json_fallback_without_toon(self) -> None:
        with patch.object(server_module, "_toon_encode", None):
            response = await self.call(fake_engine(SUCCESS), "engine_stats", {}, mode="toon")
        self.assertTrue(response.content[0].text.startswith("```json\n"))

    async def test_search_tools(self) -> None:
        engine = fake_engine(SUCCESS)
        response = await self.call(engine, "search_tools", {"query": "read", "limit": 100})
        engine.search_tools.assert_called_once_with("read", server_module.MAX_SEARCH_LIMIT)
        self.assertIn("fs.read: Read a file", response.content[0].text)
        self.assertEqual(response.structuredContent["tools"][0]["server"], "fs")

    async def test_approval_status(self) -> None:
        engine = fake_engine(SUCCESS)
        wrapper = WrapperProgram(source='p = "notes.txt"\n', dialect="py", estimated_tokens=4, descriptors=[])
        report = ValidationReport(is_secure=False, risk_score=20, issues=(), requires_approval=True)
        request = engine.gate.create_request(wrapper, RiskAssessment(60, "high", ()), report)

        response = await self.call(engine, "approval_status", {"id": request.id})
        self.assertFalse(response.isError)
        self.assertEqual(response.structuredContent["request"]["status"], "pending")
        self.assertIn("Files: notes.txt", response.content[0].text)

        missing = await self.call(engine, "approval_status", {"id": "approval-nope"})
        self.assertTrue(missing.isError)

    async def test_validation_errors(self) -> None:
        engine = fake_engine(SUCCESS)
        cases = [
            ("execute_intent", {}),
            ("execute_intent", {"intent": "x", "dialect": "rb"}),
            ("execute_intent", {"intent": "x", "autoApproveHigh": "yes"}),
            ("execute_intent", {"intent": "x", "timeoutMs": "fast"}),
            ("execute_intent", {"intent": "x", "backend": "chroot"}),
            ("search_tools", {"query": "x", "limit": "ten"}),
            ("approval_status", {}),
        ]
        for name, arguments in cases:
            response = await self.call(engine, name, arguments)
            self.assertTrue(response.isError, arguments)
            self.assertEqual(response.structuredContent["status"], "validation_error")
        engine.execute.assert_not_awaited()

    async def test_unknown_tool_and_missing_engine(self) -> None:
        response = await self.call(fake_engine(SUCCESS), "run_python", {})
        self.assertIn("Unknown tool: run_python", response.content[0].text)
        response = await self.call(None, "engine_stats", {})
        self.assertTrue(response.isError)
        self.assertIn("not initialised", response.structuredContent["error"])


class BuildEngineTests(unittest.TestCase):
    def test_registry_env_points_at_file(self) -> None:
        with patch.dict("os.environ", {"MCP_ENGINE_REGISTRY": "/srv/mcp.json", "MCP_ENGINE_TOOLS_DIR": "/srv/tools"}):
            with patch.object(server_module, "load_registry", return_value={}) as loader:
                with patch.object(server_module, "Orchestrator") as orchestrator:
                    server_module.build_engine()
        loader.assert_called_once()
        self.assertEqual(str(loader.call_args.args[0]), "/srv/mcp.json")
        config = orchestrator.call_args.args[0]
        self.assertEqual(config.tools_dir, "/srv/tools")

    def test_discovers_registry_by_default(self) -> None:
        with patch.dict("os.environ", {"MCP_ENGINE_REGISTRY": ""}):
            with patch.object(server_module, "discover_registry", return_value={}) as discover:
                with patch.object(server_module, "Orchestrator"):
                    server_module.build_engine()
        discover.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
