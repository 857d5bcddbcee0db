import asyncio
import json
import sys
import tempfile
import unittest
from contextlib import suppress
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, patch

import mcp_execution_engine.server as server_module
from mcp_execution_engine.config import EngineConfig, MCPServerInfo
from mcp_execution_engine.mcp_pool import ConnectionState
from mcp_execution_engine.models import (
    ApprovalOptions,
    ExecutionOptions,
    ResourceLimits,
    SandboxConfig,
)
from mcp_execution_engine.orchestrator import FAILED_SUMMARY, REQUEST_HEADROOM_MS, SUMMARY_TOKEN_LIMIT, Orchestrator
from mcp_execution_engine.pii import PIITokenizer
from mcp_execution_engine.sandbox import ProcessSandbox, SandboxManager, SandboxRun

HERE = Path(__file__).resolve().parent


def sdk_server(name: str, role: str, cwd: Optional[Path] = None) -> MCPServerInfo:
    return MCPServerInfo(
        name=name,
        command=sys.executable,
        args=[str(HERE / "stub_mcp_server.py"), role],
        env={},
        cwd=str(cwd) if cwd else None,
    )


def raw_server(name: str, mode: str, *extra: str) -> MCPServerInfo:
    return MCPServerInfo(
        name=name,
        command=sys.executable,
        args=[str(HERE / "raw_mcp_server.py"), mode, *extra],
        env={},
    )


class OrchestratorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.engines: List[Orchestrator] = []
        self.tokenizers: List[PIITokenizer] = []

    async def asyncTearDown(self) -> None:
        for engine in self.engines:
            await engine.shutdown()
        self._tmp.cleanup()

    def _tokenizer(self) -> PIITokenizer:
        tokenizer = PIITokenizer()
        self.tokenizers.append(tokenizer)
        return tokenizer

    async def make_engine(self, servers: Dict[str, MCPServerInfo], **overrides) -> Orchestrator:
        settings = dict(
            sandbox=SandboxConfig(backend="process", resource_limits=ResourceLimits(timeout_ms=20000)),
            state_dir=str(self.root / "state"),
            audit_log_path=None,
            connect_retries=0,
            startup_timeout=20.0,
            shutdown_grace=1.0,
            approval_mode="balanced",
        )
        settings.update(overrides)
        config = EngineConfig(**settings)
        sandbox = SandboxManager(config, backends={"process": ProcessSandbox(grace=0.5)})
        engine = Orchestrator(config, servers=servers, sandbox=sandbox, tokenizer_factory=self._tokenizer)
        self.engines.append(engine)
        await engine.initialize()
        return engine

    def sql_catalogue(self) -> str:
        tools_dir = self.root / "tools"
        tools_dir.mkdir(exist_ok=True)
        (tools_dir / "db.json").write_text(
            json.dumps(
                [
                    {
                        "name": "run_sql",
                        "description": "Run a SQL statement against the database",
                        "parameters": [{"name": "query", "type": "string"}],
                    }
                ]
            )
        )
        return str(tools_dir)

    async def wait_for_running(self, engine: Orchestrator) -> str:
        for _ in range(500):
            if engine._running:
                pending = sum(
                    connection.pending_count
                    for name in engine.pool.servers()
                    if (connection := engine.pool.connection(name)) is not None
                )
                if pending:
                    return next(iter(engine._running))
            await asyncio.sleep(0.02)
        raise AssertionError("execution never reached the MCP server")

    async def test_unmatched_intent_fails_without_sandbox(self) -> None:
        engine = await self.make_engine({"fs": sdk_server("fs", "fs")})
        result = await engine.execute("please refactor my kitchen")

        self.assertFalse(result.success)
        self.assertEqual(result.summary, FAILED_SUMMARY)
        self.assertTrue(result.error.startswith("No relevant MCP tools"))
        self.assertEqual(result.metadata["errorKind"], "NoRelevantTools")
        discovery = [
            entry for entry in engine.audit.for_execution(result.metadata["executionId"]) if entry.type == "discovery"
        ]
        self.assertEqual(len(discovery), 1)
        self.assertEqual(discovery[0].metadata["toolsFound"], 0)
        self.assertEqual(engine.workspaces.stats()["total"], 0)

    async def test_happy_path_runs_and_caches(self) -> None:
        (self.root / "README.md").write_text("# Demo\nHello from the readme.\n")
        engine = await self.make_engine(
            {"fs": sdk_server("fs", "fs", cwd=self.root), "crm": sdk_server("crm", "crm")}
        )
        self.assertEqual(engine.search_tools("read README.md")[0].qualified_name, "fs.read")

        result = await engine.execute("read README.md")

        self.assertTrue(result.success, result.error)
        self.assertTrue(result.summary.startswith("fs.read: 1 content item(s)"))
        self.assertEqual(result.output["content"][0]["text"], "# Demo\nHello from the readme.\n")
        self.assertGreater(result.metrics.execution_time, 0)
        self.assertGreater(result.metrics.tokens_in_summary, 0)
        self.assertEqual(result.metadata["backend"], "process")
        self.assertEqual(result.metadata["riskLevel"], "low")
        self.assertEqual(len(engine.cache), 1)

        workspace = engine.workspaces.get(result.metadata["workspaceId"])
        self.assertEqual(workspace.status, "completed")

        security = [
            entry for entry in engine.audit.for_execution(result.metadata["executionId"]) if entry.type == "security"
        ]
        self.assertEqual(security[0].metadata["issues"], [])

        again = await engine.execute("read README.md")
        self.assertTrue(again.success)
        self.assertTrue(again.metadata["cached"])
        self.assertEqual(again.output, result.output)
        stats = engine.stats()
        self.assertEqual(stats["executions"]["cached"], 1)
        self.assertEqual(stats["executions"]["succeeded"], 2)
        self.assertEqual(stats["workspaces"]["total"], 1)

    async def test_destructive_wrapper_requires_approval(self) -> None:
        engine = await self.make_engine({}, tools_dir=self.sql_catalogue())
        intent = 'run sql query="DELETE FROM users"'

        result = await engine.execute(intent)

        self.assertFalse(result.success)
        self.assertEqual(result.metadata["errorKind"], "ApprovalRequired")
        request_id = result.metadata["approvalRequestId"]
        request = engine.gate.get(request_id)
        self.assertEqual(request.status, "pending")
        self.assertIn("destructive_operation", request.summary)
        self.assertEqual(engine.workspaces.stats()["total"], 0)
        security = [
            entry for entry in engine.audit.for_execution(result.metadata["executionId"]) if entry.type == "security"
        ]
        self.assertEqual(security[0].metadata["highestSeverity"], "high")
        self.assertEqual(security[-1].metadata["approvalRequestId"], request_id)
        self.assertEqual(engine.audit.by_type("error"), [])

        allowed = await engine.execute(
            intent, ExecutionOptions(approval=ApprovalOptions(auto_approve_high=True))
        )
        # the tool's server is not registered, so the call fails inside the sandbox
        self.assertFalse(allowed.success)
        self.assertEqual(allowed.metadata["errorKind"], "MCPConnectError")
        self.assertEqual(engine.workspaces.stats()["total"], 1)

    async def test_approval_request_masks_intent_pii(self) -> None:
        engine = await self.make_engine({}, tools_dir=self.sql_catalogue())
        result = await engine.execute("run sql query=\"DELETE FROM users WHERE email='alice@example.com'\"")

        self.assertEqual(result.metadata["errorKind"], "ApprovalRequired")
        request = engine.gate.get(result.metadata["approvalRequestId"])
        self.assertNotIn("alice@example.com", request.summary)
        self.assertIn("[EMAIL_1]", request.summary)
        self.assertEqual(self.tokenizers[-1].lookup("[EMAIL_1]"), "alice@example.com")

        with patch.object(server_module, "engine", engine):
            response = await server_module.call_tool("approval_status", {"id": request.id})
        self.assertFalse(response.isError)
        self.assertNotIn("alice@example.com", response.content[0].text)
        self.assertNotIn("alice@example.com", json.dumps(response.structuredContent))

    async def test_long_summary_is_bounded_and_tokenised(self) -> None:
        engine = await self.make_engine({"crm": sdk_server("crm", "crm")})
        summary = "Contacts: alice@example.com, " + "row " * 600 + "last bob@example.org"
        run = SandboxRun(
            backend="process",
            exit_code=0,
            final={"ok": True, "summary": summary, "output": {"rows": 600}},
            execution_time=12.0,
        )
        with patch.object(engine.sandbox, "run", AsyncMock(return_value=run)):
            result = await engine.execute("lookup contact name=alice")

        self.assertTrue(result.success, result.error)
        self.assertGreater(len(summary), 2000)
        self.assertLessEqual(result.metrics.tokens_in_summary, SUMMARY_TOKEN_LIMIT)
        self.assertLessEqual(len(result.summary), SUMMARY_TOKEN_LIMIT * 4)
        self.assertTrue(result.summary.startswith("Contacts: [EMAIL_1], row"))
        plaintexts = self.tokenizers[-1].plaintexts()
        self.assertIn("alice@example.com", plaintexts)
        for plaintext in plaintexts:
            self.assertNotIn(plaintext, result.summary)

    async def test_tool_output_is_tokenised(self) -> None:
        engine = await self.make_engine({"crm": sdk_server("crm", "crm")})
        result = await engine.execute("lookup contact name=alice")

        self.assertTrue(result.success, result.error)
        text = result.output["content"][0]["text"]
        self.assertIn("[EMAIL_1]", text)
        self.assertNotIn("alice@example.com", text)
        self.assertTrue(result.pii_tokenized)
        self.assertEqual(self.tokenizers[-1].lookup("[EMAIL_1]"), "alice@example.com")
        self.assertTrue(engine.audit.compliance_report()["hipaa"]["compliant"])
        self.assertTrue(engine.audit.compliance_report()["gdpr"]["compliant"])

    async def test_mcp_timeout_fails_execution(self) -> None:
        engine = await self.make_engine({"hang": raw_server("hang", "hang-calls")}, request_timeout=1.0)
        result = await engine.execute('echo message="hello"')

        self.assertFalse(result.success)
        self.assertEqual(result.metadata["errorKind"], "MCPRequestTimeout")
        self.assertIn("MCPRequestTimeout", result.error)
        self.assertGreaterEqual(result.metrics.execution_time, 1000)
        self.assertEqual(engine.workspaces.get(result.metadata["workspaceId"]).status, "failed")
        execution = engine.audit.for_execution(result.metadata["executionId"])[-1]
        self.assertEqual(execution.type, "execution")
        self.assertEqual(execution.severity, "warning")

    async def test_equal_sandbox_and_request_timeouts_report_mcp_timeout(self) -> None:
        engine = await self.make_engine(
            {"hang": raw_server("hang", "hang-calls")},
            request_timeout=2.0,
            sandbox=SandboxConfig(backend="process", resource_limits=ResourceLimits(timeout_ms=2000)),
        )
        result = await engine.execute('echo message="hello"')

        self.assertFalse(result.success)
        self.assertEqual(result.metadata["errorKind"], "MCPRequestTimeout")
        self.assertIn("MCPRequestTimeout", result.error)
        self.assertGreaterEqual(result.metrics.execution_time, 2000)

    async def test_sandbox_deadline_outlasts_request_timeout(self) -> None:
        engine = await self.make_engine({})
        defaults = EngineConfig().sandbox
        self.assertEqual(defaults.resource_limits.timeout_ms, int(engine.config.request_timeout * 1000))
        extended = engine._with_request_headroom(defaults)
        self.assertEqual(
            extended.resource_limits.timeout_ms, int(engine.config.request_timeout * 1000) + REQUEST_HEADROOM_MS
        )
        roomy = SandboxConfig(resource_limits=ResourceLimits(timeout_ms=120000))
        self.assertIs(engine._with_request_headroom(roomy), roomy)

    async def test_flooding_server_is_torn_down(self) -> None:
        engine = await self.make_engine(
            {"flood": raw_server("flood", "flood", str(2 * 1024 * 1024))}, buffer_cap=1024 * 1024
        )
        result = await engine.execute('echo message="hello"')

        self.assertFalse(result.success)
        self.assertEqual(result.metadata["errorKind"], "MCPConnectionClosed")
        connection = engine.pool.connection("flood")
        self.assertIs(connection.state, ConnectionState.CLOSED)
        self.assertEqual(type(connection.failure).__name__, "MCPBufferOverflow")

    async def test_capacity_and_cancellation(self) -> None:
        engine = await self.make_engine({"hang": raw_server("hang", "hang-calls")}, max_concurrent_executions=1)
        first = asyncio.create_task(engine.execute('echo message="one"'))
        execution_id = await self.wait_for_running(engine)

        rejected = await engine.execute('echo message="two"')
        self.assertFalse(rejected.success)
        self.assertEqual(rejected.metadata["errorKind"], "CapacityExceeded")

        self.assertTrue(engine.cancel(execution_id))
        self.assertFalse(engine.cancel(execution_id))
        with self.assertRaises(asyncio.CancelledError):
            await first
        self.assertEqual(engine.stats()["executions"]["cancelled"], 1)
        self.assertEqual(engine.stats()["executions"]["active"], 0)
        cancelled = [entry for entry in engine.audit.by_type("error") if entry.metadata.get("errorKind") == "Cancelled"]
        self.assertEqual(len(cancelled), 1)
        self.assertEqual(engine.workspaces.list()[0].status, "failed")

    async def test_shutdown_is_idempotent_and_rejects_new_work(self) -> None:
        engine = await self.make_engine({"hang": raw_server("hang", "hang-calls")})
        pending = asyncio.create_task(engine.execute('echo message="one"'))
        await self.wait_for_running(engine)

        await engine.shutdown()
        await engine.shutdown()

        with suppress(asyncio.CancelledError):
            await pending
        self.assertTrue(pending.done())
        result = await engine.execute('echo message="late"')
        self.assertEqual(result.metadata["errorKind"], "CapacityExceeded")
        self.assertEqual(result.error, "Execution engine is shut down")
        self.assertEqual(engine.sandbox.active, [])

    async def test_invalid_sandbox_override_is_a_policy_violation(self) -> None:
        engine = await self.make_engine({"crm": sdk_server("crm", "crm")})
        result = await engine.execute(
            "lookup contact name=alice", ExecutionOptions(sandbox={"allowedEnvVars": ["AWS_SECRET_ACCESS_KEY"]})
        )
        self.assertFalse(result.success)
        self.assertEqual(result.metadata["errorKind"], "PolicyViolation")

    async def test_force_cleanup_removes_finished_workspaces(self) -> None:
        engine = await self.make_engine({"hang": raw_server("hang", "hang-calls")}, request_timeout=0.5)
        await engine.execute('echo message="x"')
        self.assertEqual(engine.workspaces.stats()["total"], 1)
        summary = await engine.force_cleanup()
        self.assertEqual(summary["workspaces"], 1)
        self.assertEqual(engine.workspaces.stats()["total"], 0)


if __name__ == "__main__":
    unittest.main()
