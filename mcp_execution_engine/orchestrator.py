"""Six-phase execution workflow: discover, generate, validate, gate, execute, summarise."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import secrets
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .approval import ApprovalGate
from .audit import AnomalyDetector, AuditLog, JsonlAuditSink
from .cache import ResultCache, cache_key
from .config import MAX_TIMEOUT_MS, EngineConfig, MCPServerInfo, validate_sandbox_config
from .errors import (
    ApprovalRequired,
    CapacityExceeded,
    EngineError,
    GenerationFailure,
    InternalError,
    MCPError,
    NoRelevantTools,
    SandboxError,
)
from .generator import CodeGenerator, estimate_tokens
from .mcp_pool import MCPClientPool, current_origin
from .models import (
    ExecutionMetrics,
    ExecutionOptions,
    ExecutionResult,
    RiskAssessment,
    SandboxConfig,
    ToolDescriptor,
    WrapperProgram,
)
from .pii import PIITokenizer
from .risk import RiskAssessor
from .sandbox import ContainerReaper, SandboxManager, SandboxRun
from .schema import load_catalogue, parse_tool_list
from .tool_index import ToolIndex
from .transport import ToolRouter
from .validator import CodeValidator
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

FAILED_SUMMARY = "Execution failed"
SUMMARY_TOKEN_LIMIT = 500
STDERR_AUDIT_CAP = 4096
LOG_LINES_CAP = 50
# minimum margin of the sandbox deadline over the MCP request timeout
REQUEST_HEADROOM_MS = 2000
_AUDIT_SEVERITY_FOR_RISK = {"low": "info", "medium": "warning", "high": "error", "critical": "critical"}


def bound_summary(text: str, limit: int = SUMMARY_TOKEN_LIMIT) -> str:
    """Trim ``text`` so its token estimate stays within ``limit``."""

    max_chars = limit * 4
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


def _truncate(text: str, cap: int = STDERR_AUDIT_CAP) -> str:
    return text if len(text) <= cap else text[:cap] + "\n...[truncated]"


@dataclass
class _Execution:
    id: str
    task: Optional["asyncio.Task[Any]"]
    started_at: float
    workspace_id: Optional[str] = None
    cancelled: bool = False


class Orchestrator:
    """Compose the engine components and run intents end to end."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        servers: Optional[Mapping[str, MCPServerInfo]] = None,
        pool: Optional[MCPClientPool] = None,
        sandbox: Optional[SandboxManager] = None,
        workspaces: Optional[WorkspaceManager] = None,
        audit: Optional[AuditLog] = None,
        tokenizer_factory: Callable[[], PIITokenizer] = PIITokenizer,
    ) -> None:
        self.config = config or EngineConfig()
        self.instance_id = uuid.uuid4().hex[:12]
        self.pool = pool or MCPClientPool(
            servers,
            startup_timeout=self.config.startup_timeout,
            request_timeout=self.config.request_timeout,
            buffer_cap=self.config.buffer_cap,
            grace=self.config.shutdown_grace,
            connect_retries=self.config.connect_retries,
            connect_backoff=self.config.connect_backoff,
        )
        if self.pool.on_reconnect is None:
            self.pool.on_reconnect = self._reindex_server
        self.index = ToolIndex(self.pool.priorities())
        self.generator = CodeGenerator()
        self.validator = CodeValidator(self.config.complexity_threshold)
        self.assessor = RiskAssessor()
        self.gate = ApprovalGate(self.config.approval_mode)
        self.sandbox = sandbox or SandboxManager(self.config, instance_id=self.instance_id)
        self.workspaces = workspaces or WorkspaceManager(
            self.config.state_path(), idle_threshold=self.config.workspace_idle_threshold
        )
        self.cache = ResultCache(self.config.cache_ttl, self.config.cache_capacity)
        if audit is None:
            sink = JsonlAuditSink(Path(self.config.audit_log_path)) if self.config.audit_log_path else None
            audit = AuditLog(self.config.audit_capacity, sink)
        self.audit = audit
        self.anomalies = AnomalyDetector(
            self.audit,
            window=self.config.anomaly_window,
            concurrency_threshold=self.config.anomaly_concurrency_threshold,
        )
        self.reaper: Optional[ContainerReaper] = None
        if self.sandbox.container is not None:
            self.reaper = ContainerReaper(
                self.sandbox.container,
                self.workspaces.get,
                idle_threshold=self.config.container_idle_threshold,
                interval=self.config.reaper_interval,
                batch=self.config.reaper_batch,
            )
        self._tokenizer_factory = tokenizer_factory
        self._running: Dict[str, _Execution] = {}
        self._counters = {"total": 0, "succeeded": 0, "failed": 0, "cached": 0, "approvalRequired": 0, "cancelled": 0}
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        self._initialized = False
        self._shut_down = False

    # -- lifecycle ------------------------------------------------------

    async def initialize(self) -> None:
        """Build the tool index and start background cleanup."""

        if self._initialized:
            return
        catalogue: Dict[str, List[ToolDescriptor]] = {}
        if self.config.tools_dir:
            catalogue.update(load_catalogue(Path(self.config.tools_dir)))
        for server in self.pool.servers():
            if server in catalogue:
                continue
            descriptors = await self._discover_server(server)
            if descriptors is not None:
                catalogue[server] = descriptors
        for server, priority in self.pool.priorities().items():
            self.index.set_priority(server, priority)
        self.index.rebuild(catalogue)
        self.audit.log_discovery(
            f"Indexed {len(self.index)} tool(s) from {len(catalogue)} server(s)",
            toolsIndexed=len(self.index),
            servers=sorted(catalogue),
        )
        self._start_cleanup()
        self._initialized = True

    async def _discover_server(self, server: str) -> Optional[List[ToolDescriptor]]:
        try:
            raw = await self.pool.list_tools(server)
            return parse_tool_list(server, raw)
        except (MCPError, GenerationFailure) as exc:
            logger.warning("Tool discovery failed for MCP server %s: %s", server, exc)
            self.audit.log_error(f"Tool discovery failed for server {server}", exc, server=server)
            return None

    async def _reindex_server(self, server: str) -> None:
        descriptors = await self._discover_server(server)
        if descriptors is None:
            self.index.remove_server(server)
            return
        self.index.replace_server(server, descriptors)
        self.audit.log_discovery(
            f"Re-indexed server {server} after reconnect", server=server, toolsIndexed=len(descriptors)
        )

    def _start_cleanup(self) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        if self.reaper is not None and self.sandbox.container_available():
            self.reaper.start()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.cleanup_pass()
            except Exception:
                logger.warning("Cleanup pass failed", exc_info=True)

    def cleanup_pass(self, *, force: bool = False) -> Dict[str, int]:
        removed = self.workspaces.force_cleanup() if force else self.workspaces.cleanup()
        return {
            "workspaces": removed,
            "cacheEntries": self.cache.cleanup(),
            "approvalRequests": self.gate.cleanup(),
        }

    async def force_cleanup(self) -> Dict[str, int]:
        """Run one cleanup pass now, ignoring idle thresholds."""

        summary = self.cleanup_pass(force=True)
        if self.reaper is not None:
            summary["containers"] = await self.reaper.run_once()
        return summary

    async def shutdown(self) -> None:
        """Cancel running executions, stop background work and close MCP connections."""

        if self._shut_down:
            return
        self._shut_down = True
        tasks = [entry.task for entry in self._running.values() if entry.task is not None]
        for execution_id in list(self._running):
            self.cancel(execution_id)
        if tasks:
            await asyncio.wait(tasks, timeout=self.config.shutdown_grace)
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        if self.reaper is not None:
            await self.reaper.stop()
        await self.sandbox.emergency_cleanup()
        await self.pool.shutdown()
        logger.info("Execution engine shut down")

    def cancel(self, execution_id: str) -> bool:
        """Cancel a running execution; repeated calls are no-ops."""

        entry = self._running.get(execution_id)
        if entry is None or entry.cancelled:
            return False
        entry.cancelled = True
        self.pool.cancel_origin(execution_id)
        if entry.task is not None:
            entry.task.cancel()
        return True

    # -- queries --------------------------------------------------------

    def search_tools(self, query: str, limit: int = 5) -> List[ToolDescriptor]:
        return self.index.search(query, limit)

    def stats(self) -> Dict[str, object]:
        return {
            "executions": {**self._counters, "active": len(self._running)},
            "workspaces": self.workspaces.stats(),
            "cache": self.cache.stats(),
            "audit": self.audit.stats(),
            "index": self.index.stats(),
            "anomaly": self.anomalies.stats(),
            "pool": self.pool.stats(),
            "approvals": self.gate.stats(),
            "sandbox": {
                "active": len(self.sandbox.active),
                "containersReaped": self.reaper.removed_total if self.reaper else 0,
            },
        }

    # -- execution ------------------------------------------------------

    async def execute(self, intent: str, options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        options = options or ExecutionOptions()
        execution_id = f"exec-{int(time.time() * 1000)}-{secrets.token_hex(4)}"
        tokenizer = self._tokenizer_factory()
        self._counters["total"] += 1

        if self._shut_down or len(self._running) >= self.config.max_concurrent_executions:
            reason = "Execution engine is shut down" if self._shut_down else (
                f"Concurrent execution limit of {self.config.max_concurrent_executions} reached"
            )
            return self._failure(execution_id, CapacityExceeded(reason), tokenizer)

        entry = _Execution(execution_id, asyncio.current_task(), time.time())
        self._running[execution_id] = entry
        origin = current_origin.set(execution_id)
        try:
            result = await self._run(entry, intent, options, tokenizer)
        except ApprovalRequired as exc:
            self._counters["approvalRequired"] += 1
            result = self._failure(execution_id, exc, tokenizer, audit=False)
            result.metadata["approvalRequestId"] = exc.approval_request_id
        except EngineError as exc:
            result = self._failure(execution_id, exc, tokenizer)
        except asyncio.CancelledError:
            self._on_cancelled(entry)
            raise
        except Exception as exc:
            logger.exception("Unexpected failure in execution %s", execution_id)
            result = self._failure(execution_id, InternalError(f"{type(exc).__name__}: {exc}"), tokenizer, cause=exc)
        finally:
            current_origin.reset(origin)
            self._running.pop(execution_id, None)
            if entry.workspace_id:
                with suppress(EngineError):
                    self.workspaces.fail(entry.workspace_id, {"error": "aborted"})
        self._counters["succeeded" if result.success else "failed"] += 1
        return result

    def _on_cancelled(self, entry: _Execution) -> None:
        self._counters["cancelled"] += 1
        self.pool.cancel_origin(entry.id)
        if entry.workspace_id:
            with suppress(EngineError):
                self.workspaces.fail(entry.workspace_id, {"error": "cancelled"})
        self.audit.log_error("Execution cancelled", executionId=entry.id, errorKind="Cancelled")

    def _failure(
        self,
        execution_id: str,
        exc: EngineError,
        tokenizer: PIITokenizer,
        *,
        audit: bool = True,
        cause: Optional[BaseException] = None,
    ) -> ExecutionResult:
        message = tokenizer.tokenize(str(exc))
        if audit:
            self.audit.log_error(message, cause, executionId=execution_id, errorKind=exc.kind)
        metadata: Dict[str, Any] = {"executionId": execution_id, "errorKind": exc.kind}
        metrics = ExecutionMetrics(tokens_in_summary=estimate_tokens(FAILED_SUMMARY))
        if isinstance(exc, SandboxError):
            metrics.execution_time = exc.execution_time
            metrics.memory_used = exc.memory_used
        if exc.stderr:
            metadata["stderr"] = _truncate(tokenizer.tokenize(exc.stderr))
        return ExecutionResult(
            success=False,
            summary=FAILED_SUMMARY,
            error=message,
            metrics=metrics,
            pii_tokenized=tokenizer.used,
            metadata=metadata,
        )

    def _index_for(self, options: ExecutionOptions) -> ToolIndex:
        if not options.tools_dir_override:
            return self.index
        catalogue = load_catalogue(Path(options.tools_dir_override))
        return ToolIndex.from_descriptors(
            (descriptor for descriptors in catalogue.values() for descriptor in descriptors),
            self.pool.priorities(),
        )

    async def _run(
        self,
        entry: _Execution,
        intent: str,
        options: ExecutionOptions,
        tokenizer: PIITokenizer,
    ) -> ExecutionResult:
        execution_id = entry.id

        # discover
        index = self._index_for(options)
        descriptors = index.search(intent, options.max_tools or self.config.max_tools)
        self.audit.log_discovery(
            f"Discovered {len(descriptors)} relevant tool(s)",
            executionId=execution_id,
            toolsFound=len(descriptors),
            tools=[descriptor.qualified_name for descriptor in descriptors],
        )
        if not descriptors:
            raise NoRelevantTools("No relevant MCP tools found for this intent")

        # generate
        wrapper = self.generator.generate(descriptors, intent, options.dialect)
        sandbox_config = self.config.sandbox.merged(options.sandbox)
        validate_sandbox_config(sandbox_config)
        key = cache_key(wrapper.sha, sandbox_config)

        cached = self.cache.get(key)
        if cached is not None:
            return self._serve_cached(execution_id, wrapper, cached, tokenizer)

        # validate + risk
        report = self.validator.validate(wrapper)
        assessment = self.assessor.assess(wrapper, report)
        self.audit.log_security(
            f"Wrapper assessed as {assessment.risk_level} risk",
            severity=_AUDIT_SEVERITY_FOR_RISK[assessment.risk_level],
            executionId=execution_id,
            wrapperHash=wrapper.sha,
            riskScore=assessment.risk_score,
            riskLevel=assessment.risk_level,
            highestSeverity=report.highest_severity,
            issues=[issue.to_dict() for issue in report.issues],
            contributingFactors=list(assessment.contributing_factors),
        )

        # gate
        decision = self.gate.evaluate(assessment, report, options.approval)
        if not decision.allowed:
            request = self.gate.create_request(wrapper, assessment, report, tokenizer)
            self.audit.log_security(
                f"Approval required: {decision.reason}",
                severity="warning",
                executionId=execution_id,
                wrapperHash=wrapper.sha,
                approvalRequestId=request.id,
            )
            raise ApprovalRequired(
                f"Execution requires approval ({decision.reason}); request {request.id}",
                approval_request_id=request.id,
            )

        # execute
        preference = (options.sandbox or {}).get("backend")
        backend = self.sandbox.recommend_backend(decision.level, preference)
        run_config = self._with_request_headroom(dataclasses.replace(sandbox_config, backend=backend))
        raw = await self._execute_wrapper(entry, wrapper, run_config, assessment)

        # summarise
        if raw.success:
            self.cache.set(key, raw)
        return self._finish(execution_id, wrapper, raw, tokenizer)

    def _with_request_headroom(self, config: SandboxConfig) -> SandboxConfig:
        floor = min(int(self.config.request_timeout * 1000) + REQUEST_HEADROOM_MS, MAX_TIMEOUT_MS)
        if config.resource_limits.timeout_ms >= floor:
            return config
        limits = dataclasses.replace(config.resource_limits, timeout_ms=floor)
        return dataclasses.replace(config, resource_limits=limits)

    def _serve_cached(
        self,
        execution_id: str,
        wrapper: WrapperProgram,
        cached: ExecutionResult,
        tokenizer: PIITokenizer,
    ) -> ExecutionResult:
        self._counters["cached"] += 1
        result = self._tokenize_result(cached, tokenizer)
        result.metadata.update({"executionId": execution_id, "cached": True})
        self.audit.log_execution(
            "Served execution from cache",
            success=True,
            cached=True,
            executionId=execution_id,
            wrapperHash=wrapper.sha,
            piiScanned=True,
            piiTokenized=result.pii_tokenized,
        )
        return result

    async def _execute_wrapper(
        self,
        entry: _Execution,
        wrapper: WrapperProgram,
        config: SandboxConfig,
        assessment: RiskAssessment,
    ) -> ExecutionResult:
        workspace = self.workspaces.create(wrapper.source, wrapper.dialect)
        entry.workspace_id = workspace.id
        self.workspaces.start(workspace.id)
        router = ToolRouter(self.pool, [descriptor.qualified_name for descriptor in wrapper.descriptors])
        metadata: Dict[str, Any] = {
            "executionId": entry.id,
            "workspaceId": workspace.id,
            "wrapperHash": wrapper.sha,
            "backend": config.backend,
            "riskLevel": assessment.risk_level,
        }
        try:
            run: SandboxRun = await self.sandbox.run(wrapper, workspace, config, router.handle)
        except SandboxError as exc:
            self.workspaces.fail(workspace.id, {"error": str(exc), "kind": exc.kind})
            metadata.update({"errorKind": exc.kind, "logs": exc.stdout.splitlines()[-LOG_LINES_CAP:]})
            if exc.stderr:
                metadata["stderr"] = _truncate(exc.stderr)
            return ExecutionResult(
                success=False,
                summary=FAILED_SUMMARY,
                error=str(exc),
                metrics=ExecutionMetrics(exc.execution_time, exc.memory_used),
                metadata=metadata,
            )

        metadata["logs"] = run.log_lines[-LOG_LINES_CAP:]
        metrics = ExecutionMetrics(run.execution_time, run.memory_used)
        final = run.final or {}
        if run.ok:
            summary = final.get("summary")
            if not isinstance(summary, str) or not summary:
                summary = f"{wrapper.entry_tool} completed"
            self.workspaces.complete(workspace.id, {"ok": True, "summary": bound_summary(summary)})
            return ExecutionResult(
                success=True,
                summary=summary,
                output=final.get("output"),
                metrics=metrics,
                metadata=metadata,
            )

        error = str(final.get("error") or "Wrapper reported failure")
        self.workspaces.fail(workspace.id, {"ok": False, "error": error})
        if router.last_failure is not None:
            metadata["errorKind"] = router.last_failure.kind
        if run.stderr:
            metadata["stderr"] = _truncate(run.stderr)
        return ExecutionResult(success=False, summary=FAILED_SUMMARY, error=error, metrics=metrics, metadata=metadata)

    def _tokenize_result(self, raw: ExecutionResult, tokenizer: PIITokenizer) -> ExecutionResult:
        summary = bound_summary(tokenizer.tokenize(raw.summary))
        metadata = dict(raw.metadata)
        for key in ("logs", "stderr"):
            if key in metadata:
                metadata[key] = tokenizer.tokenize_value(metadata[key])
        return ExecutionResult(
            success=raw.success,
            summary=summary,
            output=tokenizer.tokenize_value(raw.output) if raw.success else None,
            error=tokenizer.tokenize(raw.error) if raw.error else None,
            metrics=ExecutionMetrics(
                raw.metrics.execution_time,
                raw.metrics.memory_used,
                estimate_tokens(summary),
            ),
            pii_tokenized=tokenizer.used,
            metadata=metadata,
        )

    def _finish(
        self,
        execution_id: str,
        wrapper: WrapperProgram,
        raw: ExecutionResult,
        tokenizer: PIITokenizer,
    ) -> ExecutionResult:
        result = self._tokenize_result(raw, tokenizer)
        analysis = self.anomalies.analyze(
            execution_id=execution_id,
            wrapper_hash=wrapper.sha,
            success=result.success,
            execution_time=result.metrics.execution_time,
            memory_used=result.metrics.memory_used,
            active_executions=len(self._running),
        )
        if analysis["detected"]:
            result.metadata["anomalies"] = analysis["anomalies"]

        self.audit.log_execution(
            "Execution succeeded" if result.success else f"Execution failed: {result.error}",
            success=result.success,
            executionId=execution_id,
            workspaceId=result.metadata.get("workspaceId"),
            wrapperHash=wrapper.sha,
            backend=result.metadata.get("backend"),
            executionTime=result.metrics.execution_time,
            memoryUsed=result.metrics.memory_used,
            tokensInSummary=result.metrics.tokens_in_summary,
            piiScanned=True,
            piiTokenized=result.pii_tokenized,
            logs=result.metadata.pop("logs", []),
            errorKind=result.metadata.get("errorKind"),
        )
        return result
