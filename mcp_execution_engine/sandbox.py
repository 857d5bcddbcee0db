"""Isolation backends that run generated wrappers with enforced limits."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import resource
import shlex
import shutil
import signal
import sys
import time
from asyncio import subprocess as aio_subprocess
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .config import (
    DEFAULT_IMAGE_PY,
    DEFAULT_IMAGE_TS,
    EngineConfig,
    is_forbidden_env_name,
    parse_size,
    validate_sandbox_config,
)
from .errors import (
    PolicyViolation,
    SandboxCrash,
    SandboxError,
    SandboxResourceExceeded,
    SandboxStartupError,
    SandboxTimeout,
)
from .models import SandboxConfig, Workspace, WrapperProgram
from .transport import network_env, transport_files

logger = logging.getLogger(__name__)

CONTAINER_USER = os.environ.get("MCP_ENGINE_CONTAINER_USER", "65534:65534")
DEFAULT_PIDS = int(os.environ.get("MCP_ENGINE_PIDS", "128"))
KILL_GRACE = 5.0
OUTPUT_CAP = 10 * 1024 * 1024
STDERR_SENTINEL = "\n...[stderr truncated]"
SANDBOX_LABEL = "mcp.sandbox"
_RESOURCE_SIGNALS = {signal.SIGXCPU, signal.SIGXFSZ}

_PODMAN_PULL_PREFIXES: tuple[str, ...] = (
    'Resolved "',
    "Trying to pull",
    "Getting image source signatures",
    "Copying blob",
    "Copying config",
    "Extracting",
    "Writing manifest",
    "Storing signatures",
)

RpcHandler = Callable[[Dict[str, object]], Awaitable[Dict[str, object]]]
WorkspaceLookup = Callable[[str], Optional[Workspace]]


@dataclass
class SandboxRun:
    """What a sandbox invocation produced."""

    backend: str
    exit_code: int
    final: Optional[Dict[str, object]]
    log_lines: List[str] = field(default_factory=list)
    stderr: str = ""
    execution_time: float = 0.0
    memory_used: int = 0

    @property
    def ok(self) -> bool:
        return bool(self.final and self.final.get("ok") is True)


class SandboxBackend(Protocol):
    name: str

    async def execute(
        self,
        workspace: Workspace,
        script: Path,
        dialect: str,
        config: SandboxConfig,
        rpc_handler: RpcHandler,
    ) -> SandboxRun:  # pragma: no cover - typing only
        ...


def filter_environment(allowed: Sequence[str], source: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Keep host variables that are allowed and not secret-like."""

    source = os.environ if source is None else source
    env: Dict[str, str] = {}
    for name in allowed:
        if is_forbidden_env_name(name):
            logger.warning("Dropping secret-like environment variable %s from sandbox", name)
            continue
        if name in source:
            env[name] = source[name]
    return env


def resolve_in_workspace(root: Path, relative: str) -> Path:
    """Resolve ``relative`` under ``root``; raise PolicyViolation if it escapes."""

    base = root.resolve()
    candidate = (base / relative).resolve()
    if candidate != base and base not in candidate.parents:
        raise PolicyViolation(f"Path {relative!r} escapes workspace {base}")
    return candidate


def directory_size(path: Path) -> int:
    total = 0
    for entry in path.rglob("*"):
        with suppress(OSError):
            if entry.is_file() and not entry.is_symlink():
                total += entry.stat().st_size
    return total


def detect_runtime(preferred: Optional[str] = None) -> Optional[str]:
    """Return the first available container runtime, or None."""

    candidates: List[str] = []
    if preferred:
        candidates.append(preferred)
    candidates.extend(name for name in ("podman", "docker") if name not in candidates)
    for candidate in candidates:
        if shutil.which(candidate):
            return candidate
    return None


def _children_maxrss() -> int:
    peak = resource.getrusage(resource.RUSAGE_CHILDREN).ru_maxrss
    return peak if sys.platform == "darwin" else peak * 1024


class _StreamCollector:
    """Routes sandbox stdout: RPC requests, metrics, the result line and logs."""

    def __init__(self, rpc_handler: RpcHandler) -> None:
        self.rpc_handler = rpc_handler
        self.final: Optional[Dict[str, object]] = None
        self.log_lines: List[str] = []
        self.memory_used = 0
        self.stderr = bytearray()
        self.stderr_truncated = False
        self.overflow = False

    async def read_stdout(self, process: aio_subprocess.Process) -> None:
        if not process.stdout:
            return
        while True:
            try:
                line = await process.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError):
                self.overflow = True
                with suppress(ProcessLookupError):
                    process.kill()
                break
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\n")
            try:
                message = json.loads(text)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                if text.strip():
                    self.log_lines.append(text)
                continue

            msg_type = message.get("type")
            if msg_type == "rpc_request":
                await self._answer(process, message)
            elif msg_type == "metrics":
                maxrss = message.get("maxrss")
                if isinstance(maxrss, int):
                    self.memory_used = max(self.memory_used, maxrss)
            elif "ok" in message:
                self.final = message
            else:
                self.log_lines.append(text)

    async def _answer(self, process: aio_subprocess.Process, message: Dict[str, object]) -> None:
        if process.stdin is None:
            return
        payload = message.get("payload", {})
        try:
            response = await self.rpc_handler(payload if isinstance(payload, dict) else {})
        except Exception as exc:
            logger.debug("RPC handler failed", exc_info=True)
            response = {"success": False, "error": str(exc), "kind": "InternalError"}
        reply: Dict[str, object] = {
            "type": "rpc_response",
            "id": message.get("id"),
            "success": bool(response.get("success", False)),
            "payload": response,
        }
        if not reply["success"]:
            reply["error"] = response.get("error", "RPC error")
            reply["kind"] = response.get("kind", "ToolError")
        try:
            data = json.dumps(reply, separators=(",", ":"), default=str).encode("utf-8") + b"\n"
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Sandbox exited before the RPC response was delivered")

    async def read_stderr(self, process: aio_subprocess.Process) -> None:
        if not process.stderr:
            return
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            room = OUTPUT_CAP - len(self.stderr)
            if room > 0:
                self.stderr.extend(chunk[:room])
            if len(chunk) > room:
                self.stderr_truncated = True

    def stderr_text(self) -> str:
        text = self.stderr.decode("utf-8", errors="replace")
        return text + STDERR_SENTINEL if self.stderr_truncated else text


async def _terminate(process: aio_subprocess.Process, grace: float) -> None:
    """SIGTERM the process group, then SIGKILL after ``grace`` seconds."""

    if process.returncode is not None:
        return
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
        await process.wait()


async def _drive(
    cmd: Sequence[str],
    *,
    backend: str,
    cwd: Path,
    env: Dict[str, str],
    timeout: float,
    rpc_handler: RpcHandler,
    preexec_fn: Optional[Callable[[], None]] = None,
    on_kill: Optional[Callable[[], Awaitable[None]]] = None,
    grace: float = KILL_GRACE,
) -> SandboxRun:
    """Run ``cmd`` and service its stdout protocol until it exits or times out."""

    loop = asyncio.get_running_loop()
    started = loop.time()
    rss_before = _children_maxrss()
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=aio_subprocess.PIPE,
            stdout=aio_subprocess.PIPE,
            stderr=aio_subprocess.PIPE,
            cwd=str(cwd),
            env=env,
            preexec_fn=preexec_fn,
            start_new_session=True,
            limit=OUTPUT_CAP,
        )
    except OSError as exc:
        raise SandboxStartupError(f"Failed to start {backend} sandbox: {exc}") from exc

    collector = _StreamCollector(rpc_handler)
    stdout_task = asyncio.create_task(collector.read_stdout(process))
    stderr_task = asyncio.create_task(collector.read_stderr(process))

    def _elapsed() -> float:
        return round((loop.time() - started) * 1000, 3)

    def _memory() -> int:
        if collector.memory_used:
            return collector.memory_used
        return max(0, _children_maxrss() - rss_before) or _children_maxrss()

    async def _stop() -> None:
        if on_kill is not None:
            with suppress(Exception):
                await on_kill()
        await _terminate(process, grace)
        for task in (stdout_task, stderr_task):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    try:
        exit_code = await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        await _stop()
        raise SandboxTimeout(
            f"Execution timed out after {timeout:g}s",
            stdout="\n".join(collector.log_lines),
            stderr=collector.stderr_text(),
            execution_time=_elapsed(),
            memory_used=_memory(),
        ) from exc
    except asyncio.CancelledError:
        await _stop()
        raise
    finally:
        if process.stdin:
            process.stdin.close()
            with suppress(Exception):
                await process.stdin.wait_closed()

    await stdout_task
    await stderr_task

    run = SandboxRun(
        backend=backend,
        exit_code=exit_code,
        final=collector.final,
        log_lines=collector.log_lines,
        stderr=collector.stderr_text(),
        execution_time=_elapsed(),
        memory_used=_memory(),
    )
    if collector.overflow:
        raise SandboxResourceExceeded(
            "Sandbox output line exceeded the capture buffer",
            stderr=run.stderr,
            execution_time=run.execution_time,
            memory_used=run.memory_used,
        )
    if exit_code < 0 and -exit_code in _RESOURCE_SIGNALS:
        raise SandboxResourceExceeded(
            f"Sandbox killed by {signal.Signals(-exit_code).name}",
            stderr=run.stderr,
            execution_time=run.execution_time,
            memory_used=run.memory_used,
        )
    return run


class ProcessSandbox:
    """Run wrappers as child processes under OS resource limits."""

    name = "process"

    def __init__(self, *, grace: float = KILL_GRACE) -> None:
        self.grace = grace

    def _command(self, script: Path, dialect: str, memory: int) -> List[str]:
        if dialect == "ts":
            node = shutil.which("node")
            if not node:
                raise SandboxStartupError("Node.js is required for the ts dialect but was not found")
            heap_mb = max(16, memory // (1024 * 1024))
            return [node, "--experimental-strip-types", "--no-warnings", f"--max-old-space-size={heap_mb}", script.name]
        return [sys.executable, "-E", "-s", "-B", "-u", script.name]

    @staticmethod
    def _limits(config: SandboxConfig, dialect: str) -> Callable[[], None]:
        limits = config.resource_limits
        memory = parse_size(limits.memory)
        disk = parse_size(limits.disk)
        cpu_seconds = max(1, math.ceil(limits.timeout_ms / 1000 * float(limits.cpu)))

        def apply() -> None:
            # V8 reserves far more address space than it uses; node is capped via its heap flag.
            if dialect != "ts":
                resource.setrlimit(resource.RLIMIT_AS, (memory, memory))
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
            resource.setrlimit(resource.RLIMIT_FSIZE, (disk, disk))

        return apply

    async def execute(
        self,
        workspace: Workspace,
        script: Path,
        dialect: str,
        config: SandboxConfig,
        rpc_handler: RpcHandler,
    ) -> SandboxRun:
        root = Path(workspace.path)
        memory = parse_size(config.resource_limits.memory)
        env = filter_environment(config.allowed_env_vars)
        env.update(network_env(config.network_policy))
        env["HOME"] = str(root)
        return await _drive(
            self._command(script, dialect, memory),
            backend=self.name,
            cwd=root,
            env=env,
            timeout=config.resource_limits.timeout_ms / 1000,
            rpc_handler=rpc_handler,
            preexec_fn=self._limits(config, dialect),
            grace=self.grace,
        )


class VmSandbox(ProcessSandbox):
    """Run wrappers through an external micro-VM launcher.

    The launcher command (``MCP_ENGINE_VM_LAUNCHER``) receives ``{workspace}``,
    ``{memory}`` and ``{cpus}`` placeholders and the runtime command after ``--``.
    """

    name = "vm"

    def __init__(self, launcher: Optional[str], *, grace: float = KILL_GRACE) -> None:
        super().__init__(grace=grace)
        self.launcher = launcher

    async def execute(
        self,
        workspace: Workspace,
        script: Path,
        dialect: str,
        config: SandboxConfig,
        rpc_handler: RpcHandler,
    ) -> SandboxRun:
        if not self.launcher:
            raise SandboxStartupError("The vm backend requires MCP_ENGINE_VM_LAUNCHER to be configured")
        root = Path(workspace.path)
        limits = config.resource_limits
        launcher = [
            part.format(workspace=str(root), memory=limits.memory, cpus=limits.cpu)
            for part in shlex.split(self.launcher)
        ]
        if not shutil.which(launcher[0]):
            raise SandboxStartupError(f"VM launcher {launcher[0]!r} was not found")
        runtime = "node" if dialect == "ts" else "python3"
        inner = [runtime, script.name] if dialect == "ts" else [runtime, "-E", "-s", "-B", "-u", script.name]
        env = filter_environment(config.allowed_env_vars)
        env.update(network_env(config.network_policy))
        return await _drive(
            [*launcher, "--", *inner],
            backend=self.name,
            cwd=root,
            env=env,
            timeout=limits.timeout_ms / 1000,
            rpc_handler=rpc_handler,
            grace=self.grace,
        )


class ContainerSandbox:
    """Run wrappers in a locked-down rootless container."""

    name = "container"

    def __init__(
        self,
        *,
        runtime: Optional[str] = None,
        instance_id: str = "",
        image_py: str = DEFAULT_IMAGE_PY,
        image_ts: str = DEFAULT_IMAGE_TS,
        pids_limit: int = DEFAULT_PIDS,
        grace: float = KILL_GRACE,
    ) -> None:
        self.runtime = detect_runtime(runtime)
        self.instance_id = instance_id
        self.image_py = image_py
        self.image_ts = image_ts
        self.pids_limit = pids_limit
        self.grace = grace
        self._runtime_checked = False
        self._runtime_check_lock = asyncio.Lock()

    @property
    def available(self) -> bool:
        return self.runtime is not None

    def _require_runtime(self) -> str:
        if not self.runtime:
            raise SandboxStartupError(
                "No container runtime found. Install podman or rootless docker and set "
                "MCP_ENGINE_RUNTIME if multiple runtimes are available."
            )
        return self.runtime

    async def run_runtime_command(self, *args: str) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            self._require_runtime(),
            *args,
            stdout=aio_subprocess.PIPE,
            stderr=aio_subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        code = await process.wait()
        return code, stdout_bytes.decode(errors="replace"), stderr_bytes.decode(errors="replace")

    async def _ensure_runtime_ready(self) -> None:
        async with self._runtime_check_lock:
            if self._runtime_checked:
                return
            code, stdout_text, stderr_text = await self.run_runtime_command("info", "--format", "{{json .}}")
            if code != 0:
                raise SandboxStartupError("Container runtime is unavailable", stdout=stdout_text, stderr=stderr_text)
            self._runtime_checked = True

    def container_name(self, workspace: Workspace) -> str:
        return f"mcp-sandbox-{workspace.id}"

    def _network_args(self, config: SandboxConfig) -> List[str]:
        policy = config.network_policy
        if policy.mode != "blacklist":
            return ["--network", "none"]
        args: List[str] = []
        for entry in policy.entries:
            args.extend(["--add-host", f"{entry}:0.0.0.0"])
        return args

    def base_cmd(self, workspace: Workspace, dialect: str, config: SandboxConfig) -> List[str]:
        limits = config.resource_limits
        cmd: List[str] = [
            self._require_runtime(),
            "run",
            "--interactive",
            "--name",
            self.container_name(workspace),
            "--label",
            f"{SANDBOX_LABEL}=true",
            "--label",
            f"{SANDBOX_LABEL}.workspace={workspace.id}",
            "--label",
            f"{SANDBOX_LABEL}.owner={self.instance_id}",
            "--label",
            f"{SANDBOX_LABEL}.language={dialect}",
            "--label",
            f"{SANDBOX_LABEL}.created={int(time.time())}",
            *self._network_args(config),
            "--read-only",
            "--pids-limit",
            str(self.pids_limit),
            "--memory",
            limits.memory.lower(),
            "--cpus",
            str(limits.cpu),
            "--tmpfs",
            "/tmp:rw,noexec,nosuid,nodev,size=64m",
            "--volume",
            f"{workspace.path}:/workspace:rw",
            "--workdir",
            "/workspace",
            "--env",
            "HOME=/workspace",
            "--env",
            "PYTHONUNBUFFERED=1",
            "--env",
            "PYTHONIOENCODING=utf-8",
            "--env",
            "PYTHONDONTWRITEBYTECODE=1",
            "--security-opt",
            "no-new-privileges",
            "--cap-drop",
            "ALL",
            "--user",
            CONTAINER_USER,
        ]
        for key, value in {**filter_environment(config.allowed_env_vars), **network_env(config.network_policy)}.items():
            cmd.extend(["--env", f"{key}={value}"])
        return cmd

    async def execute(
        self,
        workspace: Workspace,
        script: Path,
        dialect: str,
        config: SandboxConfig,
        rpc_handler: RpcHandler,
    ) -> SandboxRun:
        await self._ensure_runtime_ready()
        name = self.container_name(workspace)
        cmd = self.base_cmd(workspace, dialect, config)
        if dialect == "ts":
            heap_mb = max(16, parse_size(config.resource_limits.memory) // (1024 * 1024))
            cmd.extend([self.image_ts, "node", "--experimental-strip-types", "--no-warnings", f"--max-old-space-size={heap_mb}", script.name])
        else:
            cmd.extend([self.image_py, "python3", "-B", "-u", script.name])

        async def _kill_container() -> None:
            await self.run_runtime_command("kill", name)

        run = await _drive(
            cmd,
            backend=self.name,
            cwd=Path(workspace.path),
            env=dict(os.environ),
            timeout=config.resource_limits.timeout_ms / 1000,
            rpc_handler=rpc_handler,
            on_kill=_kill_container,
            grace=self.grace,
        )
        if run.exit_code == 137 and await self._oom_killed(name):
            raise SandboxResourceExceeded(
                "Container exceeded its memory limit",
                stderr=run.stderr,
                execution_time=run.execution_time,
                memory_used=parse_size(config.resource_limits.memory),
            )
        if run.exit_code == 0:
            run.stderr = self.filter_runtime_stderr(run.stderr)
        return run

    async def _oom_killed(self, name: str) -> bool:
        code, stdout_text, _ = await self.run_runtime_command("inspect", "--format", "{{.State.OOMKilled}}", name)
        return code == 0 and stdout_text.strip().lower() == "true"

    def filter_runtime_stderr(self, text: str) -> str:
        """Strip known runtime pull chatter so successful runs stay quiet."""

        if not text or not self.runtime or "podman" not in os.path.basename(self.runtime).lower():
            return text
        filtered_lines: List[str] = []
        for line in text.splitlines():
            stripped = line.strip()
            if stripped and any(stripped.startswith(prefix) for prefix in _PODMAN_PULL_PREFIXES):
                continue
            filtered_lines.append(line)
        return "\n".join(filtered_lines).strip("\n")

    async def list_containers(self) -> List[Dict[str, str]]:
        template = (
            '{{.ID}}\t{{.Label "' + SANDBOX_LABEL + '.owner"}}\t{{.Label "' + SANDBOX_LABEL + '.workspace"}}'
        )
        code, stdout_text, stderr_text = await self.run_runtime_command(
            "ps", "-a", "--filter", f"label={SANDBOX_LABEL}=true", "--format", template
        )
        if code != 0:
            raise SandboxError("Failed to list sandbox containers", stderr=stderr_text)
        containers: List[Dict[str, str]] = []
        for line in stdout_text.splitlines():
            parts = line.split("\t")
            if len(parts) == 3 and parts[0]:
                containers.append({"id": parts[0], "owner": parts[1], "workspace": parts[2]})
        return containers

    async def remove_container(self, container: str) -> bool:
        code, _, stderr_text = await self.run_runtime_command("rm", "-f", container)
        if code != 0:
            logger.debug("Failed to remove container %s: %s", container, stderr_text.strip())
        return code == 0


class ContainerReaper:
    """Periodically remove finished and orphaned sandbox containers."""

    def __init__(
        self,
        sandbox: ContainerSandbox,
        workspace_lookup: WorkspaceLookup,
        *,
        idle_threshold: float = 3600,
        interval: float = 60,
        batch: int = 100,
    ) -> None:
        self.sandbox = sandbox
        self.workspace_lookup = workspace_lookup
        self.idle_threshold = idle_threshold
        self.interval = interval
        self.batch = batch
        self.removed_total = 0
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[None]] = None

    def _should_remove(self, container: Dict[str, str], now: float) -> bool:
        if container["owner"] != self.sandbox.instance_id:
            return True
        workspace = self.workspace_lookup(container["workspace"])
        if workspace is None:
            return True
        if workspace.status not in ("completed", "failed"):
            return False
        finished = workspace.finished_at or workspace.last_accessed_at
        return now - finished > self.idle_threshold

    async def run_once(self) -> int:
        """One reaping pass; returns the number of removed containers."""

        if self._lock.locked():
            logger.debug("Container reaper already running; skipping")
            return 0
        async with self._lock:
            if not self.sandbox.available:
                return 0
            now = time.time()
            removed = 0
            for container in await self.sandbox.list_containers():
                if removed >= self.batch:
                    break
                if self._should_remove(container, now) and await self.sandbox.remove_container(container["id"]):
                    removed += 1
            if removed:
                logger.info("Reaped %d sandbox container(s)", removed)
            self.removed_total += removed
            return removed

    def start(self) -> None:
        if self._task is not None:
            return

        async def _loop() -> None:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.warning("Container reaper pass failed", exc_info=True)

        self._task = asyncio.create_task(_loop())

    async def stop(self) -> None:
        if not self._task:
            return
        task = self._task
        self._task = None
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


class SandboxManager:
    """Pick a backend, materialise the wrapper and run it."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        instance_id: str = "",
        backends: Optional[Dict[str, SandboxBackend]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.instance_id = instance_id
        if backends is None:
            container = ContainerSandbox(runtime=self.config.container_runtime, instance_id=instance_id)
            backends = {
                "process": ProcessSandbox(),
                "container": container,
                "vm": VmSandbox(self.config.vm_launcher),
            }
        self.backends: Dict[str, SandboxBackend] = backends
        self._active: Dict[str, "asyncio.Task[SandboxRun]"] = {}

    @property
    def container(self) -> Optional[ContainerSandbox]:
        backend = self.backends.get("container")
        return backend if isinstance(backend, ContainerSandbox) else None

    def container_available(self) -> bool:
        container = self.container
        return bool(container and container.available)

    def recommend_backend(self, risk_level: str, preference: Optional[str] = None) -> str:
        """Explicit preference wins; high or critical risk prefers a container."""

        if preference:
            return preference
        if risk_level in ("high", "critical") and self.container_available():
            return "container"
        return self.config.sandbox.backend

    async def run(
        self,
        wrapper: WrapperProgram,
        workspace: Workspace,
        config: SandboxConfig,
        rpc_handler: RpcHandler,
    ) -> SandboxRun:
        validate_sandbox_config(config)
        backend = self.backends.get(config.backend)
        if backend is None:
            raise SandboxStartupError(f"Sandbox backend {config.backend!r} is not available")

        root = Path(workspace.path)
        suffix = "ts" if wrapper.dialect == "ts" else "py"
        script = resolve_in_workspace(root, f"wrapper.{suffix}")
        script.write_text(wrapper.source, encoding="utf-8")
        for filename, source in transport_files(wrapper.dialect).items():
            resolve_in_workspace(root, filename).write_text(source, encoding="utf-8")

        logger.debug("Running workspace %s on the %s backend", workspace.id, config.backend)
        task = asyncio.ensure_future(backend.execute(workspace, script, wrapper.dialect, config, rpc_handler))
        self._active[workspace.id] = task
        try:
            run = await task
        finally:
            self._active.pop(workspace.id, None)

        quota = parse_size(config.resource_limits.disk)
        used = directory_size(root)
        if used > quota:
            raise SandboxResourceExceeded(
                f"Workspace used {used} bytes, over the {config.resource_limits.disk} disk quota",
                stderr=run.stderr,
                execution_time=run.execution_time,
                memory_used=run.memory_used,
            )
        if run.final is None:
            raise SandboxCrash(
                f"Sandbox exited with code {run.exit_code} without a result line",
                stdout="\n".join(run.log_lines),
                stderr=run.stderr,
                execution_time=run.execution_time,
                memory_used=run.memory_used,
            )
        error = run.final.get("error")
        if not run.ok and isinstance(error, str) and error.startswith("MemoryError"):
            raise SandboxResourceExceeded(
                f"Sandbox exceeded its {config.resource_limits.memory} memory limit",
                stderr=run.stderr,
                execution_time=run.execution_time,
                memory_used=parse_size(config.resource_limits.memory),
            )
        return run

    @property
    def active(self) -> List[str]:
        return list(self._active)

    async def emergency_cleanup(self) -> None:
        """Cancel every live sandbox; their processes are killed on cancellation."""

        tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError, SandboxError):
                await task
