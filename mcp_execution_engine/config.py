"""Environment-driven defaults, server registry loading and config validation."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import PolicyViolation
from .models import (
    APPROVAL_MODES,
    BACKENDS,
    NETWORK_MODES,
    NetworkPolicy,
    ResourceLimits,
    SandboxConfig,
)

logger = logging.getLogger(__name__)

ENGINE_NAME = "mcp-execution-engine"
DEFAULT_BACKEND = os.environ.get("MCP_ENGINE_BACKEND", "process")
DEFAULT_TIMEOUT_MS = int(os.environ.get("MCP_ENGINE_TIMEOUT_MS", "30000"))
DEFAULT_MEMORY = os.environ.get("MCP_ENGINE_MEMORY", "512M")
DEFAULT_CPU = float(os.environ.get("MCP_ENGINE_CPU", "1"))
DEFAULT_DISK = os.environ.get("MCP_ENGINE_DISK", "1G")
DEFAULT_RUNTIME = os.environ.get("MCP_ENGINE_RUNTIME")
DEFAULT_IMAGE_PY = os.environ.get("MCP_ENGINE_IMAGE_PY", "python:3.12-alpine")
DEFAULT_IMAGE_TS = os.environ.get("MCP_ENGINE_IMAGE_TS", "node:22-alpine")
DEFAULT_APPROVAL_MODE = os.environ.get("MCP_ENGINE_APPROVAL_MODE", "balanced")
DEFAULT_MAX_CONCURRENT = int(os.environ.get("MCP_ENGINE_MAX_CONCURRENT", "4"))
DEFAULT_CACHE_TTL = float(os.environ.get("MCP_ENGINE_CACHE_TTL", "3600"))
DEFAULT_ANOMALY_WINDOW = int(os.environ.get("MCP_ENGINE_ANOMALY_WINDOW", "10"))
DEFAULT_CLEANUP_INTERVAL = float(os.environ.get("MCP_ENGINE_CLEANUP_INTERVAL", "3600"))
DEFAULT_STATE_DIR = os.environ.get("MCP_ENGINE_STATE_DIR")
DEFAULT_AUDIT_LOG = os.environ.get("MCP_ENGINE_AUDIT_LOG")
DEFAULT_VM_LAUNCHER = os.environ.get("MCP_ENGINE_VM_LAUNCHER")

FORBIDDEN_ENV_PATTERN = re.compile(r"(KEY|SECRET|TOKEN|PASSWORD|CREDENTIAL)", re.IGNORECASE)
_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)([BKMG])B?$", re.IGNORECASE)
_SIZE_UNITS = {"B": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}
MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 300000

CONFIG_DIRS = [
    Path.home() / ".config" / "mcp" / "servers",
    Path.cwd() / "mcp-servers",
]
CONFIG_FILES = [
    Path.cwd() / "mcp.json",
    Path.cwd() / ".mcp.json",
]


@dataclass
class MCPServerInfo:
    """Configuration for a single MCP server binary."""

    name: str
    command: str
    args: List[str]
    env: Dict[str, str]
    cwd: Optional[str] = None
    priority: int = 0


@dataclass
class EngineConfig:
    """Sandbox defaults, policy knobs and component tunables."""

    sandbox: SandboxConfig = field(
        default_factory=lambda: SandboxConfig(
            backend=DEFAULT_BACKEND,
            resource_limits=ResourceLimits(
                cpu=DEFAULT_CPU,
                memory=DEFAULT_MEMORY,
                disk=DEFAULT_DISK,
                timeout_ms=DEFAULT_TIMEOUT_MS,
            ),
            network_policy=NetworkPolicy(),
        )
    )
    max_concurrent_executions: int = DEFAULT_MAX_CONCURRENT
    approval_mode: str = DEFAULT_APPROVAL_MODE
    cache_ttl: float = DEFAULT_CACHE_TTL
    cache_capacity: int = 256
    anomaly_window: int = DEFAULT_ANOMALY_WINDOW
    anomaly_concurrency_threshold: int = 3
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL
    workspace_idle_threshold: float = 24 * 3600
    container_idle_threshold: float = 3600
    reaper_interval: float = 60
    reaper_batch: int = 100
    max_tools: int = 5
    complexity_threshold: int = 50
    startup_timeout: float = 5.0
    request_timeout: float = 30.0
    buffer_cap: int = 10 * 1024 * 1024
    shutdown_grace: float = 5.0
    connect_retries: int = 2
    connect_backoff: float = 0.5
    state_dir: Optional[str] = DEFAULT_STATE_DIR
    audit_log_path: Optional[str] = DEFAULT_AUDIT_LOG
    audit_capacity: int = 1000
    container_runtime: Optional[str] = DEFAULT_RUNTIME
    vm_launcher: Optional[str] = DEFAULT_VM_LAUNCHER
    tools_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        config = cls()
        validate_sandbox_config(config.sandbox)
        return config

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> "EngineConfig":
        """Build a config from a camelCase mapping such as a parsed JSON file."""

        config = cls()
        sandbox_raw = raw.get("sandbox")
        if isinstance(sandbox_raw, dict):
            config.sandbox = config.sandbox.merged(sandbox_raw)
        simple = {
            "maxConcurrentExecutions": ("max_concurrent_executions", int),
            "approvalMode": ("approval_mode", str),
            "cacheTtl": ("cache_ttl", float),
            "anomalyWindow": ("anomaly_window", int),
            "cleanupInterval": ("cleanup_interval", float),
            "maxTools": ("max_tools", int),
            "requestTimeout": ("request_timeout", float),
            "startupTimeout": ("startup_timeout", float),
            "stateDir": ("state_dir", str),
            "auditLog": ("audit_log_path", str),
            "toolsDir": ("tools_dir", str),
        }
        for key, (attr, cast) in simple.items():
            if key in raw and raw[key] is not None:
                setattr(config, attr, cast(raw[key]))  # type: ignore[operator]
        if config.approval_mode not in APPROVAL_MODES:
            raise PolicyViolation(f"Unknown approval mode: {config.approval_mode}")
        if config.max_concurrent_executions < 1:
            raise PolicyViolation("maxConcurrentExecutions must be at least 1")
        validate_sandbox_config(config.sandbox)
        return config

    def state_path(self) -> Path:
        if self.state_dir:
            base = Path(self.state_dir).expanduser()
        else:
            base = Path.cwd() / ".mcp-engine"
        return base.resolve()


def parse_size(value: str) -> int:
    """Convert ``512M`` / ``1g`` / ``64KB`` style sizes into bytes."""

    match = _SIZE_PATTERN.match(str(value).strip())
    if not match:
        raise PolicyViolation(f"Invalid size value: {value!r}")
    amount, unit = match.groups()
    return int(float(amount) * _SIZE_UNITS[unit.upper()])


def format_size(num_bytes: int) -> str:
    for unit in ("G", "M", "K"):
        scale = _SIZE_UNITS[unit]
        if num_bytes >= scale:
            return f"{num_bytes / scale:.2f}{unit}"
    return f"{num_bytes}B"


def is_forbidden_env_name(name: str) -> bool:
    return bool(FORBIDDEN_ENV_PATTERN.search(name))


def validate_sandbox_config(config: SandboxConfig) -> None:
    """Raise :class:`PolicyViolation` when a sandbox configuration is unusable."""

    if config.backend not in BACKENDS:
        raise PolicyViolation(f"Unknown sandbox backend: {config.backend}")
    limits = config.resource_limits
    if not 0.1 <= float(limits.cpu) <= 8:
        raise PolicyViolation(f"CPU limit must be between 0.1 and 8, got {limits.cpu}")
    if parse_size(limits.memory) <= 0:
        raise PolicyViolation("Memory limit must be positive")
    if parse_size(limits.disk) <= 0:
        raise PolicyViolation("Disk quota must be positive")
    if not MIN_TIMEOUT_MS <= int(limits.timeout_ms) <= MAX_TIMEOUT_MS:
        raise PolicyViolation(f"Timeout must be between 1s and 5min, got {limits.timeout_ms}ms")
    if config.network_policy.mode not in NETWORK_MODES:
        raise PolicyViolation(f"Unknown network policy mode: {config.network_policy.mode}")
    forbidden = [name for name in config.allowed_env_vars if is_forbidden_env_name(name)]
    if forbidden:
        raise PolicyViolation(
            "allowedEnvVars contains secret-like names: " + ", ".join(sorted(forbidden))
        )


def parse_server_config(name: str, raw: object) -> Optional[MCPServerInfo]:
    if not isinstance(raw, dict):
        return None
    if "." in name or not name.strip():
        logger.warning("Ignoring MCP server with invalid name %r", name)
        return None
    command = raw.get("command")
    if not isinstance(command, str):
        return None
    args = raw.get("args", [])
    if not isinstance(args, list):
        args = []
    env = raw.get("env", {})
    if not isinstance(env, dict):
        env = {}
    cwd_raw = raw.get("cwd")
    cwd_str: Optional[str] = None
    if isinstance(cwd_raw, (str, Path)):
        cwd_str = str(cwd_raw)
    priority = raw.get("priority", 0)
    if not isinstance(priority, int) or isinstance(priority, bool):
        priority = 0
    return MCPServerInfo(
        name=name,
        command=command,
        args=[str(arg) for arg in args],
        env={str(k): str(v) for k, v in env.items()},
        cwd=cwd_str,
        priority=priority,
    )


def load_registry(path: Path) -> Dict[str, MCPServerInfo]:
    """Read one ``{"mcpServers": {...}}`` JSON file."""

    with path.open() as fh:
        config = json.load(fh)
    servers: Dict[str, MCPServerInfo] = {}
    entries = config.get("mcpServers", {}) if isinstance(config, dict) else {}
    if not isinstance(entries, dict):
        return servers
    for name, value in entries.items():
        info = parse_server_config(str(name), value)
        if info:
            servers[info.name] = info
        else:
            logger.warning("Skipping malformed MCP server entry %s in %s", name, path)
    return servers


def discover_registry(paths: Optional[Sequence[Path]] = None) -> Dict[str, MCPServerInfo]:
    """Merge registries from explicit paths or the standard locations.

    The first file that defines a server name wins.
    """

    candidates: List[Path] = []
    if paths:
        candidates.extend(paths)
    else:
        candidates.extend(CONFIG_FILES)
        for config_dir in CONFIG_DIRS:
            if config_dir.is_dir():
                candidates.extend(sorted(config_dir.glob("*.json")))

    servers: Dict[str, MCPServerInfo] = {}
    for config_path in candidates:
        if not config_path.exists():
            continue
        try:
            found = load_registry(config_path)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read %s: %s", config_path, exc)
            continue
        for name, info in found.items():
            if name in servers:
                continue
            servers[name] = info
            logger.info("Found MCP server %s in %s", name, config_path)

    logger.info("Discovered %d MCP servers", len(servers))
    return servers
