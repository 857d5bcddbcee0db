import json

import pytest

from mcp_execution_engine.config import (
    EngineConfig,
    discover_registry,
    format_size,
    load_registry,
    parse_server_config,
    parse_size,
    validate_sandbox_config,
)
from mcp_execution_engine.errors import PolicyViolation
from mcp_execution_engine.models import NetworkPolicy, ResourceLimits, SandboxConfig


@pytest.mark.parametrize(
    "text, expected",
    [("512M", 512 * 1024 ** 2), ("1g", 1024 ** 3), ("64KB", 64 * 1024), ("100B", 100), ("1.5K", 1536)],
)
def test_parse_size(text, expected):
    assert parse_size(text) == expected


def test_parse_size_rejects_garbage():
    with pytest.raises(PolicyViolation):
        parse_size("lots")


def test_format_size():
    assert format_size(512 * 1024 ** 2) == "512.00M"
    assert format_size(10) == "10B"


@pytest.mark.parametrize(
    "config",
    [
        SandboxConfig(backend="chroot"),
        SandboxConfig(resource_limits=ResourceLimits(cpu=0.05)),
        SandboxConfig(resource_limits=ResourceLimits(cpu=9)),
        SandboxConfig(resource_limits=ResourceLimits(memory="0M")),
        SandboxConfig(resource_limits=ResourceLimits(timeout_ms=500)),
        SandboxConfig(resource_limits=ResourceLimits(timeout_ms=300001)),
        SandboxConfig(network_policy=NetworkPolicy(mode="open")),
        SandboxConfig(allowed_env_vars=("GITHUB_TOKEN",)),
    ],
)
def test_invalid_sandbox_configs(config):
    with pytest.raises(PolicyViolation):
        validate_sandbox_config(config)


def test_default_config_is_valid():
    validate_sandbox_config(EngineConfig().sandbox)


def test_merged_accepts_flat_and_nested_overrides():
    base = SandboxConfig()
    merged = base.merged(
        {
            "backend": "container",
            "timeoutMs": 5000,
            "resourceLimits": {"memory": "256M"},
            "networkPolicy": {"mode": "whitelist", "entries": ["api.example.com"]},
            "allowedEnvVars": ["LANG"],
        }
    )
    assert merged.backend == "container"
    assert merged.resource_limits.timeout_ms == 5000
    assert merged.resource_limits.memory == "256M"
    assert merged.resource_limits.cpu == base.resource_limits.cpu
    assert merged.network_policy == NetworkPolicy("whitelist", ("api.example.com",))
    assert merged.allowed_env_vars == ("LANG",)
    assert base.merged(None) is base


def test_from_mapping():
    config = EngineConfig.from_mapping(
        {"approvalMode": "strict", "maxConcurrentExecutions": 2, "sandbox": {"timeoutMs": 2000}, "toolsDir": "/srv/tools"}
    )
    assert config.approval_mode == "strict"
    assert config.max_concurrent_executions == 2
    assert config.sandbox.resource_limits.timeout_ms == 2000
    assert config.tools_dir == "/srv/tools"
    with pytest.raises(PolicyViolation):
        EngineConfig.from_mapping({"approvalMode": "lenient"})
    with pytest.raises(PolicyViolation):
        EngineConfig.from_mapping({"maxConcurrentExecutions": 0})


def test_state_path(tmp_path):
    assert EngineConfig(state_dir=str(tmp_path)).state_path() == tmp_path.resolve()


def test_parse_server_config():
    info = parse_server_config("fs", {"command": "node", "args": ["srv.js", 3], "env": {"A": 1}, "priority": 5})
    assert info is not None
    assert info.args == ["srv.js", "3"]
    assert info.env == {"A": "1"}
    assert info.priority == 5
    assert parse_server_config("bad.name", {"command": "node"}) is None
    assert parse_server_config("fs", {"args": []}) is None
    assert parse_server_config("fs", "node") is None
    assert parse_server_config("fs", {"command": "node", "priority": True}).priority == 0


def test_load_registry_skips_malformed(tmp_path):
    path = tmp_path / "mcp.json"
    path.write_text(json.dumps({"mcpServers": {"good": {"command": "node"}, "bad": {"args": []}}}))
    assert list(load_registry(path)) == ["good"]


def test_discover_registry_first_definition_wins(tmp_path):
    first = tmp_path / "a.json"
    second = tmp_path / "b.json"
    broken = tmp_path / "c.json"
    first.write_text(json.dumps({"mcpServers": {"fs": {"command": "first"}}}))
    second.write_text(json.dumps({"mcpServers": {"fs": {"command": "second"}, "crm": {"command": "crm"}}}))
    broken.write_text("{oops")
    servers = discover_registry([first, broken, second, tmp_path / "missing.json"])
    assert servers["fs"].command == "first"
    assert sorted(servers) == ["crm", "fs"]
