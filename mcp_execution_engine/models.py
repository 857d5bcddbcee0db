"""Data records shared across the execution engine."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

SEVERITIES = ("low", "medium", "high", "critical")
SEVERITY_RANK = {name: index for index, name in enumerate(SEVERITIES)}

DIALECTS = ("py", "ts")
BACKENDS = ("process", "container", "vm")
NETWORK_MODES = ("none", "whitelist", "blacklist")
APPROVAL_MODES = ("permissive", "balanced", "strict")
WORKSPACE_STATUSES = ("pending", "running", "completed", "failed")
AUDIT_TYPES = ("execution", "security", "discovery", "error")
AUDIT_SEVERITIES = ("info", "warning", "error", "critical")


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class ToolParameter:
    name: str
    type: str = "string"
    required: bool = True
    default: Any = None
    description: str = ""


@dataclass
class ToolExample:
    input: Dict[str, Any]
    output: Any = None
    description: str = ""


@dataclass
class ToolDescriptor:
    """Typed record describing one callable operation on an MCP server."""

    server: str
    name: str
    description: str = ""
    parameters: List[ToolParameter] = field(default_factory=list)
    returns: str = "any"
    examples: List[ToolExample] = field(default_factory=list)
    category: Optional[str] = None
    keywords: List[str] = field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return f"{self.server}.{self.name}"

    @property
    def sort_key(self) -> str:
        return f"{self.server}/{self.name}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "server": self.server,
            "name": self.name,
            "description": self.description,
            "parameters": [
                {
                    "name": param.name,
                    "type": param.type,
                    "required": param.required,
                    "default": param.default,
                }
                for param in self.parameters
            ],
            "returns": self.returns,
            "category": self.category,
        }


@dataclass
class WrapperProgram:
    """Generated source plus the descriptors it binds."""

    source: str
    dialect: str
    estimated_tokens: int
    descriptors: List[ToolDescriptor]
    entry_tool: str = ""
    arguments: Dict[str, Any] = field(default_factory=dict)

    @property
    def sha(self) -> str:
        return sha256_text(self.source)

    @property
    def servers(self) -> List[str]:
        return sorted({descriptor.server for descriptor in self.descriptors})


@dataclass(frozen=True)
class SecurityIssue:
    severity: str
    type: str
    description: str
    line: Optional[int] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "severity": self.severity,
            "type": self.type,
            "description": self.description,
        }
        if self.line is not None:
            payload["line"] = self.line
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


@dataclass(frozen=True)
class ValidationReport:
    is_secure: bool
    risk_score: int
    issues: Sequence[SecurityIssue]
    requires_approval: bool

    @property
    def highest_severity(self) -> Optional[str]:
        if not self.issues:
            return None
        return max((issue.severity for issue in self.issues), key=SEVERITY_RANK.__getitem__)

    def to_dict(self) -> Dict[str, object]:
        return {
            "isSecure": self.is_secure,
            "riskScore": self.risk_score,
            "issues": [issue.to_dict() for issue in self.issues],
            "requiresApproval": self.requires_approval,
        }


@dataclass(frozen=True)
class RiskAssessment:
    risk_score: int
    risk_level: str
    contributing_factors: Sequence[str]
    recommendations: Sequence[str] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "riskScore": self.risk_score,
            "riskLevel": self.risk_level,
            "contributingFactors": list(self.contributing_factors),
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class ApprovalImpact:
    files_touched: Sequence[str]
    network_reached: Sequence[str]
    destructive_ops: Sequence[str]
    reversible: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "filesTouched": list(self.files_touched),
            "networkReached": list(self.network_reached),
            "destructiveOps": list(self.destructive_ops),
            "reversible": self.reversible,
        }


@dataclass
class ApprovalRequest:
    id: str
    created_at: float
    wrapper_hash: str
    risk_assessment: RiskAssessment
    summary: str
    impact: ApprovalImpact
    status: str = "pending"
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "id": self.id,
            "createdAt": self.created_at,
            "wrapperHash": self.wrapper_hash,
            "riskAssessment": self.risk_assessment.to_dict(),
            "summary": self.summary,
            "impact": self.impact.to_dict(),
            "status": self.status,
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True)
class ResourceLimits:
    cpu: float = 1.0
    memory: str = "512M"
    disk: str = "1G"
    timeout_ms: int = 30000


@dataclass(frozen=True)
class NetworkPolicy:
    mode: str = "none"
    entries: Sequence[str] = ()


@dataclass(frozen=True)
class SandboxConfig:
    backend: str = "process"
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    network_policy: NetworkPolicy = field(default_factory=NetworkPolicy)
    allowed_env_vars: Sequence[str] = ()

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "SandboxConfig":
        """Return a copy with the camelCase or snake_case overrides applied."""

        if not overrides:
            return self
        limits = self.resource_limits
        limit_keys = {
            "cpu": "cpu",
            "memory": "memory",
            "disk": "disk",
            "timeoutMs": "timeout_ms",
            "timeout_ms": "timeout_ms",
        }
        raw_limits = overrides.get("resourceLimits") or overrides.get("resource_limits") or {}
        flat_limits = {key: overrides[key] for key in limit_keys if key in overrides}
        limit_changes = {
            limit_keys[key]: value for key, value in {**raw_limits, **flat_limits}.items() if key in limit_keys
        }
        if limit_changes:
            limits = replace(limits, **limit_changes)

        policy = self.network_policy
        raw_policy = overrides.get("networkPolicy") or overrides.get("network_policy")
        if isinstance(raw_policy, NetworkPolicy):
            policy = raw_policy
        elif isinstance(raw_policy, dict):
            policy = NetworkPolicy(
                mode=str(raw_policy.get("mode", policy.mode)),
                entries=tuple(str(entry) for entry in raw_policy.get("entries", policy.entries)),
            )

        allowed = overrides.get("allowedEnvVars", overrides.get("allowed_env_vars", self.allowed_env_vars))
        return SandboxConfig(
            backend=str(overrides.get("backend", self.backend)),
            resource_limits=limits,
            network_policy=policy,
            allowed_env_vars=tuple(str(name) for name in allowed),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "backend": self.backend,
            "resourceLimits": {
                "cpu": self.resource_limits.cpu,
                "memory": self.resource_limits.memory,
                "disk": self.resource_limits.disk,
                "timeoutMs": self.resource_limits.timeout_ms,
            },
            "networkPolicy": {
                "mode": self.network_policy.mode,
                "entries": list(self.network_policy.entries),
            },
            "allowedEnvVars": list(self.allowed_env_vars),
        }


@dataclass
class ExecutionMetrics:
    execution_time: float = 0.0
    memory_used: int = 0
    tokens_in_summary: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "executionTime": self.execution_time,
            "memoryUsed": self.memory_used,
            "tokensInSummary": self.tokens_in_summary,
        }


@dataclass
class ExecutionResult:
    success: bool
    summary: str
    output: Any = None
    error: Optional[str] = None
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    pii_tokenized: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "success": self.success,
            "summary": self.summary,
            "metrics": self.metrics.to_dict(),
            "piiTokenized": self.pii_tokenized,
        }
        if self.output is not None:
            payload["output"] = self.output
        if self.error:
            payload["error"] = self.error
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


@dataclass
class Workspace:
    id: str
    path: str
    created_at: float
    last_accessed_at: float
    code: str
    dialect: str
    status: str = "pending"
    result: Optional[Dict[str, object]] = None
    finished_at: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "path": self.path,
            "createdAt": self.created_at,
            "lastAccessedAt": self.last_accessed_at,
            "dialect": self.dialect,
            "status": self.status,
            "result": self.result,
            "finishedAt": self.finished_at,
        }


@dataclass(frozen=True)
class AuditEntry:
    timestamp: float
    type: str
    severity: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class ApprovalOptions:
    mode: Optional[str] = None
    auto_approve_high: bool = False


@dataclass
class ExecutionOptions:
    dialect: Optional[str] = None
    sandbox: Optional[Dict[str, Any]] = None
    approval: Optional[ApprovalOptions] = None
    tools_dir_override: Optional[str] = None
    max_tools: Optional[int] = None
