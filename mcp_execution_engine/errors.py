"""Typed errors raised by the execution engine."""

from __future__ import annotations

from typing import Optional


class EngineError(RuntimeError):
    """Base class for every error surfaced by the engine.

    ``kind`` is stable and safe to expose to callers; ``stdout``/``stderr``
    hold whatever output was captured before the failure.
    """

    kind = "InternalError"

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class InternalError(EngineError):
    kind = "InternalError"


class NoRelevantTools(EngineError):
    kind = "NoRelevantTools"


class GenerationFailure(EngineError):
    kind = "GenerationFailure"


class ValidationFailure(EngineError):
    kind = "ValidationFailure"


class ApprovalRequired(EngineError):
    """Raised when the approval gate blocks a wrapper."""

    kind = "ApprovalRequired"

    def __init__(self, message: str, *, approval_request_id: str) -> None:
        super().__init__(message)
        self.approval_request_id = approval_request_id


class PolicyViolation(EngineError):
    kind = "PolicyViolation"


class Cancelled(EngineError):
    kind = "Cancelled"


class CapacityExceeded(EngineError):
    kind = "CapacityExceeded"


class SandboxError(EngineError):
    """Raised when the sandbox cannot execute a wrapper.

    ``execution_time`` (ms) and ``memory_used`` (bytes) hold the values
    measured up to the failure.
    """

    kind = "SandboxCrash"

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        execution_time: float = 0.0,
        memory_used: int = 0,
    ) -> None:
        super().__init__(message, stdout=stdout, stderr=stderr)
        self.execution_time = execution_time
        self.memory_used = memory_used


class SandboxStartupError(SandboxError):
    kind = "SandboxStartupError"


class SandboxTimeout(SandboxError):
    """Raised when a wrapper exceeds the configured wall-clock timeout."""

    kind = "SandboxTimeout"


class SandboxResourceExceeded(SandboxError):
    kind = "SandboxResourceExceeded"


class SandboxCrash(SandboxError):
    kind = "SandboxCrash"


class MCPError(EngineError):
    """Base class for MCP transport failures."""

    kind = "MCPProtocolError"


class MCPConnectError(MCPError):
    kind = "MCPConnectError"


class MCPRequestTimeout(MCPError):
    kind = "MCPRequestTimeout"


class MCPProtocolError(MCPError):
    """An MCP server answered with a JSON-RPC error object."""

    kind = "MCPProtocolError"

    def __init__(self, message: str, *, code: int = 0, data: Optional[object] = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class MCPBufferOverflow(MCPError):
    kind = "MCPBufferOverflow"


class MCPConnectionClosed(MCPError):
    kind = "MCPConnectionClosed"
