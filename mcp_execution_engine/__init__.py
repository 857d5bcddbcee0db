"""Token-efficient code execution over Model Context Protocol tool servers."""

from .config import EngineConfig, MCPServerInfo, discover_registry, load_registry
from .errors import EngineError
from .models import ApprovalOptions, ExecutionOptions, ExecutionResult
from .orchestrator import Orchestrator

__all__ = [
    "ApprovalOptions",
    "EngineConfig",
    "EngineError",
    "ExecutionOptions",
    "ExecutionResult",
    "MCPServerInfo",
    "Orchestrator",
    "discover_registry",
    "load_registry",
]

__version__ = "0.1.0"
