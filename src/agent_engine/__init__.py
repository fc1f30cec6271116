from __future__ import annotations

from .core.types import AgentResult, ExecutionState, StopReason, ToolCall, ToolResult
from .orchestrator.agent_loop import AgentLoop
from .orchestrator.options import AgentObserver, AgentOptions, ProviderTarget

__all__ = [
    "AgentLoop",
    "AgentObserver",
    "AgentOptions",
    "AgentResult",
    "ExecutionState",
    "ProviderTarget",
    "StopReason",
    "ToolCall",
    "ToolResult",
]
