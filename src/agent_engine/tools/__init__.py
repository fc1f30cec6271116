from __future__ import annotations

from .dispatch import ToolDispatcher
from .registry import PassthroughArgs, ToolContext, ToolDefinition, ToolRegistry, ToolRejected

__all__ = [
    "PassthroughArgs",
    "ToolContext",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolRejected",
]
