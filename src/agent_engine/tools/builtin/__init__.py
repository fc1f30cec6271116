from __future__ import annotations

from agent_engine.tools.registry import ToolDefinition, ToolRegistry

from .bash import BASH
from .files import DELETE, EDIT, READ, WRITE
from .plan import PLAN_APPROVAL


def builtin_tools() -> list[ToolDefinition]:
    return [READ, WRITE, EDIT, DELETE, BASH, PLAN_APPROVAL]


def register_builtins(registry: ToolRegistry) -> None:
    for definition in builtin_tools():
        registry.register(definition)


__all__ = ["builtin_tools", "register_builtins"]
