from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class StopReason(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    CONSECUTIVE_ERRORS = "consecutive_errors"
    ABORTED = "aborted"
    ERROR = "error"
    PLAN_APPROVAL = "plan_approval"


class ExecutionState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_STEP = "waiting_step"
    ABORTING = "aborting"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class ToolCall:
    """Abstract tool call (stable structure across providers)."""

    id: str
    name: str
    arguments: dict[str, Any]
    arguments_json: str = ""
    # Set when streamed arguments never became a JSON object.
    parse_error: str | None = None


@dataclass(frozen=True, slots=True)
class ToolResult:
    call_id: str
    success: bool
    title: str = ""
    output: str = ""
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    call: ToolCall
    result: ToolResult


@dataclass(frozen=True, slots=True)
class ModelTurn:
    """One completed assistant turn: final text, or tool calls (optionally with text)."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    thinking: str = ""


StreamEventType = Literal["text", "thinking", "tool_call"]


@dataclass(frozen=True, slots=True)
class StreamEvent:
    type: StreamEventType
    delta: str = ""
    tool_call: ToolCall | None = None


@dataclass(frozen=True, slots=True)
class AgentResult:
    success: bool
    final_response: str
    iterations: int
    tool_calls: tuple[ToolCallRecord, ...]
    stop_reason: StopReason
    # Plan submitted through the plan_approval tool, if any.
    plan: dict[str, Any] | None = None


PermissionType = Literal["bash", "write", "edit", "delete", "mcp", "tool"]


@dataclass(frozen=True, slots=True)
class PermissionRequest:
    id: str
    type: PermissionType
    description: str
    tool_name: str
    call_id: str
    command: str | None = None
    path: str | None = None


@dataclass(frozen=True, slots=True)
class PermissionResponse:
    approved: bool
    remember: bool = False


RollbackKind = Literal["write", "edit", "delete", "create"]


@dataclass(frozen=True, slots=True)
class RollbackEntry:
    tool_call_id: str
    kind: RollbackKind
    path: str
    # None means the path did not exist before the call.
    prior_content: bytes | None = None
