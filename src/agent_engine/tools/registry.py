from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from agent_engine.control.journal import RollbackJournal, capture_prior
from agent_engine.core.errors import EngineError, ToolValidationError
from agent_engine.core.types import PermissionType, RollbackEntry, RollbackKind, ToolResult
from agent_engine.observability.logging import get_logger


class ToolRejected(EngineError):
    """Structured tool rejection.

    Raise this from a tool when it wants to fail with a normalized error type
    rather than an arbitrary exception.
    """

    def __init__(
        self,
        error_type: str,
        message: str,
        *,
        details: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.details = details or {}


class PassthroughArgs(BaseModel):
    """Argument model for tools that bring their own JSON schema (MCP)."""

    model_config = ConfigDict(extra="allow")


@dataclass(slots=True)
class ToolContext:
    """Per-call context handed to tool implementations."""

    working_dir: Path
    call_id: str
    journal: RollbackJournal
    run_id: str = ""
    bash_timeout_s: float = 120.0
    max_output_chars: int = 30_000
    # Run-scoped scratch space shared by tools (e.g. the plan being drafted).
    state: dict[str, Any] = field(default_factory=dict)

    def resolve_path(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = self.working_dir / p
        return p

    def display_path(self, path: str) -> str:
        p = self.resolve_path(path)
        try:
            return str(p.relative_to(self.working_dir))
        except ValueError:
            return str(p)

    def record(self, kind: RollbackKind, path: Path) -> None:
        """Journal the current state of `path` before it gets modified."""

        self.journal.record(
            RollbackEntry(
                tool_call_id=self.call_id,
                kind=kind,
                path=str(path),
                prior_content=capture_prior(path),
            )
        )


ToolOutput = Union[ToolResult, str]
ToolExecute = Callable[[Any, ToolContext], Union[ToolOutput, Awaitable[ToolOutput]]]


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    name: str
    description: str
    schema: type[BaseModel]
    execute: ToolExecute
    requires_approval: bool = False
    read_only: bool = False
    source: str = "builtin"
    permission_type: PermissionType = "tool"
    # Explicit JSON schema (MCP tools); otherwise derived from `schema`.
    parameters: dict[str, Any] | None = None

    def json_schema(self) -> dict[str, Any]:
        if self.parameters is not None:
            return self.parameters
        return self.schema.model_json_schema()

    def openai_spec(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.json_schema(),
            },
        }


@dataclass(slots=True)
class RateLimiter:
    """Very small per-tool rate limiter (simplified token bucket)."""

    calls_per_second: float
    burst: float | None = None
    _tokens: float = 0.0
    _last: float = 0.0

    def allow(self) -> bool:
        now = time.monotonic()
        cap = self.burst or self.calls_per_second
        if self._last == 0.0:
            self._last = now
            self._tokens = cap

        elapsed = max(0.0, now - self._last)
        self._last = now
        self._tokens = min(cap, self._tokens + elapsed * self.calls_per_second)

        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False


def failed(call_id: str, title: str, error: str, **metadata: Any) -> ToolResult:
    return ToolResult(call_id=call_id, success=False, title=title, output="", error=error, metadata=metadata)


class ToolRegistry:
    """Name -> ToolDefinition mapping shared by built-in and MCP tools.

    Collisions: the first registration wins. Built-ins are registered before
    external tools, so an MCP tool reusing a built-in name is skipped with a
    warning. Pass `override=True` to replace deliberately.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        whitelist: list[str] | None = None,
        rate_limits: dict[str, float] | None = None,
    ) -> None:
        self._enabled = enabled
        self._whitelist = set(whitelist or [])
        self._tools: dict[str, ToolDefinition] = {}
        self._limiters: dict[str, RateLimiter] = {
            name: RateLimiter(calls_per_second=cps) for name, cps in (rate_limits or {}).items()
        }
        self._log = get_logger("agent_engine.tools")

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, definition: ToolDefinition, *, override: bool = False) -> bool:
        existing = self._tools.get(definition.name)
        if existing is not None and not override:
            self._log.warning(
                "tool_name_collision",
                tool=definition.name,
                kept_source=existing.source,
                skipped_source=definition.source,
            )
            return False
        self._tools[definition.name] = definition
        return True

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def resolve(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def definitions(self, *, chat_mode: bool = False) -> list[ToolDefinition]:
        defs = list(self._tools.values())
        if chat_mode:
            defs = [d for d in defs if d.read_only]
        if self._whitelist:
            defs = [d for d in defs if d.name in self._whitelist]
        return defs

    def specs(self, *, chat_mode: bool = False) -> list[dict[str, Any]]:
        if not self._enabled:
            return []
        return [d.openai_spec() for d in self.definitions(chat_mode=chat_mode)]

    def check(self, call_id: str, name: str) -> ToolResult | None:
        """Apply governance (enabled/whitelist/rate limit). None means go ahead."""

        if not self._enabled:
            return failed(call_id, "Tools disabled", "tools are disabled", error_type="tools_disabled")

        if self._whitelist and name not in self._whitelist:
            return failed(call_id, "Not allowed", f"Tool not allowed: {name}", error_type="not_allowed")

        limiter = self._limiters.get(name)
        if limiter and not limiter.allow():
            return failed(call_id, "Rate limited", f"Tool rate limited: {name}", error_type="rate_limited")

        return None

    def validate(self, definition: ToolDefinition, arguments: dict[str, Any]) -> BaseModel:
        if not isinstance(arguments, dict):
            raise ToolValidationError(definition.name, "arguments must be an object", arguments=arguments)
        try:
            return definition.schema.model_validate(arguments)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
            )
            raise ToolValidationError(definition.name, problems, arguments=arguments) from e

    async def execute(self, definition: ToolDefinition, args: BaseModel, ctx: ToolContext) -> ToolResult:
        """Run the tool. Never raises; every failure becomes a failed ToolResult."""

        name = definition.name
        try:
            out = definition.execute(args, ctx)
            if inspect.isawaitable(out):
                out = await out
        except asyncio.CancelledError:
            raise
        except ToolRejected as e:
            self._log.info("tool_rejected", tool_call_id=ctx.call_id, tool=name, error_type=e.error_type)
            return failed(
                ctx.call_id,
                "Tool rejected",
                e.message,
                error_type=e.error_type,
                details=dict(e.details),
            )
        except Exception as e:  # noqa: BLE001
            self._log.exception("tool_error", tool_call_id=ctx.call_id, tool=name)
            return failed(ctx.call_id, "Tool error", str(e) or type(e).__name__, error_type=type(e).__name__)

        if isinstance(out, str):
            out = ToolResult(call_id=ctx.call_id, success=True, title=name, output=out)
        elif not isinstance(out, ToolResult):
            out = ToolResult(call_id=ctx.call_id, success=True, title=name, output=repr(out))
        elif out.call_id != ctx.call_id:
            out = ToolResult(
                call_id=ctx.call_id,
                success=out.success,
                title=out.title,
                output=out.output,
                error=out.error,
                metadata=dict(out.metadata),
            )

        self._log.info("tool_done", tool_call_id=ctx.call_id, tool=name, success=out.success)
        return out
