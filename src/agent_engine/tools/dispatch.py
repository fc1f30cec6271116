from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

from agent_engine.control.controller import ExecutionController
from agent_engine.control.permissions import PermissionGate
from agent_engine.core.errors import ToolValidationError
from agent_engine.core.types import PermissionRequest, ToolCall, ToolResult
from agent_engine.observability import get_logger
from agent_engine.observability.ids import new_request_id

from .registry import ToolContext, ToolDefinition, ToolRegistry, failed


class ToolDispatcher:
    """resolve -> validate -> permission gate -> execute, for one tool call.

    Every outcome is a ToolResult. The only exception that escapes is
    RunAborted, raised when an abort arrives while waiting for approval.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        gate: PermissionGate,
        controller: ExecutionController,
        chat_mode: bool = False,
    ) -> None:
        self._registry = registry
        self._gate = gate
        self._controller = controller
        self._chat_mode = chat_mode
        self._log = get_logger("agent_engine.dispatch")

    async def dispatch(self, call: ToolCall, ctx: ToolContext) -> ToolResult:
        if call.parse_error is not None:
            self._log.info("tool_call_unparseable", tool_call_id=call.id, tool=call.name, error=call.parse_error)
            return failed(
                call.id,
                "Invalid tool call",
                f"{call.name or '<unknown>'}: could not parse arguments: {call.parse_error}\n"
                f"Received: {call.arguments_json}",
                error_type="invalid_arguments",
            )

        rejected = self._registry.check(call.id, call.name)
        if rejected is not None:
            return rejected

        definition = self._registry.resolve(call.name)
        if definition is None:
            return failed(call.id, "Unknown tool", f"Tool not found: {call.name}", error_type="not_found")

        if self._chat_mode and not definition.read_only:
            return failed(
                call.id,
                "Not available",
                f"Tool {call.name} is not available in chat mode (read-only tools only)",
                error_type="chat_mode",
            )

        try:
            args = self._registry.validate(definition, call.arguments)
        except ToolValidationError as e:
            return failed(call.id, "Invalid arguments", str(e), error_type="validation")

        if definition.requires_approval:
            request = build_permission_request(definition, call, args, ctx)
            response = await self._controller.wait_or_abort(self._gate.authorize(request))
            if not response.approved:
                self._log.info("tool_denied", tool_call_id=call.id, tool=call.name)
                return failed(
                    call.id,
                    "Permission denied",
                    f"User denied permission for {call.name}",
                    error_type="permission_denied",
                )

        return await self._registry.execute(definition, args, ctx)


def build_permission_request(
    definition: ToolDefinition,
    call: ToolCall,
    args: BaseModel,
    ctx: ToolContext,
) -> PermissionRequest:
    data: dict[str, Any] = args.model_dump()
    command: str | None = None
    path: str | None = None

    if definition.permission_type == "bash":
        command = str(data.get("command", ""))
        description = str(data.get("description") or f"Run: {command}")
    elif definition.permission_type in ("write", "edit", "delete"):
        path = ctx.display_path(str(data.get("path", "")))
        description = f"{definition.permission_type.capitalize()} {path}"
    else:
        description = f"{definition.name}({json.dumps(data, ensure_ascii=False, default=repr)[:200]})"

    return PermissionRequest(
        id=new_request_id(),
        type=definition.permission_type,
        description=description,
        tool_name=definition.name,
        call_id=call.id,
        command=command,
        path=path,
    )
