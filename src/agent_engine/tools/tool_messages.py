from __future__ import annotations

import json
from typing import Any

from agent_engine.core.types import ToolCall, ToolResult


def _arguments_json(call: ToolCall) -> str:
    if call.parse_error is not None:
        # The API rejects assistant messages whose arguments are not valid JSON.
        return json.dumps({"__debug_error": call.parse_error, "__raw": call.arguments_json[:500]}, ensure_ascii=False)
    if call.arguments_json:
        return call.arguments_json
    return json.dumps(call.arguments, ensure_ascii=False)


def assistant_message(text: str, tool_calls: list[ToolCall]) -> dict[str, Any]:
    """Build the OpenAI-compatible assistant message that carries tool calls."""

    msg: dict[str, Any] = {"role": "assistant", "content": text or None}
    if tool_calls:
        msg["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": _arguments_json(tc)},
            }
            for tc in tool_calls
        ]
    return msg


def tool_message_from_result(call: ToolCall, r: ToolResult) -> dict[str, Any]:
    """Build the tool message fed back to the model.

    A failed result is still plain text: "Error: <error>" followed by any
    partial output, so the model can react to it.
    """

    content = f"Error: {r.error}\n\n{r.output}" if r.error else r.output
    return {
        "role": "tool",
        "tool_call_id": call.id,
        "name": call.name,
        "content": content,
    }
