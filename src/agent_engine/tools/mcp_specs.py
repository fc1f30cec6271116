from __future__ import annotations

import json
from typing import Any

from langchain_core.utils.function_calling import convert_to_openai_tool

# Used when a tool exposes no usable schema: accept any object.
PASSTHROUGH_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}, "additionalProperties": True}


def tool_parameters(tool: Any) -> dict[str, Any]:
    """JSON schema for a LangChain (MCP) tool's arguments."""

    try:
        fn = convert_to_openai_tool(tool).get("function") or {}
        params = fn.get("parameters")
        if isinstance(params, dict) and params.get("type") == "object":
            return params
    except Exception:  # noqa: BLE001
        pass

    args_schema = getattr(tool, "args_schema", None)
    if isinstance(args_schema, dict) and args_schema.get("type") == "object":
        return args_schema
    if args_schema is not None and hasattr(args_schema, "model_json_schema"):
        try:
            schema = args_schema.model_json_schema()
        except Exception:  # noqa: BLE001
            schema = None
        if isinstance(schema, dict) and schema.get("type") == "object":
            return schema

    return dict(PASSTHROUGH_SCHEMA)


def tool_description(tool: Any) -> str:
    desc = getattr(tool, "description", None)
    return str(desc) if desc else ""


def output_text(out: Any) -> str:
    """Flatten an MCP tool result (string, content blocks, or structured) to text."""

    if isinstance(out, tuple) and len(out) == 2:
        # content_and_artifact responses
        out = out[0]
    if isinstance(out, str):
        return out
    if isinstance(out, list):
        parts: list[str] = []
        for block in out:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            elif isinstance(block, str):
                parts.append(block)
            else:
                parts.append(repr(block))
        return "\n".join(parts)
    try:
        return json.dumps(out, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(out)
