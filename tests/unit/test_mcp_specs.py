from __future__ import annotations

from langchain_core.tools import tool

from agent_engine.tools.mcp_specs import PASSTHROUGH_SCHEMA, output_text, tool_description, tool_parameters


@tool
def lookup(query: str, limit: int = 5) -> str:
    """Look something up."""
    return query


class Opaque:
    name = "opaque"
    description = None
    args_schema = None


def test_parameters_from_langchain_tool() -> None:
    params = tool_parameters(lookup)
    assert params["type"] == "object"
    assert set(params["properties"]) == {"query", "limit"}
    assert params.get("required") == ["query"]
    assert tool_description(lookup) == "Look something up."


def test_parameters_fall_back_to_passthrough() -> None:
    assert tool_parameters(Opaque()) == PASSTHROUGH_SCHEMA
    assert tool_description(Opaque()) == ""


def test_output_text_flattens_blocks() -> None:
    assert output_text("plain") == "plain"
    assert output_text([{"type": "text", "text": "a"}, "b"]) == "a\nb"
    assert output_text(("content", {"artifact": 1})) == "content"
    assert output_text({"ok": True}) == '{"ok": true}'
