"""Streaming tool-call argument accumulator.

OpenAI-compatible streaming delivers a tool call as a first fragment carrying
`index`, `id` and the function name, followed by fragments carrying only
`index` and a piece of the JSON arguments. Fragments are grouped per index
(falling back to id) until the stream ends.

Parsing is best-effort: a call whose arguments never become a JSON object is
still returned, with `parse_error` set, so the loop can report it back to the
model instead of crashing.
"""

from __future__ import annotations

import json
from typing import Any

from agent_engine.core.types import ToolCall


class ToolCallAccumulator:
    def __init__(self) -> None:
        self._buffers: dict[str, str] = {}
        self._names: dict[str, str] = {}
        self._ids: dict[str, str] = {}
        self._seen_order: list[str] = []

    def __len__(self) -> int:
        return len(self._seen_order)

    def add_chunk(self, chunk: dict[str, Any]) -> None:
        """Consume one fragment: {index?, id?, name?, arguments?}."""

        idx = chunk.get("index")
        call_id = chunk.get("id")
        if idx is not None:
            key = f"index_{idx}"
        elif call_id:
            key = str(call_id)
        else:
            key = "index_unknown"

        if key not in self._buffers:
            self._buffers[key] = ""
            self._seen_order.append(key)

        if call_id and key not in self._ids:
            self._ids[key] = str(call_id)

        name = chunk.get("name")
        if name and key not in self._names:
            self._names[key] = str(name)

        fragment = chunk.get("arguments")
        if isinstance(fragment, str) and fragment:
            self._buffers[key] += fragment

    def add_delta(self, delta_tool_calls: list[Any]) -> None:
        """Consume `choices[0].delta.tool_calls` from an SDK chunk (objects or dicts)."""

        for tc in delta_tool_calls:
            if isinstance(tc, dict):
                fn = tc.get("function") or {}
                self.add_chunk(
                    {
                        "index": tc.get("index"),
                        "id": tc.get("id"),
                        "name": fn.get("name") if isinstance(fn, dict) else None,
                        "arguments": fn.get("arguments") if isinstance(fn, dict) else None,
                    }
                )
                continue

            fn = getattr(tc, "function", None)
            self.add_chunk(
                {
                    "index": getattr(tc, "index", None),
                    "id": getattr(tc, "id", None),
                    "name": getattr(fn, "name", None) if fn is not None else None,
                    "arguments": getattr(fn, "arguments", None) if fn is not None else None,
                }
            )

    def finalize(self) -> list[ToolCall]:
        calls: list[ToolCall] = []

        for n, key in enumerate(self._seen_order):
            raw = self._buffers.get(key, "")
            name = self._names.get(key, "")
            call_id = self._ids.get(key) or f"call_{n}"

            error: str | None = None
            args: dict[str, Any] = {}
            try:
                parsed = json.loads(raw) if raw.strip() else {}
                if not isinstance(parsed, dict):
                    raise ValueError("tool arguments must be a JSON object")
                args = parsed
            except ValueError as exc:
                error = str(exc)
            if not name and error is None:
                error = "missing tool name"

            calls.append(ToolCall(id=call_id, name=name, arguments=args, arguments_json=raw, parse_error=error))

        return calls
