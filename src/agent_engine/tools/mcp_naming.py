"""Model-facing names for MCP tools.

With a single server the raw tool names are used as-is. With several servers
every tool is exposed as ``<prefix>__<tool>`` where the prefix is a short,
stable hash of the server key, so two servers may both offer ``search``.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

SEPARATOR = "__"


def server_prefix(server_key: str, *, salt: int = 0) -> str:
    """Four characters, first one a letter, stable across processes."""

    key = server_key if salt == 0 else f"{server_key}#{salt}"
    x = int.from_bytes(hashlib.blake2s(key.encode("utf-8"), digest_size=2).digest(), "big")
    return chr(ord("a") + x % 26) + f"{x:04x}"[1:]


@dataclass(frozen=True, slots=True)
class McpNaming:
    prefixes: dict[str, str]
    multi: bool

    @classmethod
    def build(cls, server_keys: list[str]) -> McpNaming:
        used: set[str] = set()
        prefixes: dict[str, str] = {}
        for sk in server_keys:
            salt = 0
            while (candidate := server_prefix(sk, salt=salt)) in used:
                salt += 1
            used.add(candidate)
            prefixes[sk] = candidate
        return cls(prefixes=prefixes, multi=len(server_keys) > 1)

    def model_name(self, server_key: str, tool_name: str) -> str:
        if not self.multi:
            return tool_name
        return f"{self.prefixes[server_key]}{SEPARATOR}{tool_name}"

    def split(self, model_name: str) -> tuple[str, str]:
        """Inverse of `model_name`: (server_key, raw tool name)."""

        if not self.multi:
            return next(iter(self.prefixes), ""), model_name

        prefix, sep, tool_name = model_name.partition(SEPARATOR)
        if not sep or not prefix or not tool_name:
            raise ValueError(f"not a prefixed tool name: {model_name!r}")
        for server_key, p in self.prefixes.items():
            if p == prefix:
                return server_key, tool_name
        raise ValueError(f"unknown tool prefix: {prefix!r}")
