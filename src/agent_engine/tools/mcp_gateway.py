from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from langchain_mcp_adapters.client import MultiServerMCPClient

from agent_engine.core.types import ToolResult
from agent_engine.observability.logging import get_logger

from .mcp_naming import McpNaming
from .mcp_specs import output_text, tool_description, tool_parameters
from .registry import PassthroughArgs, ToolContext, ToolDefinition, ToolRegistry


@dataclass(frozen=True, slots=True)
class McpToolBinding:
    server_key: str
    raw_name: str
    model_name: str
    tool: Any


class McpGateway:
    """Loads MCP tools through langchain-mcp-adapters and exposes them as ToolDefinitions.

    - one MultiServerMCPClient per server, to keep server_key -> tools explicit
    - names are prefixed per server when more than one server is configured
    - every MCP tool shares the ToolDefinition contract (and goes through the
      permission gate when `require_approval` is set)
    """

    def __init__(self, *, servers: dict[str, dict[str, Any]], require_approval: bool = True) -> None:
        self._servers = dict(servers)
        self._require_approval = require_approval
        self._naming = McpNaming.build(list(self._servers.keys()))
        self._bindings: dict[str, McpToolBinding] = {}
        self._loaded = False
        self._log = get_logger("agent_engine.mcp")

    @property
    def naming(self) -> McpNaming:
        return self._naming

    def bindings(self) -> list[McpToolBinding]:
        return list(self._bindings.values())

    async def load(self) -> None:
        if self._loaded:
            return
        if not self._servers:
            raise ValueError("mcp.servers is empty")

        bindings: dict[str, McpToolBinding] = {}
        for server_key, server_cfg in self._servers.items():
            cfg = dict(server_cfg)
            if cfg.get("transport") == "http":
                cfg["transport"] = "streamable_http"

            client = MultiServerMCPClient({server_key: cfg})  # type: ignore[arg-type]
            tools = await client.get_tools()

            for t in tools:
                raw_name = getattr(t, "name", None)
                if not isinstance(raw_name, str) or not raw_name:
                    continue
                model_name = self._naming.model_name(server_key, raw_name)
                if model_name in bindings:
                    raise RuntimeError(f"duplicate model tool name after prefixing: {model_name!r}")
                bindings[model_name] = McpToolBinding(
                    server_key=server_key,
                    raw_name=raw_name,
                    model_name=model_name,
                    tool=t,
                )

        self._bindings = bindings
        self._loaded = True
        self._log.info("mcp_tools_loaded", servers=len(self._servers), tools=len(bindings), multi=self._naming.multi)

    def definitions(self) -> list[ToolDefinition]:
        return [self._definition(b) for b in self._bindings.values()]

    async def register_into(self, registry: ToolRegistry) -> int:
        """Load (once) and register every MCP tool. Returns how many were added."""

        await self.load()
        return sum(1 for d in self.definitions() if registry.register(d))

    def _definition(self, binding: McpToolBinding) -> ToolDefinition:
        tool = binding.tool

        async def call(args: PassthroughArgs, ctx: ToolContext) -> ToolResult:
            out = await tool.ainvoke(args.model_dump())
            return ToolResult(
                call_id=ctx.call_id,
                success=True,
                title=binding.model_name,
                output=output_text(out),
                metadata={"server_key": binding.server_key, "raw_tool_name": binding.raw_name},
            )

        return ToolDefinition(
            name=binding.model_name,
            description=tool_description(tool),
            schema=PassthroughArgs,
            execute=call,
            requires_approval=self._require_approval,
            read_only=False,
            source=f"mcp:{binding.server_key}",
            permission_type="mcp",
            parameters=tool_parameters(tool),
        )
