from __future__ import annotations

import argparse
import asyncio
import dataclasses
import os
import signal
import sys

from agent_engine.control.controller import ExecutionController
from agent_engine.control.journal import RollbackFailure, RollbackJournal
from agent_engine.control.permissions import PermissionGate, PermissionPolicy
from agent_engine.core.types import AgentResult, PermissionRequest, PermissionResponse, ToolCall, ToolResult
from agent_engine.llm.client import FakeProviderClient, OpenAIProviderClient, ProviderClient
from agent_engine.llm.retry import RetryPolicy
from agent_engine.observability.logging import configure_logging, get_logger
from agent_engine.orchestrator.agent_loop import AgentLoop
from agent_engine.orchestrator.options import AgentObserver, AgentOptions
from agent_engine.tools.builtin import register_builtins
from agent_engine.tools.mcp_gateway import McpGateway
from agent_engine.tools.registry import ToolRegistry

from .config import EngineConfig, load_config


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Agent execution engine")
    p.add_argument("--config", default="configs/agent.yaml", help="YAML config path")
    p.add_argument("--log-level", default="INFO", help="log level")
    p.add_argument("--prompt", default="Hello", help="user prompt for this run")
    p.add_argument("--system", default=None, help="optional system prompt")
    p.add_argument("--fake", action="store_true", help="use FakeProviderClient (offline stub)")
    p.add_argument("--chat", action="store_true", help="chat mode: read-only tools only")
    p.add_argument("--yes", action="store_true", help="auto-approve every gated tool call")
    p.add_argument("--max-iterations", type=int, default=None, help="override agent.max_iterations")
    return p


class ConsoleObserver(AgentObserver):
    def on_tool_call(self, call: ToolCall) -> None:
        print(f"-> {call.name}", file=sys.stderr)

    def on_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        status = "ok" if result.success else f"failed: {result.error}"
        print(f"<- {call.name} {status}", file=sys.stderr)

    def on_warning(self, message: str) -> None:
        print(f"warning: {message}", file=sys.stderr)

    def on_error(self, message: str) -> None:
        print(f"error: {message}", file=sys.stderr)

    def on_rollback(self, undone: int, failures: list[RollbackFailure]) -> None:
        print(f"rolled back {undone} change(s), {len(failures)} failed", file=sys.stderr)


async def ask_on_stdin(request: PermissionRequest) -> PermissionResponse:
    """Interactive approval: y = once, s = for this session, anything else = deny."""

    subject = request.command or request.path or request.tool_name
    prompt = f"Allow {request.type} {subject!r}? [y]es / [s]ession / [n]o: "
    answer = (await asyncio.to_thread(input, prompt)).strip().lower()
    if answer in ("s", "session"):
        return PermissionResponse(approved=True, remember=True)
    return PermissionResponse(approved=answer in ("y", "yes"))


def build_loop(cfg: EngineConfig, args: argparse.Namespace) -> AgentLoop:
    client: ProviderClient = FakeProviderClient() if args.fake else OpenAIProviderClient(cfg.provider)

    registry = ToolRegistry(
        enabled=cfg.tools.enabled,
        whitelist=cfg.tools.whitelist,
        rate_limits=cfg.tools.rate_limit,
    )
    register_builtins(registry)

    gate = PermissionGate(
        policy=PermissionPolicy(allow=cfg.permissions.allow, deny=cfg.permissions.deny),
        handler=ask_on_stdin,
    )

    options = AgentOptions.from_config(
        cfg,
        chat_mode=True if args.chat else None,
        auto_approve=True if args.yes else None,
        max_iterations=args.max_iterations,
        observer=ConsoleObserver(),
    )
    if args.fake:
        options = dataclasses.replace(options, fallbacks=())

    mcp = None
    if cfg.mcp.enabled and not args.fake:
        mcp = McpGateway(servers=cfg.mcp.servers, require_approval=cfg.mcp.require_approval)

    return AgentLoop(
        client=client,
        options=options,
        registry=registry,
        gate=gate,
        retry=RetryPolicy(
            max_attempts=cfg.retry.max_attempts,
            base_delay_ms=cfg.retry.base_delay_ms,
            max_delay_ms=cfg.retry.max_delay_ms,
        ),
        controller=ExecutionController(journal=RollbackJournal(), step_mode=options.step_mode),
        mcp=mcp,
        tool_settings={
            "bash_timeout_s": cfg.tools.bash_timeout_s,
            "max_output_chars": cfg.tools.max_output_chars,
        },
    )


async def _run(loop: AgentLoop, prompt: str, system: str | None) -> AgentResult:
    ev_loop = asyncio.get_running_loop()
    try:
        ev_loop.add_signal_handler(signal.SIGINT, lambda: loop.controller.abort(rollback=False))
    except (NotImplementedError, RuntimeError):
        # Windows / non-main thread: fall back to KeyboardInterrupt.
        pass
    try:
        return await loop.run_prompt(prompt, system=system)
    finally:
        try:
            ev_loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(level=args.log_level)
    log = get_logger("agent_engine.cli", level=args.log_level)

    # Offline stub: allow running without a real key.
    if args.fake and not os.getenv("OPENAI_API_KEY"):
        os.environ["OPENAI_API_KEY"] = "k_fake"

    cfg = load_config(args.config)
    loop = build_loop(cfg, args)
    result = asyncio.run(_run(loop, args.prompt, args.system))

    log.info(
        "run_output",
        stop_reason=result.stop_reason.value,
        iterations=result.iterations,
        tool_calls=len(result.tool_calls),
    )
    print(result.final_response)
    return 0 if result.success else 1
