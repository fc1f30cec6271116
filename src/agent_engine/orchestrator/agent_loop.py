from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

from langgraph.graph import END, START, StateGraph

from agent_engine.control.controller import ExecutionController, RunAborted
from agent_engine.control.journal import RollbackJournal
from agent_engine.control.permissions import PermissionGate
from agent_engine.core.types import (
    AgentResult,
    ExecutionState,
    ModelTurn,
    StopReason,
    StreamEvent,
    ToolCall,
    ToolCallRecord,
    ToolResult,
)
from agent_engine.llm.client import ProviderClient, ProviderTarget
from agent_engine.llm.retry import ProviderFailure, RetryPolicy
from agent_engine.observability import add_error, bind_context, get_logger, set_iteration
from agent_engine.observability.ids import new_run_id, new_session_id, new_trace_id
from agent_engine.tools.builtin import register_builtins
from agent_engine.tools.builtin.plan import PLAN_SUBMITTED
from agent_engine.tools.dispatch import ToolDispatcher
from agent_engine.tools.mcp_gateway import McpGateway
from agent_engine.tools.registry import ToolContext, ToolRegistry
from agent_engine.tools.tool_messages import assistant_message, tool_message_from_result

from .graph_state import LoopState
from .options import AgentOptions

_SUCCESSFUL = (StopReason.COMPLETED, StopReason.PLAN_APPROVAL)


class _ProviderGaveUp(Exception):
    """RetryPolicy decided `fail` for the current provider call."""


@dataclass(slots=True)
class RunContext:
    """Everything scoped to one run. Nothing here outlives `AgentLoop.run`."""

    run_id: str
    working_dir: Path
    target: ProviderTarget
    fallbacks: list[ProviderTarget]
    dispatcher: ToolDispatcher
    records: list[ToolCallRecord] = field(default_factory=list)
    tool_state: dict[str, Any] = field(default_factory=dict)
    last_text: str = ""
    error: str | None = None
    plan: dict[str, Any] | None = None


class AgentLoop:
    """LangGraph-based CHECKPOINT -> MODEL -> ACT loop.

    One `run()` at a time per instance. Signals reach the run through
    `controller` (pause, step, abort, abort with rollback); approvals through
    `gate`. Independent concurrent runs need independent AgentLoop instances.
    """

    def __init__(
        self,
        *,
        client: ProviderClient,
        options: AgentOptions | None = None,
        registry: ToolRegistry | None = None,
        gate: PermissionGate | None = None,
        retry: RetryPolicy | None = None,
        controller: ExecutionController | None = None,
        mcp: McpGateway | None = None,
        tool_settings: dict[str, Any] | None = None,
    ) -> None:
        self._client = client
        self._options = options if options is not None else AgentOptions()
        self._retry = retry if retry is not None else RetryPolicy()
        self._mcp = mcp
        self._tool_settings = dict(tool_settings or {})

        if registry is None:
            registry = ToolRegistry()
            register_builtins(registry)
        self._registry = registry

        self._gate = gate if gate is not None else PermissionGate()
        if self._options.auto_approve:
            self._gate.auto_approve = True

        if controller is None:
            controller = ExecutionController(journal=RollbackJournal(), step_mode=self._options.step_mode)
        self._controller = controller
        self._controller.set_listener(self._on_state_change)

        self._session_id = new_session_id()
        self._log = get_logger("agent_engine.loop")

    @property
    def controller(self) -> ExecutionController:
        return self._controller

    @property
    def gate(self) -> PermissionGate:
        return self._gate

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def options(self) -> AgentOptions:
        return self._options

    async def run_prompt(self, prompt: str, *, system: str | None = None) -> AgentResult:
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return await self.run(messages)

    def run_sync(self, initial_messages: list[dict[str, Any]]) -> AgentResult:
        return asyncio.run(self.run(initial_messages))

    async def run(self, initial_messages: list[dict[str, Any]]) -> AgentResult:
        opts = self._options
        run_id = new_run_id()
        bind_context(trace_id=new_trace_id(), session_id=self._session_id, run_id=run_id)

        # Clears the journal and enters `running`.
        self._controller.begin_run()
        try:
            if self._mcp is not None:
                await self._load_mcp()

            run = RunContext(
                run_id=run_id,
                working_dir=Path(opts.working_dir or Path.cwd()).resolve(),
                target=ProviderTarget(name=opts.provider, model=opts.model),
                fallbacks=list(opts.fallbacks),
                dispatcher=ToolDispatcher(
                    registry=self._registry,
                    gate=self._gate,
                    controller=self._controller,
                    chat_mode=opts.chat_mode,
                ),
            )

            t0 = time.perf_counter()
            graph = self._build_graph(run)
            stop_reason: StopReason
            iterations = 0
            try:
                out_state = cast(
                    LoopState,
                    await graph.ainvoke(
                        {
                            "messages": list(initial_messages),
                            "iteration": 0,
                            "consecutive_failures": 0,
                            "turn": None,
                            "stop_reason": None,
                        },
                        config={"recursion_limit": opts.max_iterations * 3 + 10},
                    ),
                )
                stop_reason = out_state.get("stop_reason") or StopReason.ERROR
                iterations = int(out_state.get("iteration", 0) or 0)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                self._log.exception("run_failed", run_id=run_id)
                run.error = str(e) or type(e).__name__
                self._notify("on_error", f"Agent error: {run.error}")
                stop_reason = StopReason.ERROR
                if self._controller.state is ExecutionState.ABORTING:
                    self._finish_abort()
                    stop_reason = StopReason.ABORTED

            if stop_reason is StopReason.ERROR:
                final = f"Error: {run.error or 'provider error'}"
            else:
                final = run.last_text

            result = AgentResult(
                success=stop_reason in _SUCCESSFUL,
                final_response=final,
                iterations=iterations,
                tool_calls=tuple(run.records),
                stop_reason=stop_reason,
                plan=run.plan,
            )
            self._log.info(
                "run_done",
                stop_reason=stop_reason.value,
                iterations=iterations,
                tool_calls=len(run.records),
                latency_ms=round((time.perf_counter() - t0) * 1000, 2),
            )
            return result
        finally:
            self._controller.end_run()

    def _build_graph(self, run: RunContext):
        opts = self._options
        controller = self._controller
        threshold = max(1, int(opts.max_consecutive_errors))

        async def checkpoint_node(state: LoopState) -> dict[str, Any]:
            iteration = int(state.get("iteration", 0) or 0)
            if not await controller.checkpoint():
                return {"stop_reason": StopReason.ABORTED}
            if iteration >= opts.max_iterations:
                self._notify("on_warning", f"Reached max iterations ({opts.max_iterations})")
                return {"stop_reason": StopReason.MAX_ITERATIONS}
            set_iteration(iteration + 1)
            return {"iteration": iteration + 1}

        async def model_node(state: LoopState) -> dict[str, Any]:
            messages = list(state.get("messages", []))
            try:
                turn = await self._call_model(run, messages)
            except RunAborted:
                return {"stop_reason": StopReason.ABORTED}
            except _ProviderGaveUp as e:
                run.error = str(e)
                add_error(run.error)
                self._notify("on_error", f"Agent error: {run.error}")
                return {
                    "stop_reason": StopReason.ERROR,
                    "consecutive_failures": int(state.get("consecutive_failures", 0) or 0) + 1,
                }

            if turn.text:
                run.last_text = turn.text
                self._notify("on_text", turn.text)

            if not turn.tool_calls:
                return {
                    "turn": turn,
                    "messages": [{"role": "assistant", "content": turn.text}],
                    "stop_reason": StopReason.COMPLETED,
                }
            return {"turn": turn}

        async def act_node(state: LoopState) -> dict[str, Any]:
            turn = state.get("turn") or ModelTurn()
            calls = list(turn.tool_calls)
            streak = int(state.get("consecutive_failures", 0) or 0)
            new_messages: list[dict[str, Any]] = [assistant_message(turn.text, calls)]
            stop: StopReason | None = None
            handled = 0

            for call in calls:
                if not await controller.checkpoint():
                    stop = StopReason.ABORTED
                    break

                self._notify("on_tool_call", call)
                ctx = self._tool_context(run, call)
                try:
                    result = await run.dispatcher.dispatch(call, ctx)
                except RunAborted:
                    stop = StopReason.ABORTED
                    break

                handled += 1
                run.records.append(ToolCallRecord(call=call, result=result))
                new_messages.append(tool_message_from_result(call, result))
                self._notify("on_tool_result", call, result)

                if result.success:
                    streak = 0
                else:
                    streak += 1
                    add_error(f"{call.name}: {result.error}")

                if result.success and result.metadata.get(PLAN_SUBMITTED):
                    run.plan = dict(result.metadata.get("plan") or {})
                    run.last_text = result.output
                    stop = StopReason.PLAN_APPROVAL
                    break

                if streak >= threshold:
                    self._notify("on_error", f"Stopping after {streak} consecutive tool failures")
                    stop = StopReason.CONSECUTIVE_ERRORS
                    break

                if not await controller.wait_for_step():
                    stop = StopReason.ABORTED
                    break

            # Keep the transcript well-formed: every announced call gets a tool message.
            for call in calls[handled:]:
                new_messages.append(
                    tool_message_from_result(
                        call,
                        ToolResult(call_id=call.id, success=False, title="Skipped", error="not executed: run stopped"),
                    )
                )

            update: dict[str, Any] = {
                "messages": new_messages,
                "consecutive_failures": streak,
                "turn": None,
            }
            if stop is not None:
                update["stop_reason"] = stop
            return update

        async def finish_node(state: LoopState) -> dict[str, Any]:
            stop = state.get("stop_reason")
            if stop is StopReason.ABORTED or controller.state is ExecutionState.ABORTING:
                self._finish_abort()
                return {"stop_reason": StopReason.ABORTED}
            return {}

        def route(state: LoopState) -> str:
            return "finish" if state.get("stop_reason") is not None else "next"

        builder = StateGraph(LoopState)
        builder.add_node("checkpoint", checkpoint_node)
        builder.add_node("model", model_node)
        builder.add_node("act", act_node)
        builder.add_node("finish", finish_node)

        builder.add_edge(START, "checkpoint")
        builder.add_conditional_edges("checkpoint", route, {"next": "model", "finish": "finish"})
        builder.add_conditional_edges("model", route, {"next": "act", "finish": "finish"})
        builder.add_conditional_edges("act", route, {"next": "checkpoint", "finish": "finish"})
        builder.add_edge("finish", END)

        return builder.compile()

    async def _call_model(self, run: RunContext, messages: list[dict[str, Any]]) -> ModelTurn:
        """One model turn with retries and quota fallback. Raises RunAborted or _ProviderGaveUp."""

        attempt = 0
        while True:
            target = run.target
            client = target.client or self._client
            tools = self._registry.specs(chat_mode=self._options.chat_mode) or None

            t0 = time.perf_counter()
            try:
                turn = await self._controller.wait_or_abort(
                    client.chat(messages, model=target.model, tools=tools, on_event=self._on_stream_event)
                )
            except (RunAborted, asyncio.CancelledError):
                raise
            except Exception as e:  # noqa: BLE001
                failure = ProviderFailure.from_exception(e)
                decision = self._retry.decide(failure, attempt=attempt, fallbacks=run.fallbacks)
                self._log.warning(
                    "provider_call_failed",
                    provider=target.label,
                    attempt=attempt,
                    status_code=failure.status_code,
                    kind=decision.kind.value,
                    action=decision.action,
                    delay_ms=decision.delay_ms,
                    error=failure.message,
                )

                if decision.action == "switch_provider" and decision.next_provider is not None:
                    run.target = run.fallbacks.pop(0)
                    attempt = 0
                    self._notify(
                        "on_warning",
                        f"Quota exceeded for {target.label}. Switching to {run.target.label}",
                    )
                    continue

                if decision.action == "retry":
                    delay_ms = decision.delay_ms or 0
                    self._notify(
                        "on_warning",
                        f"{decision.kind.value} from {target.label}; retrying in {delay_ms / 1000:.1f}s",
                    )
                    if not await self._controller.sleep_or_abort(delay_ms / 1000):
                        raise RunAborted("run aborted during retry backoff")
                    attempt += 1
                    continue

                raise _ProviderGaveUp(decision.reason or failure.message) from e

            self._log.info(
                "model_turn",
                provider=target.label,
                latency_ms=round((time.perf_counter() - t0) * 1000, 2),
                tool_calls=len(turn.tool_calls),
                text_len=len(turn.text),
            )
            return turn

    def _tool_context(self, run: RunContext, call: ToolCall) -> ToolContext:
        return ToolContext(
            working_dir=run.working_dir,
            call_id=call.id,
            journal=self._controller.journal,
            run_id=run.run_id,
            state=run.tool_state,
            **self._tool_settings,
        )

    async def _load_mcp(self) -> None:
        assert self._mcp is not None
        try:
            added = await self._mcp.register_into(self._registry)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            # Degrade to built-in tools only.
            self._log.warning("mcp_load_failed", error=str(e))
            self._notify("on_warning", f"MCP tools unavailable: {e}")
            return
        self._log.info("mcp_tools_registered", added=added)

    def _finish_abort(self) -> None:
        rollback = self._controller.rollback_requested
        undone = self._controller.finalize_abort()
        if rollback:
            self._notify("on_rollback", undone, list(self._controller.journal.last_failures))

    def _on_stream_event(self, ev: StreamEvent) -> None:
        if ev.type == "text":
            self._notify("on_text_delta", ev.delta)
        elif ev.type == "thinking":
            self._notify("on_thinking", ev.delta)

    def _on_state_change(self, old: ExecutionState, new: ExecutionState) -> None:
        self._notify("on_state_change", old, new)

    def _notify(self, name: str, *args: Any) -> None:
        observer = self._options.observer
        if observer is None:
            return
        fn = getattr(observer, name, None)
        if fn is None:
            return
        try:
            fn(*args)
        except Exception:  # noqa: BLE001
            self._log.exception("observer_error", callback=name)
