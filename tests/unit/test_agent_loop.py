from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from agent_engine.control.controller import ExecutionController
from agent_engine.control.journal import RollbackFailure, RollbackJournal
from agent_engine.control.permissions import PermissionGate
from agent_engine.core.errors import ProviderError
from agent_engine.core.types import (
    AgentResult,
    ExecutionState,
    ModelTurn,
    PermissionResponse,
    StopReason,
    ToolCall,
    ToolResult,
)
from agent_engine.llm.client import FakeProviderClient, ProviderTarget
from agent_engine.llm.retry import RetryPolicy
from agent_engine.orchestrator.agent_loop import AgentLoop
from agent_engine.orchestrator.options import AgentObserver, AgentOptions
from agent_engine.tools.registry import ToolRegistry


def _call(call_id: str, name: str, **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments, arguments_json=json.dumps(arguments))


def _tools(*calls: ToolCall, text: str = "") -> ModelTurn:
    return ModelTurn(text=text, tool_calls=list(calls))


class RecordingObserver(AgentObserver):
    def __init__(self) -> None:
        self.warnings: list[str] = []
        self.errors: list[str] = []
        self.texts: list[str] = []
        self.results: list[ToolResult] = []
        self.states: list[ExecutionState] = []
        self.rollbacks: list[tuple[int, list[RollbackFailure]]] = []
        self.after_result: Callable[[int], None] | None = None

    def on_warning(self, message: str) -> None:
        self.warnings.append(message)

    def on_error(self, message: str) -> None:
        self.errors.append(message)

    def on_text(self, text: str) -> None:
        self.texts.append(text)

    def on_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        self.results.append(result)
        if self.after_result is not None:
            self.after_result(len(self.results))

    def on_state_change(self, old: ExecutionState, new: ExecutionState) -> None:
        self.states.append(new)

    def on_rollback(self, undone: int, failures: list[RollbackFailure]) -> None:
        self.rollbacks.append((undone, failures))


def _loop(client: FakeProviderClient, tmp_path: Path, **kw: Any) -> AgentLoop:
    loop_kw = {k: kw.pop(k) for k in ("registry", "gate", "retry", "mcp", "controller") if k in kw}
    return AgentLoop(client=client, options=AgentOptions(working_dir=str(tmp_path), **kw), **loop_kw)


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def test_plain_answer_completes(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[ModelTurn(text="hello there")])
    obs = RecordingObserver()

    res = asyncio.run(_loop(client, tmp_path, observer=obs).run_prompt("hi", system="be brief"))

    assert res.success is True
    assert res.stop_reason is StopReason.COMPLETED
    assert res.final_response == "hello there"
    assert res.iterations == 1
    assert res.tool_calls == ()
    assert obs.texts == ["hello there"]
    assert [m["role"] for m in client.calls[0].messages] == ["system", "user"]


def test_empty_final_text_still_completes(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[ModelTurn(text="")])

    res = asyncio.run(_loop(client, tmp_path).run_prompt("hi"))

    assert res.success is True
    assert res.stop_reason is StopReason.COMPLETED
    assert res.final_response == ""


def test_tool_round_trip_feeds_result_back(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("alpha\n", encoding="utf-8")
    client = FakeProviderClient(
        script=[
            _tools(_call("c1", "read", path="notes.txt"), text="Let me look."),
            ModelTurn(text="It says alpha."),
        ]
    )

    res = asyncio.run(_loop(client, tmp_path).run_prompt("what is in notes.txt?"))

    assert res.stop_reason is StopReason.COMPLETED
    assert res.iterations == 2
    assert len(res.tool_calls) == 1
    assert res.tool_calls[0].result.success is True

    second = client.calls[1].messages
    assert second[-2]["role"] == "assistant"
    assert second[-2]["tool_calls"][0]["id"] == "c1"
    assert second[-1]["role"] == "tool"
    assert second[-1]["tool_call_id"] == "c1"
    assert "alpha" in second[-1]["content"]


def test_batched_calls_run_in_order(tmp_path: Path) -> None:
    client = FakeProviderClient(
        script=[
            _tools(
                _call("c1", "write", path="a.txt", content="1"),
                _call("c2", "edit", path="a.txt", old_string="1", new_string="2"),
            ),
            ModelTurn(text="done"),
        ]
    )

    res = asyncio.run(_loop(client, tmp_path, auto_approve=True).run_prompt("go"))

    assert [r.call.id for r in res.tool_calls] == ["c1", "c2"]
    assert all(r.result.success for r in res.tool_calls)
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "2"
    assert [m["role"] for m in client.calls[1].messages[-3:]] == ["assistant", "tool", "tool"]


def test_max_iterations(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    client = FakeProviderClient(default=_tools(_call("c", "read", path="a.txt")))
    obs = RecordingObserver()

    res = asyncio.run(_loop(client, tmp_path, max_iterations=3, observer=obs).run_prompt("loop forever"))

    assert res.success is False
    assert res.stop_reason is StopReason.MAX_ITERATIONS
    assert res.iterations == 3
    assert len(res.tool_calls) == 3
    assert len(client.calls) == 3
    assert any("max iterations" in w for w in obs.warnings)


def test_consecutive_tool_failures_stop_the_run(tmp_path: Path) -> None:
    client = FakeProviderClient(default=_tools(_call("c", "nope")))

    res = asyncio.run(_loop(client, tmp_path, max_consecutive_errors=3).run_prompt("call a missing tool"))

    assert res.success is False
    assert res.stop_reason is StopReason.CONSECUTIVE_ERRORS
    assert res.iterations == 3
    assert len(res.tool_calls) == 3
    assert all(r.result.error == "Tool not found: nope" for r in res.tool_calls)


def test_success_resets_failure_streak(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    client = FakeProviderClient(
        script=[
            _tools(_call("c1", "nope")),
            _tools(_call("c2", "nope")),
            _tools(_call("c3", "read", path="a.txt")),
            _tools(_call("c4", "nope")),
            _tools(_call("c5", "nope")),
            ModelTurn(text="recovered"),
        ]
    )

    res = asyncio.run(_loop(client, tmp_path, max_consecutive_errors=3).run_prompt("go"))

    assert res.stop_reason is StopReason.COMPLETED
    assert res.final_response == "recovered"
    assert len(res.tool_calls) == 5


def test_unparseable_arguments_are_reported_to_the_model(tmp_path: Path) -> None:
    bad = ToolCall(id="c1", name="read", arguments={}, arguments_json='{"path":', parse_error="Expecting value")
    client = FakeProviderClient(script=[_tools(bad), ModelTurn(text="sorry")])

    res = asyncio.run(_loop(client, tmp_path).run_prompt("go"))

    assert res.stop_reason is StopReason.COMPLETED
    assert res.tool_calls[0].result.success is False
    assistant = client.calls[1].messages[-2]
    assert "__debug_error" in assistant["tool_calls"][0]["function"]["arguments"]
    assert client.calls[1].messages[-1]["content"].startswith("Error: read: could not parse arguments")


def test_quota_switches_to_fallback(tmp_path: Path) -> None:
    client = FakeProviderClient(
        script=[
            ProviderError("Error code: 429", status_code=429, body="insufficient_quota"),
            ModelTurn(text="from fallback"),
        ]
    )
    obs = RecordingObserver()

    res = asyncio.run(
        _loop(
            client,
            tmp_path,
            model="gpt-4o-mini",
            fallbacks=(ProviderTarget(name="openai", model="gpt-4o"),),
            observer=obs,
        ).run_prompt("hi")
    )

    assert res.success is True
    assert res.final_response == "from fallback"
    assert [c.model for c in client.calls] == ["gpt-4o-mini", "gpt-4o"]
    # The failure never reaches the conversation.
    assert [m["role"] for m in client.calls[1].messages] == ["user"]
    assert any("Switching to openai/gpt-4o" in w for w in obs.warnings)


def test_quota_without_fallback_is_an_error(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[ProviderError("quota exceeded", status_code=402)])

    res = asyncio.run(_loop(client, tmp_path).run_prompt("hi"))

    assert res.success is False
    assert res.stop_reason is StopReason.ERROR
    assert res.final_response.startswith("Error:")


def test_rate_limit_is_retried(tmp_path: Path) -> None:
    client = FakeProviderClient(
        script=[
            ProviderError("rate limited", status_code=429, headers={"retry-after-ms": "1"}),
            ModelTurn(text="ok"),
        ]
    )
    obs = RecordingObserver()

    res = asyncio.run(_loop(client, tmp_path, observer=obs).run_prompt("hi"))

    assert res.success is True
    assert len(client.calls) == 2
    assert client.calls[0].model == client.calls[1].model
    assert any("rate_limited" in w for w in obs.warnings)


def test_rate_limit_with_unusable_retry_after_falls_back_to_backoff(tmp_path: Path) -> None:
    client = FakeProviderClient(
        script=[
            ProviderError("rate limited", status_code=429, headers={"retry-after": "1e400"}),
            ModelTurn(text="ok"),
        ]
    )

    res = asyncio.run(
        _loop(client, tmp_path, retry=RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=4)).run_prompt("hi")
    )

    assert res.success is True
    assert res.stop_reason is StopReason.COMPLETED
    assert len(client.calls) == 2


def test_connection_errors_give_up_after_max_attempts(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[ConnectionError("ECONNRESET")] * 3)

    res = asyncio.run(
        _loop(client, tmp_path, retry=RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=4)).run_prompt("hi")
    )

    assert res.stop_reason is StopReason.ERROR
    assert len(client.calls) == 3
    assert "giving up after 3 attempts" in res.final_response


def test_fatal_provider_error(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[ProviderError("bad request", status_code=400)])
    obs = RecordingObserver()

    res = asyncio.run(_loop(client, tmp_path, observer=obs).run_prompt("hi"))

    assert res.success is False
    assert res.stop_reason is StopReason.ERROR
    assert res.final_response == "Error: bad request"
    assert len(client.calls) == 1
    assert obs.errors


@pytest.mark.parametrize("rollback", [True, False])
def test_abort_after_two_writes(tmp_path: Path, rollback: bool) -> None:
    existing = tmp_path / "b.txt"
    existing.write_text("orig", encoding="utf-8")
    client = FakeProviderClient(
        script=[
            _tools(_call("c1", "write", path="a.txt", content="new")),
            _tools(_call("c2", "write", path="b.txt", content="changed")),
            _tools(_call("c3", "write", path="c.txt", content="never")),
        ]
    )
    obs = RecordingObserver()

    async def scenario() -> tuple[AgentResult, AgentLoop]:
        loop = _loop(client, tmp_path, auto_approve=True, observer=obs)

        def maybe_abort(n: int) -> None:
            if n == 2:
                loop.controller.abort(rollback=rollback)

        obs.after_result = maybe_abort
        return await loop.run_prompt("write files"), loop

    res, loop = asyncio.run(scenario())

    assert res.success is False
    assert res.stop_reason is StopReason.ABORTED
    assert len(res.tool_calls) == 2
    assert not (tmp_path / "c.txt").exists()
    assert loop.controller.state is ExecutionState.STOPPED
    assert obs.states[-2:] == [ExecutionState.ABORTING, ExecutionState.STOPPED]

    if rollback:
        assert not (tmp_path / "a.txt").exists()
        assert existing.read_text(encoding="utf-8") == "orig"
        assert obs.rollbacks == [(2, [])]
        assert len(loop.controller.journal) == 0
    else:
        assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "new"
        assert existing.read_text(encoding="utf-8") == "changed"
        assert obs.rollbacks == []


def test_rollback_uses_the_journal_the_host_passed_in(tmp_path: Path) -> None:
    journal = RollbackJournal()
    controller = ExecutionController(journal=journal)
    client = FakeProviderClient(
        script=[
            _tools(_call("c1", "write", path="a.txt", content="new")),
            _tools(_call("c2", "write", path="b.txt", content="never")),
        ]
    )
    obs = RecordingObserver()
    obs.after_result = lambda n: controller.abort(rollback=True)

    loop = _loop(client, tmp_path, auto_approve=True, observer=obs, controller=controller)
    res = asyncio.run(loop.run_prompt("write"))

    assert loop.controller.journal is journal
    assert res.stop_reason is StopReason.ABORTED
    assert not (tmp_path / "a.txt").exists()
    assert obs.rollbacks == [(1, [])]


def test_plan_submission_ends_run(tmp_path: Path) -> None:
    client = FakeProviderClient(
        script=[
            _tools(
                _call("p1", "plan_approval", action="create", title="Add caching"),
                _call("p2", "plan_approval", action="add_step", step_title="Wrap fetch", files_affected=["api.py"]),
                _call("p3", "plan_approval", action="submit"),
            )
        ]
    )

    res = asyncio.run(_loop(client, tmp_path).run_prompt("plan it"))

    assert res.success is True
    assert res.stop_reason is StopReason.PLAN_APPROVAL
    assert res.plan is not None and res.plan["title"] == "Add caching"
    assert "1. Wrap fetch" in res.final_response
    assert len(res.tool_calls) == 3
    assert len(client.calls) == 1


def test_chat_mode_only_offers_read_only_tools(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[ModelTurn(text="ok")])

    asyncio.run(_loop(client, tmp_path, chat_mode=True).run_prompt("hi"))

    names = {t["function"]["name"] for t in client.calls[0].tools or []}
    assert names == {"read", "plan_approval"}


def test_gated_call_waits_for_approval(tmp_path: Path) -> None:
    client = FakeProviderClient(
        script=[_tools(_call("c1", "write", path="a.txt", content="x")), ModelTurn(text="written")]
    )

    async def scenario() -> AgentResult:
        loop = _loop(client, tmp_path, gate=PermissionGate())
        task = asyncio.create_task(loop.run_prompt("write a"))

        await _until(lambda: loop.gate.pending is not None)
        await asyncio.sleep(0.02)
        assert not task.done()
        assert not (tmp_path / "a.txt").exists()
        assert loop.controller.state is ExecutionState.RUNNING

        pending = loop.gate.pending
        assert pending is not None and pending.type == "write" and pending.path == "a.txt"
        assert loop.gate.respond(pending.id, PermissionResponse(approved=True))
        return await asyncio.wait_for(task, timeout=2)

    res = asyncio.run(scenario())

    assert res.stop_reason is StopReason.COMPLETED
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "x"


def test_gated_call_without_answer_never_completes(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[_tools(_call("c1", "bash", command="echo hi"))])

    async def scenario() -> None:
        loop = _loop(client, tmp_path, gate=PermissionGate())
        await asyncio.wait_for(loop.run_prompt("run it"), timeout=0.2)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(scenario())


def test_abort_while_waiting_for_approval(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[_tools(_call("c1", "delete", path="keep.txt"))])
    (tmp_path / "keep.txt").write_text("k", encoding="utf-8")

    async def scenario() -> tuple[AgentResult, AgentLoop]:
        loop = _loop(client, tmp_path, gate=PermissionGate())
        task = asyncio.create_task(loop.run_prompt("delete it"))
        await _until(lambda: loop.gate.pending is not None)
        loop.controller.handle_key("ctrl+c")
        return await asyncio.wait_for(task, timeout=2), loop

    res, loop = asyncio.run(scenario())

    assert res.stop_reason is StopReason.ABORTED
    assert res.tool_calls == ()
    assert (tmp_path / "keep.txt").exists()
    assert loop.gate.pending is None


def test_step_mode_waits_after_each_tool_call(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    client = FakeProviderClient(script=[_tools(_call("c1", "read", path="a.txt")), ModelTurn(text="done")])

    async def scenario() -> AgentResult:
        loop = _loop(client, tmp_path, step_mode=True)
        task = asyncio.create_task(loop.run_prompt("read"))

        await _until(lambda: loop.controller.state is ExecutionState.WAITING_STEP)
        assert len(client.calls) == 1
        loop.controller.handle_key("return")
        return await asyncio.wait_for(task, timeout=2)

    res = asyncio.run(scenario())
    assert res.stop_reason is StopReason.COMPLETED
    assert res.iterations == 2


def test_pause_holds_the_next_iteration(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    client = FakeProviderClient(script=[_tools(_call("c1", "read", path="a.txt")), ModelTurn(text="done")])

    async def scenario() -> AgentResult:
        obs = RecordingObserver()
        loop = _loop(client, tmp_path, observer=obs)
        obs.after_result = lambda n: loop.controller.toggle_pause()
        task = asyncio.create_task(loop.run_prompt("read"))

        await _until(lambda: loop.controller.state is ExecutionState.PAUSED)
        await asyncio.sleep(0.02)
        assert len(client.calls) == 1
        loop.controller.handle_key("ctrl+p")
        return await asyncio.wait_for(task, timeout=2)

    res = asyncio.run(scenario())
    assert res.stop_reason is StopReason.COMPLETED
    assert len(client.calls) == 2


def test_mcp_failure_degrades_to_builtin_tools(tmp_path: Path) -> None:
    class FailingGateway:
        async def register_into(self, registry: ToolRegistry) -> int:
            raise RuntimeError("mcp offline")

    client = FakeProviderClient(script=[ModelTurn(text="still here")])
    obs = RecordingObserver()

    res = asyncio.run(_loop(client, tmp_path, mcp=FailingGateway(), observer=obs).run_prompt("hi"))

    assert res.success is True
    assert any("mcp offline" in w for w in obs.warnings)
    assert client.calls[0].tools


def test_observer_errors_do_not_break_the_run(tmp_path: Path) -> None:
    class Broken(AgentObserver):
        def on_text(self, text: str) -> None:
            raise RuntimeError("render failed")

    client = FakeProviderClient(script=[ModelTurn(text="fine")])

    res = asyncio.run(_loop(client, tmp_path, observer=Broken()).run_prompt("hi"))

    assert res.success is True
    assert res.final_response == "fine"


def test_sequential_runs_reuse_the_loop(tmp_path: Path) -> None:
    client = FakeProviderClient(script=[ModelTurn(text="one"), ModelTurn(text="two")])

    async def scenario() -> list[str]:
        loop = _loop(client, tmp_path)
        first = await loop.run_prompt("a")
        second = await loop.run_prompt("b")
        return [first.final_response, second.final_response]

    assert asyncio.run(scenario()) == ["one", "two"]
