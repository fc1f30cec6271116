from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol, Sequence, Union

import openai
from openai import AsyncOpenAI

from agent_engine.core.config import FallbackConfig, ProviderConfig
from agent_engine.core.errors import ProviderError
from agent_engine.core.types import ModelTurn, StreamEvent
from agent_engine.observability.logging import get_logger

from .tool_call_accumulator import ToolCallAccumulator

EventCallback = Callable[[StreamEvent], None]


class ProviderClient(Protocol):
    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        on_event: EventCallback | None = None,
    ) -> ModelTurn: ...


@dataclass(frozen=True, slots=True)
class ProviderTarget:
    """A provider/model pair. `client=None` means the loop's default client."""

    name: str
    model: str
    client: ProviderClient | None = None

    @property
    def label(self) -> str:
        return f"{self.name}/{self.model}"


class OpenAIProviderClient:
    """OpenAI-compatible chat client.

    Constraints:
    - always stream=True; text, reasoning and tool-call deltas are forwarded
    - SDK retries are disabled (max_retries=0); RetryPolicy owns retrying
    - every failure surfaces as ProviderError(status_code, headers, body)
    """

    def __init__(self, cfg: ProviderConfig) -> None:
        self._cfg = cfg
        self._client = AsyncOpenAI(
            api_key=cfg.api_key,
            base_url=cfg.base_url,
            timeout=cfg.timeout_s,
            max_retries=0,
        )
        self._log = get_logger("agent_engine.llm")

    @property
    def name(self) -> str:
        return self._cfg.name

    @classmethod
    def for_fallback(cls, primary: ProviderConfig, fb: FallbackConfig) -> OpenAIProviderClient:
        return cls(
            ProviderConfig(
                api_key=fb.api_key or primary.api_key,
                name=fb.name or primary.name,
                base_url=fb.base_url or primary.base_url,
                model=fb.model,
                timeout_s=primary.timeout_s,
            )
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {"model": model, "messages": messages, "stream": True}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        acc = ToolCallAccumulator()
        try:
            stream_iter = await self._client.chat.completions.create(**kwargs)
            async for ev in stream_iter:
                choices = getattr(ev, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                if delta is None:
                    continue

                reasoning = getattr(delta, "reasoning_content", None)
                if isinstance(reasoning, str) and reasoning:
                    yield StreamEvent(type="thinking", delta=reasoning)

                content = getattr(delta, "content", None)
                if isinstance(content, str) and content:
                    yield StreamEvent(type="text", delta=content)

                delta_tool_calls = getattr(delta, "tool_calls", None)
                if delta_tool_calls:
                    acc.add_delta(list(delta_tool_calls))
        except openai.APIStatusError as e:
            raise ProviderError(
                str(e.message),
                status_code=e.status_code,
                headers=dict(e.response.headers),
                body=_body_to_text(e.body),
            ) from e
        except openai.APIError as e:
            # Connection and timeout errors carry no status code.
            raise ProviderError(str(e.message)) from e

        for tc in acc.finalize():
            yield StreamEvent(type="tool_call", tool_call=tc)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        on_event: EventCallback | None = None,
    ) -> ModelTurn:
        text: list[str] = []
        thinking: list[str] = []
        calls = []

        async for ev in self.stream(messages, model=model, tools=tools):
            if ev.type == "text":
                text.append(ev.delta)
            elif ev.type == "thinking":
                thinking.append(ev.delta)
            elif ev.tool_call is not None:
                calls.append(ev.tool_call)
            if on_event is not None:
                on_event(ev)

        self._log.info(
            "provider_turn_complete",
            model=model,
            text_len=sum(len(t) for t in text),
            tool_calls=len(calls),
        )
        return ModelTurn(text="".join(text), tool_calls=calls, thinking="".join(thinking))


def _body_to_text(body: object) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    try:
        return json.dumps(body, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(body)


ScriptStep = Union[ModelTurn, BaseException, Callable[[list[dict[str, Any]]], ModelTurn]]


@dataclass(slots=True)
class RecordedCall:
    model: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None


@dataclass(slots=True)
class FakeProviderClient:
    """Offline stub that replays a script of turns (or raises scripted errors).

    A callable step is invoked with the conversation and must return a turn.
    Once the script is exhausted every call returns `default`.
    """

    script: Sequence[ScriptStep] = ()
    default: ModelTurn = field(default_factory=lambda: ModelTurn(text="(fake) done"))
    calls: list[RecordedCall] = field(default_factory=list)
    _pos: int = 0

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tools: list[dict[str, Any]] | None = None,
        on_event: EventCallback | None = None,
    ) -> ModelTurn:
        self.calls.append(RecordedCall(model=model, messages=[dict(m) for m in messages], tools=tools))

        if self._pos < len(self.script):
            step = self.script[self._pos]
            self._pos += 1
        else:
            step = self.default

        if isinstance(step, BaseException):
            raise step
        turn = step if isinstance(step, ModelTurn) else step(messages)

        if on_event is not None:
            if turn.thinking:
                on_event(StreamEvent(type="thinking", delta=turn.thinking))
            if turn.text:
                on_event(StreamEvent(type="text", delta=turn.text))
            for tc in turn.tool_calls:
                on_event(StreamEvent(type="tool_call", tool_call=tc))
        return turn
