from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from agent_engine.core.config import EngineConfig
from agent_engine.llm.client import OpenAIProviderClient, ProviderTarget

if TYPE_CHECKING:
    from agent_engine.control.journal import RollbackFailure
    from agent_engine.core.types import ExecutionState, ToolCall, ToolResult


class AgentObserver:
    """Observation-only callbacks. Override what you need.

    Called synchronously at fixed points of the run. Exceptions raised here
    are logged and ignored; nothing an observer does changes control flow.
    """

    def on_tool_call(self, call: ToolCall) -> None: ...

    def on_tool_result(self, call: ToolCall, result: ToolResult) -> None: ...

    def on_text(self, text: str) -> None: ...

    def on_text_delta(self, delta: str) -> None: ...

    def on_thinking(self, delta: str) -> None: ...

    def on_warning(self, message: str) -> None: ...

    def on_error(self, message: str) -> None: ...

    def on_state_change(self, old: ExecutionState, new: ExecutionState) -> None: ...

    def on_rollback(self, undone: int, failures: list[RollbackFailure]) -> None: ...


@dataclass(frozen=True, slots=True)
class AgentOptions:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    max_iterations: int = 25
    max_consecutive_errors: int = 3
    chat_mode: bool = False
    auto_approve: bool = False
    step_mode: bool = False
    # Tried in order when the current target runs out of quota.
    fallbacks: tuple[ProviderTarget, ...] = ()
    observer: AgentObserver | None = None
    working_dir: str | None = None

    @classmethod
    def from_config(cls, cfg: EngineConfig, **overrides: Any) -> AgentOptions:
        fallbacks: list[ProviderTarget] = []
        for fb in cfg.fallbacks:
            # Same endpoint and key: reuse the primary client, only the model changes.
            same_endpoint = fb.base_url in (None, cfg.provider.base_url) and fb.api_key in (None, cfg.provider.api_key)
            client = None if same_endpoint else OpenAIProviderClient.for_fallback(cfg.provider, fb)
            fallbacks.append(ProviderTarget(name=fb.name or cfg.provider.name, model=fb.model, client=client))

        values: dict[str, Any] = {
            "provider": cfg.provider.name,
            "model": cfg.provider.model,
            "max_iterations": cfg.agent.max_iterations,
            "max_consecutive_errors": cfg.agent.max_consecutive_errors,
            "chat_mode": cfg.agent.chat_mode,
            "auto_approve": cfg.agent.auto_approve,
            "fallbacks": tuple(fallbacks),
            "working_dir": cfg.agent.working_dir,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
