from __future__ import annotations

from .agent_loop import AgentLoop
from .options import AgentObserver, AgentOptions

__all__ = ["AgentLoop", "AgentObserver", "AgentOptions"]
