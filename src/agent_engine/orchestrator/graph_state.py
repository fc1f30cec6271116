from __future__ import annotations

import operator
from typing import Any, Annotated
from typing_extensions import TypedDict

from agent_engine.core.types import ModelTurn, StopReason


class LoopState(TypedDict, total=False):
    # Conversation, appended to by every node
    messages: Annotated[list[dict[str, Any]], operator.add]

    # Round bookkeeping
    iteration: int
    consecutive_failures: int

    # MODEL output handed to ACT
    turn: ModelTurn | None

    # Set exactly once; routes to FINISH
    stop_reason: StopReason | None
