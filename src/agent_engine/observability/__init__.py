from __future__ import annotations

from .context import add_error, bind_context, set_iteration, set_state
from .logging import get_logger

__all__ = ["add_error", "bind_context", "get_logger", "set_iteration", "set_state"]
