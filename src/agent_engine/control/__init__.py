from __future__ import annotations

from .controller import ControlSignal, ExecutionController
from .journal import RollbackJournal
from .permissions import PermissionGate, PermissionPolicy

__all__ = [
    "ControlSignal",
    "ExecutionController",
    "PermissionGate",
    "PermissionPolicy",
    "RollbackJournal",
]
