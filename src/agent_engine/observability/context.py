from __future__ import annotations

from contextvars import ContextVar


_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)
_session_id: ContextVar[str | None] = ContextVar("session_id", default=None)
_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)
_iteration: ContextVar[int | None] = ContextVar("iteration", default=None)
_state: ContextVar[str | None] = ContextVar("state", default=None)
_errors: ContextVar[list[str] | None] = ContextVar("errors", default=None)


def bind_context(*, trace_id: str, session_id: str, run_id: str) -> None:
    _trace_id.set(trace_id)
    _session_id.set(session_id)
    _run_id.set(run_id)
    _iteration.set(0)
    _state.set(None)
    _errors.set([])


def set_iteration(iteration: int) -> None:
    _iteration.set(iteration)


def set_state(state: str) -> None:
    _state.set(state)


def add_error(message: str) -> None:
    errs = list(_errors.get() or [])
    errs.append(message)
    _errors.set(errs)


def snapshot() -> dict[str, object]:
    """Return the current run context for log records."""

    out: dict[str, object] = {}
    for key, var in (
        ("trace_id", _trace_id),
        ("session_id", _session_id),
        ("run_id", _run_id),
        ("iteration", _iteration),
        ("state", _state),
    ):
        v = var.get()
        if v is not None:
            out[key] = v
    out["errors"] = list(_errors.get() or [])
    return out
