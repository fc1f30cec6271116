from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from agent_engine.core.errors import EngineError
from agent_engine.core.types import ExecutionState
from agent_engine.observability import get_logger, set_state

from .journal import RollbackJournal

T = TypeVar("T")


class ControlSignal(str, Enum):
    TOGGLE_PAUSE = "toggle_pause"
    ABORT = "abort"
    ABORT_WITH_ROLLBACK = "abort_with_rollback"
    TOGGLE_STEP_MODE = "toggle_step_mode"
    ADVANCE_STEP = "advance_step"


CONTROL_KEYS: dict[str, ControlSignal] = {
    "ctrl+p": ControlSignal.TOGGLE_PAUSE,
    "ctrl+c": ControlSignal.ABORT,
    "ctrl+z": ControlSignal.ABORT_WITH_ROLLBACK,
    "ctrl+shift+s": ControlSignal.TOGGLE_STEP_MODE,
    "return": ControlSignal.ADVANCE_STEP,
}

_TERMINAL = (ExecutionState.ABORTING, ExecutionState.STOPPED)

StateListener = Callable[[ExecutionState, ExecutionState], None]


class RunAborted(EngineError):
    """Raised out of a suspension point when the run was aborted while waiting."""


class ExecutionController:
    """Run/pause/step/abort state machine for a single agent run.

    Signals mutate state synchronously; the loop observes the state only at its
    suspension points (`checkpoint`, `wait_for_step`, `wait_or_abort`,
    `sleep_or_abort`). Waiters park on an asyncio.Event that is swapped on
    every transition, so no OS thread is held while suspended.

    Signals and the suspension points share those events, so they must run on
    the event loop thread. Other threads go through `signal_threadsafe`.
    """

    def __init__(
        self,
        *,
        journal: RollbackJournal | None = None,
        step_mode: bool = False,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._journal = journal if journal is not None else RollbackJournal()
        self._state = ExecutionState.STOPPED
        self._step_mode = step_mode
        self._rollback_requested = False
        self._active = False
        self._on_state_change = on_state_change
        self._changed = asyncio.Event()
        self._aborted = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._log = get_logger("agent_engine.controller")

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def journal(self) -> RollbackJournal:
        return self._journal

    @property
    def step_mode(self) -> bool:
        return self._step_mode

    @property
    def active(self) -> bool:
        return self._active

    @property
    def is_aborting(self) -> bool:
        return self._state in _TERMINAL

    @property
    def rollback_requested(self) -> bool:
        return self._rollback_requested

    def set_listener(self, listener: StateListener | None) -> None:
        self._on_state_change = listener

    # -- run lifecycle -----------------------------------------------------

    def begin_run(self) -> None:
        if self._active:
            raise RuntimeError("a run is already active on this controller")
        self._active = True
        self._rollback_requested = False
        self._aborted = asyncio.Event()
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._journal.clear()
        self._transition(ExecutionState.RUNNING)

    def end_run(self) -> None:
        self._active = False
        self._wake()
        self._loop = None

    # -- signals -----------------------------------------------------------

    def handle_key(self, key: str) -> bool:
        """Map a key name to its control signal. Unknown keys are ignored."""

        sig = CONTROL_KEYS.get(key.strip().lower())
        if sig is None:
            return False
        return self.signal(sig)

    def signal_threadsafe(self, sig: ControlSignal | str) -> None:
        """Post a signal from a thread other than the one running the loop."""

        loop = self._loop
        if loop is None or loop.is_closed():
            self.signal(sig)
            return
        loop.call_soon_threadsafe(self.signal, sig)

    def signal(self, sig: ControlSignal | str) -> bool:
        """Apply one signal. Returns False when it does not apply right now."""

        try:
            sig = ControlSignal(sig)
        except ValueError:
            return False

        if not self._active:
            self._log.debug("signal_ignored", signal=sig.value, reason="no_active_run")
            return False

        handlers: dict[ControlSignal, Callable[[], bool]] = {
            ControlSignal.TOGGLE_PAUSE: self.toggle_pause,
            ControlSignal.ABORT: lambda: self.abort(rollback=False),
            ControlSignal.ABORT_WITH_ROLLBACK: lambda: self.abort(rollback=True),
            ControlSignal.TOGGLE_STEP_MODE: self.toggle_step_mode,
            ControlSignal.ADVANCE_STEP: self.advance_step,
        }
        applied = handlers[sig]()
        if not applied:
            self._log.debug("signal_ignored", signal=sig.value, state=self._state.value)
        return applied

    def toggle_pause(self) -> bool:
        if self._state is ExecutionState.RUNNING:
            self._transition(ExecutionState.PAUSED)
            return True
        if self._state is ExecutionState.PAUSED:
            self._transition(ExecutionState.RUNNING)
            return True
        return False

    def toggle_step_mode(self) -> bool:
        if self.is_aborting:
            return False
        self._step_mode = not self._step_mode
        self._log.info("step_mode_changed", enabled=self._step_mode)
        if not self._step_mode and self._state is ExecutionState.WAITING_STEP:
            self._transition(ExecutionState.RUNNING)
        else:
            self._wake()
        return True

    def advance_step(self) -> bool:
        if self._state is not ExecutionState.WAITING_STEP:
            return False
        self._transition(ExecutionState.RUNNING)
        return True

    def abort(self, *, rollback: bool = False) -> bool:
        if self._state is ExecutionState.STOPPED:
            return False
        if self._state is ExecutionState.ABORTING:
            # Upgrading a pending abort to a rollback is still possible.
            if rollback and not self._rollback_requested:
                self._rollback_requested = True
                return True
            return False

        self._rollback_requested = rollback
        self._log.info("abort_requested", rollback=rollback, pending_undo=len(self._journal) if rollback else 0)
        self._transition(ExecutionState.ABORTING)
        self._aborted.set()
        return True

    def finalize_abort(self) -> int:
        """Complete an abort: replay the journal if asked to, then stop."""

        if self._state is not ExecutionState.ABORTING:
            return 0
        undone = self._journal.replay_reverse() if self._rollback_requested else 0
        self._transition(ExecutionState.STOPPED)
        return undone

    # -- suspension points -------------------------------------------------

    async def checkpoint(self) -> bool:
        """Block while paused. Returns False once the run is aborting."""

        await self._wait_until(lambda: self._state is not ExecutionState.PAUSED)
        return not self.is_aborting

    async def wait_for_step(self) -> bool:
        """In step mode, park in waiting_step until advanced. Returns False on abort."""

        if self._step_mode and self._state is ExecutionState.RUNNING:
            self._transition(ExecutionState.WAITING_STEP)
            await self._wait_until(lambda: self._state is not ExecutionState.WAITING_STEP)
        return not self.is_aborting

    async def wait_or_abort(self, aw: Awaitable[T]) -> T:
        """Await `aw`, cancelling it and raising RunAborted if an abort arrives first."""

        task: asyncio.Future[Any] = asyncio.ensure_future(aw)
        if self.is_aborting:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise RunAborted("run aborted")

        abort_waiter = asyncio.ensure_future(self._aborted.wait())
        try:
            done, _ = await asyncio.wait({task, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            abort_waiter.cancel()
            raise

        if task in done:
            abort_waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunAborted("run aborted")

    async def sleep_or_abort(self, delay_s: float) -> bool:
        """Sleep for `delay_s`. Returns False if the run was aborted meanwhile."""

        if self.is_aborting:
            return False
        try:
            await asyncio.wait_for(self._aborted.wait(), timeout=max(0.0, delay_s))
        except asyncio.TimeoutError:
            return True
        return False

    # -- internals ---------------------------------------------------------

    async def _wait_until(self, predicate: Callable[[], bool]) -> None:
        while not predicate() and not self.is_aborting:
            await self._changed.wait()

    def _wake(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    def _transition(self, new: ExecutionState) -> None:
        old = self._state
        self._state = new
        set_state(new.value)
        self._log.info("state_change", from_state=old.value, to_state=new.value)
        self._wake()
        if self._on_state_change is not None and old is not new:
            self._on_state_change(old, new)
