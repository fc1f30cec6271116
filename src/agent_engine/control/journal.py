"""Undo log for file side effects produced during one run.

Entries are recorded before a file-modifying tool touches the disk, holding the
prior bytes of the path (or None when the path did not exist). Replay walks the
entries newest-first and puts each path back the way it was.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from agent_engine.core.types import RollbackEntry
from agent_engine.observability.logging import get_logger


@dataclass(frozen=True, slots=True)
class RollbackFailure:
    entry: RollbackEntry
    error: str


def capture_prior(path: str | Path) -> bytes | None:
    """Read the current bytes at `path`, or None if there is no file there."""

    try:
        return Path(path).read_bytes()
    except FileNotFoundError:
        return None


class RollbackJournal:
    def __init__(self) -> None:
        self._entries: list[RollbackEntry] = []
        self._log = get_logger("agent_engine.journal")
        self.last_failures: list[RollbackFailure] = []

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[RollbackEntry]:
        return list(self._entries)

    def record(self, entry: RollbackEntry) -> None:
        self._entries.append(entry)
        self._log.debug(
            "rollback_recorded",
            tool_call_id=entry.tool_call_id,
            kind=entry.kind,
            path=entry.path,
            existed=entry.prior_content is not None,
        )

    def clear(self) -> None:
        self._entries.clear()
        self.last_failures = []

    def replay_reverse(self) -> int:
        """Undo every recorded entry, newest first.

        Best-effort: a failing undo is logged and kept in `last_failures`, and
        the remaining entries are still processed. The journal is empty
        afterwards. Returns how many entries were undone.
        """

        undone = 0
        failures: list[RollbackFailure] = []

        while self._entries:
            entry = self._entries.pop()
            try:
                _undo(entry)
                undone += 1
                self._log.info("rollback_undone", kind=entry.kind, path=entry.path)
            except OSError as e:
                failures.append(RollbackFailure(entry=entry, error=str(e)))
                self._log.warning(
                    "rollback_failed",
                    kind=entry.kind,
                    path=entry.path,
                    error=str(e),
                )

        self.last_failures = failures
        if undone or failures:
            self._log.info("rollback_complete", undone=undone, failed=len(failures))
        return undone


def _undo(entry: RollbackEntry) -> None:
    path = Path(entry.path)
    if entry.prior_content is None:
        # The call created the path; remove it again.
        if path.exists():
            os.remove(path)
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(entry.prior_content)
