"""Approval gating for tool calls that change the outside world.

Pattern format: ``Tool(content)``

- ``Bash(git:*)``         any git command
- ``Bash(npm install:*)`` npm install with any args
- ``Bash(git:status)``    exactly ``git status``
- ``Write(src/*)``        writes below src/
- ``Edit(*.py)``          edits of Python files
- ``Delete(*)``           any delete
- ``Mcp(search)``         the MCP tool named ``search``
"""

from __future__ import annotations

import asyncio
import inspect
import os
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Union

from agent_engine.core.types import PermissionRequest, PermissionResponse
from agent_engine.observability import get_logger

PermissionHandler = Callable[[PermissionRequest], Union[PermissionResponse, Awaitable[PermissionResponse]]]
Verdict = Literal["allow", "deny", "ask"]

# Commands whose first two words form a meaningful prefix ("git status").
MULTI_WORD_PREFIXES = frozenset({"git", "npm", "yarn", "pnpm", "bun", "docker", "kubectl", "make", "cargo", "go", "uv", "pip"})

_PATTERN_RE = re.compile(r"^(\w+)\((.*)\)$")
_PATTERN_TOOLS = {
    "bash": "Bash",
    "write": "Write",
    "edit": "Edit",
    "delete": "Delete",
    "mcp": "Mcp",
    "tool": "Tool",
}


@dataclass(frozen=True, slots=True)
class PermissionPattern:
    tool: str
    command: str | None = None
    args: str | None = None
    path: str | None = None


def parse_pattern(pattern: str) -> PermissionPattern | None:
    m = _PATTERN_RE.match(pattern.strip())
    if m is None:
        return None
    tool, content = m.group(1), m.group(2)

    if tool == "Bash":
        idx = content.rfind(":")
        if idx == -1:
            return PermissionPattern(tool=tool, command=content, args="*")
        return PermissionPattern(tool=tool, command=content[:idx], args=content[idx + 1 :])

    return PermissionPattern(tool=tool, path=content)


def matches_bash(command: str, pattern: PermissionPattern) -> bool:
    if pattern.tool != "Bash":
        return False

    pcmd = pattern.command or ""
    pargs = pattern.args if pattern.args is not None else "*"
    command = command.strip()

    if not command.startswith(pcmd):
        return False

    if pargs == "*":
        return command == pcmd or command.startswith(pcmd + " ")

    cmd_args = command[len(pcmd) :].strip()
    if pargs.endswith("*"):
        return cmd_args.startswith(pargs[:-1])
    return cmd_args == pargs


def matches_path(path: str, pattern: str) -> bool:
    if pattern == "*":
        return True

    norm_path = os.path.normpath(path)
    if pattern.endswith("*"):
        return norm_path.startswith(pattern[:-1])
    if pattern.startswith("*."):
        return norm_path.endswith(pattern[1:])

    norm_pattern = os.path.normpath(pattern)
    return norm_path == norm_pattern or norm_pattern in norm_path


def split_command_chain(command: str) -> list[str]:
    """Split on ``&&``, ``||``, ``;`` and ``|`` outside of quotes."""

    parts: list[str] = []
    buf: list[str] = []
    quote: str | None = None
    i = 0
    n = len(command)

    while i < n:
        ch = command[i]
        if quote is not None:
            buf.append(ch)
            if ch == "\\" and quote == '"' and i + 1 < n:
                buf.append(command[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in ("'", '"'):
            quote = ch
            buf.append(ch)
            i += 1
            continue

        two = command[i : i + 2]
        if two in ("&&", "||"):
            parts.append("".join(buf))
            buf = []
            i += 2
            continue
        if ch in (";", "|"):
            parts.append("".join(buf))
            buf = []
            i += 1
            continue

        buf.append(ch)
        i += 1

    parts.append("".join(buf))
    return [p.strip() for p in parts if p.strip()]


def generate_bash_pattern(command: str) -> str:
    words = command.strip().split()
    if not words:
        return f"Bash({command}:*)"
    if words[0] in MULTI_WORD_PREFIXES and len(words) > 1:
        return f"Bash({words[0]} {words[1]}:*)"
    return f"Bash({words[0]}:*)"


def generate_path_pattern(tool: str, path: str) -> str:
    _, ext = os.path.splitext(path)
    if ext:
        return f"{tool}(*{ext})"
    return f"{tool}({path})"


class PermissionPolicy:
    """Static allow/deny lists plus patterns remembered during the session.

    Deny wins over allow. A chained shell command is allowed only when every
    sub-command is allowed, and denied when any sub-command is denied.
    """

    def __init__(self, *, allow: list[str] | None = None, deny: list[str] | None = None) -> None:
        self._allow = [p for p in (parse_pattern(s) for s in allow or []) if p is not None]
        self._deny = [p for p in (parse_pattern(s) for s in deny or []) if p is not None]
        self._session: list[str] = []
        self._session_parsed: list[PermissionPattern] = []

    @property
    def session_patterns(self) -> list[str]:
        return list(self._session)

    def add_session_pattern(self, pattern: str) -> None:
        parsed = parse_pattern(pattern)
        if parsed is None or pattern in self._session:
            return
        self._session.append(pattern)
        self._session_parsed.append(parsed)

    def clear_session(self) -> None:
        self._session.clear()
        self._session_parsed.clear()

    def decide(self, request: PermissionRequest) -> Verdict:
        allow = [*self._session_parsed, *self._allow]
        tool = _PATTERN_TOOLS.get(request.type, "Tool")

        if request.type == "bash":
            subs = split_command_chain(request.command or "")
            if not subs:
                return "ask"
            if any(matches_bash(s, p) for s in subs for p in self._deny):
                return "deny"
            if all(any(matches_bash(s, p) for p in allow) for s in subs):
                return "allow"
            return "ask"

        target = request.path if request.path is not None else request.tool_name
        if any(p.tool == tool and p.path is not None and matches_path(target, p.path) for p in self._deny):
            return "deny"
        if any(p.tool == tool and p.path is not None and matches_path(target, p.path) for p in allow):
            return "allow"
        return "ask"

    def suggest_patterns(self, request: PermissionRequest) -> list[str]:
        if request.type == "bash":
            return [generate_bash_pattern(s) for s in split_command_chain(request.command or "")]
        tool = _PATTERN_TOOLS.get(request.type, "Tool")
        if request.path is not None:
            return [generate_path_pattern(tool, request.path)]
        return [f"{tool}({request.tool_name})"]


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _resolve(fut: asyncio.Future[PermissionResponse], response: PermissionResponse) -> None:
    if not fut.done():
        fut.set_result(response)


class PermissionGate:
    """Suspends a gated tool call until it is approved or denied.

    At most one request is pending at a time; a second caller waits on the
    lock until the first resolves. Without a handler a request stays pending
    until `respond()` is called or the awaiting task is cancelled.
    """

    def __init__(
        self,
        *,
        policy: PermissionPolicy | None = None,
        handler: PermissionHandler | None = None,
        auto_approve: bool = False,
    ) -> None:
        self._policy = policy or PermissionPolicy()
        self._handler = handler
        self.auto_approve = auto_approve
        self._lock = asyncio.Lock()
        self._pending: PermissionRequest | None = None
        self._future: asyncio.Future[PermissionResponse] | None = None
        self._log = get_logger("agent_engine.permissions")

    @property
    def policy(self) -> PermissionPolicy:
        return self._policy

    @property
    def pending(self) -> PermissionRequest | None:
        return self._pending

    def set_handler(self, handler: PermissionHandler | None) -> None:
        self._handler = handler

    async def authorize(self, request: PermissionRequest) -> PermissionResponse:
        if self.auto_approve:
            self._log.debug("permission_auto_approved", tool=request.tool_name, call_id=request.call_id)
            return PermissionResponse(approved=True)

        verdict = self._policy.decide(request)
        if verdict != "ask":
            self._log.info("permission_policy", tool=request.tool_name, verdict=verdict, call_id=request.call_id)
            return PermissionResponse(approved=verdict == "allow")

        async with self._lock:
            loop = asyncio.get_running_loop()
            fut: asyncio.Future[PermissionResponse] = loop.create_future()
            self._pending = request
            self._future = fut
            handler_task: asyncio.Task[None] | None = None
            self._log.info("permission_pending", request_id=request.id, tool=request.tool_name, type=request.type)
            try:
                if self._handler is not None:
                    handler_task = asyncio.ensure_future(self._run_handler(self._handler, request, fut))
                response = await fut
            finally:
                if handler_task is not None and not handler_task.done():
                    handler_task.cancel()
                self._pending = None
                self._future = None

        if response.approved and response.remember:
            for pattern in self._policy.suggest_patterns(request):
                self._policy.add_session_pattern(pattern)

        self._log.info(
            "permission_resolved",
            request_id=request.id,
            approved=response.approved,
            remember=response.remember,
        )
        return response

    def respond(self, request_id: str, response: PermissionResponse) -> bool:
        """Resolve the pending request. Safe to call from any thread."""

        fut = self._future
        if self._pending is None or fut is None or self._pending.id != request_id or fut.done():
            return False
        loop = fut.get_loop()
        if _running_loop() is loop:
            fut.set_result(response)
        else:
            loop.call_soon_threadsafe(_resolve, fut, response)
        return True

    async def _run_handler(
        self,
        handler: PermissionHandler,
        request: PermissionRequest,
        fut: asyncio.Future[PermissionResponse],
    ) -> None:
        try:
            out = handler(request)
            if inspect.isawaitable(out):
                out = await out
            response = out if isinstance(out, PermissionResponse) else PermissionResponse(approved=bool(out))
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            self._log.exception("permission_handler_error", request_id=request.id)
            response = PermissionResponse(approved=False)
        if not fut.done():
            fut.set_result(response)
