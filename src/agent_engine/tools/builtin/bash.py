from __future__ import annotations

import asyncio
import os
import signal

from pydantic import BaseModel, Field

from agent_engine.core.types import ToolResult
from agent_engine.observability.logging import get_logger
from agent_engine.tools.registry import ToolContext, ToolDefinition

_log = get_logger("agent_engine.tools.bash")


class BashArgs(BaseModel):
    command: str = Field(min_length=1, description="Shell command to run in the working directory")
    description: str | None = Field(default=None, description="Short explanation shown when asking for approval")
    timeout_s: float | None = Field(default=None, gt=0, description="Override the default timeout in seconds")


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... (truncated {len(text) - limit} chars)"


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it started, then reap it."""

    if proc.returncode is None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def run_bash(args: BashArgs, ctx: ToolContext) -> ToolResult:
    timeout = args.timeout_s or ctx.bash_timeout_s
    proc = await asyncio.create_subprocess_shell(
        args.command,
        cwd=str(ctx.working_dir),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        _log.warning("bash_timeout", tool_call_id=ctx.call_id, timeout_s=timeout)
        return ToolResult(
            call_id=ctx.call_id,
            success=False,
            title=f"$ {args.command}",
            output="",
            error=f"Command timed out after {timeout:g}s",
            metadata={"timed_out": True},
        )
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    output = truncate(stdout.decode("utf-8", errors="replace"), ctx.max_output_chars)
    code = proc.returncode
    return ToolResult(
        call_id=ctx.call_id,
        success=code == 0,
        title=f"$ {args.command}",
        output=output,
        error=None if code == 0 else f"Exit code {code}",
        metadata={"exit_code": code},
    )


BASH = ToolDefinition(
    name="bash",
    description="Run a shell command in the working directory and return its combined output.",
    schema=BashArgs,
    execute=run_bash,
    requires_approval=True,
    permission_type="bash",
)
