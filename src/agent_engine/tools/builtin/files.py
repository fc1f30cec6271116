from __future__ import annotations

from pydantic import BaseModel, Field

from agent_engine.core.types import ToolResult
from agent_engine.tools.registry import ToolContext, ToolDefinition, ToolRejected

_LINE_PREVIEW = 2000


class ReadArgs(BaseModel):
    path: str = Field(description="File or directory to read, absolute or relative to the working directory")
    offset: int = Field(default=0, ge=0, description="First line to return (0-based)")
    limit: int = Field(default=_LINE_PREVIEW, ge=1, description="Maximum number of lines to return")


class WriteArgs(BaseModel):
    path: str = Field(description="File to create or overwrite")
    content: str = Field(description="Full new file content")


class EditArgs(BaseModel):
    path: str = Field(description="File to edit")
    old_string: str = Field(min_length=1, description="Exact text to replace")
    new_string: str = Field(description="Replacement text")
    replace_all: bool = Field(default=False, description="Replace every occurrence instead of exactly one")


class DeleteArgs(BaseModel):
    path: str = Field(description="File to delete")


def read_file(args: ReadArgs, ctx: ToolContext) -> ToolResult:
    p = ctx.resolve_path(args.path)
    shown = ctx.display_path(args.path)

    if p.is_dir():
        entries = sorted(p.iterdir(), key=lambda e: (not e.is_dir(), e.name))
        listing = "\n".join(f"{e.name}/" if e.is_dir() else e.name for e in entries)
        return ToolResult(call_id=ctx.call_id, success=True, title=f"List {shown}", output=listing)

    if not p.exists():
        raise ToolRejected("not_found", f"File not found: {shown}")

    lines = p.read_text(encoding="utf-8", errors="replace").splitlines()
    window = lines[args.offset : args.offset + args.limit]
    body = "\n".join(f"{args.offset + i + 1:>6}\t{line}" for i, line in enumerate(window))
    rest = len(lines) - (args.offset + len(window))
    if rest > 0:
        body += f"\n... ({rest} more lines)"
    return ToolResult(
        call_id=ctx.call_id,
        success=True,
        title=f"Read {shown}",
        output=body,
        metadata={"lines": len(lines)},
    )


def write_file(args: WriteArgs, ctx: ToolContext) -> ToolResult:
    p = ctx.resolve_path(args.path)
    shown = ctx.display_path(args.path)
    if p.is_dir():
        raise ToolRejected("is_directory", f"Path is a directory: {shown}")

    existed = p.exists()
    ctx.record("write" if existed else "create", p)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(args.content, encoding="utf-8")

    verb = "Updated" if existed else "Created"
    return ToolResult(
        call_id=ctx.call_id,
        success=True,
        title=f"{verb} {shown}",
        output=f"{verb} {shown} ({len(args.content)} chars)",
        metadata={"path": str(p), "created": not existed},
    )


def edit_file(args: EditArgs, ctx: ToolContext) -> ToolResult:
    p = ctx.resolve_path(args.path)
    shown = ctx.display_path(args.path)
    if not p.is_file():
        raise ToolRejected("not_found", f"File not found: {shown}")
    if args.old_string == args.new_string:
        raise ToolRejected("no_change", "old_string and new_string are identical")

    text = p.read_text(encoding="utf-8")
    count = text.count(args.old_string)
    if count == 0:
        raise ToolRejected("no_match", f"old_string not found in {shown}")
    if count > 1 and not args.replace_all:
        raise ToolRejected(
            "ambiguous_match",
            f"old_string appears {count} times in {shown}; add more context or set replace_all",
        )

    ctx.record("edit", p)
    updated = text.replace(args.old_string, args.new_string, -1 if args.replace_all else 1)
    p.write_text(updated, encoding="utf-8")

    replaced = count if args.replace_all else 1
    return ToolResult(
        call_id=ctx.call_id,
        success=True,
        title=f"Edited {shown}",
        output=f"Replaced {replaced} occurrence(s) in {shown}",
        metadata={"path": str(p), "replacements": replaced},
    )


def delete_file(args: DeleteArgs, ctx: ToolContext) -> ToolResult:
    p = ctx.resolve_path(args.path)
    shown = ctx.display_path(args.path)
    if not p.is_file():
        raise ToolRejected("not_found", f"File not found: {shown}")

    ctx.record("delete", p)
    p.unlink()
    return ToolResult(call_id=ctx.call_id, success=True, title=f"Deleted {shown}", output=f"Deleted {shown}")


READ = ToolDefinition(
    name="read",
    description="Read a text file (with line numbers) or list a directory.",
    schema=ReadArgs,
    execute=read_file,
    read_only=True,
)

WRITE = ToolDefinition(
    name="write",
    description="Create a file or overwrite it with new content.",
    schema=WriteArgs,
    execute=write_file,
    requires_approval=True,
    permission_type="write",
)

EDIT = ToolDefinition(
    name="edit",
    description="Replace an exact string in a file. The match must be unique unless replace_all is set.",
    schema=EditArgs,
    execute=edit_file,
    requires_approval=True,
    permission_type="edit",
)

DELETE = ToolDefinition(
    name="delete",
    description="Delete a file.",
    schema=DeleteArgs,
    execute=delete_file,
    requires_approval=True,
    permission_type="delete",
)
