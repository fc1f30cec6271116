"""Plan drafting tool.

The model drafts a plan (create, add_step) and hands it to the user with
`submit`. A submitted plan ends the run with stop reason `plan_approval`.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from agent_engine.core.types import ToolResult
from agent_engine.tools.registry import ToolContext, ToolDefinition, ToolRejected

PLAN_KEY = "plan"
PLAN_SUBMITTED = "plan_approval"

RiskLevel = Literal["low", "medium", "high"]


class PlanArgs(BaseModel):
    action: Literal["create", "add_step", "submit", "check_status"]
    title: str | None = Field(default=None, description="Plan title (create)")
    summary: str | None = Field(default=None, description="What the plan accomplishes (create)")
    step_title: str | None = Field(default=None, description="Step title (add_step)")
    step_description: str | None = Field(default=None, description="What the step does (add_step)")
    files_affected: list[str] = Field(default_factory=list, description="Files touched by the step")
    risk_level: RiskLevel = Field(default="low", description="Risk of the step")
    testing_strategy: str | None = Field(default=None, description="How the change will be verified (submit)")


def format_plan(plan: dict[str, Any]) -> str:
    lines = [f"# {plan['title']}"]
    if plan.get("summary"):
        lines += ["", plan["summary"]]
    for i, step in enumerate(plan["steps"], start=1):
        lines.append(f"{i}. {step['title']} [{step['risk']}]")
        if step.get("description"):
            lines.append(f"   {step['description']}")
        if step.get("files"):
            lines.append(f"   files: {', '.join(step['files'])}")
    if plan.get("testing_strategy"):
        lines += ["", f"Testing: {plan['testing_strategy']}"]
    return "\n".join(lines)


def _current(ctx: ToolContext) -> dict[str, Any]:
    plan = ctx.state.get(PLAN_KEY)
    if plan is None:
        raise ToolRejected("no_plan", "No plan exists yet; call with action=create first")
    return plan


def plan_approval(args: PlanArgs, ctx: ToolContext) -> ToolResult:
    if args.action == "create":
        if not args.title:
            raise ToolRejected("missing_field", "title is required for create")
        ctx.state[PLAN_KEY] = {
            "title": args.title,
            "summary": args.summary or "",
            "steps": [],
            "status": "draft",
        }
        return ToolResult(call_id=ctx.call_id, success=True, title="Plan created", output=f"Created plan: {args.title}")

    plan = _current(ctx)

    if args.action == "add_step":
        if not args.step_title:
            raise ToolRejected("missing_field", "step_title is required for add_step")
        plan["steps"].append(
            {
                "title": args.step_title,
                "description": args.step_description or "",
                "files": list(args.files_affected),
                "risk": args.risk_level,
            }
        )
        return ToolResult(
            call_id=ctx.call_id,
            success=True,
            title="Step added",
            output=f"Added step {len(plan['steps'])}: {args.step_title}",
        )

    if args.action == "check_status":
        return ToolResult(
            call_id=ctx.call_id,
            success=True,
            title="Plan status",
            output=f"{plan['status']}: {len(plan['steps'])} step(s)",
        )

    if not plan["steps"]:
        raise ToolRejected("empty_plan", "Add at least one step before submitting")
    if args.testing_strategy:
        plan["testing_strategy"] = args.testing_strategy
    plan["status"] = "pending_approval"
    return ToolResult(
        call_id=ctx.call_id,
        success=True,
        title="Plan submitted for approval",
        output=format_plan(plan),
        metadata={PLAN_SUBMITTED: True, "plan": dict(plan)},
    )


PLAN_APPROVAL = ToolDefinition(
    name="plan_approval",
    description=(
        "Draft an implementation plan and submit it for user approval. "
        "Actions: create, add_step, submit, check_status. Submitting ends the current run."
    ),
    schema=PlanArgs,
    execute=plan_approval,
    read_only=True,
)
