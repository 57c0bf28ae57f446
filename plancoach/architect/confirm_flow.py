from typing import Any, Dict

from plancoach.architect import prompts
from plancoach.architect.machine import CandidateFlow, CandidateMachine, FlowContext, FlowResult, candidate_id
from plancoach.models import ToolConfirmCandidate


class ToolConfirmFlow(CandidateFlow):
    """Yes/no gate for a downgraded track/activate/archive/deactivate call."""

    kind = "confirm_tool"
    preview_status = "awaiting_consent"
    machine = CandidateMachine("confirm_tool", {"awaiting_consent": {"executed", "abandoned"}})
    abandon_messages = prompts.ABANDON_CONFIRM
    ask_yes_no = prompts.ASK_YES_NO_GENERIC

    def render_preview(self, candidate: ToolConfirmCandidate) -> str:
        return candidate.prompt

    def start(self, ctx: FlowContext, tool_name: str, args: Dict[str, Any], prompt: str) -> FlowResult:
        candidate = ToolConfirmCandidate(
            id=candidate_id("cfm"),
            status="awaiting_consent",
            tool_name=tool_name,
            tool_args=args,
            prompt=prompt,
        )
        self.emit(ctx, "started", candidate)
        return self.show_preview(candidate, ctx)

    def commit(self, candidate: ToolConfirmCandidate, ctx: FlowContext) -> FlowResult:
        result = ctx.run_tool(candidate.tool_name, candidate.tool_args, ctx)
        done = self.machine.advance(candidate, "executed")
        self.emit(ctx, "completed", done, outcome=result.outcome.value)
        return FlowResult(reply=result.reply, candidate=done, outcome=result.outcome, executed_tools=result.executed_tools)
