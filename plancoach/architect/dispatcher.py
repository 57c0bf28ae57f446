"""Tool dispatcher: the guard between model-proposed tool calls and the plan store.

Order of checks on every turn:
1. cancel an active candidate when the user says so;
2. resume an active candidate deterministically (no model call);
3. for a fresh mutating tool call, require an explicit request in the user's own
   words, otherwise turn the call into a candidate that asks first;
4. run the handler against the plan store adapter;
5. report one of none / blocked / success / failed / uncertain.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from plancoach.architect import prompts
from plancoach.architect.breakdown_flow import BreakdownFlow
from plancoach.architect.confirm_flow import ToolConfirmFlow
from plancoach.architect.create_flow import CreateActionFlow
from plancoach.architect.machine import FlowContext, FlowResult
from plancoach.architect.tools import (
    ActivatePlanActionArgs,
    ArchivePlanActionArgs,
    BreakDownActionArgs,
    CreateFrameworkArgs,
    CreateSimpleActionArgs,
    DeactivatePlanActionArgs,
    TrackProgressArgs,
    UpdateActionStructureArgs,
    parse_tool_call,
    target_of,
)
from plancoach.architect.update_flow import UpdateActionFlow
from plancoach.config import Settings
from plancoach.errors import StoreWriteFailure
from plancoach.intents import has_explicit_intent, is_cancel_only, looks_like_cancel
from plancoach.ledger import ToolLedger
from plancoach.llm import CompletionService, ToolCall
from plancoach.models import ActionParams, ItemKind, ItemStatus, LogStatus, Outcome, ProposedBy, ProposedChanges
from plancoach.plan_store import PlanStoreAdapter, WriteStatus

logger = logging.getLogger(__name__)

STATUS_OUTCOME = {
    WriteStatus.CREATED: Outcome.SUCCESS,
    WriteStatus.UPDATED: Outcome.SUCCESS,
    WriteStatus.NOOP: Outcome.NONE,
    WriteStatus.DUPLICATE: Outcome.BLOCKED,
    WriteStatus.BLOCKED: Outcome.BLOCKED,
    WriteStatus.NOT_FOUND: Outcome.NONE,
    WriteStatus.FAILED: Outcome.FAILED,
    WriteStatus.UNCERTAIN: Outcome.UNCERTAIN,
}

LOG_STATUS_FR = {
    LogStatus.COMPLETED: "fait",
    LogStatus.MISSED: "pas fait",
    LogStatus.PARTIAL: "fait en partie",
}


class ToolDispatcher:
    def __init__(
        self,
        adapter: PlanStoreAdapter,
        ledger: ToolLedger,
        completion: Optional[CompletionService] = None,
        settings: Optional[Settings] = None,
    ):
        self.adapter = adapter
        self.ledger = ledger
        self.completion = completion
        self.settings = settings
        self.create_flow = CreateActionFlow()
        self.update_flow = UpdateActionFlow()
        self.breakdown_flow = BreakdownFlow()
        self.confirm_flow = ToolConfirmFlow()
        self.flows = {
            "create": self.create_flow,
            "update": self.update_flow,
            "breakdown": self.breakdown_flow,
            "confirm_tool": self.confirm_flow,
        }

    def context(self, user_id: str, request_id: Optional[str] = None) -> FlowContext:
        return FlowContext(
            user_id=user_id,
            adapter=self.adapter,
            ledger=self.ledger,
            completion=self.completion,
            settings=self.settings,
            request_id=request_id,
            run_tool=self.run_tool,
        )

    # --- 1 & 2: active candidates ---

    def cancel_if_requested(self, candidate, message: str, ctx: FlowContext) -> Optional[FlowResult]:
        """Clear an active candidate on a cancel phrase.

        Returns a reply when the message was only a cancellation; otherwise returns a
        result without reply so the caller continues with the candidate cleared.
        """
        if candidate is None or not looks_like_cancel(message):
            return None
        flow = self.flows[candidate.kind]
        abandoned = flow.abandon(candidate, "user_cancelled", ctx, prompts.CANCELLED)
        if is_cancel_only(message):
            return abandoned
        return FlowResult(reply="", candidate=abandoned.candidate)

    def resume(self, candidate, message: str, ctx: FlowContext) -> FlowResult:
        flow = self.flows[candidate.kind]
        try:
            return flow.respond(candidate, message, ctx)
        except StoreWriteFailure as e:
            logger.error("[Dispatcher] Store failure while resuming %s: %s", candidate.id, e)
            return flow.abandon(candidate, "store_write_failed", ctx, prompts.failed_message(), Outcome.FAILED)

    # --- 3-5: fresh tool calls ---

    def handle_tool_call(self, call: ToolCall, message: str, ctx: FlowContext, model_text: Optional[str] = None) -> FlowResult:
        ctx.ledger.log_event("tool_call_proposed", call.name, ctx.user_id, ctx.request_id, args=call.args, source="model")
        try:
            args = parse_tool_call(call.name, call.args)
        except ValidationError as e:
            logger.warning("[Dispatcher] Invalid arguments for %s: %s", call.name, e)
            ctx.ledger.log_event("tool_call_failed", call.name, ctx.user_id, ctx.request_id, args=call.args, error="invalid_args")
            return FlowResult(reply=prompts.invalid_args_message(), outcome=Outcome.FAILED)

        target = target_of(args)
        explicit = has_explicit_intent(args.tool, message, target)
        logger.info("[Dispatcher] %s proposed for '%s' (explicit=%s)", args.tool, target, explicit)
        try:
            if explicit:
                return self.run_tool(args.tool, args.model_dump(mode="json"), ctx, parsed=args)
            return self.downgrade(args, message, ctx, model_text)
        except StoreWriteFailure as e:
            logger.error("[Dispatcher] Store failure in %s: %s", args.tool, e)
            ctx.ledger.log_event("tool_call_failed", args.tool, ctx.user_id, ctx.request_id, args=call.args, error=str(e))
            return FlowResult(reply=prompts.failed_message(), outcome=Outcome.FAILED)

    def downgrade(self, args, message: str, ctx: FlowContext, model_text: Optional[str] = None) -> FlowResult:
        """Turn an unconfirmed mutation into a candidate that asks the user first."""
        ctx.ledger.log_event("tool_call_blocked", args.tool, ctx.user_id, ctx.request_id,
                             args=args.model_dump(mode="json"), result="needs_confirmation")
        prefix = f"{model_text.strip()}\n\n" if model_text and model_text.strip() else ""

        if isinstance(args, (CreateSimpleActionArgs, CreateFrameworkArgs)):
            params, kind = self._action_params(args)
            result = self.create_flow.start(ctx, params, kind, message, ProposedBy.ASSISTANT)
            return self._with_prefix(result, prefix)

        if isinstance(args, BreakDownActionArgs):
            return self._with_prefix(self._start_breakdown(args, ctx), prefix)

        item = self.adapter.find_item(ctx.user_id, args.target_name)
        if item is None:
            return FlowResult(reply=prompts.not_found_message(args.target_name))

        if isinstance(args, UpdateActionStructureArgs):
            return self._with_prefix(self.update_flow.start(ctx, item, self._changes(args)), prefix)

        if isinstance(args, ActivatePlanActionArgs):
            if item.status == ItemStatus.ACTIVE:
                return FlowResult(reply=f'"{item.title}" est déjà active.')
            missing = self.adapter.activation_blockers(ctx.user_id, item.id)
            if missing:
                ctx.ledger.log_event("tool_call_blocked", args.tool, ctx.user_id, ctx.request_id,
                                     args={"target_name": item.title}, result="prerequisites")
                return FlowResult(reply=prompts.blocked_activation_message(item.title, missing), outcome=Outcome.BLOCKED)
            question = f'Tu veux que j\'active "{item.title}" maintenant ?'
        elif isinstance(args, ArchivePlanActionArgs):
            question = f'Tu veux que je retire "{item.title}" de ton plan ?'
        elif isinstance(args, DeactivatePlanActionArgs):
            question = f'Tu veux que je mette "{item.title}" en pause ?'
        else:
            label = LOG_STATUS_FR[args.status]
            question = f'Tu veux que je note "{item.title}" comme {label} aujourd\'hui ?'

        payload = args.model_dump(mode="json")
        payload["target_name"] = item.id
        return self._with_prefix(self.confirm_flow.start(ctx, args.tool, payload, question), prefix)

    def run_tool(self, tool_name: str, raw_args: Dict[str, Any], ctx: FlowContext, parsed=None) -> FlowResult:
        """Execute a tool whose consent is already established."""
        args = parsed or parse_tool_call(tool_name, raw_args)

        if isinstance(args, (CreateSimpleActionArgs, CreateFrameworkArgs)):
            params, kind = self._action_params(args)
            candidate = self.create_flow.new_candidate(params, kind, ProposedBy.USER)
            if self.create_flow.missing_field(candidate):
                # Explicit request but incomplete: ask for the missing value instead of guessing.
                return self.create_flow.start(ctx, params, kind, "", ProposedBy.USER)
            self.create_flow.emit(ctx, "started", candidate)
            return self.create_flow.commit(self.create_flow.machine.advance(candidate, "previewing"), ctx)

        if isinstance(args, BreakDownActionArgs):
            return self._start_breakdown(args, ctx)

        item = self.adapter.find_item(ctx.user_id, args.target_name)
        if item is None:
            return FlowResult(reply=prompts.not_found_message(args.target_name))

        if isinstance(args, UpdateActionStructureArgs):
            candidate = self.update_flow.new_candidate(item, self._changes(args))
            if not self.update_flow.has_changes(candidate):
                return self.update_flow.abandon(candidate, "no_changes", ctx)
            return self.update_flow.commit(candidate, ctx)

        if isinstance(args, TrackProgressArgs):
            return self._track(item, args, ctx)

        if isinstance(args, ActivatePlanActionArgs):
            operation = self.adapter.activate_item
            done_reply = f'C\'est fait : "{item.title}" est active.'
            noop_reply = f'"{item.title}" est déjà active.'
        elif isinstance(args, ArchivePlanActionArgs):
            operation = self.adapter.archive_item
            done_reply = f'C\'est fait : "{item.title}" est retirée de ton plan.'
            noop_reply = f'"{item.title}" est déjà retirée.'
        else:
            operation = self.adapter.deactivate_item
            done_reply = f'C\'est fait : "{item.title}" est en pause.'
            noop_reply = f'"{item.title}" est déjà en pause.'

        summary = {"target_name": item.title}
        ctx.ledger.log_event("tool_call_attempted", args.tool, ctx.user_id, ctx.request_id, args=summary)
        result = operation(ctx.user_id, item.id)
        outcome = STATUS_OUTCOME[result.status]
        self._log_result(args.tool, summary, result, ctx)

        if result.status == WriteStatus.BLOCKED:
            reply = prompts.blocked_activation_message(item.title, result.missing)
        elif result.status == WriteStatus.UPDATED:
            reply = done_reply
        elif result.status == WriteStatus.NOOP:
            reply = noop_reply
        elif result.status == WriteStatus.UNCERTAIN:
            reply = prompts.uncertain_message(item.title)
        elif result.status == WriteStatus.NOT_FOUND:
            reply = prompts.not_found_message(item.title)
        else:
            reply = prompts.failed_message()
        executed = [args.tool] if outcome in (Outcome.SUCCESS, Outcome.UNCERTAIN) else []
        return FlowResult(reply=reply, outcome=outcome, executed_tools=executed)

    # --- helpers ---

    def _track(self, item, args: TrackProgressArgs, ctx: FlowContext) -> FlowResult:
        summary = {"target_name": item.title, "status": args.status.value, "value": args.value}
        ctx.ledger.log_event("tool_call_attempted", args.tool, ctx.user_id, ctx.request_id, args=summary)
        result = self.adapter.log_progress(ctx.user_id, item.id, args.status, value=args.value, note=args.note)
        self._log_result(args.tool, summary, result, ctx)
        outcome = STATUS_OUTCOME[result.status]
        label = LOG_STATUS_FR[args.status]
        if result.status in (WriteStatus.CREATED, WriteStatus.UPDATED):
            reply = f'C\'est noté : "{item.title}" {label} aujourd\'hui.'
        elif result.status == WriteStatus.NOOP:
            reply = f'C\'était déjà noté pour aujourd\'hui : "{item.title}" {label}.'
        elif result.status == WriteStatus.UNCERTAIN:
            reply = prompts.uncertain_message(item.title)
        else:
            reply = prompts.failed_message()
        executed = [args.tool] if outcome in (Outcome.SUCCESS, Outcome.UNCERTAIN) else []
        return FlowResult(reply=reply, outcome=outcome, executed_tools=executed)

    def _log_result(self, tool: str, summary: Dict[str, Any], result, ctx: FlowContext) -> None:
        if result.status in (WriteStatus.CREATED, WriteStatus.UPDATED, WriteStatus.NOOP):
            event = "tool_call_succeeded"
        elif result.status in (WriteStatus.BLOCKED, WriteStatus.DUPLICATE):
            event = "tool_call_blocked"
        else:
            event = "tool_call_failed"
        ctx.ledger.log_event(event, tool, ctx.user_id, ctx.request_id, args=summary, result=result.status.value,
                             error=result.detail if event == "tool_call_failed" else None)

    def _start_breakdown(self, args: BreakDownActionArgs, ctx: FlowContext) -> FlowResult:
        item = self.adapter.find_item(ctx.user_id, args.target_name) if args.target_name else None
        return self.breakdown_flow.start(ctx, item, args.problem)

    @staticmethod
    def _action_params(args):
        if isinstance(args, CreateFrameworkArgs):
            kind = ItemKind.FRAMEWORK
            params = ActionParams(
                title=args.title.strip(),
                description=args.description,
                target_reps=args.target_reps or 1,
                time_of_day=args.time_of_day,
                tips=args.tips,
            )
        else:
            kind = ItemKind(args.kind)
            params = ActionParams(
                title=args.title.strip(),
                description=args.description,
                target_reps=args.target_reps if kind == ItemKind.HABIT else 1,
                time_of_day=args.time_of_day,
                scheduled_days=args.scheduled_days,
                tips=args.tips,
                tracking_mode=args.tracking_mode,
            )
        return params, kind

    @staticmethod
    def _changes(args: UpdateActionStructureArgs) -> ProposedChanges:
        return ProposedChanges(
            new_reps=args.new_target_reps,
            new_days=args.new_scheduled_days,
            new_time_of_day=args.new_time_of_day,
            new_title=args.new_title,
        )

    @staticmethod
    def _with_prefix(result: FlowResult, prefix: str) -> FlowResult:
        if not prefix:
            return result
        return result.model_copy(update={"reply": prefix + result.reply})
