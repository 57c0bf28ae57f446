from typing import Optional

from plancoach.architect import prompts
from plancoach.architect.machine import CandidateFlow, CandidateMachine, FlowContext, FlowResult, candidate_id
from plancoach.consent import ConsentKind, ConsentSignal, extract_frequency, parse_consent
from plancoach.intents import looks_like_exploring, parse_quoted_title
from plancoach.models import ActionCandidate, ActionParams, ItemKind, Outcome, ProposedBy
from plancoach.plan_store import WriteStatus

TOOL_FOR_KIND = {
    ItemKind.HABIT: "create_simple_action",
    ItemKind.MISSION: "create_simple_action",
    ItemKind.FRAMEWORK: "create_framework",
}


class CreateActionFlow(CandidateFlow):
    """exploring -> awaiting_confirm -> previewing -> created | abandoned"""

    kind = "create"
    machine = CandidateMachine(
        "create",
        {
            "exploring": {"awaiting_confirm", "previewing", "abandoned"},
            "awaiting_confirm": {"previewing", "abandoned"},
            "previewing": {"created", "abandoned"},
        },
    )
    abandon_messages = prompts.ABANDON_CREATE
    ask_yes_no = prompts.ASK_YES_NO_CREATE

    @staticmethod
    def missing_field(candidate: ActionCandidate) -> Optional[str]:
        if not (candidate.proposed.title or "").strip():
            return "title"
        if candidate.item_kind == ItemKind.HABIT and not candidate.proposed.target_reps:
            return "target_reps"
        return None

    def render_preview(self, candidate: ActionCandidate) -> str:
        params = candidate.proposed
        lines = [f'Ok je crée "{params.title}" :']
        if candidate.item_kind == ItemKind.HABIT and params.target_reps:
            lines.append(f"→ Fréquence: {params.target_reps}×/semaine")
        if params.time_of_day:
            lines.append(f"→ Moment: {prompts.time_label(params.time_of_day)}")
        if params.scheduled_days:
            lines.append(f"→ Jours: {prompts.days_label(params.scheduled_days)}")
        if params.description:
            lines.append(f"→ {params.description}")
        return "\n".join(lines) + "\n\nÇa te va ?"

    def apply_modification(self, candidate: ActionCandidate, signal: ConsentSignal):
        update = {}
        if "target_reps" in signal.changes and candidate.item_kind != ItemKind.MISSION:
            update["target_reps"] = signal.changes["target_reps"]
        if "scheduled_days" in signal.changes:
            update["scheduled_days"] = signal.changes["scheduled_days"]
        if "time_of_day" in signal.changes:
            update["time_of_day"] = signal.changes["time_of_day"]
        if not update:
            return None
        return candidate.model_copy(update={"proposed": candidate.proposed.model_copy(update=update)})

    def _ask_missing(self, candidate: ActionCandidate, field: str, prefix: str = "") -> FlowResult:
        candidate = candidate.model_copy(update={"missing_field": field})
        question = prompts.ASK_FREQUENCY if field == "target_reps" else prompts.ASK_TITLE
        return FlowResult(reply=prefix + question, candidate=candidate)

    def _next_step(self, candidate: ActionCandidate, ctx: FlowContext) -> FlowResult:
        field = self.missing_field(candidate)
        if field:
            if candidate.status != "awaiting_confirm":
                candidate = self.machine.advance(candidate, "awaiting_confirm")
            return self._ask_missing(candidate, field)
        candidate = self.machine.advance(candidate, "previewing", missing_field=None)
        return self.show_preview(candidate, ctx)

    @staticmethod
    def new_candidate(params: ActionParams, item_kind: ItemKind,
                      proposed_by: ProposedBy = ProposedBy.ASSISTANT) -> ActionCandidate:
        return ActionCandidate(
            id=candidate_id("cand"),
            status="exploring",
            item_kind=item_kind,
            proposed=params,
            proposed_by=proposed_by,
        )

    def start(self, ctx: FlowContext, params: ActionParams, item_kind: ItemKind, message: str,
              proposed_by: ProposedBy = ProposedBy.ASSISTANT) -> FlowResult:
        candidate = self.new_candidate(params, item_kind, proposed_by)
        self.emit(ctx, "started", candidate)
        if looks_like_exploring(message):
            title = params.title or "cette action"
            return FlowResult(
                reply=f'On pourrait ajouter "{title}" à ton plan. Tu veux que je le fasse ?',
                candidate=candidate,
            )
        return self._next_step(candidate, ctx)

    def respond(self, candidate: ActionCandidate, message: str, ctx: FlowContext) -> FlowResult:
        if candidate.status == "previewing":
            return self.respond_to_preview(candidate, message, ctx)

        signal = parse_consent(message)
        if candidate.status == "exploring":
            if signal.kind == ConsentKind.MODIFY:
                patched = self.apply_modification(candidate, signal)
                return self._next_step(patched or candidate, ctx)
            if signal.kind == ConsentKind.AFFIRMATIVE:
                return self._next_step(candidate, ctx)
            if signal.kind == ConsentKind.NEGATIVE:
                return self.abandon(candidate, "user_declined", ctx)
            return self.handle_unclear(candidate, signal, ctx)

        # awaiting_confirm: we asked for a missing value
        if signal.kind == ConsentKind.NEGATIVE:
            return self.abandon(candidate, "user_declined", ctx)
        if signal.kind == ConsentKind.MODIFY:
            # keep days or time given alongside (or instead of) the missing value
            candidate = self.apply_modification(candidate, signal) or candidate
        if candidate.missing_field == "target_reps":
            reps = extract_frequency(message)
            if reps is not None:
                candidate = candidate.model_copy(
                    update={"proposed": candidate.proposed.model_copy(update={"target_reps": reps})}
                )
            if self.missing_field(candidate) != "target_reps":
                return self._next_step(candidate, ctx)
            return self.handle_unclear(candidate, signal, ctx, prompts.ASK_FREQUENCY)
        if candidate.missing_field == "title":
            title = parse_quoted_title(message) or message.strip()
            if title and len(title) <= 80 and signal.kind == ConsentKind.UNCLEAR:
                patched = candidate.model_copy(
                    update={"proposed": candidate.proposed.model_copy(update={"title": title})}
                )
                return self._next_step(patched, ctx)
            return self.handle_unclear(candidate, signal, ctx, prompts.ASK_TITLE)
        return self._next_step(candidate, ctx)

    def commit(self, candidate: ActionCandidate, ctx: FlowContext) -> FlowResult:
        tool = TOOL_FOR_KIND[candidate.item_kind]
        title = candidate.proposed.title
        args = candidate.proposed.model_dump(mode="json")
        ctx.ledger.log_event("tool_call_attempted", tool, ctx.user_id, ctx.request_id, args=args)
        result = ctx.adapter.create_item(ctx.user_id, candidate.proposed, candidate.item_kind)

        if result.status == WriteStatus.CREATED:
            done = self.machine.advance(candidate, "created")
            self.emit(ctx, "completed", done)
            ctx.ledger.log_event("tool_call_succeeded", tool, ctx.user_id, ctx.request_id, args=args, result=result.item.id)
            return FlowResult(
                reply=f'C\'est fait : "{title}" est dans ton plan.',
                candidate=done,
                outcome=Outcome.SUCCESS,
                executed_tools=[tool],
            )
        if result.status == WriteStatus.DUPLICATE:
            ctx.ledger.log_event("tool_call_blocked", tool, ctx.user_id, ctx.request_id, args=args, result="duplicate")
            return self.abandon(candidate, "duplicate", ctx, prompts.duplicate_message(title), Outcome.BLOCKED)
        if result.status == WriteStatus.UNCERTAIN:
            done = self.machine.advance(candidate, "created")
            self.emit(ctx, "completed", done, uncertain=True)
            ctx.ledger.log_event("tool_call_failed", tool, ctx.user_id, ctx.request_id, args=args, error="verification_mismatch")
            return FlowResult(
                reply=prompts.uncertain_message(title),
                candidate=done,
                outcome=Outcome.UNCERTAIN,
                executed_tools=[tool],
            )

        ctx.ledger.log_event("tool_call_failed", tool, ctx.user_id, ctx.request_id, args=args, error=result.detail)
        reply = prompts.no_plan_message() if result.detail == "no_active_plan" else prompts.failed_message()
        return self.abandon(candidate, "store_write_failed", ctx, reply, Outcome.FAILED)
