from typing import List

from plancoach.architect import prompts
from plancoach.architect.machine import CandidateFlow, CandidateMachine, FlowContext, FlowResult, candidate_id
from plancoach.consent import ConsentKind, ConsentSignal, parse_consent
from plancoach.intents import parse_day_to_remove
from plancoach.models import Outcome, ProposedChanges, TargetRef, TrackableItem, UpdateActionCandidate
from plancoach.plan_store import WriteStatus

TOOL = "update_action_structure"


def target_ref(item: TrackableItem) -> TargetRef:
    return TargetRef(
        id=item.id,
        title=item.title,
        kind=item.kind,
        current_reps=item.target_reps,
        current_days=list(item.scheduled_days),
        current_time_of_day=item.time_of_day,
    )


class UpdateActionFlow(CandidateFlow):
    """awaiting_confirm (preview) -> [awaiting_day_removal] -> applied | abandoned"""

    kind = "update"
    preview_status = "awaiting_confirm"
    machine = CandidateMachine(
        "update",
        {
            "awaiting_confirm": {"awaiting_day_removal", "applied", "abandoned"},
            "awaiting_day_removal": {"applied", "abandoned"},
        },
    )
    abandon_messages = prompts.ABANDON_UPDATE
    ask_yes_no = prompts.ASK_YES_NO_UPDATE

    @staticmethod
    def change_lines(candidate: UpdateActionCandidate) -> List[str]:
        target, changes = candidate.target, candidate.changes
        lines = []
        if changes.new_reps is not None and changes.new_reps != target.current_reps:
            lines.append(f"→ Fréquence: {target.current_reps}× → {changes.new_reps}×/semaine")
        if changes.new_days is not None and sorted(changes.new_days) != sorted(target.current_days):
            lines.append(f"→ Jours: {prompts.days_label(target.current_days)} → {prompts.days_label(changes.new_days)}")
        if changes.new_time_of_day is not None and changes.new_time_of_day != target.current_time_of_day:
            lines.append(
                f"→ Moment: {prompts.time_label(target.current_time_of_day)} → {prompts.time_label(changes.new_time_of_day)}"
            )
        if changes.new_title and changes.new_title.strip() != target.title:
            lines.append(f'→ Nom: "{target.title}" → "{changes.new_title.strip()}"')
        return lines

    def has_changes(self, candidate: UpdateActionCandidate) -> bool:
        if candidate.changes.is_empty():
            return False
        return bool(self.change_lines(candidate))

    def render_preview(self, candidate: UpdateActionCandidate) -> str:
        lines = "\n".join(self.change_lines(candidate))
        return f'Je modifie "{candidate.target.title}" :\n{lines}\n\nÇa te va ?'

    def apply_modification(self, candidate: UpdateActionCandidate, signal: ConsentSignal):
        update = {}
        if "target_reps" in signal.changes:
            update["new_reps"] = signal.changes["target_reps"]
        if "scheduled_days" in signal.changes:
            update["new_days"] = signal.changes["scheduled_days"]
        if "time_of_day" in signal.changes:
            update["new_time_of_day"] = signal.changes["time_of_day"]
        if not update:
            return None
        return candidate.model_copy(update={"changes": candidate.changes.model_copy(update=update)})

    def new_candidate(self, item: TrackableItem, changes: ProposedChanges) -> UpdateActionCandidate:
        return UpdateActionCandidate(
            id=candidate_id("upd"),
            status="awaiting_confirm",
            target=target_ref(item),
            changes=changes,
        )

    def start(self, ctx: FlowContext, item: TrackableItem, changes: ProposedChanges) -> FlowResult:
        candidate = self.new_candidate(item, changes)
        self.emit(ctx, "started", candidate)
        if not self.has_changes(candidate):
            return self.abandon(candidate, "no_changes", ctx)
        return self.show_preview(candidate, ctx)

    def respond(self, candidate: UpdateActionCandidate, message: str, ctx: FlowContext) -> FlowResult:
        if candidate.status == "awaiting_day_removal":
            return self.resolve_day_removal(candidate, message, ctx)
        return self.respond_to_preview(candidate, message, ctx)

    def resolve_day_removal(self, candidate: UpdateActionCandidate, message: str, ctx: FlowContext) -> FlowResult:
        """Deterministic answer to 'which day do you want to drop?'."""
        day = parse_day_to_remove(message)
        if day is None or day not in candidate.day_to_drop_options:
            signal = parse_consent(message)
            if signal.kind == ConsentKind.NEGATIVE:
                return self.abandon(candidate, "user_declined", ctx)
            options = prompts.days_label(candidate.day_to_drop_options)
            return self.handle_unclear(candidate, signal, ctx, f"Dis-moi juste le jour à retirer parmi : {options}.")

        remaining = [d for d in candidate.day_to_drop_options if d != day]
        patched = candidate.model_copy(
            update={"changes": candidate.changes.model_copy(update={"new_days": remaining})}
        )
        return self.commit(patched, ctx)

    def commit(self, candidate: UpdateActionCandidate, ctx: FlowContext) -> FlowResult:
        args = candidate.changes.model_dump(mode="json")
        args["target_name"] = candidate.target.title
        ctx.ledger.log_event("tool_call_attempted", TOOL, ctx.user_id, ctx.request_id, args=args)
        result = ctx.adapter.update_item(ctx.user_id, candidate.target.id, candidate.changes)
        title = candidate.target.title

        if result.status == WriteStatus.BLOCKED:
            reps = candidate.changes.new_reps if candidate.changes.new_reps is not None else candidate.target.current_reps
            waiting = self.machine.advance(candidate, "awaiting_day_removal", day_to_drop_options=result.missing)
            ctx.ledger.log_event("tool_call_blocked", TOOL, ctx.user_id, ctx.request_id, args=args, result="too_many_days")
            self.emit(ctx, "clarification_asked", waiting, reason="day_to_drop")
            return FlowResult(
                reply=prompts.too_many_days_message(reps, result.missing),
                candidate=waiting,
                outcome=Outcome.BLOCKED,
            )
        if result.status in (WriteStatus.UPDATED, WriteStatus.UNCERTAIN):
            summary = "\n".join(self.change_lines(candidate))
            done = self.machine.advance(candidate, "applied")
            self.emit(ctx, "completed", done)
            if result.status == WriteStatus.UPDATED:
                ctx.ledger.log_event("tool_call_succeeded", TOOL, ctx.user_id, ctx.request_id, args=args, result=result.item.id)
                reply = f'C\'est fait, "{title}" est à jour.\n{summary}'.rstrip()
                outcome = Outcome.SUCCESS
            else:
                ctx.ledger.log_event("tool_call_failed", TOOL, ctx.user_id, ctx.request_id, args=args, error="partial_write")
                reply = prompts.uncertain_message(title)
                outcome = Outcome.UNCERTAIN
            return FlowResult(reply=reply, candidate=done, outcome=outcome, executed_tools=[TOOL])
        if result.status == WriteStatus.DUPLICATE:
            ctx.ledger.log_event("tool_call_blocked", TOOL, ctx.user_id, ctx.request_id, args=args, result="duplicate")
            return self.abandon(candidate, "duplicate", ctx, prompts.duplicate_message(result.detail), Outcome.BLOCKED)
        if result.status == WriteStatus.NOT_FOUND:
            return self.abandon(candidate, "not_found", ctx, prompts.not_found_message(title))

        ctx.ledger.log_event("tool_call_failed", TOOL, ctx.user_id, ctx.request_id, args=args, error=result.detail)
        return self.abandon(candidate, "store_write_failed", ctx, prompts.failed_message(), Outcome.FAILED)
