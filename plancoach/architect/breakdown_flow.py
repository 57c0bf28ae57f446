import logging
from typing import Optional

from pydantic import ValidationError

from plancoach.architect import prompts
from plancoach.architect.machine import CandidateFlow, CandidateMachine, FlowContext, FlowResult, candidate_id
from plancoach.architect.tools import MICRO_STEP_TOOL
from plancoach.architect.update_flow import target_ref
from plancoach.consent import ConsentKind, parse_consent
from plancoach.errors import UpstreamServiceFailure
from plancoach.intents import asks_for_different_step, parse_quoted_title
from plancoach.models import BreakdownCandidate, MicroStep, Outcome, TrackableItem
from plancoach.plan_store import WriteStatus

logger = logging.getLogger(__name__)

TOOL = "break_down_action"

ASK_TARGET = "Sur quelle action tu bloques ? Donne-moi son nom."
ASK_BLOCKER = "Qu'est-ce qui bloque le plus, en une phrase ? (fatigue, temps, motivation, oubli...)"
ASK_BLOCKER_AGAIN = "Ok. Qu'est-ce qui rendrait ça plus facile pour toi ?"


class BreakdownFlow(CandidateFlow):
    """[awaiting_consent] -> awaiting_target -> awaiting_blocker -> generating -> previewing -> applied | abandoned"""

    kind = "breakdown"
    machine = CandidateMachine(
        "breakdown",
        {
            "awaiting_consent": {"awaiting_blocker", "generating", "abandoned"},
            "awaiting_target": {"awaiting_blocker", "generating", "abandoned"},
            "awaiting_blocker": {"generating", "abandoned"},
            "generating": {"previewing", "abandoned"},
            "previewing": {"awaiting_blocker", "applied", "abandoned"},
        },
    )
    abandon_messages = prompts.ABANDON_BREAKDOWN
    ask_yes_no = prompts.ASK_YES_NO_BREAKDOWN

    def has_changes(self, candidate: BreakdownCandidate) -> bool:
        return candidate.proposed_step is not None

    def render_preview(self, candidate: BreakdownCandidate) -> str:
        step = candidate.proposed_step
        lines = [f'Ok. Micro-étape (2 min) pour débloquer "{candidate.target.title}" :', f"→ {step.title}"]
        if step.description:
            lines.append(step.description)
        if step.tip:
            lines.append(f"Astuce : {step.tip}")
        lines.append("")
        lines.append("Je l'ajoute à ton plan (et je mets l'action d'origine en pause pour l'instant) ?")
        return "\n".join(lines)

    # --- entry points ---

    def start(self, ctx: FlowContext, target: Optional[TrackableItem], blocker: Optional[str]) -> FlowResult:
        if target is None:
            status = "awaiting_target"
        elif not (blocker or "").strip():
            status = "awaiting_blocker"
        else:
            status = "generating"
        candidate = BreakdownCandidate(
            id=candidate_id("brk"),
            status=status,
            target=target_ref(target) if target else None,
            blocker=(blocker or "").strip() or None,
        )
        self.emit(ctx, "started", candidate)
        if status == "awaiting_target":
            return FlowResult(reply=ASK_TARGET, candidate=candidate)
        if status == "awaiting_blocker":
            return FlowResult(reply=ASK_BLOCKER, candidate=candidate)
        return self.generate(candidate, ctx)

    def offer(self, ctx: FlowContext, target: TrackableItem, streak_days: int, last_note: Optional[str]) -> FlowResult:
        """Checkup entry: propose a micro-step after a long missed streak."""
        candidate = BreakdownCandidate(
            id=candidate_id("brk"),
            status="awaiting_consent",
            target=target_ref(target),
            blocker=(last_note or "").strip() or None,
            origin="checkup",
            streak_days=streak_days,
        )
        self.emit(ctx, "started", candidate, streak_days=streak_days)
        reply = (
            f'Ça fait {streak_days} fois d\'affilée que "{target.title}" ne passe pas. '
            "Tu veux qu'on la découpe en une micro-étape de 2 minutes ?"
        )
        return FlowResult(reply=reply, candidate=candidate)

    # --- turns ---

    def respond(self, candidate: BreakdownCandidate, message: str, ctx: FlowContext) -> FlowResult:
        signal = parse_consent(message)

        if candidate.status == "awaiting_consent":
            if signal.kind == ConsentKind.AFFIRMATIVE:
                if candidate.blocker:
                    return self.generate(self.machine.advance(candidate, "generating"), ctx)
                return FlowResult(reply=ASK_BLOCKER, candidate=self.machine.advance(candidate, "awaiting_blocker"))
            if signal.kind == ConsentKind.NEGATIVE:
                return self.abandon(candidate, "user_declined", ctx)
            return self.handle_unclear(candidate, signal, ctx, "Tu veux qu'on cherche une micro-étape, oui ou non ?")

        if candidate.status == "awaiting_target":
            if signal.kind == ConsentKind.NEGATIVE:
                return self.abandon(candidate, "user_declined", ctx)
            item = ctx.adapter.find_item(ctx.user_id, parse_quoted_title(message) or message.strip())
            if item is None:
                return self.handle_unclear(candidate, signal, ctx, ASK_TARGET)
            target = target_ref(item)
            if candidate.blocker:
                return self.generate(self.machine.advance(candidate, "generating", target=target), ctx)
            return FlowResult(reply=ASK_BLOCKER, candidate=self.machine.advance(candidate, "awaiting_blocker", target=target))

        if candidate.status == "awaiting_blocker":
            if signal.kind == ConsentKind.NEGATIVE:
                return self.abandon(candidate, "user_declined", ctx)
            blocker = message.strip()
            if not blocker:
                return self.handle_unclear(candidate, signal, ctx, ASK_BLOCKER)
            return self.generate(self.machine.advance(candidate, "generating", blocker=blocker), ctx)

        # previewing
        if signal.kind not in (ConsentKind.AFFIRMATIVE, ConsentKind.NEGATIVE) and asks_for_different_step(message):
            if candidate.clarification_count >= 1:
                return self.abandon(candidate, "max_clarifications", ctx)
            retry = self.machine.clarify(candidate, "different_step")
            retry = self.machine.advance(retry, "awaiting_blocker", proposed_step=None)
            self.emit(ctx, "clarification_asked", retry, reason="different_step")
            return FlowResult(reply=ASK_BLOCKER_AGAIN, candidate=retry)
        return self.respond_to_preview(candidate, message, ctx)

    def generate(self, candidate: BreakdownCandidate, ctx: FlowContext) -> FlowResult:
        """Ask the model for one micro-step, under a hard timeout, with a forced tool call."""
        target = candidate.target
        request = (
            f"Action: {target.title}\n"
            f"Type: {target.kind.value}\n"
            f"Blocker: {candidate.blocker or 'not specified'}"
        )
        step = None
        if ctx.completion is None:
            return self.abandon(candidate, "no_proposal_generated", ctx)
        try:
            completion = ctx.completion.complete(
                system_instructions=prompts.MICRO_STEP_PROMPT,
                history=[],
                user_message=request,
                tools=[MICRO_STEP_TOOL],
                tool_choice="any",
                allowed_tools=[MICRO_STEP_TOOL["name"]],
                timeout=ctx.settings.deterministic_timeout_seconds,
            )
            if completion.tool_call is not None:
                step = MicroStep.model_validate(completion.tool_call.args)
        except (UpstreamServiceFailure, ValidationError) as e:
            logger.warning("[Breakdown] Micro-step generation failed for '%s': %s", target.title, e)

        if step is None or not step.title.strip():
            return self.abandon(candidate, "no_proposal_generated", ctx)
        previewing = self.machine.advance(candidate, "previewing", proposed_step=step)
        return self.show_preview(previewing, ctx)

    def commit(self, candidate: BreakdownCandidate, ctx: FlowContext) -> FlowResult:
        step = candidate.proposed_step
        args = {"target_name": candidate.target.title, "problem": candidate.blocker, "step": step.title}
        ctx.ledger.log_event("tool_call_attempted", TOOL, ctx.user_id, ctx.request_id, args=args)
        result = ctx.adapter.insert_micro_step(ctx.user_id, candidate.target.id, step)

        if result.status in (WriteStatus.CREATED, WriteStatus.UNCERTAIN):
            done = self.machine.advance(candidate, "applied")
            self.emit(ctx, "completed", done)
            if result.status == WriteStatus.CREATED:
                ctx.ledger.log_event("tool_call_succeeded", TOOL, ctx.user_id, ctx.request_id, args=args, result=result.item.id)
                reply = (
                    f'C\'est ajouté : "{step.title}". J\'ai mis "{candidate.target.title}" en pause pour l\'instant, '
                    "on la relancera quand la micro-étape sera facile."
                )
                return FlowResult(reply=reply, candidate=done, outcome=Outcome.SUCCESS, executed_tools=[TOOL])
            ctx.ledger.log_event("tool_call_failed", TOOL, ctx.user_id, ctx.request_id, args=args, error="verification_mismatch")
            return FlowResult(
                reply=prompts.uncertain_message(step.title), candidate=done, outcome=Outcome.UNCERTAIN, executed_tools=[TOOL]
            )
        if result.status == WriteStatus.DUPLICATE:
            return self.abandon(candidate, "duplicate", ctx, prompts.duplicate_message(step.title), Outcome.BLOCKED)
        if result.status == WriteStatus.NOT_FOUND:
            return self.abandon(candidate, "no_target", ctx)

        ctx.ledger.log_event("tool_call_failed", TOOL, ctx.user_id, ctx.request_id, args=args, error=result.detail)
        return self.abandon(candidate, "store_write_failed", ctx, prompts.breakdown_failed_message(), Outcome.FAILED)
