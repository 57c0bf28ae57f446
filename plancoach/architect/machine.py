"""Generic lifecycle engine shared by the create, update, breakdown and confirm flows.

A flow owns a `CandidateMachine` (its transition table) and implements a handful of
hooks; the preview/consent handling itself lives once, in `CandidateFlow`.
"""

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from plancoach.config import Settings, get_settings
from plancoach.consent import ConsentKind, ConsentSignal, parse_consent
from plancoach.dates import utcnow
from plancoach.errors import InvalidTransition
from plancoach.ledger import ToolLedger
from plancoach.llm import CompletionService
from plancoach.models import Candidate, Outcome
from plancoach.plan_store import PlanStoreAdapter

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"created", "applied", "executed", "abandoned"}


def candidate_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}"


class FlowResult(BaseModel):
    reply: str
    candidate: Optional[Candidate] = Field(None, description="Candidate after this turn, terminal or not")
    outcome: Outcome = Outcome.NONE
    executed_tools: List[str] = Field(default_factory=list)

    @property
    def active_candidate(self):
        """The candidate to keep in session state, or None once it has resolved."""
        if self.candidate is None or self.candidate.status in TERMINAL_STATUSES:
            return None
        return self.candidate


class FlowContext:
    """Per-turn collaborators handed to flows."""

    def __init__(
        self,
        user_id: str,
        adapter: PlanStoreAdapter,
        ledger: ToolLedger,
        completion: Optional[CompletionService] = None,
        settings: Optional[Settings] = None,
        request_id: Optional[str] = None,
        run_tool: Optional[Callable] = None,
    ):
        self.user_id = user_id
        self.adapter = adapter
        self.ledger = ledger
        self.completion = completion
        self.settings = settings or get_settings()
        self.request_id = request_id
        self.run_tool = run_tool


class CandidateMachine:
    def __init__(self, name: str, transitions: Dict[str, Iterable[str]]):
        self.name = name
        self.transitions: Dict[str, Set[str]] = {k: set(v) for k, v in transitions.items()}

    def can_move(self, current: str, target: str) -> bool:
        return current == target or target in self.transitions.get(current, set())

    def advance(self, candidate, status: str, **updates):
        if candidate.status in TERMINAL_STATUSES or not self.can_move(candidate.status, status):
            raise InvalidTransition(self.name, candidate.status, status)
        return candidate.model_copy(update={"status": status, "updated_at": utcnow(), **updates})

    def clarify(self, candidate, reason: str):
        count = min(candidate.clarification_count + 1, 1)
        return candidate.model_copy(
            update={"clarification_count": count, "last_clarification_reason": reason, "updated_at": utcnow()}
        )


def should_abandon(candidate) -> bool:
    """A second answer the current step cannot use ends the flow.

    Callers only get here once the answer was found unusable, so its kind does not
    matter: an unclear reply, a refusal, or a day or time when a frequency was asked.
    """
    return candidate.clarification_count >= 1


class CandidateFlow:
    kind: str = ""
    preview_status: str = "previewing"
    machine: CandidateMachine
    abandon_messages: Dict[str, str] = {}
    ask_yes_no: str = ""

    # --- hooks ---

    def render_preview(self, candidate) -> str:
        raise NotImplementedError

    def apply_modification(self, candidate, signal: ConsentSignal):
        """Return the patched candidate, or None if this flow cannot use the value."""
        return None

    def has_changes(self, candidate) -> bool:
        return True

    def commit(self, candidate, ctx: FlowContext) -> FlowResult:
        raise NotImplementedError

    def respond(self, candidate, message: str, ctx: FlowContext) -> FlowResult:
        return self.respond_to_preview(candidate, message, ctx)

    # --- shared behaviour ---

    def emit(self, ctx: FlowContext, event: str, candidate, **metadata) -> None:
        ctx.ledger.log_event(
            event=f"flow_{event}",
            tool_name=self.kind,
            user_id=ctx.user_id,
            request_id=ctx.request_id,
            source="candidate_flow",
            args={"candidate_id": candidate.id, "status": candidate.status},
            metadata={"clarification_count": candidate.clarification_count, **metadata},
        )

    def show_preview(self, candidate, ctx: FlowContext, prefix: str = "") -> FlowResult:
        self.emit(ctx, "preview_shown", candidate)
        return FlowResult(reply=prefix + self.render_preview(candidate), candidate=candidate)

    def abandon(self, candidate, reason: str, ctx: FlowContext, reply: Optional[str] = None, outcome: Outcome = Outcome.NONE) -> FlowResult:
        abandoned = candidate.model_copy(
            update={"status": "abandoned", "last_clarification_reason": reason, "updated_at": utcnow()}
        )
        self.emit(ctx, "abandoned", abandoned, reason=reason)
        logger.info("[Flow] %s %s abandoned (%s)", self.kind, candidate.id, reason)
        message = reply or self.abandon_messages.get(reason) or self.abandon_messages.get("user_declined", "")
        return FlowResult(reply=message, candidate=abandoned, outcome=outcome)

    def ask_again(self, candidate, reason: str, ctx: FlowContext, question: Optional[str] = None) -> FlowResult:
        clarified = self.machine.clarify(candidate, reason)
        self.emit(ctx, "clarification_asked", clarified, reason=reason)
        return FlowResult(reply=question or self.ask_yes_no, candidate=clarified)

    def handle_unclear(self, candidate, signal: ConsentSignal, ctx: FlowContext, question: Optional[str] = None) -> FlowResult:
        logger.debug("[Flow] %s %s could not use a %s answer", self.kind, candidate.id, signal.kind.value)
        if should_abandon(candidate):
            return self.abandon(candidate, "max_clarifications", ctx)
        return self.ask_again(candidate, "unclear", ctx, question)

    def respond_to_preview(self, candidate, message: str, ctx: FlowContext) -> FlowResult:
        signal = parse_consent(message)

        if signal.kind == ConsentKind.MODIFY:
            patched = self.apply_modification(candidate, signal)
            if patched is not None:
                patched = self.machine.clarify(patched, "modified")
                return self.show_preview(patched, ctx)
            signal = ConsentSignal(kind=ConsentKind.UNCLEAR)

        if signal.kind == ConsentKind.AFFIRMATIVE:
            if not self.has_changes(candidate):
                return self.abandon(candidate, "no_changes", ctx)
            return self.commit(candidate, ctx)

        if signal.kind == ConsentKind.NEGATIVE:
            return self.abandon(candidate, "user_declined", ctx)

        return self.handle_unclear(candidate, signal, ctx)
