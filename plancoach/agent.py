"""Turn orchestration: one user message in, one reply and a new session state out."""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from plancoach.architect import prompts
from plancoach.architect.dispatcher import ToolDispatcher
from plancoach.architect.machine import FlowContext
from plancoach.architect.tools import ARCHITECT_TOOLS, MUTATING_TOOLS
from plancoach.checkup import CheckupAgent, CheckupTurn
from plancoach.config import Settings, get_settings
from plancoach.dates import utcnow
from plancoach.errors import StoreWriteFailure, UpstreamServiceFailure
from plancoach.intents import is_checkup_request
from plancoach.ledger import ToolLedger
from plancoach.llm import CompletionService, LLMClient
from plancoach.models import ItemStatus, Outcome, PlanDocument, SessionState, TurnResult
from plancoach.plan_store import PlanStoreAdapter
from plancoach.recall import NullRecall, RecallService, format_recall
from plancoach.storage import Repository, build_repository

logger = logging.getLogger(__name__)

UPSTREAM_APOLOGY = "Désolé, j'ai un petit souci de connexion de mon côté. Tu peux me redire ça dans un instant ?"


def format_plan_summary(plan: Optional[PlanDocument]) -> str:
    if plan is None or not plan.phases:
        return "(no plan yet)"
    lines = []
    for index, phase in enumerate(plan.phases, start=1):
        marker = " (current)" if index == plan.current_phase else ""
        lines.append(f"Phase {index}: {phase.title or phase.id} [{phase.status.value}]{marker}")
        for item in phase.items:
            if item.status == ItemStatus.ARCHIVED:
                continue
            details = [item.kind.value, item.status.value]
            if item.kind.value == "habit":
                details.append(f"{item.target_reps}x/week")
            if item.scheduled_days:
                details.append(",".join(item.scheduled_days))
            lines.append(f"  - {item.title} ({', '.join(details)})")
    return "\n".join(lines)


class CoachAgent:
    def __init__(
        self,
        repository: Repository,
        completion: Optional[CompletionService] = None,
        recall: Optional[RecallService] = None,
        settings: Optional[Settings] = None,
        ledger: Optional[ToolLedger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.adapter = PlanStoreAdapter(repository, clock)
        self.ledger = ledger or ToolLedger(repository, max_dedup=self.settings.ledger_dedup_size)
        self.completion = completion
        self.recall = recall or NullRecall()
        self.clock = clock
        self.dispatcher = ToolDispatcher(self.adapter, self.ledger, completion, self.settings)
        self.checkup = CheckupAgent(self.dispatcher.breakdown_flow, clock)

    @staticmethod
    def load_state(session_state: Union[SessionState, Dict[str, Any], None]) -> SessionState:
        if not session_state:
            return SessionState()
        if isinstance(session_state, SessionState):
            return session_state.model_copy(deep=True)
        try:
            return SessionState.model_validate(session_state)
        except ValidationError as e:
            logger.warning("[Agent] Discarding invalid session state: %s", e)
            return SessionState()

    def _result(self, state: SessionState, reply: str, outcome: Outcome = Outcome.NONE,
                executed_tools: Optional[List[str]] = None) -> TurnResult:
        state.updated_at = self.clock()
        return TurnResult(
            reply_text=reply,
            executed_tools=list(executed_tools or []),
            outcome=outcome,
            new_session_state=state.model_dump(mode="json"),
        )

    def process_turn(
        self,
        user_id: str,
        message: str,
        history: Optional[List[Dict[str, str]]] = None,
        session_state: Union[SessionState, Dict[str, Any], None] = None,
    ) -> TurnResult:
        """Handle one user message.

        On upstream or storage failure the session state comes back unchanged so the
        user can simply retry.
        """
        state = self.load_state(session_state)
        untouched = state.model_dump(mode="json")
        ctx = self.dispatcher.context(user_id, request_id=f"req_{uuid.uuid4().hex[:12]}")
        try:
            return self._turn(ctx, message or "", history or [], state)
        except UpstreamServiceFailure as e:
            logger.error("[Agent] Completion service failed for %s: %s", user_id, e)
            return TurnResult(reply_text=UPSTREAM_APOLOGY, new_session_state=untouched)
        except StoreWriteFailure as e:
            logger.error("[Agent] Storage failed for %s: %s", user_id, e)
            return TurnResult(reply_text=prompts.failed_message(), outcome=Outcome.FAILED, new_session_state=untouched)

    def start_checkup(self, user_id: str, session_state: Union[SessionState, Dict[str, Any], None] = None) -> TurnResult:
        state = self.load_state(session_state)
        untouched = state.model_dump(mode="json")
        ctx = self.dispatcher.context(user_id, request_id=f"req_{uuid.uuid4().hex[:12]}")
        try:
            return self._start_checkup(ctx, state)
        except StoreWriteFailure as e:
            logger.error("[Agent] Storage failed while starting checkup for %s: %s", user_id, e)
            return TurnResult(reply_text=prompts.failed_message(), outcome=Outcome.FAILED, new_session_state=untouched)

    # --- turn steps ---

    def _turn(self, ctx: FlowContext, message: str, history: List[Dict[str, str]], state: SessionState) -> TurnResult:
        # 1. cancel
        candidate = state.candidate
        cancelled = self.dispatcher.cancel_if_requested(candidate, message, ctx)
        if cancelled is not None:
            state.candidate = None
            if cancelled.reply:
                return self._after_candidate(ctx, state, candidate.id, cancelled.reply, cancelled.outcome, [])

        # 2. resume candidate
        if state.candidate is not None:
            candidate = state.candidate
            result = self.dispatcher.resume(candidate, message, ctx)
            state.candidate = result.active_candidate
            if state.candidate is None:
                return self._after_candidate(ctx, state, candidate.id, result.reply, result.outcome, result.executed_tools)
            return self._result(state, result.reply, result.outcome, result.executed_tools)

        # 3. resume checkup
        if state.checkup is not None:
            if state.checkup.temp_memory.suspended_for:
                state.checkup.temp_memory.suspended_for = None
            turn = self.checkup.handle(ctx, message, history, state.checkup)
            return self._apply_checkup(state, turn)

        # 4. explicit checkup request
        if is_checkup_request(message):
            return self._start_checkup(ctx, state)

        # 5. model turn
        return self._model_turn(ctx, message, history, state)

    def _after_candidate(self, ctx, state, candidate_id, reply, outcome, executed) -> TurnResult:
        """A candidate just resolved; resume the checkup walk it may have suspended."""
        checkup = state.checkup
        if checkup is not None and checkup.temp_memory.suspended_for == candidate_id:
            turn = self.checkup.resume_after_breakdown(ctx, checkup, reply)
            state.checkup = turn.checkup
            return self._result(state, turn.reply, outcome, executed)
        return self._result(state, reply, outcome, executed)

    def _apply_checkup(self, state: SessionState, turn: CheckupTurn) -> TurnResult:
        state.checkup = turn.checkup
        if turn.candidate is not None:
            state.candidate = turn.candidate
        return self._result(state, turn.reply, turn.outcome, turn.executed_tools)

    def _start_checkup(self, ctx: FlowContext, state: SessionState) -> TurnResult:
        if state.candidate is not None:
            flow = self.dispatcher.flows[state.candidate.kind]
            flow.abandon(state.candidate, "checkup_started", ctx)
            state.candidate = None
        turn = self.checkup.start(ctx)
        return self._apply_checkup(state, turn)

    def _model_turn(self, ctx: FlowContext, message: str, history: List[Dict[str, str]], state: SessionState) -> TurnResult:
        if self.completion is None:
            raise UpstreamServiceFailure("no completion service configured")

        system = prompts.ARCHITECT_SYSTEM_PROMPT.format(plan_summary=format_plan_summary(self.adapter.get_active_plan(ctx.user_id)))
        system += format_recall(self.recall.recall(ctx.user_id, message))
        completion = self.completion.complete(
            system_instructions=system,
            history=history[-20:],
            user_message=message,
            tools=ARCHITECT_TOOLS,
            tool_choice="auto",
        )

        call = completion.tool_call
        if call is None or call.name not in MUTATING_TOOLS:
            if call is not None:
                logger.warning("[Agent] Ignoring unknown tool %s", call.name)
            return self._result(state, completion.text or prompts.invalid_args_message())

        result = self.dispatcher.handle_tool_call(call, message, ctx, model_text=completion.text)
        state.candidate = result.active_candidate
        return self._result(state, result.reply, result.outcome, result.executed_tools)


def build_agent(settings: Optional[Settings] = None) -> CoachAgent:
    """Wire an agent from environment settings."""
    settings = settings or get_settings()
    repository = build_repository(settings.storage_backend, settings.firebase_credentials)
    completion = LLMClient(settings) if settings.gemini_api_keys else None
    return CoachAgent(repository, completion=completion, settings=settings)
