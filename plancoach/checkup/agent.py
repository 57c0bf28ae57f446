import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from plancoach.architect.breakdown_flow import BreakdownFlow
from plancoach.architect.machine import FlowContext
from plancoach.architect.tools import LOG_ITEM_TOOL
from plancoach.config import COMPLETED_STREAK_ACK, MISSED_STREAK_BREAKDOWN
from plancoach.dates import utcnow
from plancoach.errors import StoreWriteFailure, UpstreamServiceFailure
from plancoach.intents import is_explicit_stop_checkup
from plancoach.models import (
    Candidate,
    CheckupItem,
    CheckupItemKind,
    CheckupSession,
    CheckupStatus,
    LogStatus,
    Outcome,
    TrackingMode,
)
from plancoach.plan_store import LevelUp, WriteStatus
from plancoach.text import normalize, truncate

from .prompts import (
    ASK_AGAIN,
    CHECKUP_DONE,
    CHECKUP_ITEM_PROMPT,
    CHECKUP_STOPPED,
    LOG_FAILED,
    MORE_ITEMS,
    NOTHING_TO_CHECK,
    RESUME_WALK,
    completed_streak_message,
    item_question,
    level_up_message,
    logged_message,
    opening_line,
    weekly_target_message,
)
from .scanner import get_pending_items
from .streaks import completed_streak, day_window, missed_streak, summarize_day

logger = logging.getLogger(__name__)

TOOL = "log_item"
STREAK_LOOKBACK_DAYS = 30

PARTIAL_RE = re.compile(r"\b(?:a moitie|en partie|partiellement|un peu|pas completement|pas tout)\b")
MISSED_RE = re.compile(
    r"\b(?:pas fait|pas reussi|rate|j'ai pas|je l'ai pas|non|nan|nope|pas eu le temps|oublie|zappe|pas aujourd'hui)\b"
)
DONE_RE = re.compile(r"\b(?:fait|c'est fait|j'ai fait|oui|ouais|yes|ok|termine|reussi|fini|valide)\b")
NUMBER_RE = re.compile(r"(-?\d+(?:[.,]\d+)?)")

STATUS_LABELS = {
    LogStatus.COMPLETED: "fait",
    LogStatus.MISSED: "pas fait",
    LogStatus.PARTIAL: "en partie",
}


class LogItemArgs(BaseModel):
    status: LogStatus
    value: Optional[float] = None
    note: Optional[str] = None


class CheckupTurn(BaseModel):
    reply: str
    checkup: Optional[CheckupSession] = Field(None, description="None once the session is over")
    candidate: Optional[Candidate] = None
    outcome: Outcome = Outcome.NONE
    executed_tools: List[str] = Field(default_factory=list)


def _note_from(message: str) -> Optional[str]:
    """Keep the user's words as a note when they say more than a bare yes/no."""
    text = (message or "").strip()
    if len(normalize(text).split()) <= 3:
        return None
    return truncate(text, 220)


def interpret_reply(item: CheckupItem, message: str) -> Optional[Tuple[LogStatus, Optional[float]]]:
    """Deterministic reading of the answer about `item`, or None when unclear."""
    text = normalize(message)
    if not text:
        return None
    numeric = item.kind == CheckupItemKind.VITAL or item.tracking_mode == TrackingMode.COUNTER
    if numeric:
        match = NUMBER_RE.search(text)
        if match:
            value = float(match.group(1).replace(",", "."))
            if item.kind != CheckupItemKind.VITAL and value <= 0:
                return LogStatus.MISSED, None
            return LogStatus.COMPLETED, value
        if MISSED_RE.search(text):
            return LogStatus.MISSED, None
        return None
    if PARTIAL_RE.search(text):
        return LogStatus.PARTIAL, None
    if MISSED_RE.search(text):
        return LogStatus.MISSED, None
    if DONE_RE.search(text):
        return LogStatus.COMPLETED, None
    return None


class CheckupAgent:
    """Walks pending items one by one: init -> checking -> closing."""

    def __init__(self, breakdown_flow: Optional[BreakdownFlow] = None, clock: Callable[[], datetime] = utcnow):
        self.breakdown_flow = breakdown_flow or BreakdownFlow()
        self.clock = clock

    # --- entry points ---

    def start(self, ctx: FlowContext) -> CheckupTurn:
        now = self.clock()
        items = get_pending_items(ctx.adapter, ctx.user_id, now)
        if not items:
            return CheckupTurn(reply=NOTHING_TO_CHECK)

        session = CheckupSession(status=CheckupStatus.INIT, pending_items=items, started_at=now)
        opening = self.opening(ctx, now)
        session.temp_memory.opening_done = True
        session.status = CheckupStatus.CHECKING
        ctx.ledger.log_event("checkup_started", None, ctx.user_id, ctx.request_id, source="checkup",
                             metadata={"items": len(items)})
        return CheckupTurn(reply=f"{opening}\n\n{item_question(items[0])}", checkup=session)

    def opening(self, ctx: FlowContext, now: datetime) -> str:
        start, end = day_window(now, 1)
        summary = summarize_day(ctx.adapter.repository.list_logs(ctx.user_id, since=start, until=end))
        return opening_line(summary.completed, summary.missed, summary.partial, summary.top_blocker)

    def handle(self, ctx: FlowContext, message: str, history: List[Dict[str, str]], session: CheckupSession) -> CheckupTurn:
        if is_explicit_stop_checkup(message):
            logger.info("[Checkup] Stopped by %s after %d item(s)", ctx.user_id, len(session.temp_memory.logged))
            return CheckupTurn(reply=CHECKUP_STOPPED)

        session = session.model_copy(deep=True)
        item = session.current_item()
        if item is None:
            return self.close(ctx, session)

        parsed = interpret_reply(item, message)
        if parsed is not None:
            status, value = parsed
            args = LogItemArgs(status=status, value=value, note=_note_from(message))
        else:
            args, question = self.ask_model(ctx, item, message, history)
            if args is None:
                return CheckupTurn(reply=question, checkup=session)

        return self.log_and_advance(ctx, session, item, args)

    def resume_after_breakdown(self, ctx: FlowContext, session: CheckupSession, flow_reply: str) -> CheckupTurn:
        """The breakdown offered mid-walk has resolved: continue with the next item."""
        session = session.model_copy(deep=True)
        session.temp_memory.suspended_for = None
        item = session.current_item()
        if item is None:
            return self.close(ctx, session, prefix=flow_reply)
        return CheckupTurn(reply=f"{flow_reply}\n\n{RESUME_WALK} {item_question(item)}", checkup=session)

    # --- internals ---

    def ask_model(self, ctx: FlowContext, item: CheckupItem, message: str, history) -> Tuple[Optional[LogItemArgs], str]:
        if ctx.completion is None:
            return None, ASK_AGAIN
        system = CHECKUP_ITEM_PROMPT.format(
            title=item.title,
            kind=item.kind.value,
            description=item.description or "-",
            unit=item.unit or "-",
        )
        try:
            completion = ctx.completion.complete(
                system_instructions=system,
                history=history[-10:],
                user_message=message,
                tools=[LOG_ITEM_TOOL],
                tool_choice="auto",
            )
        except UpstreamServiceFailure as e:
            logger.warning("[Checkup] Model unavailable while reading '%s': %s", item.title, e)
            return None, ASK_AGAIN
        if completion.tool_call is not None and completion.tool_call.name == TOOL:
            try:
                return LogItemArgs.model_validate(completion.tool_call.args), ""
            except ValidationError as e:
                logger.warning("[Checkup] Invalid log_item arguments: %s", e)
                return None, ASK_AGAIN
        return None, (completion.text or ASK_AGAIN)

    def log_and_advance(self, ctx: FlowContext, session: CheckupSession, item: CheckupItem, args: LogItemArgs) -> CheckupTurn:
        summary = {"target_name": item.title, "status": args.status.value, "value": args.value}
        ctx.ledger.log_event("tool_call_attempted", TOOL, ctx.user_id, ctx.request_id, source="checkup", args=summary)
        result = ctx.adapter.log_progress(ctx.user_id, item.id, args.status, value=args.value, note=args.note,
                                          performed_at=self.clock())

        if result.status == WriteStatus.FAILED:
            ctx.ledger.log_event("tool_call_failed", TOOL, ctx.user_id, ctx.request_id, source="checkup",
                                 args=summary, error=result.detail)
            return CheckupTurn(reply=LOG_FAILED, checkup=session, outcome=Outcome.FAILED)

        outcome = Outcome.NONE
        executed: List[str] = []
        if result.status == WriteStatus.NOT_FOUND:
            logger.warning("[Checkup] '%s' disappeared mid-session, skipping", item.title)
        else:
            ctx.ledger.log_event("tool_call_succeeded", TOOL, ctx.user_id, ctx.request_id, source="checkup",
                                 args=summary, result=result.status.value)
            session.temp_memory.logged.append(item.id)
            if result.status in (WriteStatus.CREATED, WriteStatus.UPDATED):
                outcome, executed = Outcome.SUCCESS, [TOOL]
            elif result.status == WriteStatus.UNCERTAIN:
                outcome, executed = Outcome.UNCERTAIN, [TOOL]

        notes = [logged_message(STATUS_LABELS[args.status])]
        session.current_index += 1

        if item.kind == CheckupItemKind.ACTION and result.status != WriteStatus.NOT_FOUND:
            entries = ctx.adapter.repository.list_logs(
                ctx.user_id, item_id=item.id, since=self.clock() - timedelta(days=STREAK_LOOKBACK_DAYS)
            )
            if args.status == LogStatus.COMPLETED:
                if item.is_habit and ctx.adapter.weekly_count(ctx.user_id, item.id, self.clock()) == item.target_reps:
                    notes.append(weekly_target_message(item.title, item.target_reps))
                level = self.level_up(ctx, item)
                if level is not None:
                    unlocked = level.unlocked.title if level.unlocked else None
                    notes.append(level_up_message(item.title, level.completed.target_reps, unlocked))
                else:
                    streak = completed_streak(entries)
                    if streak >= COMPLETED_STREAK_ACK:
                        notes.append(completed_streak_message(item.title, streak))
            elif args.status == LogStatus.MISSED:
                streak = missed_streak(entries)
                if streak >= MISSED_STREAK_BREAKDOWN:
                    return self.offer_breakdown(ctx, session, item, streak, args.note, notes, outcome, executed)

        prefix = " ".join(notes)
        next_item = session.current_item()
        if next_item is None:
            turn = self.close(ctx, session, prefix=prefix)
            return turn.model_copy(update={"outcome": outcome, "executed_tools": executed})
        return CheckupTurn(
            reply=f"{prefix}\n\n{item_question(next_item)}",
            checkup=session,
            outcome=outcome,
            executed_tools=executed,
        )

    def level_up(self, ctx: FlowContext, item: CheckupItem) -> Optional[LevelUp]:
        try:
            level = ctx.adapter.level_up(ctx.user_id, item.id)
        except StoreWriteFailure as e:
            logger.warning("[Checkup] Level-up check failed for '%s': %s", item.title, e)
            return None
        if level is not None:
            ctx.ledger.log_event("action_level_up", None, ctx.user_id, ctx.request_id, source="checkup",
                                 args={"completed": item.id, "unlocked": level.unlocked.id if level.unlocked else None})
        return level

    def offer_breakdown(self, ctx, session, item, streak, note, notes, outcome, executed) -> CheckupTurn:
        target = ctx.adapter.find_item(ctx.user_id, item.id)
        offer = self.breakdown_flow.offer(ctx, target, streak, note)
        session.temp_memory.suspended_for = offer.candidate.id
        logger.info("[Checkup] Missed streak of %d on '%s', offering a micro-step", streak, item.title)
        return CheckupTurn(
            reply=f"{' '.join(notes)}\n\n{offer.reply}",
            checkup=session,
            candidate=offer.candidate,
            outcome=outcome,
            executed_tools=executed,
        )

    def close(self, ctx: FlowContext, session: CheckupSession, prefix: str = "") -> CheckupTurn:
        """Queue exhausted: re-scan, extend with newly due items, or finish."""
        session.status = CheckupStatus.CLOSING
        done = set(session.temp_memory.logged)
        queued = {i.id for i in session.pending_items}
        fresh = [
            i for i in get_pending_items(ctx.adapter, ctx.user_id, self.clock())
            if i.id not in done and i.id not in queued
        ]
        lead = f"{prefix}\n\n" if prefix else ""
        if fresh:
            session.pending_items.extend(fresh)
            session.status = CheckupStatus.CHECKING
            return CheckupTurn(reply=f"{lead}{MORE_ITEMS} {item_question(session.current_item())}", checkup=session)

        ctx.ledger.log_event("checkup_completed", None, ctx.user_id, ctx.request_id, source="checkup",
                             metadata={"logged": len(done)})
        return CheckupTurn(reply=f"{lead}{CHECKUP_DONE}")
