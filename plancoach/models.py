from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from enum import Enum

from pydantic import BaseModel, Field
from plancoach.dates import utcnow


class ItemKind(str, Enum):
    HABIT = "habit"
    MISSION = "mission"
    FRAMEWORK = "framework"
    VITAL_SIGN = "vital_sign"


class TrackingMode(str, Enum):
    BOOLEAN = "boolean"
    COUNTER = "counter"


class ItemStatus(str, Enum):
    """Lifecycle status of a trackable item row."""

    ACTIVE = "active"
    PENDING = "pending"
    ARCHIVED = "archived"
    COMPLETED = "completed"


class PhaseStatus(str, Enum):
    LOCKED = "locked"
    ACTIVE = "active"
    COMPLETED = "completed"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"
    ANY_TIME = "any_time"


class LogStatus(str, Enum):
    COMPLETED = "completed"
    MISSED = "missed"
    PARTIAL = "partial"


class Outcome(str, Enum):
    """Normalized result of a turn, as reported to callers."""

    NONE = "none"
    BLOCKED = "blocked"
    SUCCESS = "success"
    FAILED = "failed"
    UNCERTAIN = "uncertain"


# --- Plan / storage models ---

class TrackableItem(BaseModel):
    """Normalized row for a habit, mission, framework or vital sign. Authoritative copy."""

    id: str
    user_id: str
    plan_id: str
    phase_id: Optional[str] = Field(None, description="Phase of the plan document holding this item")
    kind: ItemKind
    title: str
    description: str = ""
    tracking_mode: TrackingMode = TrackingMode.BOOLEAN
    target_reps: int = Field(default=1, description="Weekly target for habits, total for counters")
    current_reps: int = Field(default=0, description="Aggregate counter of completed logs")
    scheduled_days: List[str] = Field(default_factory=list, description="Day codes: mon..sun")
    time_of_day: TimeOfDay = TimeOfDay.ANY_TIME
    status: ItemStatus = ItemStatus.PENDING
    unit: Optional[str] = Field(None, description="Unit for vital signs (e.g. 'h', 'kg')")
    tips: Optional[str] = None
    last_performed_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = Field(None, description="Last log of any status")
    created_at: datetime = Field(default_factory=utcnow)


class PlanItem(BaseModel):
    """Snapshot of a TrackableItem embedded in the plan document."""

    id: str
    kind: ItemKind
    title: str
    description: str = ""
    tracking_mode: TrackingMode = TrackingMode.BOOLEAN
    target_reps: int = 1
    scheduled_days: List[str] = Field(default_factory=list)
    time_of_day: TimeOfDay = TimeOfDay.ANY_TIME
    status: ItemStatus = ItemStatus.PENDING
    tips: Optional[str] = None


class Phase(BaseModel):
    id: str
    title: str = ""
    status: PhaseStatus = PhaseStatus.LOCKED
    items: List[PlanItem] = Field(default_factory=list)


class PlanDocument(BaseModel):
    plan_id: str
    user_id: str
    title: str = ""
    current_phase: int = Field(default=1, description="1-based index of the active phase")
    phases: List[Phase] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    def active_phase(self) -> Optional[Phase]:
        if not self.phases:
            return None
        index = min(max(self.current_phase, 1), len(self.phases)) - 1
        return self.phases[index]

    def locate(self, item_id: str):
        """Return (phase_index, item_index) for an item id, or None."""
        for p_idx, phase in enumerate(self.phases):
            for i_idx, item in enumerate(phase.items):
                if item.id == item_id:
                    return p_idx, i_idx
        return None


class LogEntry(BaseModel):
    id: str
    user_id: str
    item_id: str
    item_title: str = ""
    item_kind: Optional[ItemKind] = None
    status: LogStatus
    value: Optional[float] = None
    note: Optional[str] = None
    performed_at: datetime = Field(default_factory=utcnow)


# --- Candidate state (ephemeral, lives in SessionState) ---

class ProposedBy(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ActionParams(BaseModel):
    title: Optional[str] = None
    description: str = ""
    target_reps: Optional[int] = None
    time_of_day: Optional[TimeOfDay] = None
    scheduled_days: List[str] = Field(default_factory=list)
    tips: Optional[str] = None
    tracking_mode: TrackingMode = TrackingMode.BOOLEAN


class TargetRef(BaseModel):
    """Reference to an existing item, with the values shown in previews."""

    id: str
    title: str
    kind: ItemKind = ItemKind.HABIT
    current_reps: Optional[int] = None
    current_days: List[str] = Field(default_factory=list)
    current_time_of_day: Optional[TimeOfDay] = None


class ProposedChanges(BaseModel):
    new_reps: Optional[int] = None
    new_days: Optional[List[str]] = None
    new_time_of_day: Optional[TimeOfDay] = None
    new_title: Optional[str] = None

    def is_empty(self) -> bool:
        return (
            self.new_reps is None
            and self.new_days is None
            and self.new_time_of_day is None
            and not self.new_title
        )


class MicroStep(BaseModel):
    title: str
    description: str = ""
    tip: str = ""
    kind: ItemKind = ItemKind.MISSION
    target_reps: int = 1
    time_of_day: TimeOfDay = TimeOfDay.ANY_TIME


class CandidateBase(BaseModel):
    id: str
    status: str
    clarification_count: int = Field(default=0, ge=0, le=1)
    last_clarification_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ActionCandidate(CandidateBase):
    kind: Literal["create"] = "create"
    item_kind: ItemKind = ItemKind.HABIT
    proposed_by: ProposedBy = ProposedBy.ASSISTANT
    proposed: ActionParams = Field(default_factory=ActionParams)
    missing_field: Optional[str] = None


class UpdateActionCandidate(CandidateBase):
    kind: Literal["update"] = "update"
    target: TargetRef
    changes: ProposedChanges = Field(default_factory=ProposedChanges)
    day_to_drop_options: List[str] = Field(default_factory=list)


class BreakdownCandidate(CandidateBase):
    kind: Literal["breakdown"] = "breakdown"
    target: Optional[TargetRef] = None
    blocker: Optional[str] = None
    proposed_step: Optional[MicroStep] = None
    origin: Literal["chat", "checkup"] = "chat"
    streak_days: Optional[int] = None


class ToolConfirmCandidate(CandidateBase):
    kind: Literal["confirm_tool"] = "confirm_tool"
    tool_name: str
    tool_args: Dict[str, Any] = Field(default_factory=dict)
    prompt: str = ""


Candidate = Annotated[
    Union[ActionCandidate, UpdateActionCandidate, BreakdownCandidate, ToolConfirmCandidate],
    Field(discriminator="kind"),
]


# --- Checkup ---

class CheckupItemKind(str, Enum):
    VITAL = "vital"
    ACTION = "action"
    FRAMEWORK = "framework"


class CheckupStatus(str, Enum):
    INIT = "init"
    CHECKING = "checking"
    CLOSING = "closing"


class CheckupItem(BaseModel):
    id: str
    kind: CheckupItemKind
    title: str
    description: str = ""
    tracking_mode: TrackingMode = TrackingMode.BOOLEAN
    target_reps: int = 1
    current_reps: int = 0
    unit: Optional[str] = None
    scheduled_days: List[str] = Field(default_factory=list)
    is_habit: bool = False


class CheckupMemory(BaseModel):
    opening_done: bool = False
    suspended_for: Optional[str] = Field(None, description="Candidate id the walk is waiting on")
    logged: List[str] = Field(default_factory=list)


class CheckupSession(BaseModel):
    status: CheckupStatus = CheckupStatus.INIT
    pending_items: List[CheckupItem] = Field(default_factory=list)
    current_index: int = 0
    temp_memory: CheckupMemory = Field(default_factory=CheckupMemory)
    started_at: datetime = Field(default_factory=utcnow)

    def current_item(self) -> Optional[CheckupItem]:
        if 0 <= self.current_index < len(self.pending_items):
            return self.pending_items[self.current_index]
        return None


class SessionState(BaseModel):
    """Per-user conversational state, serialized and round-tripped every turn."""

    candidate: Optional[Candidate] = None
    checkup: Optional[CheckupSession] = None
    updated_at: datetime = Field(default_factory=utcnow)


class TurnResult(BaseModel):
    reply_text: str
    executed_tools: List[str] = Field(default_factory=list)
    outcome: Outcome = Outcome.NONE
    new_session_state: Dict[str, Any] = Field(default_factory=dict)
