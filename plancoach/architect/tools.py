"""Tool schemas exposed to the model and the typed arguments they are parsed into.

The model's arguments are untrusted: `parse_tool_call` validates them into one
variant of the `ToolArgs` union before any handler runs.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from plancoach.consent import DAY_FULL, DAY_SHORT
from plancoach.dates import DAY_CODES, sort_days
from plancoach.models import LogStatus, TimeOfDay, TrackingMode
from plancoach.text import normalize

MUTATING_TOOLS = {
    "track_progress",
    "create_simple_action",
    "create_framework",
    "update_action_structure",
    "activate_plan_action",
    "archive_plan_action",
    "deactivate_plan_action",
    "break_down_action",
}


def _to_day_codes(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    codes = []
    for raw in values:
        key = normalize(str(raw)).rstrip(".")
        if key in DAY_CODES:
            codes.append(key)
        elif key in DAY_FULL:
            codes.append(DAY_FULL[key])
        elif key[:3] in DAY_SHORT:
            codes.append(DAY_SHORT[key[:3]])
    return sort_days(codes)


def _clamp_weekly(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return max(1, min(7, int(value)))


class TrackProgressArgs(BaseModel):
    tool: Literal["track_progress"] = "track_progress"
    target_name: str = Field(..., min_length=1)
    status: LogStatus = LogStatus.COMPLETED
    value: Optional[float] = None
    note: Optional[str] = None


class CreateSimpleActionArgs(BaseModel):
    tool: Literal["create_simple_action"] = "create_simple_action"
    title: str = Field(..., min_length=1, max_length=120)
    description: str = ""
    kind: Literal["habit", "mission"] = "habit"
    target_reps: Optional[int] = None
    time_of_day: Optional[TimeOfDay] = None
    scheduled_days: List[str] = Field(default_factory=list)
    tips: Optional[str] = None
    tracking_mode: TrackingMode = TrackingMode.BOOLEAN

    @field_validator("scheduled_days", mode="before")
    @classmethod
    def normalize_days(cls, value):
        return _to_day_codes(value) or []

    @field_validator("target_reps")
    @classmethod
    def clamp_reps(cls, value):
        return _clamp_weekly(value)


class CreateFrameworkArgs(BaseModel):
    tool: Literal["create_framework"] = "create_framework"
    title: str = Field(..., min_length=1, max_length=120)
    description: str = ""
    target_reps: Optional[int] = None
    time_of_day: Optional[TimeOfDay] = None
    tips: Optional[str] = None

    @field_validator("target_reps")
    @classmethod
    def clamp_reps(cls, value):
        return _clamp_weekly(value)


class UpdateActionStructureArgs(BaseModel):
    tool: Literal["update_action_structure"] = "update_action_structure"
    target_name: str = Field(..., min_length=1)
    new_target_reps: Optional[int] = None
    new_scheduled_days: Optional[List[str]] = None
    new_time_of_day: Optional[TimeOfDay] = None
    new_title: Optional[str] = None

    @field_validator("new_scheduled_days", mode="before")
    @classmethod
    def normalize_days(cls, value):
        return _to_day_codes(value)

    @field_validator("new_target_reps")
    @classmethod
    def clamp_reps(cls, value):
        return _clamp_weekly(value)


class ActivatePlanActionArgs(BaseModel):
    tool: Literal["activate_plan_action"] = "activate_plan_action"
    target_name: str = Field(..., min_length=1)


class ArchivePlanActionArgs(BaseModel):
    tool: Literal["archive_plan_action"] = "archive_plan_action"
    target_name: str = Field(..., min_length=1)


class DeactivatePlanActionArgs(BaseModel):
    tool: Literal["deactivate_plan_action"] = "deactivate_plan_action"
    target_name: str = Field(..., min_length=1)


class BreakDownActionArgs(BaseModel):
    tool: Literal["break_down_action"] = "break_down_action"
    target_name: Optional[str] = None
    problem: Optional[str] = None


ToolArgs = Annotated[
    Union[
        TrackProgressArgs,
        CreateSimpleActionArgs,
        CreateFrameworkArgs,
        UpdateActionStructureArgs,
        ActivatePlanActionArgs,
        ArchivePlanActionArgs,
        DeactivatePlanActionArgs,
        BreakDownActionArgs,
    ],
    Field(discriminator="tool"),
]

_TOOL_ARGS = TypeAdapter(ToolArgs)


def parse_tool_call(name: str, args: Optional[Dict[str, Any]]) -> ToolArgs:
    """Validate raw model arguments into the typed variant for `name`. Raises ValidationError."""
    payload = {k: v for k, v in (args or {}).items() if v is not None}
    payload["tool"] = name
    return _TOOL_ARGS.validate_python(payload)


def target_of(call: ToolArgs) -> Optional[str]:
    return getattr(call, "target_name", None) or getattr(call, "title", None)


# --- Schemas sent to the model ---

_TIME_OF_DAY = {"type": "STRING", "enum": [t.value for t in TimeOfDay]}
_DAYS = {"type": "ARRAY", "items": {"type": "STRING", "enum": DAY_CODES}}

ARCHITECT_TOOLS = [
    {
        "name": "track_progress",
        "description": "Record that the user did (or missed) an existing action. Only when the user reports it explicitly.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "target_name": {"type": "STRING", "description": "Title of the action in the plan"},
                "status": {"type": "STRING", "enum": [s.value for s in LogStatus]},
                "value": {"type": "NUMBER", "description": "Amount for counters or vital signs"},
                "note": {"type": "STRING"},
            },
            "required": ["target_name", "status"],
        },
    },
    {
        "name": "create_simple_action",
        "description": "Add a habit or a one-off mission to the active phase of the user's plan.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "title": {"type": "STRING"},
                "description": {"type": "STRING"},
                "kind": {"type": "STRING", "enum": ["habit", "mission"]},
                "target_reps": {"type": "INTEGER", "description": "Times per week, 1 to 7 (habits)"},
                "time_of_day": _TIME_OF_DAY,
                "scheduled_days": _DAYS,
                "tips": {"type": "STRING"},
            },
            "required": ["title", "kind"],
        },
    },
    {
        "name": "create_framework",
        "description": "Add a reflective writing exercise (journal, gratitude...) to the active phase.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "title": {"type": "STRING"},
                "description": {"type": "STRING"},
                "target_reps": {"type": "INTEGER"},
                "time_of_day": _TIME_OF_DAY,
                "tips": {"type": "STRING"},
            },
            "required": ["title"],
        },
    },
    {
        "name": "update_action_structure",
        "description": "Change the frequency, days, time of day or title of an existing action.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "target_name": {"type": "STRING"},
                "new_target_reps": {"type": "INTEGER"},
                "new_scheduled_days": _DAYS,
                "new_time_of_day": _TIME_OF_DAY,
                "new_title": {"type": "STRING"},
            },
            "required": ["target_name"],
        },
    },
    {
        "name": "activate_plan_action",
        "description": "Activate a pending action of the plan.",
        "parameters": {
            "type": "OBJECT",
            "properties": {"target_name": {"type": "STRING"}},
            "required": ["target_name"],
        },
    },
    {
        "name": "archive_plan_action",
        "description": "Remove (archive) an action from the plan.",
        "parameters": {
            "type": "OBJECT",
            "properties": {"target_name": {"type": "STRING"}},
            "required": ["target_name"],
        },
    },
    {
        "name": "deactivate_plan_action",
        "description": "Pause an active action without deleting it.",
        "parameters": {
            "type": "OBJECT",
            "properties": {"target_name": {"type": "STRING"}},
            "required": ["target_name"],
        },
    },
    {
        "name": "break_down_action",
        "description": "Propose a 2-minute micro-step for an action the user is stuck on.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "target_name": {"type": "STRING"},
                "problem": {"type": "STRING", "description": "What blocks the user, in their words"},
            },
        },
    },
]

MICRO_STEP_TOOL = {
    "name": "propose_micro_step",
    "description": "Return one concrete micro-step that takes about two minutes.",
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "title": {"type": "STRING"},
            "description": {"type": "STRING"},
            "tip": {"type": "STRING"},
            "kind": {"type": "STRING", "enum": ["habit", "mission"]},
            "target_reps": {"type": "INTEGER"},
            "time_of_day": _TIME_OF_DAY,
        },
        "required": ["title", "description"],
    },
}

LOG_ITEM_TOOL = {
    "name": "log_item",
    "description": "Record the outcome of the item currently being reviewed in the checkup.",
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "status": {"type": "STRING", "enum": [s.value for s in LogStatus]},
            "value": {"type": "NUMBER"},
            "note": {"type": "STRING", "description": "Reason or context given by the user"},
        },
        "required": ["status"],
    },
}
