"""Demo plan for local runs (CLI with the in-memory backend) and the test suite."""

from datetime import datetime
from typing import Optional

from plancoach.dates import utcnow
from plancoach.models import (
    ItemKind,
    ItemStatus,
    Phase,
    PhaseStatus,
    PlanDocument,
    TimeOfDay,
    TrackableItem,
    TrackingMode,
)
from plancoach.plan_store import to_plan_item
from plancoach.storage import Repository

USER_ID = "user_01"
PLAN_ID = "plan_demo"


def demo_items(user_id: str, now: datetime):
    def item(id, phase_id, kind, title, status=ItemStatus.ACTIVE, **extra):
        return TrackableItem(
            id=id,
            user_id=user_id,
            plan_id=PLAN_ID,
            phase_id=phase_id,
            kind=kind,
            title=title,
            status=status,
            created_at=now,
            **extra,
        )

    return [
        item("vit_sleep", "phase_1", ItemKind.VITAL_SIGN, "Heures de sommeil",
             tracking_mode=TrackingMode.COUNTER, unit="h"),
        item("act_meditation", "phase_1", ItemKind.HABIT, "Méditation", target_reps=5,
             scheduled_days=["mon", "tue", "thu", "fri"], time_of_day=TimeOfDay.MORNING,
             description="10 minutes assis, respiration"),
        item("act_reading", "phase_1", ItemKind.HABIT, "Lecture", target_reps=3, time_of_day=TimeOfDay.EVENING),
        item("act_prep", "phase_1", ItemKind.MISSION, "Préparer ses affaires la veille", status=ItemStatus.PENDING),
        item("fw_journal", "phase_1", ItemKind.FRAMEWORK, "Journal du soir", time_of_day=TimeOfDay.EVENING),
        item("act_run", "phase_2", ItemKind.MISSION, "Courir 5 km", status=ItemStatus.PENDING),
        item("act_sport", "phase_2", ItemKind.HABIT, "Sport", target_reps=3, status=ItemStatus.PENDING),
    ]


def seed_demo_plan(repository: Repository, user_id: str = USER_ID, now: Optional[datetime] = None) -> PlanDocument:
    """Write a two-phase plan (rows and document) for `user_id`."""
    now = now or utcnow()
    items = demo_items(user_id, now)
    phases = [
        Phase(id="phase_1", title="Poser les bases", status=PhaseStatus.ACTIVE),
        Phase(id="phase_2", title="Monter en puissance", status=PhaseStatus.LOCKED),
    ]
    by_id = {p.id: p for p in phases}
    for row in items:
        repository.insert_item(row)
        by_id[row.phase_id].items.append(to_plan_item(row))
    plan = PlanDocument(plan_id=PLAN_ID, user_id=user_id, title="Reprendre le contrôle", current_phase=1,
                        phases=phases, updated_at=now)
    repository.save_plan(plan)
    return plan
