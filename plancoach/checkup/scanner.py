import logging
from datetime import datetime, timedelta
from typing import List, Optional

from plancoach.config import STALENESS_HOURS
from plancoach.dates import day_code, ensure_aware, utcnow
from plancoach.models import CheckupItem, CheckupItemKind, ItemKind, ItemStatus, TrackableItem, TrackingMode
from plancoach.plan_store import PlanStoreAdapter

logger = logging.getLogger(__name__)

CHECKUP_KIND = {
    ItemKind.VITAL_SIGN: CheckupItemKind.VITAL,
    ItemKind.HABIT: CheckupItemKind.ACTION,
    ItemKind.MISSION: CheckupItemKind.ACTION,
    ItemKind.FRAMEWORK: CheckupItemKind.FRAMEWORK,
}

# Vital signs first, then actions, then frameworks.
KIND_ORDER = {CheckupItemKind.VITAL: 0, CheckupItemKind.ACTION: 1, CheckupItemKind.FRAMEWORK: 2}


def to_checkup_item(item: TrackableItem) -> CheckupItem:
    return CheckupItem(
        id=item.id,
        kind=CHECKUP_KIND[item.kind],
        title=item.title,
        description=item.description,
        tracking_mode=TrackingMode.COUNTER if item.kind == ItemKind.VITAL_SIGN else item.tracking_mode,
        target_reps=item.target_reps,
        current_reps=item.current_reps,
        unit=item.unit,
        scheduled_days=list(item.scheduled_days),
        is_habit=item.kind == ItemKind.HABIT,
    )


def last_activity(item: TrackableItem) -> Optional[datetime]:
    stamps = [ensure_aware(t) for t in (item.last_performed_at, item.last_checked_at) if t is not None]
    return max(stamps) if stamps else None


def is_stale(item: TrackableItem, now: datetime, hours: int = STALENESS_HOURS) -> bool:
    last = last_activity(item)
    return last is None or ensure_aware(now) - last > timedelta(hours=hours)


def get_pending_items(adapter: PlanStoreAdapter, user_id: str, now: Optional[datetime] = None) -> List[CheckupItem]:
    """Active items due for review, vitals first, then actions, then frameworks."""
    now = ensure_aware(now or utcnow())
    today = day_code(now.date())
    pending = []
    for item in adapter.repository.list_items(user_id, statuses=[ItemStatus.ACTIVE]):
        if not is_stale(item, now):
            continue
        if item.kind == ItemKind.HABIT:
            if item.scheduled_days and today not in item.scheduled_days:
                continue
            if adapter.weekly_count(user_id, item.id, now) >= item.target_reps:
                continue
        pending.append(to_checkup_item(item))
    # sorted() is stable, so items keep their plan order within a kind.
    pending = sorted(pending, key=lambda i: KIND_ORDER[i.kind])
    logger.info("[Checkup] %d pending item(s) for %s", len(pending), user_id)
    return pending
