"""Plan store adapter: every write that touches both the plan document and the
normalized item rows goes through here.

Rows are the source of truth, the document is a projection. Creations are verified
by reading both sides back; any disagreement is reported as UNCERTAIN and can be
repaired later with `reconcile_plan`.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from plancoach.dates import ensure_aware, start_of_week, utcnow
from plancoach.errors import StoreWriteFailure
from plancoach.models import (
    ActionParams,
    ItemKind,
    ItemStatus,
    LogEntry,
    LogStatus,
    MicroStep,
    PhaseStatus,
    PlanDocument,
    PlanItem,
    ProposedChanges,
    TimeOfDay,
    TrackableItem,
    TrackingMode,
)
from plancoach.storage import Repository
from plancoach.text import normalize, normalize_title

logger = logging.getLogger(__name__)

ACTION_KINDS = (ItemKind.HABIT, ItemKind.MISSION)


class WriteStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    BLOCKED = "blocked"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    UNCERTAIN = "uncertain"
    NOOP = "noop"


class Verification(BaseModel):
    row_ok: bool
    document_ok: bool

    @property
    def agrees(self) -> bool:
        return self.row_ok and self.document_ok


class WriteResult(BaseModel):
    status: WriteStatus
    item: Optional[TrackableItem] = None
    entry: Optional[LogEntry] = None
    missing: List[str] = Field(default_factory=list, description="Blocking titles or scheduled days")
    detail: Optional[str] = None
    verification: Optional[Verification] = None


class LevelUp(BaseModel):
    """An action that reached its target, and the pending action unlocked in its place."""

    completed: TrackableItem
    unlocked: Optional[TrackableItem] = None


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def to_plan_item(item: TrackableItem) -> PlanItem:
    return PlanItem(
        id=item.id,
        kind=item.kind,
        title=item.title,
        description=item.description,
        tracking_mode=item.tracking_mode,
        target_reps=item.target_reps,
        scheduled_days=list(item.scheduled_days),
        time_of_day=item.time_of_day,
        status=item.status,
        tips=item.tips,
    )


def _combine(row_ok: bool, document_ok: bool, success: WriteStatus) -> WriteStatus:
    if row_ok and document_ok:
        return success
    if row_ok or document_ok:
        return WriteStatus.UNCERTAIN
    return WriteStatus.FAILED


class PlanStoreAdapter:
    def __init__(self, repository: Repository, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock

    # --- reads ---

    def get_active_plan(self, user_id: str) -> Optional[PlanDocument]:
        return self.repository.get_plan(user_id)

    def find_item(self, user_id: str, name_or_id: Optional[str]) -> Optional[TrackableItem]:
        """Resolve an item by id, then exact title, then a unique partial title match."""
        if not name_or_id:
            return None
        item = self.repository.get_item(name_or_id)
        if item is not None and item.user_id == user_id:
            return item

        exact = [i for i in self.repository.find_items_by_title(user_id, name_or_id) if i.status != ItemStatus.ARCHIVED]
        if exact:
            return exact[0]

        wanted = normalize(name_or_id)
        partial = [
            i
            for i in self.repository.list_items(user_id)
            if i.status != ItemStatus.ARCHIVED and (wanted in normalize(i.title) or normalize(i.title) in wanted)
        ]
        if len(partial) == 1:
            return partial[0]
        if partial:
            logger.info("[PlanStore] '%s' matches %d items, not guessing", name_or_id, len(partial))
        return None

    def verify_item_created(self, user_id: str, item_id: str) -> Verification:
        try:
            row = self.repository.get_item(item_id)
            row_ok = row is not None and row.user_id == user_id
        except StoreWriteFailure:
            row_ok = False
        try:
            plan = self.repository.get_plan(user_id)
            document_ok = plan is not None and plan.locate(item_id) is not None
        except StoreWriteFailure:
            document_ok = False
        return Verification(row_ok=row_ok, document_ok=document_ok)

    def weekly_count(self, user_id: str, item_id: str, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        entries = self.repository.list_logs(user_id, item_id=item_id, since=start_of_week(now))
        return sum(1 for e in entries if e.status == LogStatus.COMPLETED)

    def activation_blockers(self, user_id: str, item_id: str, plan: Optional[PlanDocument] = None) -> List[str]:
        """Titles of previous-phase items that are not active yet."""
        plan = plan or self.repository.get_plan(user_id)
        if plan is None:
            return []
        location = plan.locate(item_id)
        if location is None or location[0] == 0:
            return []
        rows = {i.id: i for i in self.repository.list_items(user_id, plan_id=plan.plan_id)}
        missing = []
        for plan_item in plan.phases[location[0] - 1].items:
            row = rows.get(plan_item.id)
            status = row.status if row is not None else plan_item.status
            if status in (ItemStatus.ACTIVE, ItemStatus.COMPLETED, ItemStatus.ARCHIVED):
                continue
            missing.append(plan_item.title)
        return missing

    # --- creation ---

    def create_item(
        self,
        user_id: str,
        params: ActionParams,
        kind: ItemKind,
        status: ItemStatus = ItemStatus.ACTIVE,
    ) -> WriteResult:
        try:
            plan = self.repository.get_plan(user_id)
        except StoreWriteFailure:
            return WriteResult(status=WriteStatus.FAILED, detail="plan_read_failed")
        if plan is None or plan.active_phase() is None:
            return WriteResult(status=WriteStatus.FAILED, detail="no_active_plan")

        phase = plan.active_phase()
        title = (params.title or "").strip()
        key = normalize_title(title)
        if any(normalize_title(i.title) == key for i in phase.items):
            return WriteResult(status=WriteStatus.DUPLICATE, detail=title)
        for row in self.repository.find_items_by_title(user_id, title, plan_id=plan.plan_id):
            if row.phase_id == phase.id:
                return WriteResult(status=WriteStatus.DUPLICATE, item=row, detail=title)

        item = TrackableItem(
            id=new_id("act"),
            user_id=user_id,
            plan_id=plan.plan_id,
            phase_id=phase.id,
            kind=kind,
            title=title,
            description=params.description,
            tracking_mode=params.tracking_mode,
            target_reps=params.target_reps or 1,
            scheduled_days=list(params.scheduled_days),
            time_of_day=params.time_of_day or TimeOfDay.ANY_TIME,
            status=status,
            tips=params.tips,
            created_at=self.clock(),
        )
        try:
            self.repository.insert_item(item)
        except StoreWriteFailure as e:
            logger.error("[PlanStore] Row insert failed for '%s': %s", title, e)
            return WriteResult(status=WriteStatus.FAILED, detail="row_insert_failed")

        phase.items.append(to_plan_item(item))
        plan.updated_at = self.clock()
        try:
            self.repository.save_plan(plan)
        except StoreWriteFailure as e:
            logger.error("[PlanStore] Document rewrite failed after inserting '%s': %s", title, e)

        verification = self.verify_item_created(user_id, item.id)
        if not verification.agrees:
            logger.warning("[PlanStore] Verification mismatch for %s: %s", item.id, verification)
            return WriteResult(status=WriteStatus.UNCERTAIN, item=item, verification=verification)
        return WriteResult(status=WriteStatus.CREATED, item=item, verification=verification)

    def insert_micro_step(self, user_id: str, target_id: str, step: MicroStep) -> WriteResult:
        """Insert `step` right before the target in its phase and pause the target."""
        try:
            plan = self.repository.get_plan(user_id)
            target = self.repository.get_item(target_id)
        except StoreWriteFailure:
            return WriteResult(status=WriteStatus.FAILED, detail="read_failed")
        location = plan.locate(target_id) if plan else None
        if target is None or location is None:
            return WriteResult(status=WriteStatus.NOT_FOUND)

        p_idx, i_idx = location
        phase = plan.phases[p_idx]
        if any(normalize_title(i.title) == normalize_title(step.title) for i in phase.items):
            return WriteResult(status=WriteStatus.DUPLICATE, detail=step.title)

        item = TrackableItem(
            id=new_id("act"),
            user_id=user_id,
            plan_id=plan.plan_id,
            phase_id=phase.id,
            kind=step.kind,
            title=step.title.strip(),
            description=step.description,
            target_reps=step.target_reps,
            time_of_day=step.time_of_day,
            status=ItemStatus.ACTIVE,
            tips=step.tip or None,
            created_at=self.clock(),
        )
        try:
            self.repository.insert_item(item)
        except StoreWriteFailure as e:
            logger.error("[PlanStore] Micro-step insert failed: %s", e)
            return WriteResult(status=WriteStatus.FAILED, detail="row_insert_failed")

        phase.items.insert(i_idx, to_plan_item(item))
        phase.items[i_idx + 1].status = ItemStatus.PENDING
        plan.updated_at = self.clock()
        try:
            self.repository.save_plan(plan)
        except StoreWriteFailure as e:
            logger.error("[PlanStore] Document rewrite failed after micro-step: %s", e)

        target_ok = True
        try:
            self.repository.update_item(target_id, {"status": ItemStatus.PENDING})
        except StoreWriteFailure as e:
            logger.error("[PlanStore] Could not pause '%s': %s", target.title, e)
            target_ok = False

        verification = self.verify_item_created(user_id, item.id)
        if verification.agrees and target_ok:
            return WriteResult(status=WriteStatus.CREATED, item=item, verification=verification)
        return WriteResult(status=WriteStatus.UNCERTAIN, item=item, verification=verification)

    # --- structural updates ---

    def title_taken(self, user_id: str, plan: Optional[PlanDocument], row: TrackableItem, title: str) -> bool:
        """Another item of `row`'s phase already uses `title`, in the document or the rows."""
        key = normalize_title(title)
        for phase in plan.phases if plan else []:
            if phase.id == row.phase_id and any(
                i.id != row.id and normalize_title(i.title) == key for i in phase.items
            ):
                return True
        return any(
            other.id != row.id and other.phase_id == row.phase_id
            for other in self.repository.find_items_by_title(user_id, title, plan_id=row.plan_id)
        )

    def update_item(self, user_id: str, item_id: str, changes: ProposedChanges) -> WriteResult:
        """Apply changes to one item: full document rewrite, then the row."""
        try:
            plan = self.repository.get_plan(user_id)
            row = self.repository.get_item(item_id)
        except StoreWriteFailure:
            return WriteResult(status=WriteStatus.FAILED, detail="read_failed")
        if row is None or row.user_id != user_id:
            return WriteResult(status=WriteStatus.NOT_FOUND)

        if changes.new_title and self.title_taken(user_id, plan, row, changes.new_title):
            return WriteResult(status=WriteStatus.DUPLICATE, item=row, detail=changes.new_title.strip())

        new_reps = changes.new_reps if changes.new_reps is not None else row.target_reps
        new_days = list(changes.new_days) if changes.new_days is not None else list(row.scheduled_days)
        if row.kind == ItemKind.HABIT and new_days and len(new_days) > new_reps:
            return WriteResult(status=WriteStatus.BLOCKED, item=row, missing=new_days, detail="too_many_days")

        fields: Dict[str, object] = {"target_reps": new_reps, "scheduled_days": new_days}
        if changes.new_time_of_day is not None:
            fields["time_of_day"] = changes.new_time_of_day
        if changes.new_title:
            fields["title"] = changes.new_title.strip()

        document_ok = False
        location = plan.locate(item_id) if plan else None
        if location is None and plan is not None:
            key = normalize_title(row.title)
            location = next(
                (
                    (p_idx, i_idx)
                    for p_idx, phase in enumerate(plan.phases)
                    for i_idx, plan_item in enumerate(phase.items)
                    if normalize_title(plan_item.title) == key
                ),
                None,
            )
        if location is not None:
            plan_item = plan.phases[location[0]].items[location[1]]
            plan.phases[location[0]].items[location[1]] = plan_item.model_copy(update=fields)
            plan.updated_at = self.clock()
            try:
                self.repository.save_plan(plan)
                document_ok = True
            except StoreWriteFailure as e:
                logger.error("[PlanStore] Document rewrite failed for '%s': %s", row.title, e)
        else:
            logger.warning("[PlanStore] '%s' missing from the plan document", row.title)

        updated = row
        try:
            updated = self.repository.update_item(item_id, fields)
            row_ok = True
        except StoreWriteFailure as e:
            logger.error("[PlanStore] Row update failed for '%s': %s", row.title, e)
            row_ok = False

        return WriteResult(status=_combine(row_ok, document_ok, WriteStatus.UPDATED), item=updated)

    def _set_status(self, user_id: str, item_id: str, status: ItemStatus, activate_phase: bool = False) -> WriteResult:
        try:
            plan = self.repository.get_plan(user_id)
            row = self.repository.get_item(item_id)
        except StoreWriteFailure:
            return WriteResult(status=WriteStatus.FAILED, detail="read_failed")
        if row is None or row.user_id != user_id:
            return WriteResult(status=WriteStatus.NOT_FOUND)
        if row.status == status:
            return WriteResult(status=WriteStatus.NOOP, item=row)

        try:
            updated = self.repository.update_item(item_id, {"status": status})
            row_ok = True
        except StoreWriteFailure as e:
            logger.error("[PlanStore] Status update to %s failed for '%s': %s", status.value, row.title, e)
            updated, row_ok = row, False

        document_ok = False
        location = plan.locate(item_id) if plan else None
        if location is not None:
            p_idx, i_idx = location
            plan.phases[p_idx].items[i_idx].status = status
            if activate_phase:
                if plan.phases[p_idx].status == PhaseStatus.LOCKED:
                    plan.phases[p_idx].status = PhaseStatus.ACTIVE
                plan.current_phase = max(plan.current_phase, p_idx + 1)
            plan.updated_at = self.clock()
            try:
                self.repository.save_plan(plan)
                document_ok = True
            except StoreWriteFailure as e:
                logger.error("[PlanStore] Document rewrite failed for '%s': %s", row.title, e)

        return WriteResult(status=_combine(row_ok, document_ok, WriteStatus.UPDATED), item=updated)

    def activate_item(self, user_id: str, item_id: str) -> WriteResult:
        row = self.repository.get_item(item_id)
        if row is None or row.user_id != user_id:
            return WriteResult(status=WriteStatus.NOT_FOUND)
        if row.status == ItemStatus.ACTIVE:
            return WriteResult(status=WriteStatus.NOOP, item=row)
        missing = self.activation_blockers(user_id, item_id)
        if missing:
            return WriteResult(status=WriteStatus.BLOCKED, item=row, missing=missing, detail="previous_phase_incomplete")
        return self._set_status(user_id, item_id, ItemStatus.ACTIVE, activate_phase=True)

    def archive_item(self, user_id: str, item_id: str) -> WriteResult:
        return self._set_status(user_id, item_id, ItemStatus.ARCHIVED)

    def deactivate_item(self, user_id: str, item_id: str) -> WriteResult:
        return self._set_status(user_id, item_id, ItemStatus.PENDING)

    def complete_item(self, user_id: str, item_id: str) -> WriteResult:
        return self._set_status(user_id, item_id, ItemStatus.COMPLETED)

    def level_up(self, user_id: str, item_id: str) -> Optional[LevelUp]:
        """Retire an active action whose counter reached its target and activate the next
        pending action of the plan, oldest first. Activation keeps the phase-order guard:
        a blocked candidate is skipped, so the unlock can come from an earlier phase or
        not happen at all.
        """
        row = self.repository.get_item(item_id)
        if row is None or row.user_id != user_id or row.kind not in ACTION_KINDS or row.status != ItemStatus.ACTIVE:
            return None
        if row.current_reps < max(row.target_reps, 1):
            return None

        done = self.complete_item(user_id, item_id)
        if done.status not in (WriteStatus.UPDATED, WriteStatus.UNCERTAIN):
            logger.error("[PlanStore] Could not complete '%s' after reaching its target: %s", row.title, done.detail)
            return None
        logger.info("[PlanStore] Level up on '%s' (%d/%d)", row.title, row.current_reps, row.target_reps)

        pending = sorted(
            (i for i in self.repository.list_items(user_id, plan_id=row.plan_id, statuses=[ItemStatus.PENDING])
             if i.kind in ACTION_KINDS),
            key=lambda i: ensure_aware(i.created_at),
        )
        for candidate in pending:
            result = self.activate_item(user_id, candidate.id)
            if result.status in (WriteStatus.UPDATED, WriteStatus.UNCERTAIN):
                logger.info("[PlanStore] Unlocked '%s'", candidate.title)
                return LevelUp(completed=done.item, unlocked=result.item)
            if result.status != WriteStatus.BLOCKED:
                logger.warning("[PlanStore] Could not unlock '%s': %s", candidate.title, result.status.value)
                break
        return LevelUp(completed=done.item)

    # --- progress ---

    def log_progress(
        self,
        user_id: str,
        item_id: str,
        status: LogStatus,
        value: Optional[float] = None,
        note: Optional[str] = None,
        performed_at: Optional[datetime] = None,
    ) -> WriteResult:
        """Record one outcome for an item and bump its aggregate counter.

        Same day and same status is a no-op; same day with a different status rewrites
        that day's entry. The entry write and the counter update run concurrently and
        both results are collected before reporting.
        """
        performed_at = ensure_aware(performed_at or self.clock())
        day_start = performed_at.replace(hour=0, minute=0, second=0, microsecond=0)
        try:
            row = self.repository.get_item(item_id)
            same_day = self.repository.list_logs(user_id, item_id=item_id, since=day_start, until=day_start + timedelta(days=1))
        except StoreWriteFailure:
            return WriteResult(status=WriteStatus.FAILED, detail="read_failed")
        if row is None or row.user_id != user_id:
            return WriteResult(status=WriteStatus.NOT_FOUND)

        previous = same_day[-1] if same_day else None
        if previous is not None and previous.status == status and (value is None or previous.value == value):
            return WriteResult(status=WriteStatus.NOOP, item=row, entry=previous)

        increment = 0
        counts = row.kind != ItemKind.VITAL_SIGN
        if counts and status == LogStatus.COMPLETED:
            increment = int(value) if row.tracking_mode == TrackingMode.COUNTER and value else 1
        if counts and previous is not None and previous.status == LogStatus.COMPLETED:
            increment -= int(previous.value) if row.tracking_mode == TrackingMode.COUNTER and previous.value else 1

        fields: Dict[str, object] = {
            "current_reps": max(0, row.current_reps + increment),
            "last_checked_at": performed_at,
        }
        if status == LogStatus.COMPLETED:
            fields["last_performed_at"] = performed_at

        if previous is not None:
            changed = {"status": status, "value": value, "note": note, "performed_at": performed_at}
            entry = previous.model_copy(update=changed)

            def write_entry():
                self.repository.update_log(previous.id, changed)

            success = WriteStatus.UPDATED
        else:
            entry = LogEntry(
                id=new_id("log"),
                user_id=user_id,
                item_id=item_id,
                item_title=row.title,
                item_kind=row.kind,
                status=status,
                value=value,
                note=note,
                performed_at=performed_at,
            )

            def write_entry():
                self.repository.insert_log(entry)

            success = WriteStatus.CREATED

        with ThreadPoolExecutor(max_workers=2) as pool:
            entry_future = pool.submit(write_entry)
            counter_future = pool.submit(self.repository.update_item, item_id, fields)
        entry_ok = entry_future.exception() is None
        counter_ok = counter_future.exception() is None
        if not entry_ok:
            logger.error("[PlanStore] Log entry write failed for '%s': %s", row.title, entry_future.exception())
        if not counter_ok:
            logger.error("[PlanStore] Counter update failed for '%s': %s", row.title, counter_future.exception())

        item = counter_future.result() if counter_ok else row
        return WriteResult(status=_combine(entry_ok, counter_ok, success), item=item, entry=entry)

    # --- repair ---

    def reconcile_plan(self, user_id: str) -> List[str]:
        """Project rows back into the document where the two disagree. Returns repaired item ids."""
        plan = self.repository.get_plan(user_id)
        if plan is None:
            return []
        repaired = []
        phases_by_id = {p.id: p for p in plan.phases}
        for row in self.repository.list_items(user_id, plan_id=plan.plan_id):
            location = plan.locate(row.id)
            if location is None:
                if row.status == ItemStatus.ARCHIVED:
                    continue
                phase = phases_by_id.get(row.phase_id) or plan.active_phase()
                if phase is None:
                    continue
                phase.items.append(to_plan_item(row))
                repaired.append(row.id)
                continue
            plan_item = plan.phases[location[0]].items[location[1]]
            projected = to_plan_item(row)
            if plan_item != projected:
                plan.phases[location[0]].items[location[1]] = projected
                repaired.append(row.id)
        if repaired:
            plan.updated_at = self.clock()
            self.repository.save_plan(plan)
            logger.info("[PlanStore] Reconciled %d item(s) for %s", len(repaired), user_id)
        return repaired
