"""Tests for the plan store adapter against the in-memory repository."""

from datetime import timedelta

from conftest import NOW

from plancoach.models import (
    ActionParams,
    ItemKind,
    ItemStatus,
    LogStatus,
    MicroStep,
    PhaseStatus,
    ProposedChanges,
    TrackingMode,
)
from plancoach.plan_store import WriteStatus

USER = "user_01"


def titles_in_phase(repo, index):
    return [i.title for i in repo.plans[USER].phases[index].items]


def test_find_item_by_id_title_and_partial_title(adapter):
    assert adapter.find_item(USER, "act_reading").title == "Lecture"
    assert adapter.find_item(USER, "lecture ").id == "act_reading"
    assert adapter.find_item(USER, "méditation").id == "act_meditation"
    assert adapter.find_item(USER, "Courir").id == "act_run"
    assert adapter.find_item(USER, "Natation") is None
    assert adapter.find_item("someone_else", "act_reading") is None


def test_create_item_writes_row_and_document(adapter, repo):
    result = adapter.create_item(USER, ActionParams(title="Yoga", target_reps=2), ItemKind.HABIT)

    assert result.status == WriteStatus.CREATED
    assert result.verification.agrees
    row = repo.items[result.item.id]
    assert (row.title, row.target_reps, row.status, row.phase_id) == ("Yoga", 2, ItemStatus.ACTIVE, "phase_1")
    assert "Yoga" in titles_in_phase(repo, 0)


def test_duplicate_title_in_active_phase_is_refused(adapter, repo):
    before = len(repo.items)
    result = adapter.create_item(USER, ActionParams(title="  lecture ", target_reps=3), ItemKind.HABIT)

    assert result.status == WriteStatus.DUPLICATE
    assert len(repo.items) == before
    assert titles_in_phase(repo, 0).count("Lecture") == 1


def test_create_without_plan_fails(adapter):
    result = adapter.create_item("nobody", ActionParams(title="Yoga"), ItemKind.MISSION)
    assert result.status == WriteStatus.FAILED
    assert result.detail == "no_active_plan"


def test_row_insert_failure_is_failed(adapter, repo):
    repo.fail_operations.add("insert_item")
    result = adapter.create_item(USER, ActionParams(title="Yoga"), ItemKind.MISSION)
    assert result.status == WriteStatus.FAILED
    assert "Yoga" not in titles_in_phase(repo, 0)


def test_document_failure_is_uncertain_then_reconciled(adapter, repo):
    repo.fail_operations.add("save_plan")
    result = adapter.create_item(USER, ActionParams(title="Yoga"), ItemKind.MISSION)

    assert result.status == WriteStatus.UNCERTAIN
    assert result.verification.row_ok and not result.verification.document_ok

    repo.fail_operations.clear()
    repaired = adapter.reconcile_plan(USER)
    assert repaired == [result.item.id]
    assert adapter.verify_item_created(USER, result.item.id).agrees
    assert adapter.reconcile_plan(USER) == []


def test_reconcile_projects_row_changes_into_document(adapter, repo):
    repo.update_item("act_reading", {"target_reps": 4})
    assert adapter.reconcile_plan(USER) == ["act_reading"]
    reading = next(i for i in repo.plans[USER].phases[0].items if i.id == "act_reading")
    assert reading.target_reps == 4


def test_update_rejects_more_days_than_weekly_target(adapter, repo):
    result = adapter.update_item(USER, "act_meditation", ProposedChanges(new_reps=3))

    assert result.status == WriteStatus.BLOCKED
    assert result.missing == ["mon", "tue", "thu", "fri"]
    assert repo.items["act_meditation"].target_reps == 5


def test_update_writes_document_and_row(adapter, repo):
    changes = ProposedChanges(new_reps=3, new_days=["mon", "thu", "fri"])
    result = adapter.update_item(USER, "act_meditation", changes)

    assert result.status == WriteStatus.UPDATED
    row = repo.items["act_meditation"]
    assert (row.target_reps, row.scheduled_days) == (3, ["mon", "thu", "fri"])
    doc_item = next(i for i in repo.plans[USER].phases[0].items if i.id == "act_meditation")
    assert doc_item.target_reps == 3


def test_rename_to_a_title_used_in_the_same_phase_is_refused(adapter, repo):
    result = adapter.update_item(USER, "act_reading", ProposedChanges(new_title="méditation", new_reps=4))

    assert result.status == WriteStatus.DUPLICATE
    assert (repo.items["act_reading"].title, repo.items["act_reading"].target_reps) == ("Lecture", 3)
    titles = [i.title for i in repo.plans[USER].phases[0].items]
    assert titles.count("Méditation") == 1
    assert "Lecture" in titles


def test_rename_may_reuse_a_title_from_another_phase_or_change_case(adapter, repo):
    assert adapter.update_item(USER, "act_reading", ProposedChanges(new_title="Sport")).status == WriteStatus.UPDATED
    assert adapter.update_item(USER, "act_reading", ProposedChanges(new_title="SPORT")).status == WriteStatus.UPDATED
    assert repo.items["act_reading"].title == "SPORT"


def test_document_fallback_updates_the_first_title_match(adapter, repo):
    plan = repo.plans[USER]
    plan.phases[0].items[2].id = "legacy_reading"
    plan.phases[1].items.append(plan.phases[0].items[2].model_copy(update={"id": "legacy_reading_2"}))

    assert adapter.update_item(USER, "act_reading", ProposedChanges(new_reps=5)).status == WriteStatus.UPDATED

    phases = repo.plans[USER].phases
    assert phases[0].items[2].target_reps == 5
    assert phases[1].items[-1].target_reps == 3


def test_update_with_row_failure_is_uncertain(adapter, repo):
    repo.fail_operations.add("update_item")
    result = adapter.update_item(USER, "act_reading", ProposedChanges(new_reps=5))
    assert result.status == WriteStatus.UNCERTAIN


def test_activation_blocked_by_previous_phase(adapter, repo):
    result = adapter.activate_item(USER, "act_run")

    assert result.status == WriteStatus.BLOCKED
    assert result.missing == ["Préparer ses affaires la veille"]
    assert repo.items["act_run"].status == ItemStatus.PENDING
    assert repo.plans[USER].phases[1].status == PhaseStatus.LOCKED


def test_activation_unlocks_next_phase_once_prerequisites_are_active(adapter, repo):
    assert adapter.activate_item(USER, "act_prep").status == WriteStatus.UPDATED

    result = adapter.activate_item(USER, "act_run")

    assert result.status == WriteStatus.UPDATED
    assert repo.items["act_run"].status == ItemStatus.ACTIVE
    plan = repo.plans[USER]
    assert plan.phases[1].status == PhaseStatus.ACTIVE
    assert plan.current_phase == 2


def test_activate_active_item_is_noop(adapter):
    assert adapter.activate_item(USER, "act_reading").status == WriteStatus.NOOP


def test_archive_and_deactivate(adapter, repo):
    assert adapter.archive_item(USER, "act_reading").status == WriteStatus.UPDATED
    assert repo.items["act_reading"].status == ItemStatus.ARCHIVED
    assert adapter.deactivate_item(USER, "fw_journal").status == WriteStatus.UPDATED
    assert repo.items["fw_journal"].status == ItemStatus.PENDING
    assert adapter.archive_item(USER, "missing").status == WriteStatus.NOT_FOUND


def test_level_up_waits_for_the_target(adapter, repo):
    repo.update_item("act_reading", {"current_reps": 2})
    assert adapter.level_up(USER, "act_reading") is None
    assert repo.items["act_reading"].status == ItemStatus.ACTIVE


def test_level_up_completes_and_unlocks_the_oldest_pending_action(adapter, repo):
    repo.update_item("act_reading", {"current_reps": 3})

    level = adapter.level_up(USER, "act_reading")

    assert (level.completed.id, level.unlocked.id) == ("act_reading", "act_prep")
    assert repo.items["act_reading"].status == ItemStatus.COMPLETED
    assert repo.items["act_prep"].status == ItemStatus.ACTIVE
    assert adapter.level_up(USER, "act_reading") is None


def test_level_up_skips_actions_locked_behind_the_previous_phase(adapter, repo):
    repo.update_item("act_prep", {"created_at": NOW + timedelta(hours=1)})
    repo.update_item("act_reading", {"current_reps": 3})

    level = adapter.level_up(USER, "act_reading")

    assert level.unlocked.id == "act_prep"
    assert repo.items["act_run"].status == ItemStatus.PENDING
    assert repo.plans[USER].phases[1].status == PhaseStatus.LOCKED


def test_level_up_ignores_vital_signs(adapter, repo):
    repo.update_item("vit_sleep", {"current_reps": 10})
    assert adapter.level_up(USER, "vit_sleep") is None


def test_insert_micro_step_goes_before_target_and_pauses_it(adapter, repo):
    step = MicroStep(title="Ouvrir le livre 2 minutes", description="Juste l'ouvrir")
    result = adapter.insert_micro_step(USER, "act_reading", step)

    assert result.status == WriteStatus.CREATED
    titles = titles_in_phase(repo, 0)
    assert titles.index("Ouvrir le livre 2 minutes") == titles.index("Lecture") - 1
    assert repo.items["act_reading"].status == ItemStatus.PENDING
    assert repo.items[result.item.id].status == ItemStatus.ACTIVE


def test_log_progress_counts_once_per_day(adapter, repo):
    first = adapter.log_progress(USER, "act_reading", LogStatus.COMPLETED, performed_at=NOW)
    second = adapter.log_progress(USER, "act_reading", LogStatus.COMPLETED, performed_at=NOW.replace(hour=18))

    assert first.status == WriteStatus.CREATED
    assert second.status == WriteStatus.NOOP
    assert len(repo.logs) == 1
    row = repo.items["act_reading"]
    assert row.current_reps == 1
    assert row.last_performed_at == NOW
    assert row.last_checked_at == NOW


def test_log_progress_rewrites_the_day_on_status_change(adapter, repo):
    adapter.log_progress(USER, "act_reading", LogStatus.COMPLETED, performed_at=NOW)
    result = adapter.log_progress(USER, "act_reading", LogStatus.MISSED, note="fatigué", performed_at=NOW)

    assert result.status == WriteStatus.UPDATED
    entries = list(repo.logs.values())
    assert len(entries) == 1
    assert (entries[0].status, entries[0].note) == (LogStatus.MISSED, "fatigué")
    assert repo.items["act_reading"].current_reps == 0


def test_vital_sign_values_do_not_bump_the_counter(adapter, repo):
    result = adapter.log_progress(USER, "vit_sleep", LogStatus.COMPLETED, value=7.5, performed_at=NOW)

    assert result.status == WriteStatus.CREATED
    assert result.entry.value == 7.5
    assert repo.items["vit_sleep"].current_reps == 0


def test_counter_habits_add_the_logged_value(adapter, repo):
    repo.update_item("act_reading", {"tracking_mode": TrackingMode.COUNTER})
    adapter.log_progress(USER, "act_reading", LogStatus.COMPLETED, value=3, performed_at=NOW)
    assert repo.items["act_reading"].current_reps == 3


def test_log_progress_partial_failure_is_uncertain(adapter, repo):
    repo.fail_operations.add("insert_log")
    result = adapter.log_progress(USER, "act_reading", LogStatus.COMPLETED, performed_at=NOW)
    assert result.status == WriteStatus.UNCERTAIN
    assert repo.items["act_reading"].current_reps == 1


def test_log_progress_total_failure_is_failed(adapter, repo):
    repo.fail_operations.update({"insert_log", "update_item"})
    result = adapter.log_progress(USER, "act_reading", LogStatus.COMPLETED, performed_at=NOW)
    assert result.status == WriteStatus.FAILED


def test_weekly_count_only_counts_this_week(adapter, repo):
    for days_ago in (0, 1, 3, 5):  # Thursday, Wednesday, Monday, last Saturday
        adapter.log_progress(USER, "act_reading", LogStatus.COMPLETED,
                             performed_at=NOW.replace(day=NOW.day - days_ago))
    adapter.log_progress(USER, "act_meditation", LogStatus.MISSED, performed_at=NOW)

    assert adapter.weekly_count(USER, "act_reading", NOW) == 3
    assert adapter.weekly_count(USER, "act_meditation", NOW) == 0
