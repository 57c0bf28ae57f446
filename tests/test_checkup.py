from datetime import timedelta

import pytest
from conftest import NOW, add_log, tool_call

from plancoach.checkup import CheckupAgent, get_pending_items, interpret_reply, is_stale
from plancoach.checkup.prompts import ASK_AGAIN, CHECKUP_DONE, CHECKUP_STOPPED, LOG_FAILED, MORE_ITEMS, NOTHING_TO_CHECK
from plancoach.checkup.scanner import to_checkup_item
from plancoach.errors import UpstreamServiceFailure
from plancoach.llm import Completion
from plancoach.models import (
    CheckupItem,
    CheckupItemKind,
    CheckupSession,
    CheckupStatus,
    ItemStatus,
    LogStatus,
    Outcome,
    TrackingMode,
)

USER = "user_01"


@pytest.fixture()
def checkup(dispatcher):
    return CheckupAgent(dispatcher.breakdown_flow, clock=lambda: NOW)


def session_for(repo, *item_ids):
    return CheckupSession(
        status=CheckupStatus.CHECKING,
        pending_items=[to_checkup_item(repo.items[i]) for i in item_ids],
    )


def mark_checked(repo, *item_ids):
    for item_id in item_ids:
        repo.update_item(item_id, {"last_checked_at": NOW})


# --- scanner ---


def test_pending_items_are_ordered_by_kind(adapter):
    ids = [i.id for i in get_pending_items(adapter, USER, NOW)]
    assert ids == ["vit_sleep", "act_meditation", "act_reading", "fw_journal"]


def test_recently_checked_items_are_not_pending(adapter, repo):
    repo.update_item("act_reading", {"last_checked_at": NOW - timedelta(hours=17)})
    repo.update_item("fw_journal", {"last_performed_at": NOW - timedelta(hours=19)})

    assert not is_stale(repo.items["act_reading"], NOW)
    ids = [i.id for i in get_pending_items(adapter, USER, NOW)]
    assert "act_reading" not in ids
    assert "fw_journal" in ids


def test_habits_not_scheduled_today_are_skipped(adapter):
    wednesday = NOW - timedelta(days=1)
    ids = [i.id for i in get_pending_items(adapter, USER, wednesday)]
    assert "act_meditation" not in ids
    assert "act_reading" in ids


def test_habits_with_weekly_target_met_are_skipped(adapter, repo):
    for days_ago in (1, 2, 3):
        add_log(repo, "act_reading", LogStatus.COMPLETED, days_ago)
    ids = [i.id for i in get_pending_items(adapter, USER, NOW)]
    assert "act_reading" not in ids


# --- reply interpretation ---


def action(**extra):
    return CheckupItem(id="a", kind=CheckupItemKind.ACTION, title="Lecture", **extra)


@pytest.mark.parametrize(
    "message, expected",
    [
        ("c'est fait", (LogStatus.COMPLETED, None)),
        ("oui !", (LogStatus.COMPLETED, None)),
        ("pas fait", (LogStatus.MISSED, None)),
        ("non, pas eu le temps", (LogStatus.MISSED, None)),
        ("à moitié", (LogStatus.PARTIAL, None)),
        ("euh", None),
    ],
)
def test_interpret_action_replies(message, expected):
    assert interpret_reply(action(), message) == expected


def test_interpret_numbers():
    vital = CheckupItem(id="v", kind=CheckupItemKind.VITAL, title="Sommeil", tracking_mode=TrackingMode.COUNTER)
    assert interpret_reply(vital, "7,5") == (LogStatus.COMPLETED, 7.5)
    assert interpret_reply(vital, "0") == (LogStatus.COMPLETED, 0.0)
    assert interpret_reply(vital, "pas mesuré") is None

    counter = action(tracking_mode=TrackingMode.COUNTER)
    assert interpret_reply(counter, "12 pompes") == (LogStatus.COMPLETED, 12.0)
    assert interpret_reply(counter, "0") == (LogStatus.MISSED, None)


# --- session ---


def test_start_opens_with_the_first_question(checkup, ctx, repo):
    turn = checkup.start(ctx)

    assert turn.reply == "On fait le point de la journée ?\n\nHeures de sommeil (h) : tu en es à combien ?"
    assert turn.checkup.status == CheckupStatus.CHECKING
    assert turn.checkup.temp_memory.opening_done
    assert [row["event"] for row in repo.ledger] == ["checkup_started"]


def test_opening_summarizes_yesterday(checkup, ctx, repo):
    add_log(repo, "act_meditation", LogStatus.COMPLETED, 1)
    add_log(repo, "act_reading", LogStatus.MISSED, 1, note="trop fatigué")

    turn = checkup.start(ctx)

    assert turn.reply.startswith(
        "Hier : 1 fait, 1 raté. Ce qui a le plus bloqué : la fatigue. On fait le point d'aujourd'hui ?"
    )


def test_nothing_to_check(checkup, ctx, repo):
    mark_checked(repo, "vit_sleep", "act_meditation", "act_reading", "fw_journal")
    turn = checkup.start(ctx)
    assert turn.reply == NOTHING_TO_CHECK
    assert turn.checkup is None


def test_walks_items_one_by_one(checkup, ctx, repo):
    session = checkup.start(ctx).checkup

    turn = checkup.handle(ctx, "7", [], session)

    assert turn.reply == 'Noté (fait).\n\n"Méditation" : c\'est fait ?'
    assert turn.outcome == Outcome.SUCCESS
    assert turn.executed_tools == ["log_item"]
    assert turn.checkup.current_index == 1
    assert turn.checkup.temp_memory.logged == ["vit_sleep"]
    assert [e.value for e in repo.logs.values()] == [7.0]
    # the input session is left untouched
    assert session.current_index == 0


def test_completed_streak_is_acknowledged(checkup, ctx, repo):
    add_log(repo, "act_meditation", LogStatus.COMPLETED, 1)
    add_log(repo, "act_meditation", LogStatus.COMPLETED, 2)

    turn = checkup.handle(ctx, "oui", [], session_for(repo, "act_meditation", "act_reading"))

    assert turn.reply.startswith('Noté (fait). 3 jours d\'affilée pour "Méditation", bien joué 🔥')


def test_short_streak_is_not_acknowledged(checkup, ctx, repo):
    add_log(repo, "act_meditation", LogStatus.COMPLETED, 1)
    turn = checkup.handle(ctx, "oui", [], session_for(repo, "act_meditation", "act_reading"))
    assert turn.reply == 'Noté (fait).\n\n"Lecture" : c\'est fait ?'


def test_weekly_target_reached(checkup, ctx, repo):
    add_log(repo, "act_reading", LogStatus.COMPLETED, 3)
    add_log(repo, "act_reading", LogStatus.COMPLETED, 2)
    mark_checked(repo, "vit_sleep", "act_meditation", "fw_journal")

    turn = checkup.handle(ctx, "fait", [], session_for(repo, "act_reading"))

    assert 'Bravo. Objectif atteint : 3× cette semaine pour "Lecture".' in turn.reply
    assert turn.reply.endswith(CHECKUP_DONE)


def test_missed_streak_offers_a_breakdown(checkup, ctx, repo):
    for days_ago in (1, 2, 3, 4):
        add_log(repo, "act_reading", LogStatus.MISSED, days_ago)

    turn = checkup.handle(ctx, "non, pas eu le temps", [], session_for(repo, "act_reading", "fw_journal"))

    assert turn.candidate.kind == "breakdown"
    assert turn.candidate.status == "awaiting_consent"
    assert turn.candidate.blocker == "non, pas eu le temps"
    assert turn.checkup.temp_memory.suspended_for == turn.candidate.id
    assert turn.checkup.current_index == 1
    assert 'Ça fait 5 fois d\'affilée que "Lecture" ne passe pas.' in turn.reply


def test_four_missed_days_do_not_trigger_the_offer(checkup, ctx, repo):
    for days_ago in (1, 2, 3):
        add_log(repo, "act_reading", LogStatus.MISSED, days_ago)
    turn = checkup.handle(ctx, "pas fait", [], session_for(repo, "act_reading", "fw_journal"))
    assert turn.candidate is None


def test_resume_after_breakdown(checkup, ctx, repo):
    session = session_for(repo, "act_reading", "fw_journal")
    session.current_index = 1
    session.temp_memory.suspended_for = "brk_1"

    turn = checkup.resume_after_breakdown(ctx, session, "Ok, pas de souci.")

    assert turn.reply == 'Ok, pas de souci.\n\nOn reprend le bilan. Tu as pris le temps pour "Journal du soir" ?'
    assert turn.checkup.temp_memory.suspended_for is None


def test_stop_ends_the_session(checkup, ctx, repo):
    turn = checkup.handle(ctx, "stop", [], session_for(repo, "act_reading"))
    assert turn.reply == CHECKUP_STOPPED
    assert turn.checkup is None
    assert repo.logs == {}


def test_unclear_answer_asks_the_model(checkup, ctx, repo, completion):
    completion.push(Completion(text="Tu as pu lire un peu ou pas du tout ?"))
    session = session_for(repo, "act_reading")

    turn = checkup.handle(ctx, "bof, c'était compliqué", [], session)

    assert turn.reply == "Tu as pu lire un peu ou pas du tout ?"
    assert turn.checkup.current_index == 0
    assert repo.logs == {}
    assert completion.calls[0]["tools"][0]["name"] == "log_item"


def test_model_tool_call_logs_the_item(checkup, ctx, repo, completion):
    completion.push(tool_call("log_item", status="partial", note="20 pages sur 40"))
    mark_checked(repo, "vit_sleep", "act_meditation", "fw_journal")

    turn = checkup.handle(ctx, "bof, c'était compliqué", [], session_for(repo, "act_reading"))

    entry = next(iter(repo.logs.values()))
    assert (entry.status, entry.note) == (LogStatus.PARTIAL, "20 pages sur 40")
    assert turn.checkup is None


def test_model_failure_asks_again(checkup, ctx, repo, completion):
    completion.push(UpstreamServiceFailure("down"))
    turn = checkup.handle(ctx, "bof", [], session_for(repo, "act_reading"))
    assert turn.reply == ASK_AGAIN
    assert turn.checkup.current_index == 0


def test_log_failure_keeps_the_item(checkup, ctx, repo):
    repo.fail_operations.update({"insert_log", "update_item"})
    turn = checkup.handle(ctx, "fait", [], session_for(repo, "act_reading"))

    assert turn.reply == LOG_FAILED
    assert turn.outcome == Outcome.FAILED
    assert turn.checkup.current_index == 0


def test_closing_rescans_for_new_items(checkup, ctx, repo):
    turn = checkup.handle(ctx, "oui", [], session_for(repo, "fw_journal"))

    assert turn.checkup.status == CheckupStatus.CHECKING
    assert f"{MORE_ITEMS} Heures de sommeil (h) : tu en es à combien ?" in turn.reply
    assert [i.id for i in turn.checkup.pending_items] == ["fw_journal", "vit_sleep", "act_meditation", "act_reading"]


def test_closing_finishes_when_everything_is_logged(checkup, ctx, repo):
    mark_checked(repo, "vit_sleep", "act_meditation", "act_reading")
    turn = checkup.handle(ctx, "oui", [], session_for(repo, "fw_journal"))

    assert turn.reply == f"Noté (fait).\n\n{CHECKUP_DONE}"
    assert turn.checkup is None
    assert "checkup_completed" in [row["event"] for row in repo.ledger]


def test_reaching_the_target_levels_up_the_action(checkup, ctx, repo):
    repo.update_item("act_reading", {"current_reps": 2})

    turn = checkup.handle(ctx, "oui", [], session_for(repo, "act_reading", "fw_journal"))

    assert 'Niveau validé 🚀 "Lecture" est acquise (3/3)' in turn.reply
    assert 'Prochaine étape débloquée : "Préparer ses affaires la veille".' in turn.reply
    assert turn.reply.endswith('Tu as pris le temps pour "Journal du soir" ?')
    assert repo.items["act_reading"].status == ItemStatus.COMPLETED
    assert repo.items["act_prep"].status == ItemStatus.ACTIVE
    assert any(row["event"] == "action_level_up" for row in repo.ledger)


def test_level_up_replaces_the_streak_acknowledgment(checkup, ctx, repo):
    add_log(repo, "act_reading", LogStatus.COMPLETED, 1)
    add_log(repo, "act_reading", LogStatus.COMPLETED, 2)
    repo.update_item("act_reading", {"current_reps": 2})

    turn = checkup.handle(ctx, "oui", [], session_for(repo, "act_reading", "fw_journal"))

    assert "Niveau validé" in turn.reply
    assert "d'affilée" not in turn.reply
