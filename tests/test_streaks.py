from datetime import datetime, timedelta, timezone

from plancoach.checkup.streaks import (
    blocker_bucket,
    completed_streak,
    day_window,
    missed_streak,
    status_by_day,
    summarize_day,
)
from plancoach.models import LogEntry, LogStatus

TODAY = datetime(2026, 3, 12, 9, 0, tzinfo=timezone.utc)


def entry(status, days_ago, hour=20, note=None, title="Lecture"):
    performed = (TODAY - timedelta(days=days_ago)).replace(hour=hour)
    return LogEntry(
        id=f"log_{days_ago}_{hour}_{status.value}",
        user_id="u",
        item_id="act_reading",
        item_title=title,
        status=status,
        note=note,
        performed_at=performed,
    )


def test_empty_history_has_no_streak():
    assert missed_streak([]) == 0
    assert completed_streak([]) == 0


def test_consecutive_missed_days():
    entries = [entry(LogStatus.MISSED, d) for d in range(5)]
    assert missed_streak(entries) == 5
    assert completed_streak(entries) == 0


def test_a_day_without_entry_breaks_the_streak():
    entries = [entry(LogStatus.MISSED, d) for d in (0, 1, 3, 4)]
    assert missed_streak(entries) == 2


def test_other_status_breaks_the_streak():
    entries = [
        entry(LogStatus.COMPLETED, 3),
        entry(LogStatus.PARTIAL, 2),
        entry(LogStatus.COMPLETED, 1),
        entry(LogStatus.COMPLETED, 0),
    ]
    assert completed_streak(entries) == 2


def test_streak_counts_back_from_the_latest_logged_day():
    # Nothing logged today: the streak ending yesterday still counts.
    entries = [entry(LogStatus.COMPLETED, d) for d in (1, 2, 3)]
    assert completed_streak(entries) == 3


def test_latest_entry_of_a_day_wins():
    morning = entry(LogStatus.MISSED, 0, hour=8)
    evening = entry(LogStatus.COMPLETED, 0, hour=21)
    days = status_by_day([evening, morning])
    assert days == {TODAY.date(): LogStatus.COMPLETED}
    assert missed_streak([morning, evening]) == 0


def test_blocker_bucket():
    assert blocker_bucket("trop fatigué ce soir") == "fatigue"
    assert blocker_bucket("j'ai pas eu le temps avec le boulot") == "time"
    assert blocker_bucket("j'ai complètement oublié") == "forgetfulness"
    assert blocker_bucket("il pleuvait") == "other"
    assert blocker_bucket(None) is None


def test_summarize_day():
    entries = [
        entry(LogStatus.COMPLETED, 1, hour=8, title="Méditation"),
        entry(LogStatus.MISSED, 1, hour=20, note="pas eu le temps"),
        entry(LogStatus.MISSED, 1, hour=21, note="le boulot", title="Sport"),
        entry(LogStatus.PARTIAL, 1, hour=22, title="Journal"),
    ]
    summary = summarize_day(entries)
    assert (summary.completed, summary.missed, summary.partial) == (1, 2, 1)
    assert summary.last_win_title == "Méditation"
    assert summary.top_blocker == "time"


def test_day_window_is_the_previous_utc_day():
    start, end = day_window(TODAY)
    assert start == datetime(2026, 3, 11, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 12, tzinfo=timezone.utc)
