"""Streaks and the day-before summary, computed from log entries only.

A day without any entry is not assumed missed or completed: it ends the streak.
"""

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from plancoach.dates import ensure_aware
from plancoach.models import LogEntry, LogStatus
from plancoach.text import normalize

BLOCKER_BUCKETS = [
    ("fatigue", ("fatigu", "creve", "epuise", "pas l'energie", "flemme")),
    ("time", ("temps", "pas eu le temps", "deborde", "boulot", "trop de travail")),
    ("forgetfulness", ("oubli", "pas pense", "zappe")),
]


def status_by_day(entries: Iterable[LogEntry]) -> Dict[date, LogStatus]:
    """Latest status per UTC day; the most recent entry of a day wins."""
    latest: Dict[date, LogEntry] = {}
    for entry in entries:
        day = ensure_aware(entry.performed_at).date()
        current = latest.get(day)
        if current is None or ensure_aware(entry.performed_at) >= ensure_aware(current.performed_at):
            latest[day] = entry
    return {day: e.status for day, e in latest.items()}


def streak_days(entries: Iterable[LogEntry], status: LogStatus) -> int:
    """Consecutive logged days with `status`, walking back from the most recent logged day."""
    days = status_by_day(entries)
    if not days:
        return 0
    cursor = max(days)
    streak = 0
    while days.get(cursor) == status:
        streak += 1
        cursor = cursor - timedelta(days=1)
    return streak


def missed_streak(entries: Iterable[LogEntry]) -> int:
    return streak_days(entries, LogStatus.MISSED)


def completed_streak(entries: Iterable[LogEntry]) -> int:
    return streak_days(entries, LogStatus.COMPLETED)


def blocker_bucket(note: Optional[str]) -> Optional[str]:
    text = normalize(note)
    if not text:
        return None
    for bucket, markers in BLOCKER_BUCKETS:
        if any(marker in text for marker in markers):
            return bucket
    return "other"


class DaySummary(BaseModel):
    completed: int = 0
    missed: int = 0
    partial: int = 0
    last_win_title: Optional[str] = None
    top_blocker: Optional[str] = None


def summarize_day(entries: List[LogEntry]) -> DaySummary:
    summary = DaySummary()
    blockers: Counter = Counter()
    for entry in sorted(entries, key=lambda e: ensure_aware(e.performed_at), reverse=True):
        if entry.status == LogStatus.COMPLETED:
            summary.completed += 1
            if summary.last_win_title is None and entry.item_title:
                summary.last_win_title = entry.item_title
        elif entry.status == LogStatus.PARTIAL:
            summary.partial += 1
        else:
            summary.missed += 1
            bucket = blocker_bucket(entry.note)
            if bucket:
                blockers[bucket] += 1
    if blockers:
        summary.top_blocker = blockers.most_common(1)[0][0]
    return summary


def day_window(now: datetime, days_back: int = 1):
    """[start, end) of the UTC day `days_back` days before `now`."""
    today = ensure_aware(now).replace(hour=0, minute=0, second=0, microsecond=0)
    start = today - timedelta(days=days_back)
    return start, start + timedelta(days=1)
