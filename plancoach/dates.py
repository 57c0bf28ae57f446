from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List

DAY_CODES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

DAY_LABELS_FR = {
    "mon": "lundi",
    "tue": "mardi",
    "wed": "mercredi",
    "thu": "jeudi",
    "fri": "vendredi",
    "sat": "samedi",
    "sun": "dimanche",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes coming back from storage as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def day_code(value: date) -> str:
    return DAY_CODES[value.weekday()]


def start_of_week(now: datetime) -> datetime:
    """Monday 00:00 of the week containing `now`, same timezone."""
    monday = now - timedelta(days=now.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


def add_days(value: date, days: int) -> date:
    return value + timedelta(days=days)


def sort_days(codes: Iterable[str]) -> List[str]:
    unique = {c for c in codes if c in DAY_CODES}
    return [c for c in DAY_CODES if c in unique]


def format_days_fr(codes: Iterable[str]) -> str:
    return ", ".join(DAY_LABELS_FR[c] for c in sort_days(codes))
