"""Consent parser.

Classifies a free-text reply to a proposal into affirmative, negative, modify (with
an extracted value) or unclear. Everything here is pure and works on normalized
text, so the dispatcher never has to trust the model to infer consent.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from plancoach.dates import sort_days
from plancoach.models import TimeOfDay
from plancoach.text import normalize


class ConsentKind(str, Enum):
    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    MODIFY = "modify"
    UNCLEAR = "unclear"


class ConsentSignal(BaseModel):
    kind: ConsentKind
    field: Optional[str] = None
    value: Any = None
    changes: Dict[str, Any] = Field(default_factory=dict)


AFFIRMATIVE_PATTERNS = [
    r"\bo+u+i+\b",
    r"\bo+u+a+i+s*\b",
    r"\bo+k+(?:a+y+)?\b",
    r"\by+e+s+\b",
    r"\by+e+p+\b",
    r"\bd'?accord\b",
    r"\bdac+\b",
    r"\bvas[ -]?y\b",
    r"\bgo+\b",
    r"\bca marche\b",
    r"\bc'?est bon\b",
    r"\bc'?est parti\b",
    r"\bparfait\b",
    r"\bcarrement\b",
    r"\bnickel\b",
    r"\bvalider?\b",
    r"\bexactement\b",
    r"\bbien sur\b",
    r"\bbanco\b",
    r"\bsuper\b",
    r"\btop\b",
]

NEGATIVE_PATTERNS = [
    r"\bn+o+n+\b",
    r"\bno\b",
    r"\bnope\b",
    r"\bnan\b",
    r"\bpas maintenant\b",
    r"\bpas besoin\b",
    r"\bpas envie\b",
    r"\bpas vraiment\b",
    r"\bsurtout pas\b",
    r"\blaisse(?:r)? tomber\b",
    r"\bannule[rz]?\b",
    r"\bstop\b",
    r"\boublie[rz]?\b",
    r"\bplus tard\b",
    r"\bhors de question\b",
]

# "pas ok", "c'est pas bon": negated affirmatives count as a refusal.
NEGATED_AFFIRMATIVE = re.compile(r"\b(?:pas|plus) (?:bon|ok|okay|d'accord|top|super|terrible|ca)\b")

MODIFY_CUES = re.compile(r"\b(?:plutot|mais|change[rz]?|mets?|passe[rz]?|fais|prefere|remplace|modifie)\b")

NUMBER_WORDS = {
    "une": 1,
    "un": 1,
    "deux": 2,
    "trois": 3,
    "quatre": 4,
    "cinq": 5,
    "six": 6,
    "sept": 7,
}

FREQUENCY_DIGITS = re.compile(r"\b(\d+)\s*(?:fois|x|×)(?!\w)")
FREQUENCY_WORDS = re.compile(r"\b(une|un|deux|trois|quatre|cinq|six|sept)\s+fois\b")
EVERY_DAY = re.compile(r"\btous les jours\b|\bchaque jour\b|\bquotidien(?:nement)?\b")

DAY_FULL = {
    "lundi": "mon",
    "mardi": "tue",
    "mercredi": "wed",
    "jeudi": "thu",
    "vendredi": "fri",
    "samedi": "sat",
    "dimanche": "sun",
}
DAY_SHORT = {
    "lun": "mon",
    "mar": "tue",
    "mer": "wed",
    "jeu": "thu",
    "ven": "fri",
    "sam": "sat",
    "dim": "sun",
}

TIME_OF_DAY_PATTERNS = [
    (re.compile(r"\bn'?importe quand\b|\bpeu importe\b"), TimeOfDay.ANY_TIME),
    (re.compile(r"\bapres[- ]?midi\b|\baprem\b"), TimeOfDay.AFTERNOON),
    (re.compile(r"\bmatin(?:s|ee)?\b"), TimeOfDay.MORNING),
    (re.compile(r"\bsoir(?:s|ee)?\b"), TimeOfDay.EVENING),
    (re.compile(r"\bnuit\b"), TimeOfDay.NIGHT),
]


def _matches_any(patterns: List[str], text: str) -> bool:
    return any(re.search(p, text) for p in patterns)


def is_affirmative(message: str) -> bool:
    text = normalize(message)
    if NEGATED_AFFIRMATIVE.search(text):
        return False
    return _matches_any(AFFIRMATIVE_PATTERNS, text)


def is_negative(message: str) -> bool:
    text = normalize(message)
    return bool(NEGATED_AFFIRMATIVE.search(text)) or _matches_any(NEGATIVE_PATTERNS, text)


def extract_frequency(message: str) -> Optional[int]:
    """Weekly frequency mentioned in the message, clamped to 1..7."""
    text = normalize(message)
    match = FREQUENCY_DIGITS.search(text)
    if match:
        value = int(match.group(1))
    else:
        match = FREQUENCY_WORDS.search(text)
        if match:
            value = NUMBER_WORDS[match.group(1)]
        elif EVERY_DAY.search(text):
            value = 7
        else:
            return None
    return max(1, min(7, value))


def extract_days(message: str) -> List[str]:
    text = normalize(message)
    found = [code for name, code in DAY_FULL.items() if re.search(r"\b" + name + r"s?\b", text)]
    if re.search(r"\bweek[- ]?ends?\b", text):
        found.extend(["sat", "sun"])
    short = [code for name, code in DAY_SHORT.items() if re.search(r"\b" + name + r"\b\.?", text)]
    # Abbreviations are ambiguous on their own ("mer", "sam"); only trust them in lists.
    if len(short) >= 2:
        found.extend(short)
    return sort_days(found)


def extract_time_of_day(message: str) -> Optional[TimeOfDay]:
    text = normalize(message)
    for pattern, value in TIME_OF_DAY_PATTERNS:
        if pattern.search(text):
            return value
    return None


def extract_modifications(message: str) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    reps = extract_frequency(message)
    if reps is not None:
        changes["target_reps"] = reps
    days = extract_days(message)
    if days:
        changes["scheduled_days"] = days
    time_of_day = extract_time_of_day(message)
    if time_of_day is not None:
        changes["time_of_day"] = time_of_day
    return changes


def parse_consent(message: str) -> ConsentSignal:
    text = normalize(message)
    negated = bool(NEGATED_AFFIRMATIVE.search(text))
    stripped = NEGATED_AFFIRMATIVE.sub(" ", text)
    negative = negated or _matches_any(NEGATIVE_PATTERNS, stripped)
    affirmative = _matches_any(AFFIRMATIVE_PATTERNS, stripped)

    changes = extract_modifications(message)
    if changes and (not negative or MODIFY_CUES.search(text)):
        field = next(iter(changes))
        return ConsentSignal(kind=ConsentKind.MODIFY, field=field, value=changes[field], changes=changes)

    if negative and affirmative:
        return ConsentSignal(kind=ConsentKind.UNCLEAR)
    if negative:
        return ConsentSignal(kind=ConsentKind.NEGATIVE)
    if affirmative:
        return ConsentSignal(kind=ConsentKind.AFFIRMATIVE)
    return ConsentSignal(kind=ConsentKind.UNCLEAR)
