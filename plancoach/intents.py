"""Explicit-intent detectors.

Distinct from the consent parser: these look at the user's own words for an
imperative verb plus a target before a model-proposed mutation may run without a
confirmation step. They are deliberately narrow; a miss only costs one extra
confirmation question.
"""

import re
from typing import Optional

from plancoach.consent import DAY_FULL
from plancoach.text import contains_phrase, normalize

CANCEL_RE = re.compile(r"\b(?:annule[rz]?|laisse(?:r)? tomber|stop|oublie[rz]?|on laisse|cancel)\b")

# A cancel-only message: the cancel words plus a few fillers and punctuation.
CANCEL_ONLY_RE = re.compile(
    r"^(?:(?:non|ok|bon|alors|en fait|finalement|stp|s'il te plait|merci|c'est|ca|tout|"
    r"annule[rz]?|laisse(?:r)? tomber|stop|oublie[rz]?|on laisse|cancel|pour l'instant)[\s,.!]*)+$"
)

VERBS = {
    "create": r"\b(?:ajoute[rz]?|cree[rz]?|creer|mets?|mettre|rajoute[rz]?|add|create|programme[rz]?|planifie[rz]?)\b",
    "activate": r"\b(?:active[rz]?|lance[rz]?|demarre[rz]?|debloque[rz]?|commence[rz]?|start)\b",
    "archive": r"\b(?:supprime[rz]?|retire[rz]?|enleve[rz]?|archive[rz]?|efface[rz]?|delete|remove)\b",
    "deactivate": r"\b(?:desactive[rz]?|mets? en pause|pause[rz]?|suspend(?:s|re)?)\b",
    "update": r"\b(?:modifie[rz]?|change[rz]?|passe[rz]?|augmente[rz]?|diminue[rz]?|reduis|reduire|decale[rz]?|deplace[rz]?|renomme[rz]?)\b",
    "track": r"\b(?:note[rz]?|marque[rz]?|enregistre[rz]?|coche[rz]?|valide[rz]?|log)\b",
    "breakdown": r"\b(?:decoupe[rz]?|decompose[rz]?|simplifie[rz]?|micro[- ]?etape|debloque[rz]?|plus petit)\b",
}

TOOL_INTENT = {
    "create_simple_action": "create",
    "create_framework": "create",
    "activate_plan_action": "activate",
    "archive_plan_action": "archive",
    "deactivate_plan_action": "deactivate",
    "update_action_structure": "update",
    "track_progress": "track",
    "break_down_action": "breakdown",
}

QUOTED_TITLE_RE = re.compile(r'["«“]\s*([^"»”]{2,80}?)\s*["»”]')

STOP_CHECKUP_RE = re.compile(
    r"\b(?:on arrete|arrete|stop|on stoppe|termine[rz]?|on s'arrete)\b.*\b(?:bilan|checkup|check-up)\b"
    r"|^(?:stop|on arrete|on s'arrete la|c'est bon pour aujourd'hui)[\s.!]*$"
)

CHECKUP_REQUEST_RE = re.compile(
    r"\b(?:fai(?:s|re|sons) (?:le |un |mon )?(?:bilan|point|checkup|check-up)|(?:on|je) (?:fait|fais) (?:le |un |mon )?(?:bilan|point|checkup)|"
    r"bilan du jour|mon bilan|checkup|check-up)\b"
)

EXPLORING_RE = re.compile(
    r"\b(?:je sais pas|j'hesite|peut-etre|pourquoi pas|je me demande|tu en penses quoi|t'en penses quoi|"
    r"ca pourrait|est-ce que ce serait|on pourrait)\b"
)

DIFFERENT_STEP_RE = re.compile(
    r"\b(?:autre chose|une autre|un autre|plutot|different|trop dur|trop difficile|pas ca|encore plus petit)\b"
)


def looks_like_cancel(message: str) -> bool:
    return bool(CANCEL_RE.search(normalize(message)))


def is_cancel_only(message: str) -> bool:
    text = normalize(message)
    return bool(text) and bool(CANCEL_RE.search(text)) and bool(CANCEL_ONLY_RE.match(text))


def parse_quoted_title(message: str) -> Optional[str]:
    match = QUOTED_TITLE_RE.search(message or "")
    if not match:
        return None
    title = match.group(1).strip()
    return title or None


def mentions_target(message: str, target: Optional[str]) -> bool:
    """The target title, or one of its significant words, appears in the user's message."""
    if not target:
        return False
    text = normalize(message)
    wanted = normalize(target)
    if contains_phrase(text, wanted):
        return True
    words = [w for w in re.findall(r"[a-z0-9']+", wanted) if len(w) >= 5]
    return bool(words) and all(contains_phrase(text, w) for w in words)


def has_explicit_intent(tool_name: str, message: str, target: Optional[str] = None) -> bool:
    """True when the user's own words name the action verb for `tool_name` and its target."""
    family = TOOL_INTENT.get(tool_name)
    if family is None:
        return False
    text = normalize(message)
    if not re.search(VERBS[family], text):
        return False
    if text.endswith("?"):
        return False
    quoted = parse_quoted_title(message)
    if quoted and target and normalize(quoted) == normalize(target):
        return True
    return mentions_target(message, target)


def is_explicit_stop_checkup(message: str) -> bool:
    return bool(STOP_CHECKUP_RE.search(normalize(message)))


def is_checkup_request(message: str) -> bool:
    return bool(CHECKUP_REQUEST_RE.search(normalize(message)))


def looks_like_exploring(message: str) -> bool:
    return bool(EXPLORING_RE.search(normalize(message)))


def asks_for_different_step(message: str) -> bool:
    return bool(DIFFERENT_STEP_RE.search(normalize(message)))


def parse_day_to_remove(message: str) -> Optional[str]:
    """Single day named by the user, answering 'which day do you want to drop?'."""
    text = normalize(message)
    found = [code for name, code in DAY_FULL.items() if re.search(r"\b" + name + r"s?\b", text)]
    if len(found) == 1:
        return found[0]
    return None
