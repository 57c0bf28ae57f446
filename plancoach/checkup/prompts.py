from textwrap import dedent
from typing import Optional

from plancoach.models import CheckupItem, CheckupItemKind


CHECKUP_ITEM_PROMPT = dedent(
    """
    You run a short daily check-in in French, informally ("tu"), one item at a time.

    Item being reviewed:
    - Title: {title}
    - Type: {kind}
    - Description: {description}
    - Unit: {unit}

    Read the user's answer about THIS item only.
    - If it says clearly whether the item was done, missed or partly done (or gives
      a value for a metric), call `log_item` with that status, the value if any, and
      the reason in the user's words as `note`.
    - Otherwise answer with ONE short question that helps the user say whether it
      was done. Do not move to another item. Do not log anything you are unsure about.
    """
).strip()


BLOCKER_LABELS_FR = {
    "fatigue": "la fatigue",
    "time": "le manque de temps",
    "forgetfulness": "l'oubli",
    "other": "autre chose",
}

NOTHING_TO_CHECK = "Rien à checker pour l'instant, tout est à jour. 👌"
CHECKUP_DONE = "C'est tout pour aujourd'hui. Merci pour le bilan, à demain !"
CHECKUP_STOPPED = "Ok, on arrête le bilan ici. Ce qui est noté reste noté, on reprendra la prochaine fois."
LOG_FAILED = (
    "Ok, j'ai eu un souci technique en notant ça.\n\n"
    "On continue quand même : redis-moi juste \"fait\" ou \"pas fait\", et je reprends."
)
ASK_AGAIN = "Je n'ai pas bien saisi. C'est fait, pas fait, ou en partie ?"
MORE_ITEMS = "Encore un point avant de finir."
RESUME_WALK = "On reprend le bilan."


def opening_line(completed: int, missed: int, partial: int, top_blocker: Optional[str]) -> str:
    if not (completed or missed or partial):
        return "On fait le point de la journée ?"
    parts = []
    if completed:
        parts.append(f"{completed} fait{'s' if completed > 1 else ''}")
    if partial:
        parts.append(f"{partial} en partie")
    if missed:
        parts.append(f"{missed} raté{'s' if missed > 1 else ''}")
    line = "Hier : " + ", ".join(parts) + "."
    if top_blocker:
        line += f" Ce qui a le plus bloqué : {BLOCKER_LABELS_FR.get(top_blocker, top_blocker)}."
    return line + " On fait le point d'aujourd'hui ?"


def item_question(item: CheckupItem) -> str:
    if item.kind == CheckupItemKind.VITAL:
        unit = f" ({item.unit})" if item.unit else ""
        return f"{item.title}{unit} : tu en es à combien ?"
    if item.kind == CheckupItemKind.FRAMEWORK:
        return f"Tu as pris le temps pour \"{item.title}\" ?"
    return f"\"{item.title}\" : c'est fait ?"


def completed_streak_message(title: str, days: int) -> str:
    return f"{days} jours d'affilée pour \"{title}\", bien joué 🔥"


def weekly_target_message(title: str, target: int) -> str:
    return f"Bravo. Objectif atteint : {target}× cette semaine pour \"{title}\"."


def logged_message(status_label: str) -> str:
    return f"Noté ({status_label})."


def level_up_message(title: str, target: int, unlocked: Optional[str]) -> str:
    line = f"Niveau validé 🚀 \"{title}\" est acquise ({target}/{target}), je la sors du bilan quotidien."
    if unlocked:
        return f"{line} Prochaine étape débloquée : \"{unlocked}\"."
    return f"{line} Rien d'autre en attente dans ton plan pour l'instant."
