from textwrap import dedent
from typing import Iterable, Optional

from plancoach.dates import format_days_fr
from plancoach.models import TimeOfDay


ARCHITECT_SYSTEM_PROMPT = dedent(
    """
    You are a warm, concise personal coach. You speak French, informally ("tu").

    You help the user follow and adjust their plan of actions (habits, missions,
    reflective frameworks, vital signs). You can call tools to change the plan, but:
    - Only propose a tool when the user clearly talks about that action.
    - Never claim that something was created, modified or recorded unless a tool did it.
    - Never invent a frequency, a day or a time the user did not give; ask instead.
    - One tool call at most per reply.
    - If the user is only chatting, answer in two or three sentences without tools.

    Current plan (active phase first):
    {plan_summary}
    """
).strip()


MICRO_STEP_PROMPT = dedent(
    """
    You design micro-steps for people who are stuck on a habit or task.
    A micro-step takes about two minutes, needs no preparation and is so small the
    user cannot fail it. It must directly address the blocker described.
    Answer by calling `propose_micro_step`. Title in French, under 60 characters.
    """
).strip()


TIME_OF_DAY_FR = {
    TimeOfDay.MORNING: "le matin",
    TimeOfDay.AFTERNOON: "l'après-midi",
    TimeOfDay.EVENING: "le soir",
    TimeOfDay.NIGHT: "la nuit",
    TimeOfDay.ANY_TIME: "n'importe quand",
}


def time_label(value: Optional[TimeOfDay]) -> str:
    return TIME_OF_DAY_FR.get(value, "n'importe quand") if value else "n'importe quand"


def days_label(days: Optional[Iterable[str]]) -> str:
    days = list(days or [])
    return format_days_fr(days) if days else "aucun jour fixe"


# --- Fixed replies ---

CANCELLED = "Ok, on annule pour l'instant. Dis-moi si tu veux y revenir plus tard."

ASK_YES_NO_CREATE = "Je suis pas sûr de comprendre. Tu veux que je crée cette action, oui ou non ?"
ASK_YES_NO_UPDATE = "Je veux être sûr : je fais cette modification, oui ou non ?"
ASK_YES_NO_BREAKDOWN = "Tu veux que j'ajoute cette micro-étape à ton plan, oui ou non ?"
ASK_YES_NO_GENERIC = "Je préfère vérifier : oui ou non ?"

ASK_FREQUENCY = "Combien de fois par semaine tu veux le faire ? (de 1 à 7)"
ASK_TITLE = "Comment tu veux l'appeler ?"

ABANDON_CREATE = {
    "user_declined": "Ok, on laisse tomber pour l'instant. Si tu changes d'avis, dis-le moi.",
    "max_clarifications": "Ok, je laisse ça de côté pour l'instant. Si tu veux l'ajouter plus tard, dis-moi simplement \"ajoute ...\".",
    "no_changes": "Rien à créer pour l'instant.",
}

ABANDON_UPDATE = {
    "user_declined": "Ok, on garde comme c'est.",
    "max_clarifications": "Ok, je ne touche à rien pour l'instant. Tu pourras me redemander quand tu veux.",
    "no_changes": "Je ne vois rien à changer par rapport à ce qui est déjà en place, donc je laisse comme ça.",
}

ABANDON_BREAKDOWN = {
    "user_declined": "Ok, pas de souci. On garde l'action telle quelle.",
    "max_clarifications": "Ok, on laisse ça de côté pour l'instant. Tu pourras me redemander une micro-étape quand tu veux.",
    "no_changes": "Je n'ai pas d'étape à ajouter, donc je ne change rien.",
    "no_proposal_generated": "Je n'ai pas réussi à te proposer une micro-étape correcte cette fois. Je ne change rien à ton plan, on pourra réessayer.",
    "no_target": "Je ne trouve pas l'action à découper, donc je laisse tomber pour l'instant.",
}

ABANDON_CONFIRM = {
    "user_declined": "Ok, je ne fais rien.",
    "max_clarifications": "Ok, je laisse ça de côté pour l'instant.",
    "no_changes": "Rien à faire.",
}


def duplicate_message(title: str) -> str:
    return (
        f"Oula ! ✋\n\nL'action \"{title}\" existe déjà dans ta phase actuelle. "
        "Je ne la rajoute pas une deuxième fois. Tu veux plutôt la modifier ?"
    )


def uncertain_message(title: str) -> str:
    return (
        f"Je viens de tenter d'enregistrer \"{title}\", mais je ne la vois pas encore clairement partout. "
        "Ouvre le dashboard pour vérifier, et dis-moi si elle n'y est pas."
    )


def failed_message() -> str:
    return "Oups, j'ai eu un souci technique et rien n'a été enregistré. Retente dans quelques secondes."


def breakdown_failed_message() -> str:
    return "Oups, j'ai eu un souci technique en ajoutant la micro-étape. Retente dans 10s."


def not_found_message(name: str) -> str:
    return f"Je ne trouve pas \"{name}\" dans ton plan. Tu peux me donner le nom exact ?"


def no_plan_message() -> str:
    return "Tu n'as pas encore de plan actif, donc je ne peux rien y ajouter pour l'instant."


def blocked_activation_message(title: str, missing: Iterable[str]) -> str:
    listed = "\n".join(f"- {m}" for m in missing)
    return (
        f"Pas encore possible d'activer \"{title}\" : il faut d'abord activer les actions de la phase précédente :\n"
        f"{listed}"
    )


def too_many_days_message(target_reps: int, days: Iterable[str]) -> str:
    days = list(days)
    return (
        f"Tu veux passer à {target_reps}×/semaine, mais tu as {len(days)} jours planifiés ({format_days_fr(days)}).\n\n"
        "Quel jour tu veux retirer ?"
    )


def invalid_args_message() -> str:
    return "Je n'ai pas bien compris ce qu'il fallait changer. Tu peux me le redire plus simplement ?"
