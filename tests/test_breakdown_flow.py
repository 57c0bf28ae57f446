import pytest
from conftest import tool_call

from plancoach.architect import prompts
from plancoach.architect.breakdown_flow import ASK_BLOCKER, ASK_BLOCKER_AGAIN, ASK_TARGET, BreakdownFlow
from plancoach.errors import UpstreamServiceFailure
from plancoach.models import ItemStatus, Outcome


@pytest.fixture()
def flow():
    return BreakdownFlow()


def micro_step(title="Ouvrir le livre à une page au hasard", **extra):
    return tool_call("propose_micro_step", title=title, description="Juste une page, pas plus.", **extra)


def test_generates_a_preview_with_a_forced_tool_call(flow, ctx, repo, completion):
    completion.push(micro_step(tip="Pose le livre sur ton oreiller"))
    result = flow.start(ctx, repo.items["act_reading"], "trop fatigué le soir")

    assert result.candidate.status == "previewing"
    assert result.candidate.proposed_step.title == "Ouvrir le livre à une page au hasard"
    assert result.reply.startswith('Ok. Micro-étape (2 min) pour débloquer "Lecture" :')
    assert "Astuce : Pose le livre sur ton oreiller" in result.reply
    call = completion.calls[0]
    assert call["tool_choice"] == "any"
    assert "trop fatigué le soir" in call["message"]


def test_yes_inserts_the_step_and_pauses_the_target(flow, ctx, repo, completion):
    completion.push(micro_step())
    preview = flow.start(ctx, repo.items["act_reading"], "fatigue")
    result = flow.respond(preview.candidate, "oui", ctx)

    assert result.candidate.status == "applied"
    assert result.outcome == Outcome.SUCCESS
    assert result.executed_tools == ["break_down_action"]
    assert repo.items["act_reading"].status == ItemStatus.PENDING
    assert any(i.title == "Ouvrir le livre à une page au hasard" for i in repo.items.values())


def test_missing_target_and_blocker_are_asked(flow, ctx, repo, completion):
    result = flow.start(ctx, None, None)
    assert (result.candidate.status, result.reply) == ("awaiting_target", ASK_TARGET)

    result = flow.respond(result.candidate, "la lecture", ctx)
    assert (result.candidate.status, result.reply) == ("awaiting_blocker", ASK_BLOCKER)
    assert result.candidate.target.id == "act_reading"

    completion.push(micro_step())
    result = flow.respond(result.candidate, "je rentre trop tard", ctx)
    assert result.candidate.status == "previewing"
    assert result.candidate.blocker == "je rentre trop tard"


def test_generation_failure_abandons_without_writing(flow, ctx, repo, completion):
    completion.push(UpstreamServiceFailure("down"))
    before = len(repo.items)
    result = flow.start(ctx, repo.items["act_reading"], "fatigue")

    assert result.candidate.status == "abandoned"
    assert result.reply == prompts.ABANDON_BREAKDOWN["no_proposal_generated"]
    assert len(repo.items) == before


def test_invalid_step_abandons(flow, ctx, repo, completion):
    completion.push(tool_call("propose_micro_step", description="no title"))
    result = flow.start(ctx, repo.items["act_reading"], "fatigue")
    assert result.candidate.last_clarification_reason == "no_proposal_generated"


def test_asking_for_another_step_retries_once(flow, ctx, repo, completion):
    completion.push(micro_step())
    preview = flow.start(ctx, repo.items["act_reading"], "fatigue")

    retry = flow.respond(preview.candidate, "trop dur, autre chose", ctx)
    assert (retry.candidate.status, retry.reply) == ("awaiting_blocker", ASK_BLOCKER_AGAIN)
    assert retry.candidate.proposed_step is None

    completion.push(micro_step("Lire une seule phrase"))
    second = flow.respond(retry.candidate, "un truc encore plus simple", ctx)
    assert second.candidate.proposed_step.title == "Lire une seule phrase"

    given_up = flow.respond(second.candidate, "autre chose", ctx)
    assert given_up.candidate.status == "abandoned"


def test_checkup_offer_waits_for_consent(flow, ctx, repo, completion):
    offer = flow.offer(ctx, repo.items["act_reading"], 5, "pas eu le temps")

    assert offer.candidate.status == "awaiting_consent"
    assert offer.candidate.origin == "checkup"
    assert offer.reply == (
        'Ça fait 5 fois d\'affilée que "Lecture" ne passe pas. '
        "Tu veux qu'on la découpe en une micro-étape de 2 minutes ?"
    )
    assert completion.calls == []

    completion.push(micro_step())
    result = flow.respond(offer.candidate, "oui", ctx)
    assert result.candidate.status == "previewing"


def test_checkup_offer_without_note_asks_for_the_blocker(flow, ctx, repo):
    offer = flow.offer(ctx, repo.items["act_reading"], 5, None)
    result = flow.respond(offer.candidate, "ok", ctx)
    assert (result.candidate.status, result.reply) == ("awaiting_blocker", ASK_BLOCKER)


def test_checkup_offer_declined(flow, ctx, repo):
    offer = flow.offer(ctx, repo.items["act_reading"], 5, None)
    result = flow.respond(offer.candidate, "non merci", ctx)
    assert result.candidate.status == "abandoned"
    assert result.reply == prompts.ABANDON_BREAKDOWN["user_declined"]


def test_unknown_target_is_asked_once_then_dropped(flow, ctx, repo, completion):
    start = flow.start(ctx, None, None)

    again = flow.respond(start.candidate, "le matin", ctx)
    assert (again.candidate.status, again.reply) == ("awaiting_target", ASK_TARGET)
    assert again.candidate.clarification_count == 1

    result = flow.respond(again.candidate, "le matin", ctx)
    assert result.candidate.status == "abandoned"
    assert result.reply == prompts.ABANDON_BREAKDOWN["max_clarifications"]
    assert completion.calls == []
