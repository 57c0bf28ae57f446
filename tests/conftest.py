"""Shared fixtures: an in-memory store seeded with the demo plan and a scripted model."""

from datetime import datetime, timedelta, timezone

import pytest

from plancoach.agent import CoachAgent
from plancoach.architect.dispatcher import ToolDispatcher
from plancoach.config import Settings
from plancoach.ledger import ToolLedger
from plancoach.llm import Completion, ToolCall
from plancoach.models import LogEntry
from plancoach.plan_store import PlanStoreAdapter, new_id
from plancoach.seed import USER_ID, seed_demo_plan
from plancoach.storage import InMemoryRepository

# Thursday
NOW = datetime(2026, 3, 12, 9, 0, tzinfo=timezone.utc)


class FakeCompletion:
    """Returns queued completions in order; queued exceptions are raised instead."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def push(self, *responses):
        self.responses.extend(responses)

    def complete(self, system_instructions, history, user_message, tools=None, tool_choice="auto",
                 allowed_tools=None, timeout=None):
        self.calls.append(
            {"system": system_instructions, "message": user_message, "tools": tools, "tool_choice": tool_choice}
        )
        if not self.responses:
            return Completion(text="D'accord.")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def tool_call(name, text=None, **args):
    return Completion(text=text, tool_call=ToolCall(name=name, args=args))


def add_log(repo, item_id, status, days_ago, note=None, user_id=USER_ID, hour=20):
    item = repo.items[item_id]
    performed = (NOW - timedelta(days=days_ago)).replace(hour=hour)
    entry = LogEntry(
        id=new_id("log"),
        user_id=user_id,
        item_id=item_id,
        item_title=item.title,
        item_kind=item.kind,
        status=status,
        note=note,
        performed_at=performed,
    )
    repo.insert_log(entry)
    return entry


@pytest.fixture()
def repo():
    repository = InMemoryRepository()
    seed_demo_plan(repository, USER_ID, NOW)
    return repository


@pytest.fixture()
def ledger(repo):
    return ToolLedger(repo, background=False)


@pytest.fixture()
def adapter(repo):
    return PlanStoreAdapter(repo, clock=lambda: NOW)


@pytest.fixture()
def settings():
    return Settings()


@pytest.fixture()
def completion():
    return FakeCompletion()


@pytest.fixture()
def dispatcher(adapter, ledger, completion, settings):
    return ToolDispatcher(adapter, ledger, completion, settings)


@pytest.fixture()
def ctx(dispatcher):
    return dispatcher.context(USER_ID, "req_test")


@pytest.fixture()
def agent(repo, completion, settings, ledger):
    return CoachAgent(repo, completion, settings=settings, ledger=ledger, clock=lambda: NOW)

