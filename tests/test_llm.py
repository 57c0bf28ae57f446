import threading
from types import SimpleNamespace

import pytest
from google.genai import errors as genai_errors

from plancoach.config import Settings
from plancoach.errors import UpstreamServiceFailure
from plancoach.llm import LLMClient, backoff_delay


class FakeModels:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0

    def generate_content(self, model, contents, config):
        self.calls += 1
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_client(*responses, retries=2, keys=("test-key",)):
    llm = LLMClient(Settings(gemini_api_keys=list(keys), llm_max_retries=retries), sleep=lambda s: None)
    models = FakeModels(responses)
    llm.client = SimpleNamespace(models=models)
    return llm, models


def text_response(text):
    return SimpleNamespace(function_calls=None, text=text)


def api_error(code):
    return genai_errors.APIError(code, {"error": {"code": code, "message": "upstream said no", "status": "ERROR"}})


def test_text_completion():
    llm, _ = make_client(text_response("  Salut !  "))
    completion = llm.complete("system", [{"role": "assistant", "content": "Hello"}], "salut")
    assert completion.text == "Salut !"
    assert completion.tool_call is None


def test_tool_call_completion():
    call = SimpleNamespace(name="track_progress", args={"target_name": "Lecture"})
    llm, _ = make_client(SimpleNamespace(function_calls=[call], text=None))
    completion = llm.complete("system", [], "j'ai lu")
    assert completion.tool_call.name == "track_progress"
    assert completion.tool_call.args == {"target_name": "Lecture"}


def test_empty_responses_are_retried():
    llm, models = make_client(text_response(""), text_response("Ok"))
    assert llm.complete("system", [], "salut").text == "Ok"
    assert models.calls == 2


def test_gives_up_after_bounded_retries():
    llm, models = make_client(*[text_response("") for _ in range(3)], retries=2)
    with pytest.raises(UpstreamServiceFailure):
        llm.complete("system", [], "salut")
    assert models.calls == 3


def test_no_api_key_is_an_upstream_failure():
    with pytest.raises(UpstreamServiceFailure):
        LLMClient(Settings()).complete("system", [], "salut")


def test_backoff_is_exponential_and_capped():
    assert 1.0 <= backoff_delay(1, 1.0, 8.0) <= 1.25
    assert 4.0 <= backoff_delay(3, 1.0, 8.0) <= 5.0
    assert 8.0 <= backoff_delay(10, 1.0, 8.0) <= 10.0


@pytest.mark.parametrize("code", [500, 503])
def test_server_errors_are_retried(code):
    llm, models = make_client(api_error(code), text_response("Ok"))
    assert llm.complete("system", [], "salut").text == "Ok"
    assert models.calls == 2
    assert llm.current_key_index == 0


@pytest.mark.parametrize("code", [400, 403, 404])
def test_client_errors_stop_at_once(code):
    llm, models = make_client(api_error(code), text_response("Ok"))
    with pytest.raises(UpstreamServiceFailure):
        llm.complete("system", [], "salut")
    assert models.calls == 1


def test_rate_limit_rotates_to_the_next_key(monkeypatch):
    llm, models = make_client(api_error(429), text_response("Ok"), keys=("key-a", "key-b"))
    used = []

    def fake_client(api_key):
        used.append(api_key)
        return SimpleNamespace(models=models)

    monkeypatch.setattr("plancoach.llm.genai.Client", fake_client)

    assert llm.complete("system", [], "salut").text == "Ok"
    assert llm.current_key_index == 1
    assert used == ["key-b"]
    assert models.calls == 2


def test_deadline_stops_a_slow_call_without_another_attempt():
    started, release = threading.Event(), threading.Event()

    class SlowModels(FakeModels):
        def generate_content(self, model, contents, config):
            self.calls += 1
            started.set()
            release.wait(5)
            return text_response("trop tard")

    llm, _ = make_client(retries=3)
    models = SlowModels([])
    llm.client = SimpleNamespace(models=models)
    try:
        with pytest.raises(UpstreamServiceFailure):
            llm.complete("system", [], "salut", timeout=0.05)
        assert started.wait(1)
        assert models.calls == 1
    finally:
        release.set()
