import pytest
from fastapi.testclient import TestClient

from backend.api import app, get_agent

USER = "user_01"


@pytest.fixture()
def client(agent):
    app.dependency_overrides[get_agent] = lambda: agent
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_turn_persists_session_between_calls(client, repo):
    first = client.post(f"/api/chat/{USER}/turn", json={"message": "bilan du jour"})
    assert first.status_code == 200
    body = first.json()
    assert body["reply_text"].endswith("Heures de sommeil (h) : tu en es à combien ?")
    assert body["outcome"] == "none"
    assert repo.sessions[USER]["checkup"]["current_index"] == 0

    second = client.post(f"/api/chat/{USER}/turn", json={"message": "7", "history": [
        {"role": "user", "content": "bilan du jour"},
        {"role": "assistant", "content": body["reply_text"]},
    ]})
    assert second.status_code == 200
    assert second.json()["outcome"] == "success"
    assert second.json()["executed_tools"] == ["log_item"]
    assert repo.sessions[USER]["checkup"]["current_index"] == 1


def test_explicit_session_state_wins_over_stored_one(client, repo):
    client.post(f"/api/chat/{USER}/turn", json={"message": "bilan du jour"})

    response = client.post(f"/api/chat/{USER}/turn", json={"message": "salut", "session_state": {}})

    assert response.json()["reply_text"] == "D'accord."
    assert repo.sessions[USER]["checkup"] is None


def test_start_checkup_without_body(client):
    response = client.post(f"/api/checkup/{USER}/start")
    assert response.status_code == 200
    assert response.json()["new_session_state"]["checkup"]["status"] == "checking"


def test_session_store_outage_is_503(client, repo):
    repo.fail_operations.add("load_session")
    response = client.post(f"/api/chat/{USER}/turn", json={"message": "salut"})
    assert response.status_code == 503


def test_session_save_failure_still_answers(client, repo):
    repo.fail_operations.add("save_session")
    response = client.post(f"/api/chat/{USER}/turn", json={"message": "salut", "session_state": {}})
    assert response.status_code == 200
    assert response.json()["reply_text"] == "D'accord."


def test_reconcile(client, repo):
    repo.update_item("act_reading", {"target_reps": 4})
    response = client.post(f"/api/plan/{USER}/reconcile")
    assert response.json() == {"ok": True, "repaired": ["act_reading"]}
