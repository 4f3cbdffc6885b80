import pytest
from fastapi.testclient import TestClient

import server
from voice_intake.errors import PersistenceError
from voice_intake.extraction_pipeline import ExtractionPipeline
from voice_intake.safeguards import RateLimiter

from conftest import FakeChatLlm, extraction_answer


@pytest.fixture
def llm():
    return FakeChatLlm()


@pytest.fixture
def client(repo, settings, llm, monkeypatch):
    monkeypatch.setattr(server.app.state, "settings", settings)
    monkeypatch.setattr(server.app.state, "repository", repo)
    monkeypatch.setattr(server.app.state, "pipelines", {})
    monkeypatch.setattr(
        server.app.state,
        "pipeline_factory",
        lambda: ExtractionPipeline(repo, settings, chat_llm=llm, rate_limiter=RateLimiter(max_requests=2)),
    )
    return TestClient(server.app)


def start(client, kind, seed=None):
    resp = client.post("/tasks", json={"kind": kind, "seed": seed})
    assert resp.status_code == 200
    return resp.json()


def test_start_and_dictate(client, llm):
    view = start(client, "equipment_creation", {"name": "Aspiratore"})
    assert view["status"] == "collecting"
    assert view["missing_fields"] == ["category", "location"]

    llm.responses.append(extraction_answer({"category": "Chirurgia", "location": "Camera 12"}, "Registrato."))
    resp = client.post(f"/tasks/{view['task_id']}/transcripts", json={"text": "chirurgia, camera dodici"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["complete"] is True
    assert body["resolutions"]["location"]["outcome"] == "found"
    assert body["confirmation_text"] == "Registrato."

    view = client.get(f"/tasks/{view['task_id']}").json()
    assert view["status"] == "complete"


def test_unknown_task_is_404(client):
    assert client.get("/tasks/nope").status_code == 404
    assert client.post("/tasks/nope/confirm").status_code == 404


def test_invalid_kind_is_422(client):
    assert client.post("/tasks", json={"kind": "spaceship"}).status_code == 422


def test_malformed_answer_maps_to_502_and_retry_recovers(client, llm):
    task_id = start(client, "vendor_creation")["task_id"]
    llm.responses.extend(["nope", "still nope"])
    resp = client.post(f"/tasks/{task_id}/transcripts", json={"text": "ditta Medika Service"})
    assert resp.status_code == 502
    assert resp.json() == {
        "error": "malformed_response",
        "detail": resp.json()["detail"],
        "retryable": True,
        "transcript": "ditta Medika Service",
    }
    assert client.get(f"/tasks/{task_id}").json()["failed_transcript"] == "ditta Medika Service"

    llm.responses.append(extraction_answer({"name": "Medika Service"}))
    resp = client.post(f"/tasks/{task_id}/retry")
    assert resp.status_code == 200
    assert resp.json()["fields"] == {"name": "Medika Service"}


def test_rate_limit_maps_to_429(client, llm):
    task_id = start(client, "location_creation")["task_id"]
    llm.responses.extend([extraction_answer({"name": "Camera 1"}), extraction_answer({"floor": "PT"})])
    for text in ("camera uno", "piano terra"):
        assert client.post(f"/tasks/{task_id}/transcripts", json={"text": text}).status_code == 200
    resp = client.post(f"/tasks/{task_id}/transcripts", json={"text": "edificio B"})
    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"


def test_confirm_flow(client, repo):
    task_id = start(client, "vendor_creation", {"name": "Ossigeno Sud", "email": "info@ossigenosud.it"})["task_id"]
    resp = client.post(f"/tasks/{task_id}/confirm")
    assert resp.status_code == 200
    assert resp.json()["status"] == "confirmed"
    assert repo.inserted[0]["email"] == "info@ossigenosud.it"
    assert client.get(f"/tasks/{task_id}").status_code == 404


def test_confirm_incomplete_is_409(client):
    task_id = start(client, "vendor_creation", {"name": "Ossigeno Sud"})["task_id"]
    resp = client.post(f"/tasks/{task_id}/confirm")
    assert resp.status_code == 409
    assert resp.json()["error"] == "task_state"


def test_persistence_failure_is_500_and_task_survives(client, repo):
    task_id = start(client, "location_creation", {"name": "Camera 20"})["task_id"]
    repo.fail_insert = PersistenceError("disk full")
    resp = client.post(f"/tasks/{task_id}/confirm")
    assert resp.status_code == 500
    assert client.get(f"/tasks/{task_id}").json()["fields"] == {"name": "Camera 20"}


def test_cancel_by_voice_and_by_delete(client):
    task_id = start(client, "location_creation")["task_id"]
    resp = client.post(f"/tasks/{task_id}/transcripts", json={"text": "annulla"})
    assert resp.json()["intent"] == "cancel"
    assert client.get(f"/tasks/{task_id}").status_code == 404

    task_id = start(client, "location_creation")["task_id"]
    assert client.delete(f"/tasks/{task_id}").json()["status"] == "abandoned"
    assert client.get(f"/tasks/{task_id}").status_code == 404


def test_candidates_and_inline(client, llm, repo):
    task_id = start(client, "maintenance_event")["task_id"]
    llm.responses.append(extraction_answer({
        "equipment": "letto elettrico",
        "maintenance_type": "ispezione",
        "description": "controllo periodico",
        "performed_by": "Tecnoservizi Marche",
    }))
    body = client.post(f"/tasks/{task_id}/transcripts", json={"text": "ispezione del letto elettrico"}).json()
    assert body["resolutions"]["equipment"]["outcome"] == "ambiguous"
    assert body["resolutions"]["performed_by"]["outcome"] == "not_found"

    candidate = body["resolutions"]["equipment"]["candidates"][0]
    body = client.post(f"/tasks/{task_id}/candidates", json={"field": "equipment", "record": candidate}).json()
    assert body["resolutions"]["equipment"] == {"outcome": "found", "record": candidate}

    record = client.post(f"/tasks/{task_id}/inline", json={"field": "performed_by"}).json()["record"]
    assert record["needs_completion"] is True
    assert repo.created[0]["name"] == "Tecnoservizi Marche"


def test_resolve_endpoint(client):
    assert client.get("/resolve/location", params={"q": "camera 12"}).json()["outcome"] == "found"
    assert client.get("/resolve/vendor", params={"q": "Medika"}).json()["outcome"] == "ambiguous"
    assert client.get("/resolve/vendor", params={"q": "Ossigeno Nord"}).json()["outcome"] == "not_found"


def test_retry_applies_posted_field_snapshot(client, llm):
    task_id = start(client, "location_creation", {"name": "Camera 14"})["task_id"]
    llm.responses.append(ConnectionError("connection reset"))
    resp = client.post(f"/tasks/{task_id}/transcripts", json={"text": "secondo piano"})
    assert resp.status_code == 502
    assert resp.json()["error"] == "network"

    llm.responses.append(extraction_answer({"floor": "P2"}))
    resp = client.post(f"/tasks/{task_id}/retry", json={"field_snapshot": {"name": "Camera 15"}})
    assert resp.status_code == 200
    assert resp.json()["fields"] == {"name": "Camera 15", "floor": "P2"}
