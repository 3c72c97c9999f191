"""
Operator API Tests

Drives the FastAPI app in-process with TestClient over an injected
in-memory backend.
"""

import pytest
from fastapi.testclient import TestClient

from adapter.providers import MockProvider, ProviderErrorCode
from episode_engine.api.server import create_app
from episode_engine.qualifications import UNIT_COUNT, UNIT_DURATION

from .fixtures import PROJECT_ID, PROJECT_TITLE, SERIES_FORMAT, create_backend


PROJECT = {
    "project_id": PROJECT_ID,
    "title": PROJECT_TITLE,
    "format_subtype": SERIES_FORMAT,
    "project_fields": {UNIT_DURATION: 60, UNIT_COUNT: 3},
}


@pytest.fixture
def backend():
    return create_backend()


@pytest.fixture
def client(backend):
    return TestClient(create_app(backend))


def prepare(client):
    assert client.post("/api/v1/projects", json=PROJECT).status_code == 201
    assert client.post(f"/api/v1/projects/{PROJECT_ID}/snapshots").status_code == 201
    assert client.post(f"/api/v1/projects/{PROJECT_ID}/units", json={}).status_code == 201


class TestProjects:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "online"}

    def test_register_and_resolve(self, client):
        created = client.post("/api/v1/projects", json=PROJECT)
        assert created.status_code == 201
        assert created.json()["project_id"] == PROJECT_ID

        resolved = client.get(f"/api/v1/projects/{PROJECT_ID}/qualifications").json()
        assert [UNIT_DURATION, 60] in resolved["facts"]
        assert resolved["errors"] == []

    def test_duplicate_registration(self, client):
        client.post("/api/v1/projects", json=PROJECT)
        response = client.post("/api/v1/projects", json=PROJECT)
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_ARGUMENT"

    def test_unknown_project(self, client):
        response = client.get("/api/v1/projects/nope/qualifications")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "PROJECT_NOT_FOUND"

    def test_missing_fact_blocks_snapshot(self, client):
        client.post("/api/v1/projects", json={**PROJECT, "project_fields": {UNIT_COUNT: 3, UNIT_DURATION: 2}})
        response = client.post(f"/api/v1/projects/{PROJECT_ID}/snapshots")
        assert response.status_code == 422
        assert response.json()["detail"]["context"]["fields"] == UNIT_DURATION

    def test_actor_header_reaches_audit_log(self, client, backend):
        client.post("/api/v1/projects", json=PROJECT, headers={"X-Actor": "showrunner"})
        entries = backend.observability_layer.get_layer_log("engine")
        assert any(e.actor == "showrunner" for e in entries)


class TestUnitEndpoints:

    def test_generate_lock_flow(self, client):
        prepare(client)
        units = client.get(f"/api/v1/projects/{PROJECT_ID}/units").json()
        assert [u["status"] for u in units] == ["pending"] * 3

        generated = client.post(f"/api/v1/projects/{PROJECT_ID}/units/1/generate", json={})
        assert generated.status_code == 200
        locked = client.post(f"/api/v1/projects/{PROJECT_ID}/units/1/lock")
        assert locked.status_code == 200
        assert client.get(f"/api/v1/projects/{PROJECT_ID}/units/1").json()["status"] == "locked"

        content = client.get(f"/api/v1/projects/{PROJECT_ID}/units/1/content").json()
        assert content["content"].startswith("EPISODE 1:")
        paths = [e["path"] for e in client.get(f"/api/v1/projects/{PROJECT_ID}/exports").json()]
        assert f"projects/{PROJECT_ID}/package/episodes/EP01/SCRIPT_LATEST.md" in paths

    def test_predecessor_gate_conflict(self, client):
        prepare(client)
        response = client.post(f"/api/v1/projects/{PROJECT_ID}/units/2/generate", json={})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "PREDECESSOR_NOT_LOCKED"

    def test_hard_delete_requires_token(self, client):
        prepare(client)
        deleted = client.post(f"/api/v1/projects/{PROJECT_ID}/units/3/delete", json={"reason": "cut"})
        assert deleted.json()["record_state"] == "soft_deleted"
        response = client.post(f"/api/v1/projects/{PROJECT_ID}/units/3/hard-delete", json={})
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "CONFIRMATION_REQUIRED"

        challenge = client.post(f"/api/v1/projects/{PROJECT_ID}/units/3/hard-delete/request").json()
        purged = client.post(f"/api/v1/projects/{PROJECT_ID}/units/3/hard-delete",
                             json={"confirmation_token": challenge["confirmation_token"]})
        assert purged.status_code == 200
        assert client.get(f"/api/v1/projects/{PROJECT_ID}/units/3").status_code == 404

    def test_generation_failure_is_bad_gateway(self):
        backend = create_backend(provider=MockProvider(failure_mode=ProviderErrorCode.CONTENT_FILTERED))
        client = TestClient(create_app(backend))
        prepare(client)

        response = client.post(f"/api/v1/projects/{PROJECT_ID}/units/1/generate", json={})

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["code"] == "GENERATION_FAILED"
        assert detail["context"]["backend_code"] == "content_filtered"
        assert detail["context"]["retryable"] == "False"


class TestBatchAndRetconEndpoints:

    def test_batch_ticks(self, client):
        prepare(client)
        batch = client.post(f"/api/v1/projects/{PROJECT_ID}/batches", json={"auto_lock": True}).json()

        report = client.post(f"/api/v1/batches/{batch['batch_id']}/tick").json()

        assert report["advanced"] == [1]
        assert report["batch"]["next_index"] == 2
        second = client.post(f"/api/v1/projects/{PROJECT_ID}/batches", json={})
        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "BATCH_ALREADY_RUNNING"

    def test_retcon_flow(self, client):
        prepare(client)
        for index in (1, 2):
            client.post(f"/api/v1/projects/{PROJECT_ID}/units/{index}/generate", json={})
            client.post(f"/api/v1/projects/{PROJECT_ID}/units/{index}/lock")

        event = client.post(f"/api/v1/projects/{PROJECT_ID}/retcons",
                            json={"summary": "Harbor closes"}).json()
        runs = client.post(f"/api/v1/retcons/{event['event_id']}/patches", json={"indices": [2]}).json()
        assert runs[0]["status"] == "pending"

        missing_reason = client.post(f"/api/v1/patches/{runs[0]['patch_id']}/reject", json={})
        assert missing_reason.status_code == 422

        applied = client.post(f"/api/v1/patches/{runs[0]['patch_id']}/apply")
        assert applied.json()["status"] == "applied"
        content = client.get(f"/api/v1/projects/{PROJECT_ID}/units/2/content").json()
        assert content["content"].endswith("[Revised: Harbor closes]")
