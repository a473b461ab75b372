# =============================================================================
# TOLLGATE MAIN API TESTS
# =============================================================================
# Tests for the FastAPI endpoints and the maintenance script.
# =============================================================================

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tollgate.domain.models import RunStatus
from tollgate.main import app, get_orchestrator

WAIT = 10


@pytest.fixture
def client(pipeline):
    """TestClient wired to the in-memory pipeline."""
    app.dependency_overrides[get_orchestrator] = lambda: pipeline.orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _submit(client, pipeline, commit_id="abc123", environment="prod"):
    response = client.post("/runs", json={"commit_id": commit_id, "environment": environment})
    assert response.status_code == 202
    run_id = response.json()["run_id"]
    pipeline.orchestrator.wait(run_id, WAIT)
    return run_id


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "online"
        assert response.json()["service"] == "tollgate"


class TestRunsEndpoint:
    """Test run submission and inspection."""

    def test_submit_accepted(self, client, pipeline):
        response = client.post("/runs", json={"commit_id": "abc123", "environment": "prod"})

        assert response.status_code == 202
        data = response.json()
        assert data["commit_id"] == "abc123"
        assert data["source"] == "app"
        pipeline.orchestrator.wait(data["run_id"], WAIT)

    def test_run_detail(self, client, pipeline):
        run_id = _submit(client, pipeline)

        response = client.get(f"/runs/{run_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SUCCEEDED"
        assert [s["stage"] for s in data["stages"]] == [
            "GATE",
            "BUILD",
            "PUBLISH",
            "UPDATE_DESIRED_STATE",
            "VERIFY_SYNC",
        ]

    def test_malformed_commit(self, client):
        response = client.post("/runs", json={"commit_id": "abc; rm -rf", "environment": "prod"})
        assert response.status_code == 422

    def test_unknown_environment(self, client):
        response = client.post("/runs", json={"commit_id": "abc123", "environment": "qa"})
        assert response.status_code == 422
        assert "qa" in response.json()["detail"]

    def test_unknown_run(self, client):
        assert client.get("/runs/does-not-exist").status_code == 404

    def test_list_filtered_by_status(self, client, pipeline):
        _submit(client, pipeline, "abc123")

        response = client.get("/runs", params={"status": "SUCCEEDED"})
        assert response.status_code == 200
        assert response.json()["count"] == 1

        response = client.get("/runs", params={"status": "FAILED"})
        assert response.json()["count"] == 0


class TestAbortEndpoint:
    def test_abort_unknown_run(self, client):
        assert client.post("/runs/nope/abort").status_code == 404

    def test_abort_finished_run(self, client, pipeline):
        run_id = _submit(client, pipeline)

        response = client.post(f"/runs/{run_id}/abort", json={"reason": "too late"})

        assert response.status_code == 409
        assert pipeline.orchestrator.get_run(run_id).status == RunStatus.SUCCEEDED


class TestEnvironmentEndpoints:
    """Test pointer and history views."""

    def test_pointer_after_release(self, client, pipeline):
        _submit(client, pipeline)

        response = client.get("/environments/prod/pointer")

        assert response.status_code == 200
        assert response.json()["reference"] == "registry/app:" + "abc123".encode().hex()
        assert response.json()["version"] == 1

    def test_no_pointer_yet(self, client):
        assert client.get("/environments/prod/pointer").status_code == 404

    def test_unknown_environment(self, client):
        assert client.get("/environments/qa/pointer").status_code == 404
        assert client.get("/environments/qa/history").status_code == 404

    def test_history(self, client, pipeline):
        _submit(client, pipeline, "abc123")
        _submit(client, pipeline, "def456")

        response = client.get("/environments/prod/history")

        data = response.json()
        assert data["count"] == 2
        assert [c["version"] for c in data["changes"]] == [2, 1]
        assert data["changes"][0]["kind"] == "PROMOTE"


class TestPurgeScript:
    @patch("scripts.purge_runs.create_store")
    def test_purge_days(self, mock_create):
        from scripts.purge_runs import main

        mock_create.return_value.purge_runs.return_value = 4

        assert main(["--days", "7"]) == 4
        mock_create.return_value.purge_runs.assert_called_once()
