"""Tests for the HTTP surface."""

import pytest
from docker.errors import DockerException
from fastapi.testclient import TestClient

from conftest import ScriptedLLM, tool_turn

from app import app, get_services
from edit_worker.schemas import ModelTurn


SECRET = {"x-api-secret": "test-secret"}


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestAuthentication:
    @pytest.mark.parametrize("path", ["/setup", "/status", "/edit"])
    def test_missing_secret(self, client, path):
        response = client.post(path, json={"projectId": "proj-1"})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    @pytest.mark.parametrize("path", ["/setup", "/status", "/edit"])
    def test_wrong_secret(self, client, path):
        response = client.post(path, json={"projectId": "proj-1"}, headers={"x-api-secret": "nope"})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_bad_secret_is_rejected_before_body_validation(self, client):
        response = client.post("/edit", json={}, headers={"x-api-secret": "nope"})
        assert response.status_code == 401


class TestEndpoints:
    def test_status_before_setup(self, client, docker_client):
        response = client.post("/status", json={"projectId": "proj-1"}, headers=SECRET)

        assert response.status_code == 200
        assert response.json() == {"projectId": "proj-1", "active": False}
        assert docker_client.containers.run_count == 0

    def test_setup_then_status(self, client):
        setup = client.post("/setup", json={"projectId": "proj-1"}, headers=SECRET)

        assert setup.status_code == 200
        body = setup.json()
        assert body["projectId"] == "proj-1"
        assert body["previewUrl"] == "http://localhost:49153"
        assert body["message"] == "Sandbox is ready"

        status = client.post("/status", json={"projectId": "proj-1"}, headers=SECRET)
        assert status.json() == {
            "projectId": "proj-1",
            "active": True,
            "previewUrl": "http://localhost:49153",
        }

    def test_edit(self, client, services):
        services.llm = ScriptedLLM([
            tool_turn(("runBash", '{"command": "echo hi"}')),
            ModelTurn(text="Checked."),
        ])

        response = client.post(
            "/edit",
            json={"projectId": "proj-1", "threadId": "thread-1", "prompt": "say hi"},
            headers=SECRET,
        )

        assert response.status_code == 200
        assert response.json() == {
            "projectId": "proj-1",
            "response": "Checked.",
            "steps": 2,
            "toolCalls": 1,
        }


class TestErrors:
    def test_malformed_body(self, client):
        response = client.post("/edit", json={"projectId": "proj-1"}, headers=SECRET)

        assert response.status_code == 400
        assert "threadId" in response.json()["error"]

    def test_empty_prompt(self, client):
        response = client.post(
            "/edit",
            json={"projectId": "proj-1", "threadId": "t", "prompt": ""},
            headers=SECRET,
        )
        assert response.status_code == 400

    def test_infrastructure_failure_is_a_structured_error(self, client, services):
        def unavailable():
            raise DockerException("daemon not running")

        services.manager.registry._client_factory = unavailable

        response = client.post("/setup", json={"projectId": "proj-1"}, headers=SECRET)

        assert response.status_code == 502
        assert "Docker is not available" in response.json()["error"]

    def test_model_failure_is_a_structured_error(self, client, services):
        from edit_worker.errors import ModelInvocationError

        services.llm = ScriptedLLM([ModelInvocationError("Model request failed: quota")])

        response = client.post(
            "/edit",
            json={"projectId": "proj-1", "threadId": "t", "prompt": "go"},
            headers=SECRET,
        )

        assert response.status_code == 502
        assert response.json() == {"error": "Model request failed: quota"}
