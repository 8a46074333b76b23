"""Tests for the HTTP API."""

import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from shared.config import default_catalog, get_settings
from shared.models import UserContext
from orchestrator.auth import AuthConfig, AuthMiddleware

API = "/api/v1/ai"


@pytest.fixture
def gateway_env(monkeypatch, tmp_path):
    """Development settings with mocked providers and no auth."""
    monkeypatch.setenv("GATEWAY_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("GATEWAY_ENVIRONMENT", "development")
    monkeypatch.setenv("AI_TEST_MODE", "true")
    monkeypatch.setenv("AI_MOCK_MIN_DELAY_MS", "0")
    monkeypatch.setenv("AI_MOCK_MAX_DELAY_MS", "0")
    monkeypatch.setenv("SERVER_REQUIRE_AUTH", "false")
    monkeypatch.delenv("AI_API_KEY", raising=False)
    for definition in default_catalog():
        monkeypatch.delenv(definition.api_key_env, raising=False)

    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


@pytest.fixture
def client(gateway_env):
    from orchestrator.main import app

    with TestClient(app) as test_client:
        yield test_client


def wait_for_terminal(client: TestClient, aggregate_id: str, headers=None, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"{API}/{aggregate_id}", headers=headers)
        assert response.status_code == 200
        aggregate = response.json()["aggregate"]
        if aggregate["overall_status"] != "processing":
            return aggregate
        if time.monotonic() > deadline:
            raise AssertionError("Aggregate did not finish in time")
        time.sleep(0.02)


class TestGenerate:
    """Tests for submission and polling."""

    def test_generate_and_poll(self, client):
        response = client.post(f"{API}/generate", json={"prompt": "What is AI?"})

        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "AI response generation initiated"
        aggregate = body["aggregate"]
        assert aggregate["total_count"] == 5
        assert aggregate["owner_id"] == "anonymous"
        assert set(aggregate["results"]) == {"gemini", "deepseek", "microsoft", "llama", "openai"}

        final = wait_for_terminal(client, aggregate["id"])

        assert final["overall_status"] == "completed"
        assert final["completed_count"] == 5
        assert final["total_tokens_used"] > 0
        assert response.headers["X-Request-ID"]

    def test_generate_with_selected_providers(self, client):
        response = client.post(f"{API}/generate", json={
            "prompt": "What is AI?",
            "settings": {"enabled_models": ["gemini", "llama"], "temperature": 0.3},
        })

        assert response.status_code == 201
        aggregate = response.json()["aggregate"]
        assert aggregate["requested_providers"] == ["gemini", "llama"]
        assert aggregate["settings"]["temperature"] == 0.3

    def test_empty_prompt_rejected(self, client):
        response = client.post(f"{API}/generate", json={"prompt": ""})

        assert response.status_code == 400

    def test_unknown_providers_rejected(self, client):
        response = client.post(f"{API}/generate", json={
            "prompt": "What is AI?",
            "settings": {"enabled_models": ["nope"]},
        })

        assert response.status_code == 400
        assert response.json()["detail"] == "No AI models are configured and available"

    def test_unknown_aggregate(self, client):
        response = client.get(f"{API}/missing")

        assert response.status_code == 404


class TestAggregateOperations:
    """Tests for list, select, retry, edit and delete routes."""

    def submit(self, client, **settings) -> dict:
        payload = {"prompt": "What is AI?"}
        if settings:
            payload["settings"] = settings
        response = client.post(f"{API}/generate", json=payload)
        assert response.status_code == 201
        return wait_for_terminal(client, response.json()["aggregate"]["id"])

    def test_list(self, client):
        self.submit(client)
        self.submit(client)

        response = client.get(API, params={"limit": 1, "status": "completed"})

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert body["total_pages"] == 2
        assert len(body["items"]) == 1

    def test_list_rejects_bad_sort(self, client):
        response = client.get(API, params={"sort_by": "prompt"})

        assert response.status_code == 400

    def test_select_and_clear(self, client):
        aggregate = self.submit(client)

        response = client.post(f"{API}/{aggregate['id']}/select", json={"provider": "gemini"})

        assert response.status_code == 200
        selected = response.json()["aggregate"]
        assert list(selected["results"]) == ["gemini"]
        assert selected["selected_provider"] == "gemini"
        assert selected["total_count"] == 1

        response = client.delete(f"{API}/{aggregate['id']}/select")

        assert response.status_code == 200
        assert response.json()["aggregate"]["selected_provider"] is None

    def test_select_unknown_provider(self, client):
        aggregate = self.submit(client, enabled_models=["gemini"])

        response = client.post(f"{API}/{aggregate['id']}/select", json={"provider": "llama"})

        assert response.status_code == 400

    def test_retry_without_failures(self, client):
        aggregate = self.submit(client)

        response = client.post(f"{API}/{aggregate['id']}/retry")

        assert response.status_code == 400
        assert response.json()["detail"] == "No failed responses to retry"

    def test_retry_single_provider(self, client):
        aggregate = self.submit(client, enabled_models=["gemini"])

        response = client.post(f"{API}/{aggregate['id']}/model/gemini/retry")

        assert response.status_code == 200
        final = wait_for_terminal(client, aggregate["id"])
        assert final["overall_status"] == "completed"

    def test_edit_and_update(self, client):
        aggregate = self.submit(client, enabled_models=["gemini", "llama"])

        response = client.put(
            f"{API}/{aggregate['id']}/model/gemini",
            json={"response_text": "Edited answer"},
        )
        assert response.status_code == 200
        edited = response.json()["aggregate"]["results"]["gemini"]
        assert edited["response_text"] == "Edited answer"
        assert edited["is_edited"] is True

        response = client.put(
            f"{API}/{aggregate['id']}/model",
            json={"provider": "llama", "status": "error", "error_message": "llama Error: rejected"},
        )
        assert response.status_code == 200
        assert response.json()["aggregate"]["overall_status"] == "partial"

    def test_delete(self, client):
        aggregate = self.submit(client)

        response = client.delete(f"{API}/{aggregate['id']}")

        assert response.status_code == 200
        assert response.json() == {"status": "deleted", "id": aggregate["id"]}
        assert client.get(f"{API}/{aggregate['id']}").status_code == 404

    def test_stats_and_providers(self, client):
        self.submit(client, enabled_models=["gemini"])

        stats = client.get(f"{API}/stats").json()
        assert stats["overall"]["total_requests"] == 1
        assert stats["provider_stats"]["gemini"]["successful_responses"] == 1

        response = client.get(f"{API}/stats", params={
            "start_date": "2025-02-01T00:00:00Z",
            "end_date": "2025-01-01T00:00:00Z",
        })
        assert response.status_code == 400

        providers = client.get(f"{API}/providers").json()["providers"]
        assert len(providers) == 5
        assert all(p["enabled"] and not p["configured"] for p in providers)

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["test_mode"] is True
        assert len(response.json()["enabled_providers"]) == 5


class TestAuthentication:
    """Tests for bearer authentication."""

    @pytest.fixture
    def secure_client(self, gateway_env):
        gateway_env.setenv("SERVER_REQUIRE_AUTH", "true")
        gateway_env.setenv("SERVER_SECRET_KEY", "test-secret")
        get_settings.cache_clear()

        from orchestrator.main import app

        with TestClient(app) as test_client:
            yield test_client

    def token(self, user_id: str, client_id: str = "frontend") -> dict:
        auth = AuthMiddleware(AuthConfig(secret_key="test-secret"))
        token = auth.create_token(UserContext(user_id=user_id), client_id=client_id)
        return {"Authorization": f"Bearer {token}"}

    def test_missing_token(self, secure_client):
        response = secure_client.post(f"{API}/generate", json={"prompt": "What is AI?"})

        assert response.status_code == 401

    def test_invalid_token(self, secure_client):
        response = secure_client.get(API, headers={"Authorization": "Bearer not-a-token"})

        assert response.status_code == 401

    def test_untrusted_client(self, secure_client):
        response = secure_client.get(API, headers=self.token("user1", client_id="scraper"))

        assert response.status_code == 403

    def test_aggregates_scoped_to_owner(self, secure_client):
        owner = self.token("user1")
        response = secure_client.post(f"{API}/generate", json={"prompt": "What is AI?"}, headers=owner)
        assert response.status_code == 201
        aggregate = response.json()["aggregate"]
        assert aggregate["owner_id"] == "user1"

        wait_for_terminal(secure_client, aggregate["id"], headers=owner)

        other = secure_client.get(f"{API}/{aggregate['id']}", headers=self.token("user2"))
        assert other.status_code == 404


class TestUnexpectedErrors:
    """Unexpected failures surface as 500 with the triggering message."""

    @pytest.mark.parametrize("method, store_method, action", [
        ("get", "get", "retrieve AI response"),
        ("delete", "delete", "delete AI response"),
    ])
    def test_store_failure(self, client, gateway_env, method, store_method, action):
        from orchestrator import main as gateway

        gateway_env.setattr(
            gateway._orchestrator.store,
            store_method,
            AsyncMock(side_effect=RuntimeError("store offline")),
        )

        response = client.request(method.upper(), f"{API}/some-id")

        assert response.status_code == 500
        assert response.json()["detail"] == f"Failed to {action}: store offline"
