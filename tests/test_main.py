from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from ccr_router.main import app
from ccr_router.settings import get_settings
from tests.encoder_test_utils import whitespace_estimator

CONFIG_YAML = """
Router:
  default: openai,gpt-4o
  think: deepseek,deepseek-reasoner
Providers:
  - name: openai
    api_key: sk-static
    api_base_url: https://api.openai.com/v1/chat/completions
    models: [gpt-4o, gpt-4.1]
providers:
  - name: openai
    apiKey: sk-static
  - name: deepseek
    api_key: sk-deepseek
    models: [deepseek-chat, deepseek-reasoner]
"""


def _build_client(monkeypatch: Any, tmp_path: Path) -> TestClient:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(CONFIG_YAML, encoding="utf-8")
    monkeypatch.setenv("ROUTER_CONFIG_PATH", str(config_path))
    get_settings.cache_clear()
    return TestClient(app)


def test_health(monkeypatch: Any, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


def test_providers_listing_hides_credentials(monkeypatch: Any, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.get("/v1/providers")
        assert response.status_code == 200
        body = response.json()
        assert [item["name"] for item in body["data"]] == ["openai", "deepseek"]
        assert "sk-static" not in response.text


def test_route_applies_and_restores_bearer_token(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        app.state.token_estimator = whitespace_estimator()
        response = client.post(
            "/v1/messages/route",
            headers={"Authorization": "Bearer sk-caller"},
            json={
                "model": "claude-sonnet-4",
                "messages": [{"role": "user", "content": "explain this code"}],
                "thinking": {"type": "enabled", "budget_tokens": 2048},
                "metadata": {"user_id": "user_1_account__session_s-42"},
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["model"] == "deepseek,deepseek-reasoner"
        assert body["reason"] == "think"
        assert body["session_id"] == "s-42"
        assert body["token_count"] == 3
        assert body["overrides_applied"] == 2

        config = app.state.routing_config
        for provider in config.iter_providers():
            assert provider.api_key in {"sk-static", "sk-deepseek"}
            assert provider.credential_state.stack == []


def test_route_accepts_x_api_key_and_compound_model(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        app.state.token_estimator = whitespace_estimator()
        response = client.post(
            "/v1/messages/route",
            headers={"x-api-key": "sk-static"},
            json={"model": "OPENAI,GPT-4.1", "messages": []},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["model"] == "openai,gpt-4.1"
        assert body["overrides_applied"] == 1


def test_route_rejects_non_object_body(monkeypatch: Any, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.post("/v1/messages/route", json=["not", "an", "object"])
        assert response.status_code == 400


def test_count_tokens(monkeypatch: Any, tmp_path: Path) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        app.state.token_estimator = whitespace_estimator()
        response = client.post(
            "/v1/messages/count_tokens",
            json={
                "messages": [{"role": "user", "content": "one two three"}],
                "system": "be terse",
                "tools": [{"name": "Read", "description": " a file"}],
            },
        )

        assert response.status_code == 200
        assert response.json() == {"input_tokens": 8}


def test_recorded_session_usage_feeds_the_session_cache(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        response = client.post(
            "/v1/sessions/usage",
            json={
                "metadata": {"user_id": "user_abc_session_sess-1"},
                "usage": {"input_tokens": 80000, "output_tokens": 12},
            },
        )

        assert response.status_code == 200
        assert response.json() == {
            "session_id": "sess-1",
            "input_tokens": 80000,
            "output_tokens": 12,
        }
        usage = app.state.session_cache.get("sess-1")
        assert usage is not None
        assert usage.input_tokens == 80000


def test_session_usage_requires_session_and_usage(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with _build_client(monkeypatch, tmp_path) as client:
        no_session = client.post(
            "/v1/sessions/usage",
            json={"metadata": {"user_id": "user_abc"}, "usage": {"input_tokens": 5}},
        )
        no_usage = client.post(
            "/v1/sessions/usage",
            json={"metadata": {"user_id": "u_session_s"}, "usage": {"output_tokens": 5}},
        )

        assert no_session.status_code == 400
        assert no_usage.status_code == 400
        assert len(app.state.session_cache) == 0
