from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import yaml

import ccr_router.token_utils as token_utils
from ccr_router.router_cli import main
from tests.encoder_test_utils import WhitespaceEncoder


def _write_config(path: Path) -> Path:
    path.write_text(
        yaml.safe_dump(
            {
                "Router": {
                    "default": "openai,gpt-4o",
                    "longContext": "gemini,gemini-2.5-pro",
                    "longContextThreshold": 100,
                },
                "Providers": [
                    {"name": "openai", "api_key": "sk-a", "models": ["gpt-4o"]},
                    {"name": "gemini", "api_key": "sk-b", "models": ["gemini-2.5-pro"]},
                ],
                "providers": [{"name": "openai", "apiKey": "sk-a"}],
            },
            sort_keys=False,
        ),
        encoding="utf-8",
    )
    return path


def _write_payload(path: Path, payload: dict[str, Any]) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _offline_encoder(monkeypatch: Any) -> None:
    monkeypatch.setattr(
        token_utils, "get_token_encoder", lambda *args: WhitespaceEncoder()
    )


def test_validate_config_lists_targets(tmp_path: Path, capsys: Any) -> None:
    config_path = _write_config(tmp_path / "config.yaml")

    assert main(["validate-config", "--path", str(config_path)]) == 0

    output = capsys.readouterr().out
    assert "Router config is valid" in output
    summary = yaml.safe_load(output.split("\n", 1)[1])
    assert summary["providers"] == [
        {"name": "openai", "references": 2},
        {"name": "gemini", "references": 1},
    ]


def test_explain_route_prints_decision(tmp_path: Path, capsys: Any) -> None:
    config_path = _write_config(tmp_path / "config.yaml")
    payload_path = _write_payload(
        tmp_path / "payload.json",
        {
            "model": "claude-sonnet-4",
            "messages": [{"role": "user", "content": " ".join(["tok"] * 101)}],
        },
    )

    assert (
        main(
            [
                "explain-route",
                "--path",
                str(config_path),
                "--payload",
                str(payload_path),
                "--bearer-token",
                "sk-caller",
            ]
        )
        == 0
    )

    decision = yaml.safe_load(capsys.readouterr().out)
    assert decision["model"] == "gemini,gemini-2.5-pro"
    assert decision["reason"] == "long_context"
    assert decision["token_count"] == 101
    assert decision["overrides_applied"] == 2


def test_explain_route_with_session_usage(tmp_path: Path, capsys: Any) -> None:
    config_path = _write_config(tmp_path / "config.yaml")
    payload_path = _write_payload(
        tmp_path / "payload.json",
        {
            "model": "claude-sonnet-4",
            "messages": [{"role": "user", "content": "short"}],
            "metadata": {"user_id": "u_session_abc"},
        },
    )

    assert (
        main(
            [
                "explain-route",
                "--path",
                str(config_path),
                "--payload",
                str(payload_path),
                "--session-input-tokens",
                "500",
            ]
        )
        == 0
    )

    decision = yaml.safe_load(capsys.readouterr().out)
    # Prior usage alone is not enough: the current request must exceed 20000.
    assert decision["model"] == "openai,gpt-4o"
    assert decision["session_id"] == "abc"


def test_missing_config_exits_with_error(tmp_path: Path, capsys: Any) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["validate-config", "--path", str(tmp_path / "missing.yaml")])

    assert exc.value.code == 2
    assert "Router config not found" in capsys.readouterr().err
