# pylint: disable=missing-module-docstring,missing-function-docstring
from pathlib import Path

import pytest

from kairo_sync.config import AppConfig, derive_ws_url

ENV_VARS = (
    "KAIRO_API_BASE_URL",
    "KAIRO_WS_URL",
    "KAIRO_STATE_PATH",
    "KAIRO_PERSONA_HINT",
    "KAIRO_HTTP_TIMEOUT_S",
    "KAIRO_LEGACY_EVENT_NAMES",
    "KAIRO_ALLOW_DEMO_TOKEN",
    "KAIRO_MEDIA_AGENT_NAME",
    "ENABLE_JSON_LOGS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.mark.parametrize(
    "api, expected",
    [
        ("http://localhost:3000/api", "ws://localhost:3000/"),
        ("https://example.com/api/", "wss://example.com/"),
        ("https://example.com/v2", "wss://example.com/v2"),
    ],
)
def test_derive_ws_url(api, expected):
    assert derive_ws_url(api) == expected


def test_defaults():
    config = AppConfig.load_from_env()

    assert config.api_base_url == "http://localhost:3000/api"
    assert config.ws_url == "ws://localhost:3000/"
    assert config.persona_hint == "Manager"
    assert config.legacy_event_names is False
    assert config.allow_demo_token is True
    assert config.enable_json_logs is True
    assert config.media_agent_name == "Drew_2a0"


def test_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("KAIRO_API_BASE_URL", "https://api.example.com/api")
    monkeypatch.setenv("KAIRO_WS_URL", "wss://chan.example.com")
    monkeypatch.setenv("KAIRO_STATE_PATH", str(tmp_path / "s.json"))
    monkeypatch.setenv("KAIRO_HTTP_TIMEOUT_S", "2.5")
    monkeypatch.setenv("KAIRO_LEGACY_EVENT_NAMES", "true")
    monkeypatch.setenv("KAIRO_ALLOW_DEMO_TOKEN", "0")
    monkeypatch.setenv("KAIRO_MEDIA_AGENT_NAME", "")
    monkeypatch.setenv("ENABLE_JSON_LOGS", "0")

    config = AppConfig.load_from_env()

    assert config.ws_url == "wss://chan.example.com"
    assert config.state_path == tmp_path / "s.json"
    assert config.http_timeout_s == 2.5
    assert config.legacy_event_names is True
    assert config.allow_demo_token is False
    assert config.media_agent_name is None
    assert config.enable_json_logs is False
