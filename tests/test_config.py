from pathlib import Path

import pytest

from stillwater.config import Settings, load_local_env


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "LLM_URL",
        "LLM_MODEL",
        "LLM_TIMEOUT",
        "STILLWATER_ACTIVE_HOURS_START",
        "STILLWATER_STATE_PATH",
        "STILLWATER_API_PORT",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings.from_env()

    assert settings.llm_url is None
    assert settings.active_hours_start == 9
    assert settings.state_path is None
    assert settings.api_port == 5577


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LLM_URL", "http://127.0.0.1:1234")
    monkeypatch.setenv("LLM_MODEL", "google/gemma-3-4b")
    monkeypatch.setenv("LLM_TIMEOUT", "30")
    monkeypatch.setenv("STILLWATER_ACTIVE_HOURS_START", "8")
    monkeypatch.setenv("STILLWATER_STATE_PATH", str(tmp_path / "state.json"))

    settings = Settings.from_env()

    assert settings.llm_model == "google/gemma-3-4b"
    assert settings.llm_timeout == 30.0
    assert settings.active_hours_start == 8
    assert settings.state_path == tmp_path / "state.json"


@pytest.mark.parametrize(
    ("name", "value"),
    [("STILLWATER_ACTIVE_HOURS_START", "25"), ("STILLWATER_API_PORT", "http")],
)
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(RuntimeError):
        Settings.from_env()


def test_load_local_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("LLM_MODEL", "old")
    env_file = tmp_path / ".env.local"
    env_file.write_text("LLM_MODEL=new\n", encoding="utf-8")

    load_local_env(Path(env_file))

    assert Settings.from_env().llm_model == "new"
