from __future__ import annotations

from pathlib import Path

import pytest

from storyeval.model_selection import DEFAULT_AGENT_PROFILES, AgentProfile, RuntimeModelSelection
from storyeval.settings import RuntimeSettings


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("STORYEVAL_MAX_STEPS", "STORYEVAL_WORKSPACE_ROOT", "STORYEVAL_EVALUATION_MODEL"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()

    assert settings.max_steps == 30
    assert settings.workspace_root == "workspace/repo"
    assert settings.evaluation_model == "gpt-5-mini"


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORYEVAL_MAX_STEPS", "12")
    monkeypatch.setenv("STORYEVAL_WORKSPACE_ROOT", "home/user/repo/")
    monkeypatch.setenv("STORYEVAL_EVALUATION_MODEL", "  gpt-5  ")
    settings = RuntimeSettings.from_env()

    assert settings.max_steps == 12
    assert settings.workspace_root == "home/user/repo"
    assert settings.evaluation_model == "gpt-5"


def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORYEVAL_MAX_STEPS", "abc")
    with pytest.raises(ValueError, match="must be an integer"):
        RuntimeSettings.from_env()

    monkeypatch.setenv("STORYEVAL_MAX_STEPS", "0")
    with pytest.raises(ValueError, match=">= 1"):
        RuntimeSettings.from_env()


def test_runtime_settings_bounds() -> None:
    with pytest.raises(ValueError):
        RuntimeSettings(max_steps=201).normalized()
    with pytest.raises(ValueError):
        RuntimeSettings(trace_char_limit=5_000, observation_char_limit=1_000).normalized()
    with pytest.raises(ValueError):
        RuntimeSettings(workspace_root=" / ").normalized()


def test_state_store_path(tmp_path: Path) -> None:
    assert RuntimeSettings().state_store_path(tmp_path) == tmp_path / "state_store"
    absolute = tmp_path / "elsewhere"
    assert RuntimeSettings(state_store_root=str(absolute)).state_store_path(Path("/unused")) == absolute


def test_model_selection_from_settings() -> None:
    selection = RuntimeModelSelection.from_settings(RuntimeSettings(max_steps=7, decomposition_max_steps=4))

    assert selection.resolve("evaluation") == AgentProfile(model="gpt-5-mini", max_steps=7)
    assert selection.resolve("decomposition").max_steps == 4


def test_model_selection_overrides() -> None:
    selection = RuntimeModelSelection(by_agent=dict(DEFAULT_AGENT_PROFILES))
    profile = selection.resolve("evaluation", model_override=" gpt-5 ", max_steps_override=3)

    assert profile == AgentProfile(model="gpt-5", max_steps=3)
    assert selection.resolve("evaluation", model_override="  ").model == "gpt-5-mini"


def test_model_selection_rejects_bad_input() -> None:
    selection = RuntimeModelSelection(by_agent=dict(DEFAULT_AGENT_PROFILES))

    with pytest.raises(ValueError, match="Unknown agent"):
        selection.resolve("planner")
    with pytest.raises(ValueError):
        selection.resolve("evaluation", max_steps_override=0)
    with pytest.raises(ValueError, match="missing required agents"):
        RuntimeModelSelection(by_agent={"evaluation": DEFAULT_AGENT_PROFILES["evaluation"]})


def test_model_selection_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORYEVAL_DECOMPOSITION_MODEL", "gpt-5-nano")
    selection = RuntimeModelSelection.from_env()

    assert selection.resolve("decomposition").model == "gpt-5-nano"
    assert selection.resolve("decomposition").max_steps == 12
