from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from storyeval import get_version
from storyeval.__main__ import load_stories, main, parse_args
from storyeval.decomposition import StoryDecomposer
from storyeval.models import AnalysisStatus, CacheEntry, EvidenceItem, StoryDecomposition, Story
from storyeval.settings import RuntimeSettings
from storyeval.state_store import EvidenceCacheStore


class FakeAdapter:
    def __init__(self, steps: list[str]) -> None:
        self.steps = steps
        self.prompts: list[object] = []

    async def ainvoke(self, prompt: object) -> StoryDecomposition:
        self.prompts.append(prompt)
        return StoryDecomposition(steps=self.steps)


def test_get_version_returns_string() -> None:
    assert isinstance(get_version(), str)


def test_parse_args_for_evaluate() -> None:
    args = parse_args(["--log-level", "DEBUG", "evaluate", "--repo-url", "https://example.com/shop.git", "--story-text", "Log in"])

    assert args.command == "evaluate"
    assert args.log_level == "DEBUG"
    assert not args.persist


def test_parse_args_for_cache_status_with_repo() -> None:
    args = parse_args(
        ["cache-status", "--story-id", "story-1", "--commit", "abc123", "--repo-url", "https://example.com/shop.git"]
    )

    assert (args.story_id, args.commit, args.repo_url) == ("story-1", "abc123", "https://example.com/shop.git")
    assert args.story_file is None


def test_load_stories_from_inline_text() -> None:
    [story] = load_stories(
        story_file=None,
        story_text="  Users can log in.  ",
        story_name="Login",
        story_id="story-7",
        repo_id="shop",
        commit_sha="abc123",
    )

    assert story == Story(id="story-7", name="Login", text="Users can log in.", repo_id="shop", commit_sha="abc123")


def test_load_stories_from_file(tmp_path: Path) -> None:
    story_file = tmp_path / "stories.json"
    story_file.write_text(
        json.dumps([{"id": "s1", "name": "Login", "text": "Log in"}, {"text": "Log out"}]),
        encoding="utf-8",
    )

    stories = load_stories(story_file=story_file, story_text=None, story_name="x", story_id=None, repo_id="shop")

    assert [(story.id, story.name) for story in stories] == [("s1", "Login"), ("story-2", "Story 2")]


def test_load_stories_rejects_bad_input(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        load_stories(story_file=tmp_path / "a.json", story_text="x", story_name="x", story_id=None, repo_id="r")
    with pytest.raises(ValueError):
        load_stories(story_file=None, story_text="   ", story_name="x", story_id=None, repo_id="r")
    with pytest.raises(FileNotFoundError):
        load_stories(story_file=tmp_path / "missing.json", story_text=None, story_name="x", story_id=None, repo_id="r")


def test_cache_status_reports_missing_entry(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["--state-store", str(tmp_path), "cache-status", "--story-id", "story-1", "--commit", "abc123"])

    assert code == 1
    assert json.loads(capsys.readouterr().out) == {"key": "story-1:abc123", "cached": False}


def test_cache_status_reports_stored_entry(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    now = datetime(2026, 3, 1, tzinfo=UTC)
    EvidenceCacheStore(tmp_path).put(
        CacheEntry(
            id="CACHE-1",
            story_id="story-1",
            commit_sha="abc123",
            story_fingerprint="f",
            status=AnalysisStatus.PASS,
            explanation="ok",
            evidence=[EvidenceItem(file_path="src/app.py", conclusion="pass")],
            evidence_file_hashes={"src/app.py": "0" * 64},
            created_at=now,
            updated_at=now,
        )
    )

    code = main(["--state-store", str(tmp_path), "cache-status", "--story-id", "story-1", "--commit", "abc123"])

    report = json.loads(capsys.readouterr().out)
    assert code == 0
    assert report["status"] == "pass"
    assert report["files"] == ["src/app.py"]
    assert "valid" not in report


def test_invalid_configuration_exits_non_zero(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STORYEVAL_MAX_STEPS", "many")

    assert main(["--state-store", str(tmp_path), "cache-status", "--story-id", "s", "--commit", "c"]) == 1


def test_decomposer_caps_steps_at_budget() -> None:
    adapter = FakeAdapter(["Open the login page", "Submit credentials", "See the dashboard"])
    decomposer = StoryDecomposer(
        settings=RuntimeSettings(decomposition_max_steps=2),
        adapter_factory=lambda model_id: adapter,
    )
    story = Story(id="s1", name="Login", text="A user logs in and sees the dashboard.", repo_id="shop")

    steps = asyncio.run(decomposer.decompose(story))

    assert steps == ["Open the login page", "Submit credentials"]
    system, human = adapter.prompts[0]
    assert "at most 2 steps" in system.content
    assert "A user logs in" in human.content
