from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import WORKSPACE_ROOT, FakeSandbox
from storyeval.cache import (
    ABSENT_FILE_HASH,
    build_cache_entry,
    build_evidence_hash_map,
    cached_analysis,
    entry_files,
    extract_files_from_evidence,
    get_cache_key,
    hash_file_content,
    hash_files,
    lookup_and_validate_cache,
    store_cache_entry,
    validate_cache_entry,
)
from storyeval.models import (
    AnalysisResult,
    AnalysisStatus,
    AssertionAnalysis,
    CacheEntry,
    EvidenceItem,
    StepAnalysis,
    Story,
)
from storyeval.sandbox import SandboxUnavailableError
from storyeval.state_store import EvidenceCacheStore


def _evidence(path: str, line: int = 1, conclusion: str = "pass") -> EvidenceItem:
    return EvidenceItem(file_path=path, start_line=line, end_line=line, conclusion=conclusion)


def _two_step_analysis() -> AnalysisResult:
    return AnalysisResult(
        status=AnalysisStatus.PASS,
        explanation="Both steps are implemented.",
        evidence=[_evidence("src/app.py", 3), _evidence("src/auth.py", 1)],
        steps=[
            StepAnalysis(
                index=0,
                description="Login form submits credentials",
                conclusion="pass",
                assertions=[AssertionAnalysis(fact="login() exists", conclusion="pass", evidence=[_evidence("src/app.py", 3)])],
            ),
            StepAnalysis(
                index=1,
                description="A session is created",
                conclusion="pass",
                assertions=[AssertionAnalysis(fact="session() exists", conclusion="pass", evidence=[_evidence("src/auth.py", 1)])],
            ),
        ],
    )


def _entry(story: Story, sandbox: FakeSandbox, analysis: AnalysisResult | None = None) -> CacheEntry:
    return asyncio.run(
        build_cache_entry(
            story=story,
            commit_sha="abc123",
            analysis=analysis if analysis is not None else _two_step_analysis(),
            sandbox=sandbox,
            workspace_root=WORKSPACE_ROOT,
            run_id="run-1",
        )
    )


def _current_hashes(entry: CacheEntry, sandbox: FakeSandbox) -> dict[str, str | None]:
    return asyncio.run(hash_files(entry_files(entry), sandbox, WORKSPACE_ROOT))


def test_get_cache_key() -> None:
    assert get_cache_key("story-1", "abc123") == "story-1:abc123"
    with pytest.raises(ValueError):
        get_cache_key("story-1", " ")


def test_hash_file_content_is_sha256_hex() -> None:
    assert hash_file_content("hello") == hash_file_content(b"hello")
    assert hash_file_content("hello") == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
    assert hash_file_content("hello") != hash_file_content("hellp")


def test_extract_files_from_evidence_dedupes_and_strips_lines() -> None:
    evidence = [
        _evidence("src/app.py:12"),
        _evidence("./src/app.py"),
        _evidence("workspace/repo/src/auth.py"),
    ]

    assert extract_files_from_evidence(evidence, WORKSPACE_ROOT) == ["src/app.py", "src/auth.py"]


def test_build_evidence_hash_map_marks_missing_files(sandbox: FakeSandbox) -> None:
    hashes = asyncio.run(
        build_evidence_hash_map([_evidence("src/app.py"), _evidence("src/gone.py")], sandbox, WORKSPACE_ROOT)
    )

    assert hashes["src/app.py"] == hash_file_content(sandbox.files["src/app.py"])
    assert hashes["src/gone.py"] is None


def test_entry_records_hashes_per_assertion(story: Story, sandbox: FakeSandbox) -> None:
    entry = _entry(story, sandbox)

    assert entry.has_step_breakdown
    assert entry.steps[0].assertions[0].file_hashes == {"src/app.py": hash_file_content(sandbox.files["src/app.py"])}
    assert entry.steps[1].assertions[0].file_hashes == {"src/auth.py": hash_file_content(sandbox.files["src/auth.py"])}
    assert entry.evidence_file_hashes == {}


def test_unchanged_files_validate(story: Story, sandbox: FakeSandbox) -> None:
    entry = _entry(story, sandbox)
    validation = validate_cache_entry(entry, _current_hashes(entry, sandbox))

    assert validation.is_valid
    assert validation.invalid_steps == []


def test_changed_file_invalidates_only_its_step(story: Story, sandbox: FakeSandbox) -> None:
    entry = _entry(story, sandbox)
    sandbox.files["src/auth.py"] = "def session(email, password):\n    return None\n"
    validation = validate_cache_entry(entry, _current_hashes(entry, sandbox))

    assert not validation.is_valid
    assert validation.hit and validation.partial
    assert validation.invalid_steps == [1]
    assert validation.valid_step_indexes() == [0]
    assert [(item.step_index, item.assertion_index) for item in validation.invalid_assertions] == [(1, 0)]


def test_absent_file_stays_valid_until_it_appears(story: Story, sandbox: FakeSandbox) -> None:
    analysis = AnalysisResult(
        status=AnalysisStatus.FAIL,
        explanation="No logout handler exists.",
        evidence=[_evidence("src/logout.py", conclusion="fail")],
    )
    entry = _entry(story, sandbox, analysis)

    assert entry.steps[0].assertions[0].file_hashes == {"src/logout.py": ABSENT_FILE_HASH}
    assert validate_cache_entry(entry, _current_hashes(entry, sandbox)).is_valid

    sandbox.files["src/logout.py"] = "def logout():\n    pass\n"
    assert not validate_cache_entry(entry, _current_hashes(entry, sandbox)).is_valid


def test_result_without_steps_gets_a_synthetic_step(story: Story, sandbox: FakeSandbox) -> None:
    analysis = AnalysisResult(
        status=AnalysisStatus.PASS,
        explanation="Implemented.",
        evidence=[_evidence("src/app.py", 3), _evidence("src/auth.py", 1)],
    )
    entry = _entry(story, sandbox, analysis)

    assert not entry.has_step_breakdown
    assert len(entry.steps) == 1
    assert len(entry.steps[0].assertions) == 2
    restored = cached_analysis(entry)
    assert restored.steps is None
    assert [item.file_path for item in restored.evidence] == ["src/app.py", "src/auth.py"]


def test_story_wording_change_invalidates_everything(story: Story, sandbox: FakeSandbox) -> None:
    entry = _entry(story, sandbox)
    validation = validate_cache_entry(
        entry,
        _current_hashes(entry, sandbox),
        current_story_fingerprint="different",
    )

    assert validation.invalid_steps == [0, 1]


def test_orphan_evidence_change_invalidates_everything(story: Story, sandbox: FakeSandbox) -> None:
    analysis = _two_step_analysis()
    analysis = analysis.model_copy(update={"evidence": [*analysis.evidence, _evidence("README.md")]})
    sandbox.files["README.md"] = "# Shop\n"
    entry = _entry(story, sandbox, analysis)

    assert list(entry.evidence_file_hashes) == ["README.md"]
    sandbox.files["README.md"] = "# Shop v2\n"
    assert validate_cache_entry(entry, _current_hashes(entry, sandbox)).invalid_steps == [0, 1]


def test_assertion_without_evidence_is_invalid(story: Story, sandbox: FakeSandbox) -> None:
    analysis = _two_step_analysis()
    steps = list(analysis.steps or [])
    steps[1] = steps[1].model_copy(
        update={"assertions": [AssertionAnalysis(fact="session() exists", conclusion="pass")]}
    )
    entry = _entry(story, sandbox, analysis.model_copy(update={"steps": steps}))

    assert validate_cache_entry(entry, _current_hashes(entry, sandbox)).invalid_steps == [1]


def test_only_verdicts_are_cacheable(story: Story, sandbox: FakeSandbox) -> None:
    blocked = AnalysisResult(status=AnalysisStatus.BLOCKED, explanation="Ran out of steps.")

    with pytest.raises(ValueError):
        _entry(story, sandbox, blocked)


def test_lookup_hit_and_miss(tmp_path: Path, story: Story, sandbox: FakeSandbox) -> None:
    store = EvidenceCacheStore(tmp_path)
    miss = asyncio.run(lookup_and_validate_cache(story.id, "abc123", sandbox, store=store, workspace_root=WORKSPACE_ROOT))
    assert miss.entry is None and not miss.is_valid
    assert not miss.hit and not miss.partial

    store.put(_entry(story, sandbox))
    hit = asyncio.run(
        lookup_and_validate_cache(story.id, "abc123", sandbox, store=store, workspace_root=WORKSPACE_ROOT, story=story)
    )
    assert hit.is_valid and hit.hit and not hit.partial
    assert hit.entry is not None and hit.entry.run_id == "run-1"


def test_lookup_treats_failures_as_miss(tmp_path: Path, story: Story, sandbox: FakeSandbox) -> None:
    store = EvidenceCacheStore(tmp_path)
    store.put(_entry(story, sandbox))
    sandbox.download_error = SandboxUnavailableError("sandbox is gone")

    validation = asyncio.run(
        lookup_and_validate_cache(story.id, "abc123", sandbox, store=store, workspace_root=WORKSPACE_ROOT)
    )

    assert not validation.is_valid
    assert validation.entry is None


def test_lookup_with_blank_story_id_is_a_miss(tmp_path: Path, sandbox: FakeSandbox) -> None:
    validation = asyncio.run(
        lookup_and_validate_cache("  ", "abc123", sandbox, store=EvidenceCacheStore(tmp_path), workspace_root=WORKSPACE_ROOT)
    )

    assert not validation.is_valid
    assert not validation.hit


def test_lookup_treats_corrupt_entries_as_miss(tmp_path: Path, story: Story, sandbox: FakeSandbox) -> None:
    store = EvidenceCacheStore(tmp_path)
    path = store.path_for(story.id, "abc123")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")

    validation = asyncio.run(
        lookup_and_validate_cache(story.id, "abc123", sandbox, store=store, workspace_root=WORKSPACE_ROOT)
    )

    assert validation.entry is None


def test_store_cache_entry_is_best_effort(story: Story, sandbox: FakeSandbox) -> None:
    class BrokenStore:
        def get(self, story_id: str, commit_sha: str) -> None:
            return None

        def put(self, entry: CacheEntry) -> None:
            raise OSError("disk full")

    stored = asyncio.run(
        store_cache_entry(
            store=BrokenStore(),
            story=story,
            commit_sha="abc123",
            analysis=_two_step_analysis(),
            sandbox=sandbox,
            workspace_root=WORKSPACE_ROOT,
        )
    )

    assert stored is False


def test_store_cache_entry_skips_non_verdicts(tmp_path: Path, story: Story, sandbox: FakeSandbox) -> None:
    store = EvidenceCacheStore(tmp_path)
    stored = asyncio.run(
        store_cache_entry(
            store=store,
            story=story,
            commit_sha="abc123",
            analysis=AnalysisResult(status=AnalysisStatus.ERROR, explanation="boom"),
            sandbox=sandbox,
            workspace_root=WORKSPACE_ROOT,
        )
    )

    assert stored is False
    assert store.get(story.id, "abc123") is None


def test_cached_analysis_preserves_evidence_order(story: Story, sandbox: FakeSandbox) -> None:
    restored = cached_analysis(_entry(story, sandbox))

    assert restored.status is AnalysisStatus.PASS
    assert [item.file_path for item in restored.evidence] == ["src/app.py", "src/auth.py"]
    assert [step.index for step in restored.steps or []] == [0, 1]
