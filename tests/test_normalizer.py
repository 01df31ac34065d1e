from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from storyeval.models import (
    AnalysisResult,
    AnalysisStatus,
    AssertionAnalysis,
    EvidenceItem,
    StepAnalysis,
    ToolKind,
    ToolObservation,
)
from storyeval.normalizer import (
    budget_exhausted_analysis,
    build_trace_entry,
    error_analysis,
    finalize_analysis,
    format_timestamp,
    merge_cached_steps,
    normalize_evidence,
    normalize_story_test_result,
    placeholder_analysis,
    sanitize_tool_payload,
)

ROOT = "workspace/repo"


def _item(path: str, conclusion: str = "pass", **lines: int) -> EvidenceItem:
    return EvidenceItem(file_path=path, conclusion=conclusion, **lines)


def _step(index: int, conclusion: str, path: str = "src/app.py") -> StepAnalysis:
    evidence = [_item(path, "pass" if conclusion == "pass" else "fail", start_line=index + 1)]
    return StepAnalysis(
        index=index,
        description=f"step {index}",
        conclusion=conclusion,
        assertions=[AssertionAnalysis(fact=f"fact {index}", conclusion=evidence[0].conclusion, evidence=evidence)],
    )


def test_normalize_evidence_moves_line_suffix_and_dedupes() -> None:
    items = [
        _item("workspace/repo/src/app.py:10-40"),
        _item("./src/app.py", start_line=10, end_line=40),
        _item("src/auth.py:7"),
    ]

    normalized = normalize_evidence(items, ROOT)

    assert [(item.file_path, item.start_line, item.end_line) for item in normalized] == [
        ("src/app.py", 10, 40),
        ("src/auth.py", 7, 7),
    ]


def test_pass_without_any_evidence_becomes_blocked() -> None:
    result = finalize_analysis(AnalysisResult(status=AnalysisStatus.PASS, explanation="Looks good."))

    assert result.status is AnalysisStatus.BLOCKED
    assert "without citing any code evidence" in result.explanation
    assert result.explanation.endswith("Looks good.")


def test_fail_without_top_level_evidence_borrows_step_evidence() -> None:
    result = finalize_analysis(
        AnalysisResult(
            status=AnalysisStatus.FAIL,
            explanation="Step 1 is missing.",
            steps=[_step(1, "fail", "src/b.py"), _step(0, "pass", "src/a.py")],
        )
    )

    assert result.status is AnalysisStatus.FAIL
    assert [item.file_path for item in result.evidence] == ["src/a.py", "src/b.py"]
    assert [item.step for item in result.evidence] == [0, 1]


def test_pass_with_failing_step_becomes_fail() -> None:
    result = finalize_analysis(
        AnalysisResult(
            status=AnalysisStatus.PASS,
            explanation="All good.",
            evidence=[_item("src/a.py")],
            steps=[_step(0, "pass"), _step(1, "fail")],
        )
    )

    assert result.status is AnalysisStatus.FAIL
    assert "steps 1 did not pass" in result.explanation


def test_running_answer_becomes_blocked() -> None:
    result = finalize_analysis(AnalysisResult(status=AnalysisStatus.RUNNING, explanation="Still looking."))

    assert result.status is AnalysisStatus.BLOCKED


def test_blocked_and_error_pass_through() -> None:
    for status in (AnalysisStatus.BLOCKED, AnalysisStatus.ERROR):
        result = finalize_analysis(AnalysisResult(status=status, explanation="Nope."))
        assert result.status is status
        assert result.explanation == "Nope."


def test_budget_exhausted_analysis() -> None:
    result = budget_exhausted_analysis(max_steps=4, interim_evidence=[_item("src/a.py:2"), _item("src/a.py:2")], workspace_root=ROOT)

    assert result.status is AnalysisStatus.BLOCKED
    assert "within 4 step(s)" in result.explanation
    assert "1 finding(s)" in result.explanation
    assert len(result.evidence) == 1


def test_error_analysis_never_has_empty_explanation() -> None:
    assert error_analysis("   ").explanation
    assert error_analysis("boom").status is AnalysisStatus.ERROR


def test_placeholder_analysis_rejects_running() -> None:
    assert placeholder_analysis(AnalysisStatus.FAIL).status is AnalysisStatus.FAIL
    with pytest.raises(ValueError):
        placeholder_analysis(AnalysisStatus.RUNNING)


def test_sanitize_tool_payload_caps_strings_and_lists() -> None:
    payload = {"command": "x" * 1_000, "items": list(range(80)), "nested": {"ok": True}}

    sanitized = sanitize_tool_payload(payload, limit=20)

    assert len(sanitized["command"]) == 20
    assert sanitized["command"].endswith("...")
    assert len(sanitized["items"]) == 50
    assert sanitized["nested"] == {"ok": True}


def test_build_trace_entry_truncates_output() -> None:
    entry = build_trace_entry(
        step_index=2,
        tool_name="readFile",
        arguments={"path": "src/app.py"},
        observation=ToolObservation(tool=ToolKind.READ_FILE, content="y" * 1_000),
    )

    assert entry.step_index == 2
    assert entry.input == {"path": "src/app.py"}
    assert len(entry.output) == 320


def test_format_timestamp_uses_milliseconds_and_z() -> None:
    value = datetime(2026, 3, 1, 12, 30, 5, 123456, tzinfo=UTC)

    assert format_timestamp(value) == "2026-03-01T12:30:05.123Z"


def test_running_row_has_no_analysis_or_duration() -> None:
    payload = normalize_story_test_result(
        status=AnalysisStatus.RUNNING,
        analysis=None,
        started_at=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
        completed_at=None,
    )

    assert payload.analysis is None
    assert payload.duration_ms is None
    assert payload.started_at == "2026-03-01T12:00:00.000Z"


def test_terminal_row_gets_duration_and_placeholder() -> None:
    started = datetime(2026, 3, 1, 12, 0, 0, 500_900, tzinfo=UTC)
    payload = normalize_story_test_result(
        status=AnalysisStatus.ERROR,
        analysis=None,
        started_at=started,
        completed_at=datetime(2026, 3, 1, 12, 0, 2, 500_100, tzinfo=UTC),
    )

    assert payload.duration_ms == 2000
    assert payload.analysis is not None
    assert payload.analysis.status is AnalysisStatus.ERROR


def test_terminal_row_clamps_inverted_times() -> None:
    started = datetime(2026, 3, 1, 12, 0, 1, tzinfo=UTC)

    payload = normalize_story_test_result(
        status=AnalysisStatus.PASS,
        analysis=None,
        started_at=started,
        completed_at=started - timedelta(seconds=1),
    )

    assert payload.duration_ms == 0
    assert payload.completed_at == payload.started_at == "2026-03-01T12:00:01.000Z"


def test_terminal_row_requires_completion_time() -> None:
    started = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    with pytest.raises(ValueError):
        normalize_story_test_result(status=AnalysisStatus.PASS, analysis=None, started_at=started, completed_at=None)


def test_merge_cached_steps_replaces_only_invalid_steps() -> None:
    cached = [_step(0, "pass", "src/a.py"), _step(1, "pass", "src/b.py")]
    fresh = AnalysisResult(
        status=AnalysisStatus.FAIL,
        explanation="Step 1 no longer creates a session.",
        steps=[_step(1, "fail", "src/b.py")],
    )

    merged = merge_cached_steps(cached_steps=cached, fresh=fresh, invalid_steps=[1])

    assert merged.status is AnalysisStatus.FAIL
    assert [step.conclusion for step in merged.steps or []] == ["pass", "fail"]
    assert "Steps 0 were reused" in merged.explanation
    assert [item.file_path for item in merged.evidence] == ["src/a.py", "src/b.py"]


def test_merge_marks_unreported_invalid_steps_blocked() -> None:
    cached = [_step(0, "pass", "src/a.py"), _step(1, "pass", "src/b.py")]
    fresh = AnalysisResult(
        status=AnalysisStatus.PASS,
        explanation="Re-checked.",
        evidence=[_item("src/a.py")],
    )

    merged = merge_cached_steps(cached_steps=cached, fresh=fresh, invalid_steps=[1])

    assert merged.status is AnalysisStatus.BLOCKED
    assert (merged.steps or [])[1].conclusion == "blocked"


def test_merge_keeps_an_explicit_fail() -> None:
    cached = [_step(0, "pass", "src/a.py"), _step(1, "pass", "src/b.py")]
    fresh = AnalysisResult(
        status=AnalysisStatus.FAIL,
        explanation="The session cookie is never set.",
        steps=[_step(1, "pass", "src/b.py")],
    )

    merged = merge_cached_steps(cached_steps=cached, fresh=fresh, invalid_steps=[1])

    assert merged.status is AnalysisStatus.FAIL
