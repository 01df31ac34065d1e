from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel

from .models import (
    AnalysisResult,
    AnalysisStatus,
    EvidenceItem,
    StepAnalysis,
    StoryTestResultPayload,
    ToolObservation,
    ToolTraceEntry,
    normalize_repo_path,
)

logger = logging.getLogger(__name__)

TRACE_INPUT_CHAR_LIMIT = 600
TRACE_EXCERPT_CHAR_LIMIT = 320
_TRACE_LIST_LIMIT = 50
_LINE_SUFFIX_RE = re.compile(r":(\d+)(?:-(\d+))?$")

_PLACEHOLDER_EXPLANATIONS: dict[AnalysisStatus, str] = {
    AnalysisStatus.PASS: "The story passed, but no analysis details were recorded.",
    AnalysisStatus.FAIL: "The story failed, but no analysis details were recorded.",
    AnalysisStatus.BLOCKED: "The evaluation was blocked before an analysis could be recorded.",
    AnalysisStatus.ERROR: "The evaluation failed before an analysis could be recorded.",
}


def truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return f"{value[: max(limit - 3, 0)]}..."


def sanitize_tool_payload(value: Any, limit: int = TRACE_INPUT_CHAR_LIMIT) -> Any:
    """Cap every string in a JSON-like value at ``limit`` characters and long lists at 50 items."""
    if isinstance(value, str):
        return truncate(value, limit)
    if isinstance(value, BaseModel):
        return sanitize_tool_payload(value.model_dump(mode="json"), limit)
    if isinstance(value, dict):
        return {str(key): sanitize_tool_payload(item, limit) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_tool_payload(item, limit) for item in value[:_TRACE_LIST_LIMIT]]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return truncate(str(value), limit)


def build_trace_entry(
    *,
    step_index: int,
    tool_name: str,
    arguments: dict[str, Any] | None,
    observation: ToolObservation,
    input_limit: int = TRACE_INPUT_CHAR_LIMIT,
    excerpt_limit: int = TRACE_EXCERPT_CHAR_LIMIT,
) -> ToolTraceEntry:
    return ToolTraceEntry(
        step_index=step_index,
        tool=tool_name,
        input=sanitize_tool_payload(arguments or {}, input_limit),
        output=truncate(observation.content, excerpt_limit),
        is_error=observation.is_error,
    )


def normalize_evidence(items: Iterable[EvidenceItem], workspace_root: str = "") -> list[EvidenceItem]:
    """Rewrite paths repository-relative and drop exact repeats, keeping discovery order.

    A ``path:10`` or ``path:10-40`` suffix is moved into the line fields when
    those are unset.
    """
    normalized: list[EvidenceItem] = []
    seen: set[tuple[str, int | None, int | None, str]] = set()
    for item in items:
        raw_path = item.file_path
        start, end = item.start_line, item.end_line
        suffix = _LINE_SUFFIX_RE.search(raw_path)
        if suffix is not None:
            raw_path = raw_path[: suffix.start()]
            if start is None and end is None:
                start = int(suffix.group(1))
                end = int(suffix.group(2)) if suffix.group(2) else start
        path = normalize_repo_path(raw_path, workspace_root)
        if not path:
            continue
        if start is not None and start < 1:
            start = None
        if end is not None and start is not None and end < start:
            end = start
        key = (path, start, end, item.conclusion)
        if key in seen:
            continue
        seen.add(key)
        normalized.append(item.model_copy(update={"file_path": path, "start_line": start, "end_line": end}))
    return normalized


def _normalize_steps(steps: list[StepAnalysis], workspace_root: str) -> list[StepAnalysis]:
    result: list[StepAnalysis] = []
    for step in sorted(steps, key=lambda step: step.index):
        assertions = [
            assertion.model_copy(update={"evidence": normalize_evidence(assertion.evidence, workspace_root)})
            for assertion in step.assertions
        ]
        result.append(step.model_copy(update={"assertions": assertions}))
    return result


def finalize_analysis(analysis: AnalysisResult, *, workspace_root: str = "") -> AnalysisResult:
    """Turn a schema-valid model answer into the durable verdict.

    - Evidence paths become repository-relative; order is preserved.
    - ``running`` is not a final answer and becomes ``blocked``.
    - ``pass`` with a failing step becomes ``fail``.
    - ``pass``/``fail`` without top-level evidence borrows the step evidence;
      with none at all the verdict is downgraded to ``blocked``.
    """
    steps = _normalize_steps(analysis.steps, workspace_root) if analysis.steps is not None else None
    evidence = normalize_evidence(analysis.evidence, workspace_root)
    status = analysis.status
    explanation = analysis.explanation

    if status is AnalysisStatus.RUNNING:
        status = AnalysisStatus.BLOCKED
        explanation = f"The evaluation ended without a final verdict.\n\n{explanation}"

    if status is AnalysisStatus.PASS and steps and any(step.conclusion != "pass" for step in steps):
        failing = [str(step.index) for step in steps if step.conclusion != "pass"]
        status = AnalysisStatus.FAIL
        explanation = f"{explanation}\n\nMarked as failed because steps {', '.join(failing)} did not pass."

    if status.is_verdict and not evidence and steps:
        evidence = normalize_evidence(
            (item for step in steps for item in step.flattened_evidence()),
            workspace_root,
        )

    if status.is_verdict and not evidence:
        logger.warning("Verdict %s arrived without evidence; downgrading to blocked", status.value)
        explanation = (
            f"The evaluation returned a '{status.value}' verdict without citing any code evidence, "
            f"so it could not be confirmed.\n\n{explanation}"
        )
        status = AnalysisStatus.BLOCKED

    return AnalysisResult(status=status, explanation=explanation, evidence=evidence, steps=steps)


def budget_exhausted_analysis(
    *,
    max_steps: int,
    interim_evidence: Iterable[EvidenceItem] = (),
    workspace_root: str = "",
) -> AnalysisResult:
    evidence = normalize_evidence(interim_evidence, workspace_root)
    findings = (
        f" The {len(evidence)} finding(s) below were established before the budget ran out."
        if evidence
        else " No findings were established before the budget ran out."
    )
    return AnalysisResult(
        status=AnalysisStatus.BLOCKED,
        explanation=(
            f"The investigation did not reach a verdict within {max_steps} step(s); "
            f"the step budget was too small for the depth of investigation required.{findings}"
        ),
        evidence=evidence,
    )


def error_analysis(explanation: str, evidence: Iterable[EvidenceItem] = (), workspace_root: str = "") -> AnalysisResult:
    text = explanation.strip() or _PLACEHOLDER_EXPLANATIONS[AnalysisStatus.ERROR]
    return AnalysisResult(
        status=AnalysisStatus.ERROR,
        explanation=text,
        evidence=normalize_evidence(evidence, workspace_root),
    )


def placeholder_analysis(status: AnalysisStatus) -> AnalysisResult:
    if not status.is_terminal:
        raise ValueError("running results have no analysis")
    return AnalysisResult(status=status, explanation=_PLACEHOLDER_EXPLANATIONS[status])


def merge_cached_steps(
    *,
    cached_steps: list[StepAnalysis],
    fresh: AnalysisResult,
    invalid_steps: Iterable[int],
    workspace_root: str = "",
) -> AnalysisResult:
    """Combine still-valid cached steps with a scoped re-evaluation of the invalid ones.

    Fresh steps replace invalid cached steps by index; an invalid step the
    re-evaluation did not report comes back ``blocked``. If the re-evaluation
    itself ended ``blocked``, ``error`` or ``fail`` that status wins; step
    conclusions can only downgrade a fresh ``pass``.
    """
    invalid = set(invalid_steps)
    fresh_by_index = {step.index: step for step in fresh.steps or []}
    merged: list[StepAnalysis] = []
    for step in sorted(cached_steps, key=lambda step: step.index):
        if step.index not in invalid:
            merged.append(step)
        elif step.index in fresh_by_index:
            merged.append(fresh_by_index.pop(step.index))
        else:
            merged.append(step.model_copy(update={"conclusion": "blocked", "assertions": []}))
    merged.extend(step for index, step in sorted(fresh_by_index.items()))

    if fresh.status in (AnalysisStatus.BLOCKED, AnalysisStatus.ERROR, AnalysisStatus.FAIL):
        status = fresh.status
    elif any(step.conclusion == "blocked" for step in merged):
        status = AnalysisStatus.BLOCKED
    elif any(step.conclusion == "fail" for step in merged):
        status = AnalysisStatus.FAIL
    else:
        status = AnalysisStatus.PASS

    reused = sorted(step.index for step in merged if step.index not in invalid)
    explanation = fresh.explanation
    if reused:
        explanation = f"{explanation}\n\nSteps {', '.join(map(str, reused))} were reused from previously verified evidence."

    evidence = [item for step in merged for item in step.flattened_evidence()]
    evidence.extend(fresh.evidence)
    return finalize_analysis(
        AnalysisResult(status=status, explanation=explanation, evidence=evidence, steps=merged),
        workspace_root=workspace_root,
    )


def _to_utc_millis(value: datetime) -> datetime:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    aware = aware.astimezone(UTC)
    return aware.replace(microsecond=(aware.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    return _to_utc_millis(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_story_test_result(
    *,
    status: AnalysisStatus,
    analysis: AnalysisResult | None,
    started_at: datetime,
    completed_at: datetime | None,
) -> StoryTestResultPayload:
    """Build the row written to the persistence gateway.

    ``running`` rows never carry an analysis. Terminal rows always do: a
    placeholder is synthesized when none was produced. Naive datetimes are
    taken as UTC. A completion time earlier than the start, from a clock
    stepping backwards, is clamped to the start so the duration is never negative.

    Raises:
        ValueError: If a terminal row has no completion time.
    """
    started = _to_utc_millis(started_at)
    if not status.is_terminal:
        return StoryTestResultPayload(
            status=status,
            analysis=None,
            started_at=format_timestamp(started),
            completed_at=format_timestamp(completed_at) if completed_at is not None else None,
            duration_ms=None,
        )

    if completed_at is None:
        raise ValueError(f"{status.value} results require completed_at")
    completed = _to_utc_millis(completed_at)
    if completed < started:
        logger.warning(
            "completed_at %s is before started_at %s; clamping duration to 0",
            completed.isoformat(),
            started.isoformat(),
        )
        completed = started
    duration_ms = (completed - started) // timedelta(milliseconds=1)
    return StoryTestResultPayload(
        status=status,
        analysis=analysis if analysis is not None else placeholder_analysis(status),
        started_at=format_timestamp(started),
        completed_at=format_timestamp(completed),
        duration_ms=duration_ms,
    )
