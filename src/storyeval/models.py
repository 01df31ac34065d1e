from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ANALYSIS_SCHEMA_VERSION = 3

Conclusion = Literal["pass", "fail"]
StepConclusion = Literal["pass", "fail", "blocked"]


class AnalysisStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    BLOCKED = "blocked"
    ERROR = "error"
    RUNNING = "running"

    @property
    def is_terminal(self) -> bool:
        return self is not AnalysisStatus.RUNNING

    @property
    def is_verdict(self) -> bool:
        """True for the accept/reject statuses that must carry evidence."""
        return self in (AnalysisStatus.PASS, AnalysisStatus.FAIL)


class ToolKind(str, Enum):
    TERMINAL_COMMAND = "terminalCommand"
    READ_FILE = "readFile"
    RESOLVE_LIBRARY = "resolveLibrary"
    GET_LIBRARY_DOCS = "getLibraryDocs"
    LIST_SYMBOLS = "listSymbols"
    SHARE_THOUGHT = "shareThought"


class FinishReason(str, Enum):
    ANSWER = "answer"
    BUDGET_EXHAUSTED = "budget_exhausted"
    INVALID_OUTPUT = "invalid_output"
    SANDBOX_FAILURE = "sandbox_failure"
    PROVIDER_FAILURE = "provider_failure"
    CACHE_HIT = "cache_hit"


class _ContractModel(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class EvidenceItem(_ContractModel):
    """A re-verifiable file location backing part of a verdict."""

    file_path: str = Field(min_length=1, description="Repository-relative path of the cited file.")
    start_line: int | None = Field(default=None, ge=1, description="First cited line, 1-based.")
    end_line: int | None = Field(default=None, ge=1, description="Last cited line, 1-based, inclusive.")
    note: str = Field(default="", description="What this location shows.")
    conclusion: Conclusion = Field(description="Whether this location supports (pass) or refutes (fail) the story.")
    step: int | None = Field(default=None, ge=0, description="Index of the story step this evidence belongs to.")

    @model_validator(mode="after")
    def _check_line_range(self) -> "EvidenceItem":
        if self.start_line is not None and self.end_line is not None and self.start_line > self.end_line:
            raise ValueError(f"start_line ({self.start_line}) must be <= end_line ({self.end_line})")
        return self


class AssertionAnalysis(_ContractModel):
    fact: str = Field(min_length=1, description="A single verifiable claim the step depends on.")
    conclusion: Conclusion
    evidence: list[EvidenceItem] = Field(default_factory=list)


class StepAnalysis(_ContractModel):
    index: int = Field(ge=0, description="0-based position of the step within the story.")
    description: str = Field(min_length=1)
    conclusion: StepConclusion
    assertions: list[AssertionAnalysis] = Field(default_factory=list)

    def flattened_evidence(self) -> list[EvidenceItem]:
        items: list[EvidenceItem] = []
        for assertion in self.assertions:
            for item in assertion.evidence:
                items.append(item if item.step is not None else item.model_copy(update={"step": self.index}))
        return items


class AnalysisResult(_ContractModel):
    """Final answer of one story evaluation.

    ``evidence`` is ordered by discovery; consumers must not re-sort it.
    """

    version: Literal[3] = ANALYSIS_SCHEMA_VERSION
    status: AnalysisStatus
    explanation: str = Field(min_length=1)
    evidence: list[EvidenceItem] = Field(default_factory=list)
    steps: list[StepAnalysis] | None = None

    @field_validator("steps")
    @classmethod
    def _unique_step_indexes(cls, steps: list[StepAnalysis] | None) -> list[StepAnalysis] | None:
        if steps is None:
            return None
        seen: set[int] = set()
        for step in steps:
            if step.index in seen:
                raise ValueError(f"duplicate step index {step.index}")
            seen.add(step.index)
        return steps

    def referenced_files(self) -> list[str]:
        """Distinct files cited anywhere in the result, in first-seen order."""
        files: list[str] = []
        items = list(self.evidence)
        for step in self.steps or []:
            items.extend(step.flattened_evidence())
        for item in items:
            if item.file_path not in files:
                files.append(item.file_path)
        return files


def upgrade_analysis_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Migrate a stored analysis payload to the current schema version.

    Version 1 payloads used ``conclusion`` for the overall status and carried
    evidence without a per-item conclusion; they are upgraded into a new dict.
    Version 3 payloads are returned unchanged.

    Raises:
        ValueError: If the payload declares a version this package cannot read.
    """
    version = payload.get("version", 1)
    if version == ANALYSIS_SCHEMA_VERSION:
        return payload
    if version != 1:
        raise ValueError(f"Unsupported analysis schema version: {version!r}")

    upgraded = {key: value for key, value in payload.items() if key not in {"conclusion", "version"}}
    status = payload.get("status", payload.get("conclusion"))
    upgraded["status"] = status
    item_conclusion = "pass" if status == "pass" else "fail"
    evidence: list[dict[str, Any]] = []
    for raw in payload.get("evidence") or []:
        item = dict(raw)
        if "filePath" in item and "file_path" not in item:
            item["file_path"] = item.pop("filePath")
        if "startLine" in item and "start_line" not in item:
            item["start_line"] = item.pop("startLine")
        if "endLine" in item and "end_line" not in item:
            item["end_line"] = item.pop("endLine")
        item.setdefault("conclusion", item_conclusion)
        evidence.append(item)
    upgraded["evidence"] = evidence
    upgraded["version"] = ANALYSIS_SCHEMA_VERSION
    return upgraded


def load_analysis(payload: dict[str, Any]) -> AnalysisResult:
    return AnalysisResult.model_validate(upgrade_analysis_payload(payload))


class TerminalCommandInput(_ContractModel):
    description: str = Field(min_length=1, max_length=500, description="Why this command is being run.")
    command: str = Field(min_length=1, max_length=2_000, description="Read-only shell command, run in the repository root.")


class ReadFileInput(_ContractModel):
    path: str = Field(min_length=1, description="File path relative to the repository root.")


class ResolveLibraryInput(_ContractModel):
    library_name: str = Field(min_length=1, max_length=200, description="Package or library name to look up.")


class GetLibraryDocsInput(_ContractModel):
    library_id: str = Field(min_length=1, description="Documentation id returned by resolveLibrary, e.g. /vercel/next.js.")
    topic: str | None = Field(default=None, description="Optional topic to focus the documentation on.")
    tokens: int = Field(default=5_000, ge=500, le=20_000, description="Approximate documentation size to return.")


class ListSymbolsInput(_ContractModel):
    scope: Literal["document", "codebase"] = Field(
        description="document lists symbols in one file; codebase searches all supported files for a name."
    )
    path: str | None = Field(default=None, description="File path for document scope.")
    query: str | None = Field(default=None, description="Symbol name or prefix for codebase scope.")

    @model_validator(mode="after")
    def _check_scope_arguments(self) -> "ListSymbolsInput":
        if self.scope == "document" and not self.path:
            raise ValueError("path is required when scope is 'document'")
        if self.scope == "codebase" and not self.query:
            raise ValueError("query is required when scope is 'codebase'")
        return self


class ShareThoughtInput(_ContractModel):
    message: str = Field(min_length=1, max_length=4_000, description="Current reasoning, shared with reviewers.")
    evidence: list[EvidenceItem] = Field(
        default_factory=list,
        description="Findings established so far; reported if the investigation runs out of steps.",
    )


TOOL_INPUT_MODELS: dict[ToolKind, type[_ContractModel]] = {
    ToolKind.TERMINAL_COMMAND: TerminalCommandInput,
    ToolKind.READ_FILE: ReadFileInput,
    ToolKind.RESOLVE_LIBRARY: ResolveLibraryInput,
    ToolKind.GET_LIBRARY_DOCS: GetLibraryDocsInput,
    ToolKind.LIST_SYMBOLS: ListSymbolsInput,
    ToolKind.SHARE_THOUGHT: ShareThoughtInput,
}


class StoryDecomposition(_ContractModel):
    steps: list[str] = Field(min_length=1, description="Ordered, independently verifiable steps of the story.")

    @field_validator("steps")
    @classmethod
    def _drop_blank_steps(cls, steps: list[str]) -> list[str]:
        cleaned = [step.strip() for step in steps if step.strip()]
        if not cleaned:
            raise ValueError("steps must contain at least one non-empty entry")
        return cleaned


class CachedAssertion(BaseModel):
    fact: str
    conclusion: Conclusion
    evidence: list[EvidenceItem] = Field(default_factory=list)
    # file path -> sha256 hex of the content the assertion was verified against
    file_hashes: dict[str, str] = Field(default_factory=dict)


class CachedStep(BaseModel):
    index: int = Field(ge=0)
    description: str
    conclusion: StepConclusion
    assertions: list[CachedAssertion] = Field(default_factory=list)


class CacheEntry(BaseModel):
    id: str
    story_id: str
    commit_sha: str
    branch_name: str | None = None
    run_id: str | None = None
    story_fingerprint: str
    status: AnalysisStatus
    explanation: str
    # top-level evidence of the verdict, in discovery order
    evidence: list[EvidenceItem] = Field(default_factory=list)
    # hashes of files cited only by top-level evidence, not by any step assertion
    evidence_file_hashes: dict[str, str] = Field(default_factory=dict)
    steps: list[CachedStep] = Field(default_factory=list)
    # False when the result had no step breakdown and steps[0] was synthesized from its evidence
    has_step_breakdown: bool = True
    created_at: datetime
    updated_at: datetime

    @field_validator("status")
    @classmethod
    def _only_verdicts(cls, status: AnalysisStatus) -> AnalysisStatus:
        if not status.is_verdict:
            raise ValueError(f"only pass/fail results are cached, got: {status.value}")
        return status


class StoryTestResultPayload(BaseModel):
    """Row shape handed to the persistence gateway."""

    status: AnalysisStatus
    analysis_version: int = ANALYSIS_SCHEMA_VERSION
    analysis: AnalysisResult | None = None
    started_at: str
    completed_at: str | None = None
    duration_ms: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_analysis_matches_status(self) -> "StoryTestResultPayload":
        if self.status is AnalysisStatus.RUNNING and self.analysis is not None:
            raise ValueError("running results must not carry an analysis")
        if self.status.is_terminal and self.analysis is None:
            raise ValueError(f"{self.status.value} results require an analysis")
        return self


@dataclass(frozen=True)
class RepoIdentity:
    id: str
    slug: str


@dataclass(frozen=True)
class Story:
    id: str
    name: str
    text: str
    repo_id: str
    branch_name: str | None = None
    commit_sha: str | None = None


@dataclass(frozen=True)
class InvalidAssertion:
    step_index: int
    assertion_index: int


@dataclass
class CacheValidation:
    """Outcome of checking one cache entry against the current sandbox contents.

    ``entry`` is None on a miss; ``is_valid`` is then False with no invalid
    parts listed.
    """

    is_valid: bool
    invalid_steps: list[int] = field(default_factory=list)
    invalid_assertions: list[InvalidAssertion] = field(default_factory=list)
    entry: CacheEntry | None = None

    @property
    def hit(self) -> bool:
        return self.entry is not None

    @property
    def partial(self) -> bool:
        return self.entry is not None and not self.is_valid and bool(self.invalid_steps)

    def valid_step_indexes(self) -> list[int]:
        if self.entry is None:
            return []
        return [step.index for step in self.entry.steps if step.index not in self.invalid_steps]


@dataclass(frozen=True)
class ToolObservation:
    """What a tool call produced, as re-injected into model context."""

    tool: ToolKind | None
    content: str
    is_error: bool = False
    evidence: tuple[EvidenceItem, ...] = ()


@dataclass(frozen=True)
class ToolTraceEntry:
    step_index: int
    tool: str
    input: dict[str, Any]
    output: str
    is_error: bool = False


@dataclass
class EvaluationMetrics:
    steps: int = 0
    tool_calls: int = 0
    cache_status: Literal["miss", "hit", "partial", "disabled"] = "miss"


@dataclass
class EvaluationOutcome:
    analysis: AnalysisResult
    finish_reason: FinishReason
    trace: list[ToolTraceEntry] = field(default_factory=list)
    metrics: EvaluationMetrics = field(default_factory=EvaluationMetrics)


def normalize_repo_path(path: str, workspace_root: str = "") -> str:
    """Return ``path`` as a repository-relative POSIX path.

    Strips a leading ``./`` and, when given, the workspace root prefix in either
    its relative or absolute spelling.
    """
    value = path.strip().replace("\\", "/")
    root = workspace_root.strip().strip("/")
    if root:
        for prefix in (f"/{root}/", f"{root}/"):
            if value.startswith(prefix):
                value = value[len(prefix):]
                break
    normalized = posixpath.normpath(value) if value else value
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return "" if normalized == "." else normalized
