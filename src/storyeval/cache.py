"""Evidence cache keyed by (story, commit) and validated by file content hashes.

Each cached assertion remembers the SHA-256 of every file its evidence cites.
On lookup those hashes are recomputed from the sandbox; only assertions whose
files changed are invalidated, and only their steps need re-evaluation.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

from .canonical import story_fingerprint
from .models import (
    AnalysisResult,
    AssertionAnalysis,
    CachedAssertion,
    CachedStep,
    CacheEntry,
    CacheValidation,
    EvidenceItem,
    InvalidAssertion,
    StepAnalysis,
    Story,
    normalize_repo_path,
)
from .sandbox import PathContainmentError, Sandbox, SandboxFileNotFoundError, resolve_workspace_path
from .state_store import CacheStore

logger = logging.getLogger(__name__)

# Hash token for a cited file that did not exist when the evidence was verified.
ABSENT_FILE_HASH = "absent"

_SYNTHETIC_STEP_DESCRIPTION = "Overall verdict"
_LINE_SUFFIX_RE = re.compile(r":\d+(?:-\d+)?$")


def get_cache_key(story_id: str, commit_sha: str) -> str:
    if not story_id.strip() or not commit_sha.strip():
        raise ValueError("story_id and commit_sha are required to build a cache key")
    return f"{story_id.strip()}:{commit_sha.strip()}"


def hash_file_content(content: bytes | str) -> str:
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


def extract_files_from_evidence(evidence: Iterable[EvidenceItem], workspace_root: str = "") -> list[str]:
    """Distinct repository-relative files cited by ``evidence``, in first-seen order.

    A ``path:line`` or ``path:start-end`` suffix left in ``file_path`` is dropped.
    """
    files: list[str] = []
    for item in evidence:
        path = normalize_repo_path(_LINE_SUFFIX_RE.sub("", item.file_path), workspace_root)
        if path and path not in files:
            files.append(path)
    return files


async def get_file_hash_from_sandbox(sandbox: Sandbox, file_path: str, workspace_root: str) -> str | None:
    """Hash the current content of ``file_path``, or return None if it does not exist.

    Raises:
        SandboxError: If the sandbox failed for any reason other than a missing file.
    """
    try:
        sandbox_path = resolve_workspace_path(file_path, workspace_root)
    except PathContainmentError:
        return None
    try:
        content = await sandbox.download_file(sandbox_path)
    except (SandboxFileNotFoundError, PathContainmentError):
        return None
    return hash_file_content(content)


async def hash_files(files: Iterable[str], sandbox: Sandbox, workspace_root: str) -> dict[str, str | None]:
    # One file at a time: a sandbox serves a single caller.
    hashes: dict[str, str | None] = {}
    for path in files:
        if path not in hashes:
            hashes[path] = await get_file_hash_from_sandbox(sandbox, path, workspace_root)
    return hashes


async def build_evidence_hash_map(
    evidence: Iterable[EvidenceItem],
    sandbox: Sandbox,
    workspace_root: str,
) -> dict[str, str | None]:
    """Map every distinct file cited by ``evidence`` to its current content hash."""
    return await hash_files(extract_files_from_evidence(evidence, workspace_root), sandbox, workspace_root)


def _cached_steps_from(analysis: AnalysisResult) -> tuple[list[CachedStep], bool]:
    if analysis.steps:
        steps = [
            CachedStep(
                index=step.index,
                description=step.description,
                conclusion=step.conclusion,
                assertions=[
                    CachedAssertion(fact=assertion.fact, conclusion=assertion.conclusion, evidence=assertion.evidence)
                    for assertion in step.assertions
                ],
            )
            for step in sorted(analysis.steps, key=lambda step: step.index)
        ]
        return steps, True

    synthetic = CachedStep(
        index=0,
        description=_SYNTHETIC_STEP_DESCRIPTION,
        conclusion=analysis.status.value,
        assertions=[
            CachedAssertion(fact=item.note or item.file_path, conclusion=item.conclusion, evidence=[item])
            for item in analysis.evidence
        ],
    )
    return [synthetic], False


async def build_cache_entry(
    *,
    story: Story,
    commit_sha: str,
    analysis: AnalysisResult,
    sandbox: Sandbox,
    workspace_root: str,
    run_id: str | None = None,
    now: datetime | None = None,
) -> CacheEntry:
    """Snapshot a pass/fail result together with the hashes of every file it cites.

    Raises:
        ValueError: If the analysis is not a pass/fail verdict.
        SandboxError: If file contents cannot be fetched.
    """
    if not analysis.status.is_verdict:
        raise ValueError(f"only pass/fail results are cached, got: {analysis.status.value}")
    steps, has_breakdown = _cached_steps_from(analysis)
    all_evidence = [item for step in steps for assertion in step.assertions for item in assertion.evidence]
    current = await build_evidence_hash_map([*all_evidence, *analysis.evidence], sandbox, workspace_root)
    covered: set[str] = set()
    for step in steps:
        for assertion in step.assertions:
            assertion.file_hashes = {
                path: current.get(path) or ABSENT_FILE_HASH
                for path in extract_files_from_evidence(assertion.evidence, workspace_root)
            }
            covered.update(assertion.file_hashes)
    orphan_hashes = {
        path: current.get(path) or ABSENT_FILE_HASH
        for path in extract_files_from_evidence(analysis.evidence, workspace_root)
        if path not in covered
    }
    timestamp = now if now is not None else datetime.now(UTC)
    return CacheEntry(
        id=f"CACHE-{uuid.uuid4().hex[:16]}",
        story_id=story.id,
        commit_sha=commit_sha,
        branch_name=story.branch_name,
        run_id=run_id,
        story_fingerprint=story_fingerprint(story.name, story.text),
        status=analysis.status,
        explanation=analysis.explanation,
        evidence=analysis.evidence,
        evidence_file_hashes=orphan_hashes,
        steps=steps,
        has_step_breakdown=has_breakdown,
        created_at=timestamp,
        updated_at=timestamp,
    )


def entry_files(entry: CacheEntry) -> list[str]:
    files: list[str] = list(entry.evidence_file_hashes)
    for step in entry.steps:
        for assertion in step.assertions:
            for path in assertion.file_hashes:
                if path not in files:
                    files.append(path)
    return files


def validate_cache_entry(
    entry: CacheEntry,
    current_hashes: dict[str, str | None],
    *,
    current_story_fingerprint: str | None = None,
) -> CacheValidation:
    """Compare stored file hashes against ``current_hashes`` assertion by assertion.

    An assertion is invalid when any file it cites has changed, or when it
    cites no file at all and so cannot be re-verified. A step is invalid when
    any of its assertions is, or when it has none. A changed story wording
    invalidates every step, as does a change to a file that only the
    top-level evidence cites, since it cannot be attributed to one step.
    """
    invalid_steps: list[int] = []
    invalid_assertions: list[InvalidAssertion] = []
    story_changed = current_story_fingerprint is not None and current_story_fingerprint != entry.story_fingerprint
    orphan_changed = any(
        (current_hashes.get(path) or ABSENT_FILE_HASH) != stored
        for path, stored in entry.evidence_file_hashes.items()
    )

    for step in entry.steps:
        step_invalid = story_changed or orphan_changed or not step.assertions
        for assertion_index, assertion in enumerate(step.assertions):
            stale = story_changed or not assertion.file_hashes
            for path, stored in assertion.file_hashes.items():
                current = current_hashes.get(path) or ABSENT_FILE_HASH
                if current != stored:
                    stale = True
                    break
            if stale:
                step_invalid = True
                invalid_assertions.append(InvalidAssertion(step_index=step.index, assertion_index=assertion_index))
        if step_invalid:
            invalid_steps.append(step.index)

    return CacheValidation(
        is_valid=not invalid_steps and not story_changed and not orphan_changed,
        invalid_steps=invalid_steps,
        invalid_assertions=invalid_assertions,
        entry=entry,
    )


async def lookup_and_validate_cache(
    story_id: str,
    commit_sha: str,
    sandbox: Sandbox,
    *,
    store: CacheStore,
    workspace_root: str,
    story: Story | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> CacheValidation:
    """Fetch the entry for (story, commit) and check it against the sandbox.

    Never raises: a missing entry, an unreadable entry or a sandbox failure
    while hashing all report a miss. Passing ``story`` also invalidates the
    entry when the story wording changed since it was written.
    """
    log = log if log is not None else logger
    try:
        key = get_cache_key(story_id, commit_sha)
        entry = store.get(story_id, commit_sha)
        if entry is None:
            log.info("Evidence cache miss for %s", key)
            return CacheValidation(is_valid=False)
        current = await hash_files(entry_files(entry), sandbox, workspace_root)
        fingerprint = story_fingerprint(story.name, story.text) if story is not None else None
        validation = validate_cache_entry(entry, current, current_story_fingerprint=fingerprint)
    except Exception as exc:  # noqa: BLE001
        log.warning("Evidence cache lookup for %s:%s failed, treating as miss: %s", story_id, commit_sha, exc)
        return CacheValidation(is_valid=False)

    if validation.is_valid:
        log.info("Evidence cache hit for %s (%d steps)", key, len(entry.steps))
    elif validation.partial:
        log.info(
            "Evidence cache partially stale for %s: steps %s need re-evaluation",
            key,
            validation.invalid_steps,
        )
    else:
        log.info("Evidence cache entry for %s is stale", key)
    return validation


async def store_cache_entry(
    *,
    store: CacheStore,
    story: Story,
    commit_sha: str,
    analysis: AnalysisResult,
    sandbox: Sandbox,
    workspace_root: str,
    run_id: str | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> bool:
    """Write a cache entry for a finished evaluation. Best-effort: failures are logged, not raised."""
    log = log if log is not None else logger
    if not analysis.status.is_verdict:
        return False
    try:
        entry = await build_cache_entry(
            story=story,
            commit_sha=commit_sha,
            analysis=analysis,
            sandbox=sandbox,
            workspace_root=workspace_root,
            run_id=run_id,
        )
        store.put(entry)
    except Exception as exc:  # noqa: BLE001
        log.warning("Failed to write evidence cache for %s:%s: %s", story.id, commit_sha, exc)
        return False
    return True


def cached_step_analyses(entry: CacheEntry, indexes: Iterable[int] | None = None) -> list[StepAnalysis]:
    wanted = set(indexes) if indexes is not None else None
    return [
        StepAnalysis(
            index=step.index,
            description=step.description,
            conclusion=step.conclusion,
            assertions=[
                AssertionAnalysis(fact=assertion.fact, conclusion=assertion.conclusion, evidence=assertion.evidence)
                for assertion in step.assertions
            ],
        )
        for step in entry.steps
        if wanted is None or step.index in wanted
    ]


def cached_analysis(entry: CacheEntry) -> AnalysisResult:
    """Rebuild the stored verdict, with evidence in step order."""
    steps = cached_step_analyses(entry)
    evidence = list(entry.evidence)
    if not evidence:
        evidence = [item for step in steps for item in step.flattened_evidence()]
    return AnalysisResult(
        status=entry.status,
        explanation=entry.explanation,
        evidence=evidence,
        steps=steps if entry.has_step_breakdown else None,
    )
