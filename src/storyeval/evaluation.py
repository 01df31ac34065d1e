from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path

from .cache import cached_analysis, cached_step_analyses, lookup_and_validate_cache, store_cache_entry
from .controller import EvaluationRequest, ScopedRerun, ToolLoopController
from .models import (
    AnalysisResult,
    AnalysisStatus,
    CacheValidation,
    EvaluationMetrics,
    EvaluationOutcome,
    FinishReason,
    RepoIdentity,
    Story,
    StoryTestResultPayload,
)
from .normalizer import error_analysis, finalize_analysis, merge_cached_steps, normalize_story_test_result
from .sandbox import Sandbox
from .settings import RuntimeSettings
from .state_store import CacheStore, EvidenceCacheStore, ResultGateway

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class StoryTestOutcome:
    result_id: str
    payload: StoryTestResultPayload
    outcome: EvaluationOutcome


@dataclass(frozen=True)
class BatchItem:
    story_id: str
    analysis: AnalysisResult
    result_id: str | None = None
    error: str | None = None


class StoryEvaluator:
    """Cache-aware evaluation of one story at a time.

    A fully valid cache entry skips the tool loop. A partially valid one runs
    the loop only for the stale steps and merges the result. Fresh pass/fail
    verdicts are written back to the cache on a best-effort basis.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        controller: ToolLoopController | None = None,
        cache_store: CacheStore | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.controller = controller if controller is not None else ToolLoopController(settings=self.settings)
        self.cache_store = cache_store

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "StoryEvaluator":
        root = settings.state_store_path(repo_root if repo_root is not None else Path.cwd())
        return cls(settings=settings, cache_store=EvidenceCacheStore(root))

    async def lookup(self, story_id: str, commit_sha: str, sandbox: Sandbox, *, story: Story | None = None) -> CacheValidation:
        if self.cache_store is None:
            return CacheValidation(is_valid=False)
        return await lookup_and_validate_cache(
            story_id,
            commit_sha,
            sandbox,
            store=self.cache_store,
            workspace_root=self.settings.workspace_root,
            story=story,
        )

    async def run(self, request: EvaluationRequest) -> EvaluationOutcome:
        commit = request.effective_commit
        log = request.log
        if self.cache_store is None or not commit:
            outcome = await self.controller.run(request)
            outcome.metrics.cache_status = "disabled"
            return outcome

        validation = await lookup_and_validate_cache(
            request.story.id,
            commit,
            request.sandbox,
            store=self.cache_store,
            workspace_root=self.settings.workspace_root,
            story=request.story,
            log=log,
        )
        entry = validation.entry

        if validation.hit and validation.is_valid:
            analysis = finalize_analysis(cached_analysis(entry), workspace_root=self.settings.workspace_root)
            log.info("Reusing cached verdict '%s'; tool loop skipped", analysis.status.value)
            return EvaluationOutcome(
                analysis=analysis,
                finish_reason=FinishReason.CACHE_HIT,
                metrics=EvaluationMetrics(cache_status="hit"),
            )

        valid_indexes = validation.valid_step_indexes()
        if validation.partial and entry.has_step_breakdown and valid_indexes:
            scope = ScopedRerun(
                verified_steps=cached_step_analyses(entry, valid_indexes),
                steps_to_verify=cached_step_analyses(entry, validation.invalid_steps),
            )
            log.info("Re-verifying steps %s; reusing steps %s", scope.indexes, valid_indexes)
            fresh = await self.controller.run(request, scope=scope)
            analysis = fresh.analysis
            if fresh.finish_reason is FinishReason.ANSWER:
                analysis = merge_cached_steps(
                    cached_steps=cached_step_analyses(entry),
                    fresh=fresh.analysis,
                    invalid_steps=validation.invalid_steps,
                    workspace_root=self.settings.workspace_root,
                )
            outcome = replace(fresh, analysis=analysis)
            outcome.metrics.cache_status = "partial"
        else:
            outcome = await self.controller.run(request)
            outcome.metrics.cache_status = "miss"

        if outcome.analysis.status.is_verdict:
            await store_cache_entry(
                store=self.cache_store,
                story=request.story,
                commit_sha=commit,
                analysis=outcome.analysis,
                sandbox=request.sandbox,
                workspace_root=self.settings.workspace_root,
                run_id=request.run_id,
                log=log,
            )
        return outcome


async def run_evaluation(request: EvaluationRequest, *, evaluator: StoryEvaluator | None = None) -> AnalysisResult:
    """Evaluate one story and return only the verdict."""
    active = evaluator if evaluator is not None else StoryEvaluator.from_settings(RuntimeSettings.from_env())
    outcome = await active.run(request)
    return outcome.analysis


async def test_story(
    request: EvaluationRequest,
    *,
    evaluator: StoryEvaluator,
    result_store: ResultGateway,
    clock: Clock = _utc_now,
) -> StoryTestOutcome:
    """Evaluate a story and persist its result row.

    A ``running`` row is inserted first and updated in place when the
    evaluation finishes. If the evaluation raises, the row is marked
    ``error`` with the failure as its explanation and the exception is
    re-raised.

    Raises:
        Exception: Whatever the evaluation or the result store raised.
    """
    log = request.log
    started_at = clock()
    placeholder = normalize_story_test_result(
        status=AnalysisStatus.RUNNING,
        analysis=None,
        started_at=started_at,
        completed_at=None,
    )
    result_id = result_store.create_running(story_id=request.story.id, run_id=request.run_id, payload=placeholder)
    log.info("Created running result %s", result_id)

    try:
        outcome = await evaluator.run(request)
    except Exception as exc:
        log.exception("Evaluation failed; marking result %s as error", result_id)
        failure = normalize_story_test_result(
            status=AnalysisStatus.ERROR,
            analysis=error_analysis(f"Evaluation failed: {exc}"),
            started_at=started_at,
            completed_at=clock(),
        )
        try:
            result_store.update(result_id, failure)
        except Exception:  # noqa: BLE001
            log.exception("Could not mark result %s as error", result_id)
        raise

    payload = normalize_story_test_result(
        status=outcome.analysis.status,
        analysis=outcome.analysis,
        started_at=started_at,
        completed_at=clock(),
    )
    result_store.update(result_id, payload)
    log.info("Stored result %s: %s in %d ms", result_id, payload.status.value, payload.duration_ms or 0)
    return StoryTestOutcome(result_id=result_id, payload=payload, outcome=outcome)


async def evaluate_stories(
    stories: Iterable[Story],
    *,
    repo: RepoIdentity,
    sandbox: Sandbox,
    evaluator: StoryEvaluator,
    result_store: ResultGateway | None = None,
    run_id: str | None = None,
    model_id: str | None = None,
    max_steps: int | None = None,
    step_plans: dict[str, list[str]] | None = None,
    log: logging.Logger | None = None,
) -> list[BatchItem]:
    """Evaluate stories one after another on a shared sandbox.

    A story whose evaluation raises is reported as ``error`` and the batch
    moves on to the next story. ``step_plans`` maps story ids to the step
    breakdown the model should follow.
    """
    items: list[BatchItem] = []
    for story in stories:
        request = EvaluationRequest(
            story=story,
            repo=repo,
            sandbox=sandbox,
            run_id=run_id,
            model_id=model_id,
            max_steps=max_steps,
            step_plan=(step_plans or {}).get(story.id),
            logger=log,
        )
        try:
            if result_store is not None:
                tested = await test_story(request, evaluator=evaluator, result_store=result_store)
                items.append(BatchItem(story_id=story.id, analysis=tested.outcome.analysis, result_id=tested.result_id))
            else:
                outcome = await evaluator.run(request)
                items.append(BatchItem(story_id=story.id, analysis=outcome.analysis))
        except Exception as exc:  # noqa: BLE001
            request.log.error("Story evaluation failed: %s", exc)
            items.append(
                BatchItem(
                    story_id=story.id,
                    analysis=error_analysis(f"Evaluation failed: {exc}"),
                    error=str(exc),
                )
            )
    return items
