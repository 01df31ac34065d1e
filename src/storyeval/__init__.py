from importlib.metadata import version

from .cache import get_cache_key, lookup_and_validate_cache, validate_cache_entry
from .controller import EvaluationRequest, ScopedRerun, ToolLoopController
from .decomposition import StoryDecomposer
from .evaluation import BatchItem, StoryEvaluator, StoryTestOutcome, evaluate_stories, run_evaluation, test_story
from .model_selection import DEFAULT_AGENT_PROFILES, RuntimeModelSelection
from .models import (
    AnalysisResult,
    AnalysisStatus,
    AssertionAnalysis,
    CacheEntry,
    CacheValidation,
    EvaluationOutcome,
    EvidenceItem,
    FinishReason,
    RepoIdentity,
    StepAnalysis,
    Story,
    StoryTestResultPayload,
    ToolKind,
)
from .normalizer import finalize_analysis, normalize_story_test_result
from .sandbox import LocalWorkspaceSandbox, Sandbox, SandboxError
from .settings import RuntimeSettings
from .state_store import EvidenceCacheStore, StoryResultStore


def get_version() -> str:
    try:
        return version("storyeval")
    except Exception:
        return "0.0.0"


__all__ = [
    "AnalysisResult",
    "AnalysisStatus",
    "AssertionAnalysis",
    "BatchItem",
    "CacheEntry",
    "CacheValidation",
    "EvaluationOutcome",
    "EvaluationRequest",
    "EvidenceCacheStore",
    "EvidenceItem",
    "FinishReason",
    "LocalWorkspaceSandbox",
    "RepoIdentity",
    "RuntimeModelSelection",
    "RuntimeSettings",
    "Sandbox",
    "SandboxError",
    "ScopedRerun",
    "StepAnalysis",
    "Story",
    "StoryDecomposer",
    "StoryEvaluator",
    "StoryResultStore",
    "StoryTestOutcome",
    "StoryTestResultPayload",
    "ToolKind",
    "ToolLoopController",
    "DEFAULT_AGENT_PROFILES",
    "evaluate_stories",
    "finalize_analysis",
    "get_cache_key",
    "lookup_and_validate_cache",
    "normalize_story_test_result",
    "run_evaluation",
    "test_story",
    "validate_cache_entry",
]
