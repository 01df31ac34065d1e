from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Evaluation limits, model ids and storage locations, read from ``STORYEVAL_*`` variables."""

    evaluation_model: str = "gpt-5-mini"
    decomposition_model: str = "gpt-5-mini"
    max_steps: int = 30
    decomposition_max_steps: int = 12
    max_tool_calls_per_step: int = 8
    workspace_root: str = "workspace/repo"
    outline_depth: int = 3
    outline_char_limit: int = 12_000
    observation_char_limit: int = 20_000
    trace_char_limit: int = 600
    state_store_root: str = "state_store"
    command_timeout: int = 120

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            evaluation_model=os.getenv("STORYEVAL_EVALUATION_MODEL", "gpt-5-mini"),
            decomposition_model=os.getenv("STORYEVAL_DECOMPOSITION_MODEL", "gpt-5-mini"),
            max_steps=_get_env_int("STORYEVAL_MAX_STEPS", default=30, minimum=1),
            decomposition_max_steps=_get_env_int("STORYEVAL_DECOMPOSITION_MAX_STEPS", default=12, minimum=1),
            max_tool_calls_per_step=_get_env_int("STORYEVAL_MAX_TOOL_CALLS_PER_STEP", default=8, minimum=1),
            workspace_root=os.getenv("STORYEVAL_WORKSPACE_ROOT", "workspace/repo"),
            outline_depth=_get_env_int("STORYEVAL_OUTLINE_DEPTH", default=3, minimum=1, maximum=10),
            outline_char_limit=_get_env_int("STORYEVAL_OUTLINE_CHAR_LIMIT", default=12_000, minimum=256),
            observation_char_limit=_get_env_int("STORYEVAL_OBSERVATION_CHAR_LIMIT", default=20_000, minimum=256),
            trace_char_limit=_get_env_int("STORYEVAL_TRACE_CHAR_LIMIT", default=600, minimum=32),
            state_store_root=os.getenv("STORYEVAL_STATE_STORE_ROOT", "state_store"),
            command_timeout=_get_env_int("STORYEVAL_COMMAND_TIMEOUT", default=120, minimum=1, maximum=3_600),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Return a trimmed copy.

        Raises:
            ValueError: If a model id or path is blank, or a limit is out of range.
        """
        evaluation_model = self.evaluation_model.strip()
        if not evaluation_model:
            raise ValueError("STORYEVAL_EVALUATION_MODEL must be non-empty")
        decomposition_model = self.decomposition_model.strip()
        if not decomposition_model:
            raise ValueError("STORYEVAL_DECOMPOSITION_MODEL must be non-empty")

        if not 1 <= self.max_steps <= 200:
            raise ValueError(f"STORYEVAL_MAX_STEPS must be within [1, 200], got: {self.max_steps}")
        if self.max_tool_calls_per_step < 1:
            raise ValueError(
                f"STORYEVAL_MAX_TOOL_CALLS_PER_STEP must be >= 1, got: {self.max_tool_calls_per_step}"
            )
        if self.trace_char_limit > self.observation_char_limit:
            raise ValueError(
                "STORYEVAL_TRACE_CHAR_LIMIT must not exceed STORYEVAL_OBSERVATION_CHAR_LIMIT"
            )

        workspace_root = self.workspace_root.strip().rstrip("/")
        if not workspace_root:
            raise ValueError("STORYEVAL_WORKSPACE_ROOT must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("STORYEVAL_STATE_STORE_ROOT must be non-empty")
        return replace(
            self,
            evaluation_model=evaluation_model,
            decomposition_model=decomposition_model,
            workspace_root=workspace_root,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Read ``name`` as an integer in ``[minimum, maximum]``; blank or unset means ``default``.

    Raises:
        ValueError: If the variable is set to a non-integer or an out-of-range value.
    """
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        bound = f">= {minimum}" if parsed < minimum else f"<= {maximum}"
        raise ValueError(f"{name} must be {bound}, got: {parsed}")
    return parsed
