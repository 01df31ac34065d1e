from __future__ import annotations

import os
from dataclasses import dataclass

from .settings import RuntimeSettings


VALID_AGENTS: frozenset[str] = frozenset({"evaluation", "decomposition"})


@dataclass(frozen=True)
class AgentProfile:
    """Model id and step budget for one agent role."""

    model: str
    max_steps: int

    def __post_init__(self) -> None:
        if not self.model or not self.model.strip():
            raise ValueError("AgentProfile model must be non-empty")
        if self.max_steps < 1:
            raise ValueError(f"AgentProfile max_steps must be >= 1, got: {self.max_steps}")


DEFAULT_AGENT_PROFILES: dict[str, AgentProfile] = {
    "evaluation": AgentProfile(model="gpt-5-mini", max_steps=30),
    "decomposition": AgentProfile(model="gpt-5-mini", max_steps=12),
}


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps agent roles to the model and step budget they run with.

    Callers may still override the model per request; ``resolve`` applies that
    override and validates it.
    """

    by_agent: dict[str, AgentProfile]

    def __post_init__(self) -> None:
        missing = VALID_AGENTS - set(self.by_agent)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required agents: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_AGENTS)} must be configured."
            )

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RuntimeModelSelection":
        return cls(
            by_agent={
                "evaluation": AgentProfile(model=settings.evaluation_model, max_steps=settings.max_steps),
                "decomposition": AgentProfile(
                    model=settings.decomposition_model,
                    max_steps=settings.decomposition_max_steps,
                ),
            }
        )

    @classmethod
    def from_env(cls) -> "RuntimeModelSelection":
        """Default profiles with model ids taken from the environment when set.

        Reads:
            STORYEVAL_EVALUATION_MODEL: Model id for the evaluation agent.
            STORYEVAL_DECOMPOSITION_MODEL: Model id for the decomposition agent.
        """
        by_agent = dict(DEFAULT_AGENT_PROFILES)
        for agent, env_key in {
            "evaluation": "STORYEVAL_EVALUATION_MODEL",
            "decomposition": "STORYEVAL_DECOMPOSITION_MODEL",
        }.items():
            model = os.getenv(env_key, "").strip()
            if model:
                by_agent[agent] = AgentProfile(model=model, max_steps=by_agent[agent].max_steps)
        return cls(by_agent=by_agent)

    def resolve(self, agent: str, *, model_override: str | None = None, max_steps_override: int | None = None) -> AgentProfile:
        """Return the profile for ``agent`` with any per-request overrides applied.

        Raises:
            ValueError: If the agent is unknown or an override is invalid.
        """
        if agent not in self.by_agent:
            available = ", ".join(sorted(self.by_agent))
            raise ValueError(f"Unknown agent '{agent}'. Valid agents: {available}")
        profile = self.by_agent[agent]
        return AgentProfile(
            model=model_override.strip() if model_override and model_override.strip() else profile.model,
            max_steps=max_steps_override if max_steps_override is not None else profile.max_steps,
        )
