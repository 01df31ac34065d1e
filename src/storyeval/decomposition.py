from __future__ import annotations

import logging
from collections.abc import Callable

from langchain_core.messages import HumanMessage, SystemMessage

from .llm import StructuredOutputAdapter, get_structured_chat_model
from .model_selection import RuntimeModelSelection
from .models import StoryDecomposition, Story
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str], StructuredOutputAdapter[StoryDecomposition]]

DECOMPOSITION_INSTRUCTIONS = """\
You split a user story into the ordered steps a reviewer would verify one at a time
against the code of a repository.

Rules:
- Each step describes one observable behavior or requirement from the story.
- Keep the story's own order; do not invent requirements the story does not state.
- Phrase each step so it can be confirmed or refuted by reading code.
- Return at most {max_steps} steps.
"""


class StoryDecomposer:
    """Turns a story into an ordered list of verifiable steps.

    The steps can be handed to an evaluation as its step plan. A single
    structured-output call is made; no tools are bound.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        model_selection: RuntimeModelSelection | None = None,
        adapter_factory: AdapterFactory | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.model_selection = (
            model_selection if model_selection is not None else RuntimeModelSelection.from_settings(self.settings)
        )
        self.adapter_factory = adapter_factory if adapter_factory is not None else _default_adapter_factory

    async def decompose(self, story: Story, *, model_id: str | None = None, max_steps: int | None = None) -> list[str]:
        """Return the story's steps, capped at the decomposition budget.

        Raises:
            RuntimeError: If the model output does not match the decomposition schema.
        """
        profile = self.model_selection.resolve("decomposition", model_override=model_id, max_steps_override=max_steps)
        adapter = self.adapter_factory(profile.model)
        messages = [
            SystemMessage(content=DECOMPOSITION_INSTRUCTIONS.format(max_steps=profile.max_steps)),
            HumanMessage(content=f"Story: {story.name}\n\n{story.text}"),
        ]
        result = await adapter.ainvoke(messages)
        steps = result.steps
        if len(steps) > profile.max_steps:
            logger.warning(
                "Decomposition of story %s returned %d steps; keeping the first %d",
                story.id,
                len(steps),
                profile.max_steps,
            )
            steps = steps[: profile.max_steps]
        logger.info("Decomposed story %s into %d steps with %s", story.id, len(steps), profile.model)
        return steps


def _default_adapter_factory(model_id: str) -> StructuredOutputAdapter[StoryDecomposition]:
    return get_structured_chat_model(model_name=model_id, schema=StoryDecomposition)
