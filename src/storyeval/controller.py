"""Step-bounded tool loop that drives one story evaluation.

The loop is a LangGraph ``StateGraph``::

    START -> generate -> dispatch -> generate -> ... -> finalize -> END

``generate`` makes at most ``max_steps`` model calls in total. A reply that
carries a schema-valid answer ends the loop immediately, even when it also
requests tools. ``dispatch`` runs the requested tool calls one at a time,
capped per round, and feeds the observations back as tool messages.
"""

from __future__ import annotations

import json
import logging
import operator
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, TypedDict

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .llm import content_to_text, extract_json_payload, get_chat_model, normalize_structured_output
from .model_selection import RuntimeModelSelection
from .models import (
    AnalysisResult,
    EvaluationMetrics,
    EvaluationOutcome,
    EvidenceItem,
    FinishReason,
    RepoIdentity,
    StepAnalysis,
    Story,
    ToolTraceEntry,
)
from .normalizer import (
    budget_exhausted_analysis,
    build_trace_entry,
    error_analysis,
    finalize_analysis,
    truncate,
)
from .sandbox import Sandbox, SandboxError
from .settings import RuntimeSettings
from .tools import Toolbox

logger = logging.getLogger(__name__)

ModelFactory = Callable[[str], Any]


class EvaluationLogAdapter(logging.LoggerAdapter):
    """Prefixes every record with the story, run and sandbox it belongs to."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = self.extra or {}
        return f"[story={extra.get('story_id')} run={extra.get('run_id')} sandbox={extra.get('sandbox_id')}] {msg}", kwargs


@dataclass
class EvaluationRequest:
    """Everything one evaluation attempt needs. Not persisted."""

    story: Story
    repo: RepoIdentity
    sandbox: Sandbox
    run_id: str | None = None
    model_id: str | None = None
    max_steps: int | None = None
    commit_sha: str | None = None
    step_plan: list[str] | None = None
    logger: logging.Logger | None = None
    _log: EvaluationLogAdapter | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_steps is not None and self.max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got: {self.max_steps}")

    @property
    def effective_commit(self) -> str | None:
        return self.commit_sha or self.story.commit_sha

    @property
    def log(self) -> EvaluationLogAdapter:
        if self._log is None:
            self._log = EvaluationLogAdapter(
                self.logger if self.logger is not None else logger,
                {"story_id": self.story.id, "run_id": self.run_id, "sandbox_id": self.sandbox.id},
            )
        return self._log


@dataclass(frozen=True)
class ScopedRerun:
    """Restricts a run to the steps whose cached evidence went stale."""

    verified_steps: list[StepAnalysis]
    steps_to_verify: list[StepAnalysis]

    @property
    def indexes(self) -> list[int]:
        return [step.index for step in self.steps_to_verify]


class LoopState(TypedDict, total=False):
    messages: Annotated[list[BaseMessage], operator.add]
    round: int
    tool_calls: int
    pending_calls: list[dict[str, Any]]
    trace: Annotated[list[ToolTraceEntry], operator.add]
    interim_evidence: Annotated[list[EvidenceItem], operator.add]
    analysis: AnalysisResult | None
    finish_reason: FinishReason | None


def build_instructions(
    *,
    outline: str,
    step_plan: list[str] | None = None,
    scope: ScopedRerun | None = None,
) -> str:
    schema = json.dumps(AnalysisResult.model_json_schema(), indent=2)
    sections = [
        "You are a meticulous QA engineer. Decide whether a user story is fully implemented by the "
        "repository checked out in your workspace. Assume nothing: establish every claim from source code.",
        "# Method\n"
        "1. Split the story into small, testable steps (index from 0).\n"
        "2. For each step, search the repository with the tools and read the code that implements it.\n"
        "3. Record evidence as precise file paths and 1-based line ranges of executable code, "
        "not comments, types or unused helpers.\n"
        "4. Stop as soon as every step is settled and answer.",
        "# Verdict rules\n"
        "- A false pass is worse than a false fail.\n"
        "- status 'pass' only when every step is implemented and wired together.\n"
        "- status 'fail' when any step is missing, incomplete or disconnected; explain what is missing and "
        "cite the locations you searched.\n"
        "- List evidence in the order you established it.\n"
        "- Keep the explanation short, factual and in Markdown.",
        "# Tools\n"
        "All tools are read-only. terminalCommand runs in the repository root (append `.` to rg/grep searches). "
        "readFile reads a file by repository-relative path. listSymbols lists Python or TypeScript symbols. "
        "resolveLibrary and getLibraryDocs fetch third-party documentation when local usage is unclear. "
        "Use shareThought to record findings as you go; they are reported if you run out of steps.",
        "# Final answer\n"
        "When you are done, reply with no tool calls and only a JSON object matching this schema:\n"
        f"```json\n{schema}\n```",
    ]
    if step_plan:
        plan = "\n".join(f"{index}. {step}" for index, step in enumerate(step_plan))
        sections.append(f"# Story steps\nUse these steps, with these indexes, in your step breakdown:\n{plan}")
    if scope is not None:
        verified = "\n".join(
            f"{step.index}. {step.description} -> {step.conclusion}" for step in scope.verified_steps
        ) or "(none)"
        pending = "\n".join(f"{step.index}. {step.description}" for step in scope.steps_to_verify)
        sections.append(
            "# Re-verification\n"
            "This story was evaluated before. These steps are still backed by unchanged code; treat them as "
            f"established and do not re-check them:\n{verified}\n\n"
            "The code behind these steps changed. Verify them again and report them in `steps` with the same "
            f"indexes:\n{pending}\n\n"
            "Base the overall status and explanation on all steps."
        )
    sections.append(
        "# Repository overview\n"
        "Directory listing of the repository root, to plan your first searches:\n"
        f"```\n{outline}\n```"
    )
    return "\n\n".join(sections)


def build_prompt(story: Story, repo: RepoIdentity, run_id: str | None) -> str:
    lines = [
        f"Repository: {repo.slug}",
        f"Story Name: {story.name}",
        "Story Definition:",
        story.text,
    ]
    if run_id:
        lines.append(f"Run Identifier: {run_id}")
    lines.append("When your analysis is complete, respond only with the JSON object that matches the schema.")
    return "\n\n".join(lines)


class _ToolLoop:
    """Graph for a single request; holds the bound model and toolbox."""

    def __init__(
        self,
        *,
        request: EvaluationRequest,
        bound_model: Any,
        toolbox: Toolbox,
        max_steps: int,
        max_tool_calls_per_step: int,
        settings: RuntimeSettings,
    ) -> None:
        self.request = request
        self.bound_model = bound_model
        self.toolbox = toolbox
        self.max_steps = max_steps
        self.max_tool_calls_per_step = max_tool_calls_per_step
        self.settings = settings
        self.log = request.log
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(LoopState)
        graph.add_node("generate", self._generate_node)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "generate")
        graph.add_edge("finalize", END)
        return graph

    @property
    def recursion_limit(self) -> int:
        # generate + dispatch per round, plus the budget check and finalize
        return 2 * self.max_steps + 5

    def _parse_answer(self, text: str) -> AnalysisResult:
        payload = extract_json_payload(text)
        return normalize_structured_output(raw_output=payload, schema=AnalysisResult)

    async def _generate_node(self, state: LoopState) -> Command[Literal["dispatch", "finalize"]]:
        round_index = int(state.get("round", 0))
        if round_index >= self.max_steps:
            self.log.info("Step budget of %d exhausted without a final answer", self.max_steps)
            return Command(goto="finalize", update={"finish_reason": FinishReason.BUDGET_EXHAUSTED})

        try:
            response = await self.bound_model.ainvoke(list(state["messages"]))
        except Exception as exc:  # noqa: BLE001
            self.log.error("Model call failed at step %d: %s", round_index + 1, exc)
            return Command(
                goto="finalize",
                update={
                    "round": round_index + 1,
                    "analysis": error_analysis(f"The language model request failed: {exc}"),
                    "finish_reason": FinishReason.PROVIDER_FAILURE,
                },
            )

        round_index += 1
        text = content_to_text(getattr(response, "content", ""))
        tool_calls = list(getattr(response, "tool_calls", None) or [])
        invalid_calls = list(getattr(response, "invalid_tool_calls", None) or [])
        update: dict[str, Any] = {"round": round_index, "messages": [response]}

        if tool_calls or invalid_calls:
            if "{" in text:
                try:
                    answer = self._parse_answer(text)
                except RuntimeError:
                    answer = None
                if answer is not None:
                    self.log.info(
                        "Answer returned alongside %d tool call(s) at step %d; ignoring the tool calls",
                        len(tool_calls) + len(invalid_calls),
                        round_index,
                    )
                    return Command(
                        goto="finalize",
                        update={**update, "analysis": answer, "finish_reason": FinishReason.ANSWER},
                    )
            pending = [
                {"name": call.get("name"), "args": call.get("args"), "id": call.get("id")} for call in tool_calls
            ]
            pending.extend(
                {
                    "name": call.get("name"),
                    "args": None,
                    "id": call.get("id"),
                    "error": call.get("error") or "arguments were not valid JSON",
                }
                for call in invalid_calls
            )
            return Command(goto="dispatch", update={**update, "pending_calls": pending})

        try:
            answer = self._parse_answer(text)
        except RuntimeError as exc:
            self.log.warning("Final answer failed validation at step %d: %s", round_index, exc)
            return Command(
                goto="finalize",
                update={
                    **update,
                    "analysis": error_analysis(f"The final answer did not match the required schema: {exc}"),
                    "finish_reason": FinishReason.INVALID_OUTPUT,
                },
            )
        self.log.info("Final answer '%s' received at step %d", answer.status.value, round_index)
        return Command(goto="finalize", update={**update, "analysis": answer, "finish_reason": FinishReason.ANSWER})

    async def _dispatch_node(self, state: LoopState) -> Command[Literal["generate", "finalize"]]:
        round_index = int(state.get("round", 0))
        pending = list(state.get("pending_calls") or [])
        messages: list[BaseMessage] = []
        trace: list[ToolTraceEntry] = []
        interim: list[EvidenceItem] = []
        executed = 0

        for position, call in enumerate(pending):
            call_id = call.get("id") or f"call_{uuid.uuid4().hex[:12]}"
            name = str(call.get("name") or "")
            if position >= self.max_tool_calls_per_step:
                messages.append(
                    ToolMessage(
                        content=(
                            f"Error: skipped. At most {self.max_tool_calls_per_step} tool calls are run per step; "
                            "request it again if you still need it."
                        ),
                        tool_call_id=call_id,
                        name=name,
                        status="error",
                    )
                )
                continue
            if call.get("error"):
                self.log.warning("Unparseable arguments for %s: %s", name, call["error"])
                messages.append(
                    ToolMessage(
                        content=f"Error: could not parse arguments for {name}: {call['error']}",
                        tool_call_id=call_id,
                        name=name,
                        status="error",
                    )
                )
                continue

            try:
                observation = await self.toolbox.dispatch(name, call.get("args"))
            except SandboxError as exc:
                self.log.error("Sandbox failure during %s at step %d: %s", name, round_index, exc)
                return Command(
                    goto="finalize",
                    update={
                        "messages": messages,
                        "trace": trace,
                        "interim_evidence": interim,
                        "tool_calls": int(state.get("tool_calls", 0)) + executed,
                        "analysis": error_analysis(
                            f"The sandbox failed while running {name}: {exc}",
                            evidence=[*state.get("interim_evidence", []), *interim],
                            workspace_root=self.settings.workspace_root,
                        ),
                        "finish_reason": FinishReason.SANDBOX_FAILURE,
                    },
                )
            executed += 1
            interim.extend(observation.evidence)
            trace.append(
                build_trace_entry(
                    step_index=round_index,
                    tool_name=name,
                    arguments=call.get("args"),
                    observation=observation,
                    input_limit=self.settings.trace_char_limit,
                )
            )
            self.log.debug("%s -> %s", name, truncate(observation.content, 200))
            messages.append(
                ToolMessage(
                    content=observation.content,
                    tool_call_id=call_id,
                    name=name,
                    status="error" if observation.is_error else "success",
                )
            )

        return Command(
            goto="generate",
            update={
                "messages": messages,
                "trace": trace,
                "interim_evidence": interim,
                "tool_calls": int(state.get("tool_calls", 0)) + executed,
                "pending_calls": [],
            },
        )

    def _finalize_node(self, state: LoopState) -> dict[str, Any]:
        reason = state.get("finish_reason") or FinishReason.BUDGET_EXHAUSTED
        root = self.settings.workspace_root
        if reason is FinishReason.ANSWER and state.get("analysis") is not None:
            return {"analysis": finalize_analysis(state["analysis"], workspace_root=root)}
        if reason is FinishReason.BUDGET_EXHAUSTED:
            return {
                "analysis": budget_exhausted_analysis(
                    max_steps=self.max_steps,
                    interim_evidence=state.get("interim_evidence", []),
                    workspace_root=root,
                )
            }
        return {"analysis": state.get("analysis") or error_analysis("The evaluation ended without a result.")}

    async def run(self, messages: list[BaseMessage]) -> EvaluationOutcome:
        result = await self.graph.ainvoke(
            {
                "messages": messages,
                "round": 0,
                "tool_calls": 0,
                "pending_calls": [],
                "trace": [],
                "interim_evidence": [],
                "analysis": None,
                "finish_reason": None,
            },
            config={"recursion_limit": self.recursion_limit},
        )
        return EvaluationOutcome(
            analysis=result["analysis"],
            finish_reason=result.get("finish_reason") or FinishReason.BUDGET_EXHAUSTED,
            trace=list(result.get("trace", [])),
            metrics=EvaluationMetrics(steps=int(result.get("round", 0)), tool_calls=int(result.get("tool_calls", 0))),
        )


class ToolLoopController:
    """Runs one tool-augmented investigation per request.

    Args:
        settings: Runtime settings; loaded from the environment when omitted.
        model_factory: Callable returning a chat model for a model id. The
            model must support ``bind_tools`` and async ``ainvoke``.
        context7_api_key: Optional key for the library documentation tools.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        model_factory: ModelFactory | None = None,
        model_selection: RuntimeModelSelection | None = None,
        context7_api_key: str | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.model_selection = (
            model_selection if model_selection is not None else RuntimeModelSelection.from_settings(self.settings)
        )
        self.model_factory = model_factory if model_factory is not None else _default_model_factory
        self.context7_api_key = context7_api_key

    async def repository_outline(self, request: EvaluationRequest) -> str:
        """List the repository to ``outline_depth`` levels.

        Raises:
            SandboxError: If the sandbox cannot produce a listing.
        """
        depth = self.settings.outline_depth
        root = self.settings.workspace_root
        result = await request.sandbox.execute_command(f"tree -L {depth} -I node_modules", cwd=root)
        if result.exit_code != 0:
            request.log.info("tree unavailable (exit %d); falling back to find", result.exit_code)
            result = await request.sandbox.execute_command(
                f"find . -maxdepth {depth} -not -path '*/.git/*' -not -path '*/node_modules/*' | sort",
                cwd=root,
            )
        if result.exit_code != 0:
            raise SandboxError(f"Failed to get repository outline: {result.output.strip()[:500]}")
        return truncate(result.output.strip(), self.settings.outline_char_limit)

    async def run(self, request: EvaluationRequest, *, scope: ScopedRerun | None = None) -> EvaluationOutcome:
        """Run the loop to a terminal verdict.

        Raises:
            SandboxError: If the repository outline cannot be produced before the loop starts.
        """
        profile = self.model_selection.resolve(
            "evaluation",
            model_override=request.model_id,
            max_steps_override=request.max_steps,
        )
        log = request.log
        log.info("Evaluating story '%s' with %s (max %d steps)", request.story.name, profile.model, profile.max_steps)

        outline = await self.repository_outline(request)
        toolbox = Toolbox(
            request.sandbox,
            workspace_root=self.settings.workspace_root,
            command_timeout=self.settings.command_timeout,
            observation_char_limit=self.settings.observation_char_limit,
            context7_api_key=self.context7_api_key,
            log=log,
        )
        model = self.model_factory(profile.model)
        bound_model = model.bind_tools(toolbox.as_langchain_tools())
        loop = _ToolLoop(
            request=request,
            bound_model=bound_model,
            toolbox=toolbox,
            max_steps=profile.max_steps,
            max_tool_calls_per_step=self.settings.max_tool_calls_per_step,
            settings=self.settings,
        )
        messages: list[BaseMessage] = [
            SystemMessage(content=build_instructions(outline=outline, step_plan=request.step_plan, scope=scope)),
            HumanMessage(content=build_prompt(request.story, request.repo, request.run_id)),
        ]
        outcome = await loop.run(messages)
        log.info(
            "Evaluation finished: status=%s reason=%s steps=%d tool_calls=%d",
            outcome.analysis.status.value,
            outcome.finish_reason.value,
            outcome.metrics.steps,
            outcome.metrics.tool_calls,
        )
        return outcome


def _default_model_factory(model_id: str) -> Any:
    return get_chat_model(model_name=model_id)
