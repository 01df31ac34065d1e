"""Entry point for `python -m storyeval` and the `storyeval` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any

from storyeval.cache import entry_files, get_cache_key
from storyeval.controller import ToolLoopController
from storyeval.decomposition import StoryDecomposer
from storyeval.evaluation import BatchItem, StoryEvaluator, evaluate_stories
from storyeval.models import AnalysisStatus, RepoIdentity, Story
from storyeval.sandbox import LocalWorkspaceSandbox
from storyeval.settings import RuntimeSettings
from storyeval.state_store import EvidenceCacheStore, StoryResultStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate user stories against a repository with an LLM tool loop")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--state-store",
        type=Path,
        default=None,
        help="Directory for the evidence cache and result rows (default: STORYEVAL_STATE_STORE_ROOT)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    evaluate = subparsers.add_parser("evaluate", help="Evaluate one or more stories against a repository")
    _add_story_arguments(evaluate)
    _add_repo_arguments(evaluate)
    evaluate.add_argument("--model", default=None, help="Model id override for the evaluation agent")
    evaluate.add_argument("--max-steps", type=int, default=None, help="Step budget override")
    evaluate.add_argument("--run-id", default=None, help="Run identifier recorded with results (default: random)")
    evaluate.add_argument("--no-cache", action="store_true", help="Skip the evidence cache")
    evaluate.add_argument("--persist", action="store_true", help="Write a result row per story to the state store")
    evaluate.add_argument(
        "--decompose",
        action="store_true",
        help="Split each story into steps first and use them as the evaluation step plan",
    )

    decompose = subparsers.add_parser("decompose", help="Split a story into verifiable steps")
    _add_story_arguments(decompose)
    decompose.add_argument("--model", default=None, help="Model id override for the decomposition agent")

    status = subparsers.add_parser("cache-status", help="Show, and optionally validate, a cached verdict")
    status.add_argument("--story-id", required=True, help="Story identifier")
    status.add_argument("--commit", required=True, help="Commit SHA the verdict was cached for")
    status.add_argument("--story-file", type=Path, default=None, help="Story JSON; also checks for wording changes")
    _add_repo_arguments(status, required=False, with_commit=False)
    return parser.parse_args(argv)


def _add_story_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--story-file",
        type=Path,
        default=None,
        help="JSON file with a story object or a list of {id, name, text} objects",
    )
    parser.add_argument("--story-text", default=None, help="Inline story text (mutually exclusive with story file)")
    parser.add_argument("--story-name", default="Story", help="Name for an inline story")
    parser.add_argument("--story-id", default=None, help="Identifier for an inline story (default: random)")


def _add_repo_arguments(parser: argparse.ArgumentParser, *, required: bool = True, with_commit: bool = True) -> None:
    parser.add_argument("--repo-url", required=required, default=None, help="Git URL or local path of the repository")
    parser.add_argument("--repo-id", default=None, help="Repository identifier (default: derived from the URL)")
    parser.add_argument("--branch", default=None, help="Branch to check out")
    if with_commit:
        parser.add_argument("--commit", default=None, help="Commit SHA to check out and key the cache by")


def load_stories(
    *,
    story_file: Path | None,
    story_text: str | None,
    story_name: str,
    story_id: str | None,
    repo_id: str,
    branch: str | None = None,
    commit_sha: str | None = None,
) -> list[Story]:
    if story_text is not None and story_file is not None:
        raise ValueError("story_text cannot be combined with story_file input")

    if story_text is not None:
        trimmed = story_text.strip()
        if not trimmed:
            raise ValueError("story_text must be non-empty")
        return [
            Story(
                id=story_id or f"story-{uuid.uuid4().hex[:8]}",
                name=story_name.strip() or "Story",
                text=trimmed,
                repo_id=repo_id,
                branch_name=branch,
                commit_sha=commit_sha,
            )
        ]

    if story_file is None:
        raise ValueError("either story_file or story_text is required")
    if not story_file.is_file():
        raise FileNotFoundError(f"Story file does not exist: {story_file}")
    raw = json.loads(story_file.read_text(encoding="utf-8"))
    items = raw if isinstance(raw, list) else [raw]
    stories: list[Story] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not str(item.get("text", "")).strip():
            raise ValueError(f"Story #{index} in {story_file} must be an object with non-empty 'text'")
        stories.append(
            Story(
                id=str(item.get("id") or f"story-{index + 1}"),
                name=str(item.get("name") or f"Story {index + 1}"),
                text=str(item["text"]).strip(),
                repo_id=repo_id,
                branch_name=item.get("branch_name", branch),
                commit_sha=item.get("commit_sha", commit_sha),
            )
        )
    if not stories:
        raise ValueError(f"Story file contains no stories: {story_file}")
    return stories


def _repo_identity(repo_url: str | None, repo_id: str | None) -> RepoIdentity:
    slug = (repo_url or "local").rstrip("/").removesuffix(".git").rsplit("/", 1)[-1] or "repo"
    return RepoIdentity(id=repo_id or slug, slug=slug)


async def _resolve_commit(sandbox: LocalWorkspaceSandbox, workspace_root: str) -> str | None:
    result = await sandbox.execute_command("git rev-parse HEAD", cwd=workspace_root)
    if result.exit_code != 0:
        return None
    return result.output.strip() or None


def _item_to_json(item: BatchItem) -> dict[str, Any]:
    payload: dict[str, Any] = {"story_id": item.story_id, "analysis": item.analysis.model_dump(mode="json")}
    if item.result_id is not None:
        payload["result_id"] = item.result_id
    if item.error is not None:
        payload["error"] = item.error
    return payload


async def _run_evaluate(args: argparse.Namespace, settings: RuntimeSettings, state_root: Path) -> int:
    repo = _repo_identity(args.repo_url, args.repo_id)
    stories = load_stories(
        story_file=args.story_file,
        story_text=args.story_text,
        story_name=args.story_name,
        story_id=args.story_id,
        repo_id=repo.id,
        branch=args.branch,
        commit_sha=args.commit,
    )
    sandbox = LocalWorkspaceSandbox.create(default_timeout=settings.command_timeout)
    try:
        await sandbox.clone(args.repo_url, settings.workspace_root, branch=args.branch, commit_sha=args.commit)
        commit = args.commit or await _resolve_commit(sandbox, settings.workspace_root)
        step_plans: dict[str, list[str]] = {}
        if args.decompose:
            decomposer = StoryDecomposer(settings=settings)
            for story in stories:
                step_plans[story.id] = await decomposer.decompose(story)
                logging.info("Step plan for %s: %s", story.id, step_plans[story.id])
        if commit:
            stories = [replace(story, commit_sha=story.commit_sha or commit) for story in stories]
        evaluator = StoryEvaluator(
            settings=settings,
            controller=ToolLoopController(settings=settings, context7_api_key=os.getenv("CONTEXT7_API_KEY")),
            cache_store=None if args.no_cache else EvidenceCacheStore(state_root),
        )
        items = await evaluate_stories(
            stories,
            repo=repo,
            sandbox=sandbox,
            evaluator=evaluator,
            result_store=StoryResultStore(state_root) if args.persist else None,
            run_id=args.run_id or f"run-{uuid.uuid4().hex[:8]}",
            model_id=args.model,
            max_steps=args.max_steps,
            step_plans=step_plans,
        )
    finally:
        sandbox.delete()

    print(json.dumps([_item_to_json(item) for item in items], indent=2))
    return 1 if any(item.analysis.status is AnalysisStatus.ERROR for item in items) else 0


async def _run_decompose(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    stories = load_stories(
        story_file=args.story_file,
        story_text=args.story_text,
        story_name=args.story_name,
        story_id=args.story_id,
        repo_id="local",
    )
    decomposer = StoryDecomposer(settings=settings)
    output = []
    for story in stories:
        steps = await decomposer.decompose(story, model_id=args.model)
        output.append({"story_id": story.id, "steps": steps})
    print(json.dumps(output, indent=2))
    return 0


async def _run_cache_status(args: argparse.Namespace, settings: RuntimeSettings, state_root: Path) -> int:
    store = EvidenceCacheStore(state_root)
    entry = store.get(args.story_id, args.commit)
    key = get_cache_key(args.story_id, args.commit)
    if entry is None:
        print(json.dumps({"key": key, "cached": False}, indent=2))
        return 1

    report: dict[str, Any] = {
        "key": key,
        "cached": True,
        "status": entry.status.value,
        "updated_at": entry.updated_at.isoformat(),
        "steps": [step.index for step in entry.steps],
        "files": entry_files(entry),
    }
    if args.repo_url:
        story = None
        if args.story_file is not None:
            repo = _repo_identity(args.repo_url, args.repo_id)
            loaded = load_stories(
                story_file=args.story_file,
                story_text=None,
                story_name="Story",
                story_id=None,
                repo_id=repo.id,
            )
            story = next((item for item in loaded if item.id == args.story_id), None)
        evaluator = StoryEvaluator(settings=settings, cache_store=store)
        sandbox = LocalWorkspaceSandbox.create(default_timeout=settings.command_timeout)
        try:
            await sandbox.clone(args.repo_url, settings.workspace_root, branch=args.branch, commit_sha=args.commit)
            validation = await evaluator.lookup(args.story_id, args.commit, sandbox, story=story)
        finally:
            sandbox.delete()
        report["valid"] = validation.is_valid
        report["partial"] = validation.partial
        report["invalid_steps"] = validation.invalid_steps
    print(json.dumps(report, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1
    state_root = args.state_store if args.state_store is not None else settings.state_store_path(Path.cwd())

    try:
        if args.command == "evaluate":
            return asyncio.run(_run_evaluate(args, settings, state_root))
        if args.command == "decompose":
            return asyncio.run(_run_decompose(args, settings))
        return asyncio.run(_run_cache_status(args, settings, state_root))
    except (OSError, ValueError) as exc:
        logging.error("Unable to load input: %s", exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
