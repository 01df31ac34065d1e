from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest
from langchain_core.messages import AIMessage

from storyeval.models import RepoIdentity, Story
from storyeval.sandbox import CommandResult, SandboxFileNotFoundError
from storyeval.settings import RuntimeSettings

WORKSPACE_ROOT = "workspace/repo"


class FakeSandbox:
    """In-memory sandbox: files keyed by repository-relative path, scripted commands."""

    def __init__(
        self,
        files: dict[str, str | bytes] | None = None,
        *,
        handler: Callable[[str], CommandResult] | None = None,
        sandbox_id: str = "sbx-test",
    ) -> None:
        self.files: dict[str, str | bytes] = dict(files or {})
        self.handler = handler
        self.download_error: Exception | None = None
        self.commands: list[str] = []
        self.downloads: list[str] = []
        self._id = sandbox_id

    @property
    def id(self) -> str:
        return self._id

    async def execute_command(self, command: str, cwd: str | None = None, timeout: int | None = None) -> CommandResult:
        self.commands.append(command)
        if self.handler is not None:
            return self.handler(command)
        if command.startswith("tree"):
            return CommandResult(exit_code=0, output="\n".join(sorted(self.files)))
        return CommandResult(exit_code=0, output="")

    async def download_file(self, path: str) -> bytes:
        self.downloads.append(path)
        if self.download_error is not None:
            raise self.download_error
        relative = path.removeprefix(f"{WORKSPACE_ROOT}/")
        if relative not in self.files:
            raise SandboxFileNotFoundError(f"File not found: {path}")
        content = self.files[relative]
        return content.encode("utf-8") if isinstance(content, str) else content


class ScriptedChatModel:
    """Chat model double that replays queued replies and records every call."""

    def __init__(self, replies: list[Any]) -> None:
        self.replies = list(replies)
        self.calls: list[list[Any]] = []
        self.bound_tools: list[str] = []

    def bind_tools(self, tools: list[Any]) -> "ScriptedChatModel":
        self.bound_tools = [tool.name for tool in tools]
        return self

    async def ainvoke(self, messages: list[Any]) -> Any:
        self.calls.append(list(messages))
        if not self.replies:
            raise AssertionError("model called more often than scripted")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def tool_call(name: str, args: dict[str, Any], call_id: str = "call_1", content: str = "") -> AIMessage:
    return AIMessage(content=content, tool_calls=[{"name": name, "args": args, "id": call_id}])


def answer(payload: dict[str, Any]) -> AIMessage:
    return AIMessage(content=json.dumps(payload))


def passing_payload(path: str = "src/app.py", line: int = 3) -> dict[str, Any]:
    return {
        "status": "pass",
        "explanation": "The login form posts to the session endpoint.",
        "evidence": [{"file_path": path, "start_line": line, "end_line": line, "conclusion": "pass"}],
    }


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(max_steps=5, workspace_root=WORKSPACE_ROOT).normalized()


@pytest.fixture
def repo() -> RepoIdentity:
    return RepoIdentity(id="repo-1", slug="acme/shop")


@pytest.fixture
def story() -> Story:
    return Story(
        id="story-1",
        name="User can log in",
        text="A user enters email and password and lands on the dashboard.",
        repo_id="repo-1",
        commit_sha="abc123",
    )


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox(
        {
            "src/app.py": "import auth\n\ndef login(email, password):\n    return auth.session(email, password)\n",
            "src/auth.py": "def session(email, password):\n    return {'email': email}\n",
        }
    )
