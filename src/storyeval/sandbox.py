"""Sandbox capability surface consumed by the tool adapters.

A sandbox is a stateful execution environment with the target repository
cloned at ``workspace_root`` (relative to the sandbox home). Only one
evaluation may use a sandbox at a time.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import shlex
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str


class SandboxError(RuntimeError):
    """The sandbox could not execute a request. Aborts the tool loop."""

    fatal: ClassVar[bool] = True


class SandboxUnavailableError(SandboxError):
    """The sandbox is unreachable, deleted, or refused the request."""


class SandboxTimeoutError(SandboxError):
    """A command exceeded its execution timeout."""


class SandboxFileNotFoundError(SandboxError):
    """A requested file does not exist. The model can recover from this."""

    fatal: ClassVar[bool] = False


class PathContainmentError(ValueError):
    """A path, or the symlink it names, resolves outside the workspace. Recoverable."""


@runtime_checkable
class Sandbox(Protocol):
    """Remote execution environment holding a cloned repository."""

    @property
    def id(self) -> str: ...

    async def execute_command(self, command: str, cwd: str | None = None, timeout: int | None = None) -> CommandResult:
        ...

    async def download_file(self, path: str) -> bytes:
        ...


def resolve_workspace_path(path: str, workspace_root: str) -> str:
    """Resolve a model-supplied path to a sandbox path inside ``workspace_root``.

    Paths may be repository-relative or already carry the workspace prefix.
    The joined path is POSIX-normalized before the prefix comparison, so
    ``..`` segments cannot climb out of the root under either spelling.

    Args:
        path: Path as supplied by the model.
        workspace_root: Repository root inside the sandbox, e.g. ``workspace/repo``.

    Returns:
        The normalized sandbox path of the file.

    Raises:
        PathContainmentError: If the path is empty or resolves outside the root.
    """
    root = posixpath.normpath(workspace_root.strip())
    candidate = path.strip().replace("\\", "/")
    if not candidate:
        raise PathContainmentError("path must be non-empty")

    relative_root = root.lstrip("/")
    for prefix in (f"{root}/", f"/{relative_root}/"):
        if candidate.startswith(prefix):
            candidate = candidate[len(prefix):]
            break
    if posixpath.isabs(candidate) and not posixpath.isabs(root):
        raise PathContainmentError(f"Path '{path}' is outside the repository workspace ({root})")

    resolved = posixpath.normpath(posixpath.join(root, candidate))
    if not resolved.startswith(root.rstrip("/") + "/"):
        raise PathContainmentError(f"Path '{path}' is outside the repository workspace ({root})")
    return resolved


class LocalWorkspaceSandbox:
    """Sandbox backed by a local temporary directory and subprocesses.

    Intended for local runs and CI jobs that already provide isolation. Commands
    run through the system shell with the sandbox home as the base directory.
    """

    def __init__(self, home: Path, *, sandbox_id: str | None = None, default_timeout: int = 120) -> None:
        self.home = home
        self._id = sandbox_id or f"local-{uuid.uuid4().hex[:12]}"
        self.default_timeout = default_timeout

    @property
    def id(self) -> str:
        return self._id

    @classmethod
    def create(cls, *, base_dir: Path | None = None, default_timeout: int = 120) -> "LocalWorkspaceSandbox":
        home = Path(tempfile.mkdtemp(prefix="storyeval-", dir=str(base_dir) if base_dir is not None else None))
        sandbox = cls(home, default_timeout=default_timeout)
        logger.info("Created local sandbox %s at %s", sandbox.id, home)
        return sandbox

    def _host_path(self, path: str) -> Path:
        """Map a sandbox path to the host, following symlinks.

        Raises:
            PathContainmentError: If the resolved path leaves the sandbox home.
        """
        host = (self.home / path.lstrip("/")).resolve() if not Path(path).is_absolute() else Path(path).resolve()
        home = self.home.resolve()
        if host != home and home not in host.parents:
            raise PathContainmentError(f"Path '{path}' resolves outside sandbox {self.id}")
        return host

    async def execute_command(self, command: str, cwd: str | None = None, timeout: int | None = None) -> CommandResult:
        workdir = self._host_path(cwd) if cwd else self.home
        if not workdir.is_dir():
            raise SandboxUnavailableError(f"Working directory '{cwd}' does not exist in sandbox {self.id}")
        limit = timeout if timeout is not None else self.default_timeout
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(workdir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise SandboxUnavailableError(f"Sandbox {self.id} could not start command: {exc}") from exc
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise SandboxTimeoutError(f"Command timed out after {limit}s in sandbox {self.id}: {command}") from exc
        return CommandResult(exit_code=process.returncode or 0, output=stdout.decode("utf-8", errors="replace"))

    async def download_file(self, path: str) -> bytes:
        host = self._host_path(path)
        if not host.is_file():
            raise SandboxFileNotFoundError(f"File not found: {path}")
        try:
            return await asyncio.to_thread(host.read_bytes)
        except PermissionError as exc:
            raise SandboxUnavailableError(f"Permission denied reading {path} in sandbox {self.id}") from exc

    async def clone(
        self,
        url: str,
        path: str,
        *,
        branch: str | None = None,
        commit_sha: str | None = None,
    ) -> None:
        """Clone ``url`` into ``path`` and optionally pin it to ``commit_sha``.

        Raises:
            SandboxError: If git reports a failure.
        """
        target = self._host_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        branch_args = f"--branch {shlex.quote(branch)} " if branch else ""
        result = await self.execute_command(
            f"git clone --quiet {branch_args}{shlex.quote(url)} {shlex.quote(str(target))}",
            timeout=max(self.default_timeout, 600),
        )
        if result.exit_code != 0:
            raise SandboxError(f"git clone of {url} failed (exit {result.exit_code}): {result.output.strip()}")
        if commit_sha:
            result = await self.execute_command(
                f"git checkout --quiet {shlex.quote(commit_sha)}",
                cwd=path,
            )
            if result.exit_code != 0:
                raise SandboxError(f"git checkout {commit_sha} failed: {result.output.strip()}")
        logger.info("Cloned %s into sandbox %s at %s", url, self.id, path)

    def delete(self) -> None:
        if self.home.exists():
            shutil.rmtree(self.home)
            logger.info("Deleted local sandbox %s", self.id)
