from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

from pydantic import BaseModel, ValidationError

from .models import CacheEntry, StoryTestResultPayload

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"


@contextmanager
def _exclusive_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on ``<path>.lock`` while the block runs.

    The sidecar lock survives ``os.replace`` of the document itself.
    """
    lock_path = path.with_name(path.name + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _replace_document(path: Path, content: str) -> None:
    """Write ``content`` next to ``path`` and swap it in with ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, staging = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staging, path)
    except BaseException:
        Path(staging).unlink(missing_ok=True)
        raise


def _read_document(path: Path, kind: str) -> str:
    """Return the text of a stored document.

    Raises:
        FileNotFoundError: If there is no document at ``path``.
        ValueError: If the document is blank or not UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{kind} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{kind} {path} is not valid UTF-8") from exc
    if not text.strip():
        raise ValueError(f"{kind} {path} is blank")
    return text


def _dump(model: BaseModel) -> str:
    return json.dumps(model.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"


def sanitize_path_component(value: str, *, label: str = "identifier") -> str:
    """Sanitize an identifier for use as a filesystem path component.

    Raises:
        ValueError: If the value is empty or contains no safe characters.
    """
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{label} must be non-empty")
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", cleaned).strip("-.")
    if not cleaned:
        raise ValueError(f"{label} contains no filesystem-safe characters")
    return cleaned[:128]


class CacheStore(Protocol):
    def get(self, story_id: str, commit_sha: str) -> CacheEntry | None: ...

    def put(self, entry: CacheEntry) -> None: ...


class EvidenceCacheStore:
    """One JSON document per (story, commit) under ``<root>/cache``.

    Writes are last-writer-wins; the lock only keeps a reader from seeing a
    half-replaced file on filesystems without atomic rename.
    """

    def __init__(self, root: Path) -> None:
        self.root = root / "cache"
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, story_id: str, commit_sha: str) -> Path:
        return (
            self.root
            / sanitize_path_component(story_id, label="story_id")
            / f"{sanitize_path_component(commit_sha, label='commit_sha')}.json"
        )

    def get(self, story_id: str, commit_sha: str) -> CacheEntry | None:
        """Return the cached entry, or None when nothing was stored.

        Raises:
            ValueError: If a stored entry exists but cannot be read or validated.
        """
        path = self.path_for(story_id, commit_sha)
        if not path.is_file():
            return None
        with _exclusive_lock(path):
            text = _read_document(path, "cache entry")
        try:
            return CacheEntry.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"cache entry at {path} failed validation: {exc}") from exc

    def put(self, entry: CacheEntry) -> None:
        path = self.path_for(entry.story_id, entry.commit_sha)
        with _exclusive_lock(path):
            _replace_document(path, _dump(entry))
        logger.debug("Wrote cache entry %s to %s", entry.id, path)

    def delete(self, story_id: str, commit_sha: str) -> bool:
        path = self.path_for(story_id, commit_sha)
        with _exclusive_lock(path):
            if not path.is_file():
                return False
            path.unlink()
        return True

    def list_commits(self, story_id: str) -> list[str]:
        story_dir = self.root / sanitize_path_component(story_id, label="story_id")
        if not story_dir.is_dir():
            return []
        return sorted(path.stem for path in story_dir.glob("*.json"))


class StoryTestResultRecord(BaseModel):
    id: str
    story_id: str
    run_id: str | None = None
    result: StoryTestResultPayload


class ResultGateway(Protocol):
    def create_running(self, *, story_id: str, run_id: str | None, payload: StoryTestResultPayload) -> str: ...

    def update(self, result_id: str, payload: StoryTestResultPayload) -> None: ...


class StoryResultStore:
    """File-backed story test result rows under ``<root>/results``."""

    def __init__(self, root: Path) -> None:
        self.root = root / "results"
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, result_id: str) -> Path:
        return self.root / f"{sanitize_path_component(result_id, label='result_id')}.json"

    def create_running(self, *, story_id: str, run_id: str | None, payload: StoryTestResultPayload) -> str:
        """Insert a placeholder row and return its id.

        Raises:
            ValueError: If the payload is not a running placeholder.
        """
        if payload.status.is_terminal:
            raise ValueError(f"placeholder rows must be running, got: {payload.status.value}")
        result_id = f"STR-{uuid.uuid4().hex[:16]}"
        record = StoryTestResultRecord(id=result_id, story_id=story_id, run_id=run_id, result=payload)
        path = self.path_for(result_id)
        with _exclusive_lock(path):
            _replace_document(path, _dump(record))
        return result_id

    def read(self, result_id: str) -> StoryTestResultRecord:
        path = self.path_for(result_id)
        text = _read_document(path, "story test result")
        try:
            return StoryTestResultRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"story test result at {path} failed validation: {exc}") from exc

    def update(self, result_id: str, payload: StoryTestResultPayload) -> None:
        """Replace the payload of an existing row in place.

        Raises:
            FileNotFoundError: If no row with ``result_id`` exists.
        """
        path = self.path_for(result_id)
        with _exclusive_lock(path):
            record = StoryTestResultRecord.model_validate_json(_read_document(path, "story test result"))
            _replace_document(path, _dump(record.model_copy(update={"result": payload})))

    def list_for_story(self, story_id: str) -> list[StoryTestResultRecord]:
        records: list[StoryTestResultRecord] = []
        for path in sorted(self.root.glob("*.json")):
            record = StoryTestResultRecord.model_validate_json(_read_document(path, "story test result"))
            if record.story_id == story_id:
                records.append(record)
        records.sort(key=lambda record: record.result.started_at)
        return records
