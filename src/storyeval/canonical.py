from __future__ import annotations

import dataclasses
import hashlib
import re
from datetime import datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))
_WHITESPACE_RE = re.compile(r"\s+")


def _to_jcs_value(value: Any) -> Any:
    """Convert models, records and enums into values ``rfc8785.dumps`` accepts.

    Raises:
        TypeError: For anything without a JSON form (bytes, sets, arbitrary objects).
    """
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, Enum):
        return _to_jcs_value(value.value)
    if isinstance(value, BaseModel):
        return _to_jcs_value(value.model_dump(mode="json", exclude_none=True))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {field.name: _to_jcs_value(getattr(value, field.name)) for field in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(key): _to_jcs_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jcs_value(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} has no canonical JSON form")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` as RFC 8785 canonical JSON.

    Raises:
        TypeError: If ``value`` holds an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the converted value.
    """
    return rfc8785.dumps(_to_jcs_value(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """SHA-256 of the canonical JSON form; insensitive to key and field order."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def _collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def story_fingerprint(name: str, text: str) -> str:
    """Fingerprint of the story wording that cached evidence was verified against.

    Reflowing the text does not change it; any edit to the words does.
    """
    return fingerprint({"name": _collapse_whitespace(name), "text": _collapse_whitespace(text)})
