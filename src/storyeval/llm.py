from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class SupportsAsyncInvoke(Protocol):
    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Schema-bound runnable whose replies are validated before they are returned."""

    schema: type[ModelT]
    runnable: SupportsAsyncInvoke

    async def ainvoke(self, prompt: Any) -> ModelT:
        """Send ``prompt`` (text or a message list) and validate the reply.

        Raises:
            RuntimeError: If the reply is missing, unparseable or fails validation.
        """
        raw_output = await self.runnable.ainvoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when it exists.

    Raises:
        RuntimeError: If the key is still unset.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to run story evaluations")
    return key


def get_chat_model(
    *,
    model_name: str,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Chat model for the evaluation and decomposition agents.

    Temperature is left at the provider default; reasoning models such as
    ``gpt-5-mini`` reject explicit values.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    model_name = model_name.strip()
    if not model_name:
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    logger.debug("Creating chat model %s (timeout=%ss, retries=%d)", model_name, timeout, max_retries)
    return ChatOpenAI(model=model_name, timeout=timeout, max_retries=max_retries)


def content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM message content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                if item.get("type") in {"reasoning", "tool_use", "function_call"}:
                    continue
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                elif item.get("content") is not None:
                    chunks.append(content_to_text(item["content"]))
            else:
                chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from model text output.

    Attempts parsing in order: direct JSON, fenced code block, first/last brace extraction.

    Raises:
        RuntimeError: If no valid JSON object can be extracted from the text.
    """
    body = text.strip()
    if not body:
        raise RuntimeError("Model returned empty output; expected JSON object")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        try:
            payload = json.loads(fenced.group(1))
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Failed to parse fenced JSON payload: {exc}") from exc
        if isinstance(payload, dict):
            return payload

    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            payload = json.loads(body[start : end + 1])
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Failed to parse extracted JSON payload: {exc}") from exc
        if isinstance(payload, dict):
            return payload

    preview = body[:220].replace("\n", " ")
    raise RuntimeError(f"Model output did not contain a JSON object: {preview}")


def _summarize_validation_error(exc: ValidationError, limit: int = 5) -> str:
    """Render the first few validation errors as ``field.path: message`` lines."""
    problems = [
        f"{'.'.join(str(part) for part in error['loc']) or '(root)'}: {error['msg']}"
        for error in exc.errors()[:limit]
    ]
    remaining = exc.error_count() - len(problems)
    if remaining > 0:
        problems.append(f"... and {remaining} more")
    return "; ".join(problems)


def _unwrap_include_raw(raw_output: Any, schema_name: str) -> Any:
    if not (isinstance(raw_output, dict) and "parsed" in raw_output and "parsing_error" in raw_output):
        return raw_output
    parsing_error = raw_output.get("parsing_error")
    if parsing_error is not None:
        raise RuntimeError(f"{schema_name} could not be parsed: {parsing_error}") from parsing_error
    if raw_output.get("parsed") is None:
        raise RuntimeError(f"{schema_name} was not returned by the model")
    return raw_output["parsed"]


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Validate model output against ``schema``.

    Accepts a schema instance, another pydantic model, a dict, text holding a
    JSON object, or the ``include_raw=True`` envelope around any of these.

    Raises:
        RuntimeError: If nothing parseable was returned or validation fails.
            The message lists the offending fields.
    """
    payload = _unwrap_include_raw(raw_output, schema.__name__)
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, str):
        payload = extract_json_payload(payload)
    elif not isinstance(payload, dict):
        raise RuntimeError(f"{schema.__name__} expected a JSON object, got {type(payload).__name__}")

    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"{schema.__name__} is invalid: {_summarize_validation_error(exc)}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Chat model bound to ``schema`` through tool calling, wrapped for validation.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    model = get_chat_model(model_name=model_name, timeout=timeout, max_retries=max_retries, repo_root=repo_root)
    runnable = model.with_structured_output(schema, method="function_calling", include_raw=True)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
