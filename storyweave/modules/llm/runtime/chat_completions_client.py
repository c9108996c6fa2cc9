from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Literal, TypedDict

import httpx
from pydantic import BaseModel, ConfigDict, Field

from storyweave.config import settings
from storyweave.modules.llm.runtime.errors import (
    ERROR_EMPTY_RESPONSE,
    ERROR_INVALID_JSON,
    ERROR_NETWORK,
    ERROR_TIMEOUT,
    GenerationError,
    http_error_code,
    is_retryable_status,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


class ChatCompletionMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class StageRequest(BaseModel):
    """Envelope for one generation-stage call."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    model: str = Field(min_length=1)
    temperature: float = 0.8
    max_tokens: int = Field(default=8192, gt=0)
    messages: list[dict[str, str]] = Field(default_factory=list)
    response_format: dict | None = None
    api_key: str = ""


@dataclass(frozen=True, slots=True)
class ErrorDetails:
    message: str
    raw_body: str
    parsed_error: dict | None = None


@dataclass(frozen=True, slots=True)
class ParsedMessage:
    parsed: dict | list
    raw_text: str


def _truncate(value: str, limit: int = 200) -> str:
    return value if len(value) <= limit else f"{value[:limit]}..."


def _normalize_messages(messages: list[dict[str, str]]) -> list[ChatCompletionMessage]:
    normalized_messages: list[ChatCompletionMessage] = []
    for item in messages:
        if not isinstance(item, dict):
            continue
        role = str(item.get("role") or "").strip().lower()
        content = str(item.get("content") or "")
        if role not in {"system", "user", "assistant"}:
            continue
        normalized_messages.append({"role": role, "content": content})
    return normalized_messages


def build_chat_completion_payload(request: StageRequest) -> dict:
    payload: dict = {
        "model": request.model,
        "messages": _normalize_messages(request.messages),
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
    }
    if request.response_format is not None:
        payload["response_format"] = request.response_format
    return payload


def build_headers(api_key: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
        "HTTP-Referer": settings.llm_referer,
        "X-Title": settings.llm_app_title,
    }


def read_error_details(response: httpx.Response) -> ErrorDetails:
    fallback = f"Generation request failed with status {response.status_code}"
    try:
        raw_body = response.text or ""
    except Exception:  # noqa: BLE001
        return ErrorDetails(message=fallback, raw_body="")
    if not raw_body:
        return ErrorDetails(message=fallback, raw_body="")

    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return ErrorDetails(message=raw_body, raw_body=raw_body)

    error = parsed.get("error") if isinstance(parsed, dict) else None
    if not isinstance(error, dict):
        return ErrorDetails(message=raw_body, raw_body=raw_body)
    parsed_error = {"code": error.get("code"), "message": error.get("message")}
    message = error.get("message")
    return ErrorDetails(
        message=str(message) if message else raw_body,
        raw_body=raw_body,
        parsed_error=parsed_error,
    )


def classify_http_error(response: httpx.Response, *, model: str) -> GenerationError:
    details = read_error_details(response)
    status = response.status_code
    return GenerationError(
        details.message,
        code=http_error_code(status),
        retryable=is_retryable_status(status),
        context={
            "httpStatus": status,
            "model": model,
            "rawErrorBody": details.raw_body,
            "parsedError": details.parsed_error,
        },
    )


async def post_chat_completions(request: StageRequest) -> dict:
    timeout = httpx.Timeout(
        timeout=settings.llm_timeout_s,
        connect=settings.llm_connect_timeout_s,
        read=settings.llm_read_timeout_s,
    )
    payload = build_chat_completion_payload(request)
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                settings.llm_api_url,
                headers=build_headers(request.api_key or settings.llm_api_key),
                json=payload,
            )
    except httpx.TimeoutException as exc:
        raise GenerationError(
            f"Generation request timed out: {exc}",
            code=ERROR_TIMEOUT,
            retryable=True,
            context={"model": request.model},
        ) from exc
    except httpx.HTTPError as exc:
        raise GenerationError(
            f"Generation request failed: {exc}",
            code=ERROR_NETWORK,
            retryable=True,
            context={"model": request.model},
        ) from exc

    if response.status_code < 200 or response.status_code >= 300:
        error = classify_http_error(response, model=request.model)
        logger.error("generation endpoint error [%s]: %s", response.status_code, error.message)
        raise error

    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise GenerationError(
            "Invalid JSON response body",
            code=ERROR_INVALID_JSON,
            retryable=True,
            context={"parseStage": "response_body", "model": request.model},
        ) from exc
    if not isinstance(body, dict):
        raise GenerationError(
            "Invalid JSON response body",
            code=ERROR_INVALID_JSON,
            retryable=True,
            context={"parseStage": "response_body", "model": request.model},
        )
    return body


def extract_message_content(response_payload: dict) -> object:
    try:
        choices = response_payload["choices"]
        if not isinstance(choices, list) or not choices:
            raise KeyError("choices")
        first_choice = choices[0]
        if not isinstance(first_choice, dict):
            raise KeyError("choices[0]")
        message = first_choice["message"]
        if not isinstance(message, dict):
            raise KeyError("message")
        content = message.get("content")
    except Exception as exc:  # noqa: BLE001
        raise GenerationError("Empty response from generation endpoint", code=ERROR_EMPTY_RESPONSE, retryable=True) from exc
    if content is None or (isinstance(content, (str, list, dict)) and not content):
        raise GenerationError("Empty response from generation endpoint", code=ERROR_EMPTY_RESPONSE, retryable=True)
    if isinstance(content, str) and not content.strip():
        raise GenerationError("Empty response from generation endpoint", code=ERROR_EMPTY_RESPONSE, retryable=True)
    return content


def normalize_message_content(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                text = part
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                text = part["text"]
            elif isinstance(part, dict) and isinstance(part.get("content"), str):
                text = part["content"]
            else:
                text = ""
            if text.strip():
                parts.append(text)
        if parts:
            return "\n".join(parts)
    if isinstance(content, (dict, list)):
        return json.dumps(content, ensure_ascii=False)
    return str(content)


def strip_code_fence(text: str) -> str:
    match = _FENCE_RE.match(text.strip())
    if match and match.group(1):
        return match.group(1).strip()
    return text


def extract_json_substring(text: str) -> str | None:
    trimmed = text.strip()
    starts = [index for index in (trimmed.find("{"), trimmed.find("[")) if index >= 0]
    if not starts:
        return None
    start = min(starts)
    end = trimmed.rfind("]" if trimmed[start] == "[" else "}")
    if end <= start:
        return None
    return trimmed[start : end + 1].strip()


def _append_missing_closers(text: str) -> str | None:
    expected: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            expected.append("}")
        elif char == "[":
            expected.append("]")
        elif char in "}]":
            if not expected or expected.pop() != char:
                return None
    if in_string or escaped:
        return None
    return text + "".join(reversed(expected))


def repair_json(text: str) -> str | None:
    trimmed = text.strip()
    if not trimmed:
        return None
    base = strip_code_fence(trimmed)
    extracted = extract_json_substring(base) or base
    return _append_missing_closers(_TRAILING_COMMA_RE.sub(r"\1", extracted))


def parse_json_with_fallbacks(text: str) -> dict | list | None:
    stripped = strip_code_fence(text)
    candidates: list[str] = []
    for candidate in (text, stripped, extract_json_substring(stripped) or "", repair_json(text) or ""):
        if candidate.strip() and candidate not in candidates:
            candidates.append(candidate)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, (dict, list)):
            return parsed
    return None


def parse_message_json_content(content: object) -> ParsedMessage:
    if isinstance(content, dict):
        return ParsedMessage(parsed=content, raw_text=json.dumps(content, ensure_ascii=False))

    raw_text = normalize_message_content(content)
    parsed = parse_json_with_fallbacks(raw_text)
    if parsed is not None:
        return ParsedMessage(parsed=parsed, raw_text=raw_text)

    raise GenerationError(
        "Invalid JSON response from generation endpoint",
        code=ERROR_INVALID_JSON,
        retryable=True,
        context={
            "parseStage": "message_content",
            "contentShape": type(content).__name__,
            "contentPreview": _truncate(raw_text.strip()),
            "rawContent": raw_text,
        },
    )


__all__ = [
    "ChatCompletionMessage",
    "StageRequest",
    "ErrorDetails",
    "ParsedMessage",
    "build_chat_completion_payload",
    "build_headers",
    "read_error_details",
    "classify_http_error",
    "post_chat_completions",
    "extract_message_content",
    "normalize_message_content",
    "strip_code_fence",
    "extract_json_substring",
    "repair_json",
    "parse_json_with_fallbacks",
    "parse_message_json_content",
]
