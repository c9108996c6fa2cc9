from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from typing import TypeVar

T = TypeVar("T")

_WHITESPACE_RE = re.compile(r"\s+")
_NAME_PUNCTUATION_RE = re.compile(r"[.,;:!?'\"]")


def normalize_intent_text(value: object) -> str:
    return _WHITESPACE_RE.sub(" ", str(value or "").strip())


def intent_comparison_key(value: object) -> str:
    """Case-folded match key. Never use it for display."""
    return normalize_intent_text(value).casefold()


def normalize_id(value: object) -> str:
    return str(value or "").strip()


def dedupe_by_key(values: Iterable[T], key_fn: Callable[[T], str]) -> list[T]:
    seen: set[str] = set()
    result: list[T] = []
    for value in values:
        key = key_fn(value)
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def normalize_text_intents(values: Iterable[object]) -> list[str]:
    normalized = [normalize_intent_text(value) for value in values]
    return dedupe_by_key([value for value in normalized if value], intent_comparison_key)


def normalize_character_name(name: object) -> str:
    """Canon key form: "Dr. Cohen" and "dr  cohen" both map to "dr cohen"."""
    lowered = str(name or "").lower()
    return _WHITESPACE_RE.sub(" ", _NAME_PUNCTUATION_RE.sub("", lowered)).strip()


__all__ = [
    "normalize_intent_text",
    "intent_comparison_key",
    "normalize_id",
    "dedupe_by_key",
    "normalize_text_intents",
    "normalize_character_name",
]
