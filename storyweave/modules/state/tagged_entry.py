"""Category-tagged state entries.

Threats, constraints and open threads travel through generation stages and
persisted pages as ``"<CATEGORY>_<suffix>: <description>"`` strings. This
module decodes them into an explicit variant (:class:`TaggedStateEntry`) and
encodes them back without changing the wire form, so older pages stay
readable.

The prefix (``THREAT_3``) is the identity used for removal. ``entry_id`` is a
stable identifier derived from the category and prefix only, so it never
changes when the description is reworded.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from storyweave.modules.state.diagnostics import (
    MALFORMED_TAGGED_ENTRY,
    REMOVAL_DESCRIPTION_IGNORED,
    UNKNOWN_CATEGORY,
    DiagnosticsCollector,
    warn_into,
)

_ENTRY_ID_NAMESPACE = uuid.UUID("6f1c1f1e-5b8e-4a57-9a43-5d0c3b7f2a10")
_PREFIX_RE = re.compile(r"^(THREAT|CONSTRAINT|THREAD)_(\S+)$")


class StateCategory(str, Enum):
    THREAT = "THREAT"
    CONSTRAINT = "CONSTRAINT"
    THREAD = "THREAD"

    @property
    def id_prefix(self) -> str:
        return _CATEGORY_ID_PREFIX[self]


_CATEGORY_ID_PREFIX = {
    StateCategory.THREAT: "th",
    StateCategory.CONSTRAINT: "cn",
    StateCategory.THREAD: "td",
}


class ThreatType(str, Enum):
    HOSTILE_AGENT = "HOSTILE_AGENT"
    ENVIRONMENTAL = "ENVIRONMENTAL"
    CREATURE = "CREATURE"
    AMBUSH = "AMBUSH"


class ConstraintType(str, Enum):
    PHYSICAL = "PHYSICAL"
    ENVIRONMENTAL = "ENVIRONMENTAL"
    TEMPORAL = "TEMPORAL"


class ThreadType(str, Enum):
    MYSTERY = "MYSTERY"
    QUEST = "QUEST"
    RELATIONSHIP = "RELATIONSHIP"
    DANGER = "DANGER"
    INFORMATION = "INFORMATION"
    RESOURCE = "RESOURCE"
    MORAL = "MORAL"


class Urgency(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


def _is_member(enum_cls: type[Enum], value: object) -> bool:
    return isinstance(value, str) and value in enum_cls._value2member_map_


def is_threat_type(value: object) -> bool:
    return _is_member(ThreatType, value)


def is_constraint_type(value: object) -> bool:
    return _is_member(ConstraintType, value)


def is_thread_type(value: object) -> bool:
    return _is_member(ThreadType, value)


def is_urgency(value: object) -> bool:
    return _is_member(Urgency, value)


def make_entry_id(category: StateCategory, prefix: str) -> str:
    digest = uuid.uuid5(_ENTRY_ID_NAMESPACE, f"{category.value}:{prefix}").hex[:12]
    return f"{category.id_prefix}-{digest}"


@dataclass(frozen=True, slots=True)
class TaggedStateEntry:
    category: StateCategory
    prefix: str
    description: str
    raw: str
    entry_id: str

    @property
    def suffix(self) -> str:
        return self.prefix.split("_", 1)[1]

    def matches(self, key: str) -> bool:
        return key == self.prefix or key == self.entry_id

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.entry_id,
            "category": self.category.value,
            "prefix": self.prefix,
            "description": self.description,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, payload: object) -> TaggedStateEntry | None:
        # Older pages stored the bare wire string.
        if isinstance(payload, str):
            return parse_tagged_entry(payload)
        if not isinstance(payload, dict):
            return None
        raw = str(payload.get("raw") or "").strip()
        if not raw:
            prefix = str(payload.get("prefix") or "").strip()
            description = str(payload.get("description") or "").strip()
            raw = f"{prefix}: {description}" if prefix else ""
        return parse_tagged_entry(raw)


def _category_of(prefix: str) -> StateCategory | None:
    match = _PREFIX_RE.match(prefix)
    if match is None:
        return None
    return StateCategory(match.group(1))


def category_of_prefix(prefix: str) -> StateCategory | None:
    return _category_of(str(prefix or "").strip())


def parse_tagged_entry(
    raw: object,
    diagnostics: DiagnosticsCollector | None = None,
    *,
    field: str = "taggedEntry",
) -> TaggedStateEntry | None:
    text = str(raw or "").strip()
    separator = text.find(":")
    if separator < 0:
        warn_into(diagnostics, MALFORMED_TAGGED_ENTRY, field, f'Tagged entry has no ":" separator: "{text}"')
        return None

    prefix = text[:separator].strip()
    description = text[separator + 1 :].strip()
    category = _category_of(prefix)
    if category is None:
        warn_into(diagnostics, UNKNOWN_CATEGORY, field, f'Tagged entry prefix "{prefix}" is not a known category.')
        return None
    if not description:
        warn_into(diagnostics, MALFORMED_TAGGED_ENTRY, field, f'Tagged entry "{prefix}" has an empty description.')
        return None

    return TaggedStateEntry(
        category=category,
        prefix=prefix,
        description=description,
        raw=text,
        entry_id=make_entry_id(category, prefix),
    )


def encode_tagged_entry(category: StateCategory, suffix: object, description: str) -> str:
    suffix_text = str(suffix).strip()
    if not suffix_text or any(ch.isspace() for ch in suffix_text):
        raise ValueError(f"invalid tagged entry suffix: {suffix!r}")
    return f"{category.value}_{suffix_text}: {str(description).strip()}"


def extract_prefix_from_removal(
    removal: object,
    diagnostics: DiagnosticsCollector | None = None,
    *,
    field: str = "removal",
) -> str | None:
    text = str(removal or "").strip()
    if not text:
        return None
    separator = text.find(":")
    if separator < 0:
        return text
    prefix = text[:separator].strip()
    if not prefix:
        return None
    warn_into(
        diagnostics,
        REMOVAL_DESCRIPTION_IGNORED,
        field,
        f'Removal "{text}" carries a description; only prefix "{prefix}" is used.',
    )
    return prefix


def next_prefix_number(category: StateCategory, prefixes: Iterable[str]) -> int:
    highest = 0
    for prefix in prefixes:
        match = _PREFIX_RE.match(str(prefix or ""))
        if match is None or match.group(1) != category.value:
            continue
        suffix = match.group(2)
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest + 1


__all__ = [
    "StateCategory",
    "ThreatType",
    "ConstraintType",
    "ThreadType",
    "Urgency",
    "TaggedStateEntry",
    "is_threat_type",
    "is_constraint_type",
    "is_thread_type",
    "is_urgency",
    "make_entry_id",
    "category_of_prefix",
    "parse_tagged_entry",
    "encode_tagged_entry",
    "extract_prefix_from_removal",
    "next_prefix_number",
]
