from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from storyweave.modules.reconcile.text import (
    dedupe_by_key,
    intent_comparison_key,
    normalize_character_name,
    normalize_intent_text,
)
from storyweave.modules.state.diagnostics import UNMATCHED_REMOVAL, DiagnosticsCollector, warn_into

AccumulatedCharacterState = dict[str, list[str]]
GlobalCanon = list[str]
GlobalCharacterCanon = dict[str, list[str]]


@dataclass(slots=True)
class ReconciledCharacterStateAdd:
    character_name: str
    states: list[str]

    def to_dict(self) -> dict:
        return {"characterName": self.character_name, "states": list(self.states)}

    @classmethod
    def from_dict(cls, payload: object) -> ReconciledCharacterStateAdd | None:
        if not isinstance(payload, dict):
            return None
        states = payload.get("states")
        return cls(
            character_name=str(payload.get("characterName") or ""),
            states=[str(item) for item in states] if isinstance(states, list) else [],
        )


def normalize_character_state_adds(
    additions: Iterable[ReconciledCharacterStateAdd],
) -> list[ReconciledCharacterStateAdd]:
    by_character: dict[str, ReconciledCharacterStateAdd] = {}

    for addition in additions:
        character_name = normalize_intent_text(addition.character_name)
        if not character_name:
            continue
        character_key = intent_comparison_key(character_name)
        existing = by_character.get(character_key) or ReconciledCharacterStateAdd(
            character_name=character_name,
            states=[],
        )
        normalized_states = [normalize_intent_text(state) for state in addition.states]
        existing.states = dedupe_by_key(
            [*existing.states, *(state for state in normalized_states if state)],
            intent_comparison_key,
        )
        if existing.states:
            by_character[character_key] = existing

    return list(by_character.values())


def _find_key(state: Mapping[str, Sequence[str]], character_name: str) -> str | None:
    lookup = intent_comparison_key(character_name)
    for key in state:
        if intent_comparison_key(key) == lookup:
            return key
    return None


def get_character_state(state: Mapping[str, Sequence[str]], character_name: str) -> list[str]:
    key = _find_key(state, character_name)
    return list(state[key]) if key is not None else []


def apply_character_state_changes(
    current: Mapping[str, Sequence[str]],
    added: Iterable[ReconciledCharacterStateAdd] = (),
    removed: Iterable[ReconciledCharacterStateAdd] = (),
    diagnostics: DiagnosticsCollector | None = None,
) -> AccumulatedCharacterState:
    """Apply per-character removals, then additions.

    Character keys are matched case/whitespace-insensitively but stored with
    the first-seen display form. Characters left with no states are dropped.
    """
    result: AccumulatedCharacterState = {name: list(states) for name, states in current.items()}

    for change in removed:
        name = normalize_intent_text(change.character_name)
        key = _find_key(result, name) if name else None
        for state_text in change.states:
            target = intent_comparison_key(state_text)
            if not target:
                continue
            entries = result.get(key, []) if key is not None else []
            index = next((i for i, entry in enumerate(entries) if intent_comparison_key(entry) == target), -1)
            if index < 0:
                warn_into(
                    diagnostics,
                    UNMATCHED_REMOVAL,
                    "characterState",
                    f'Character state removal did not match any existing entry for "{name}": "{state_text}"',
                )
                continue
            del entries[index]
        if key is not None and not result.get(key):
            result.pop(key, None)

    for change in normalize_character_state_adds(added):
        key = _find_key(result, change.character_name) or change.character_name
        merged = dedupe_by_key([*result.get(key, []), *change.states], intent_comparison_key)
        if merged:
            result[key] = merged

    return result


def add_canon_fact(canon: Sequence[str], fact: str) -> GlobalCanon:
    trimmed = normalize_intent_text(fact)
    if not trimmed:
        return list(canon)
    key = intent_comparison_key(trimmed)
    if any(intent_comparison_key(existing) == key for existing in canon):
        return list(canon)
    return [*canon, trimmed]


def merge_canon_facts(canon: Sequence[str], facts: Iterable[str]) -> GlobalCanon:
    result = list(canon)
    for fact in facts:
        result = add_canon_fact(result, fact)
    return result


def add_character_fact(
    canon: Mapping[str, Sequence[str]],
    character_name: str,
    fact: str,
) -> GlobalCharacterCanon:
    result: GlobalCharacterCanon = {name: list(facts) for name, facts in canon.items()}
    name_key = normalize_character_name(character_name)
    trimmed = normalize_intent_text(fact)
    if not name_key or not trimmed:
        return result
    existing = result.get(name_key, [])
    if any(intent_comparison_key(item) == intent_comparison_key(trimmed) for item in existing):
        return result
    result[name_key] = [*existing, trimmed]
    return result


def merge_character_canon_facts(
    canon: Mapping[str, Sequence[str]],
    new_facts: Mapping[str, Iterable[str]],
) -> GlobalCharacterCanon:
    result: GlobalCharacterCanon = {name: list(facts) for name, facts in canon.items()}
    for character_name, facts in new_facts.items():
        for fact in facts:
            result = add_character_fact(result, character_name, fact)
    return result


def get_character_facts(canon: Mapping[str, Sequence[str]], character_name: str) -> list[str]:
    return list(canon.get(normalize_character_name(character_name), []))


__all__ = [
    "AccumulatedCharacterState",
    "GlobalCanon",
    "GlobalCharacterCanon",
    "ReconciledCharacterStateAdd",
    "normalize_character_state_adds",
    "get_character_state",
    "apply_character_state_changes",
    "add_canon_fact",
    "merge_canon_facts",
    "add_character_fact",
    "merge_character_canon_facts",
    "get_character_facts",
]
