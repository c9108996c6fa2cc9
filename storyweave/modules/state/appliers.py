from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from storyweave.modules.reconcile.text import intent_comparison_key
from storyweave.modules.state.diagnostics import UNMATCHED_REMOVAL, DiagnosticsCollector, warn_into


@dataclass(frozen=True, slots=True)
class StateChanges:
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, list[str]]:
        return {"added": list(self.added), "removed": list(self.removed)}

    @classmethod
    def from_dict(cls, payload: dict | None) -> StateChanges:
        data = payload if isinstance(payload, dict) else {}
        return cls(
            added=tuple(str(item) for item in (data.get("added") or []) if isinstance(item, str)),
            removed=tuple(str(item) for item in (data.get("removed") or []) if isinstance(item, str)),
        )


def find_entry_index(items: Sequence[str], text: str) -> int:
    key = intent_comparison_key(text)
    if not key:
        return -1
    for index, item in enumerate(items):
        if intent_comparison_key(item) == key:
            return index
    return -1


def has_entry(items: Sequence[str], text: str) -> bool:
    return find_entry_index(items, text) >= 0


def count_entry(items: Sequence[str], text: str) -> int:
    key = intent_comparison_key(text)
    return sum(1 for item in items if key and intent_comparison_key(item) == key)


def apply_list_changes(
    current: Sequence[str],
    changes: StateChanges,
    *,
    field: str,
    warn_on_miss: bool,
    diagnostics: DiagnosticsCollector | None = None,
) -> tuple[str, ...]:
    result = list(current)

    for candidate in changes.removed:
        if not str(candidate or "").strip():
            continue
        index = find_entry_index(result, candidate)
        if index >= 0:
            del result[index]
        elif warn_on_miss:
            warn_into(
                diagnostics,
                UNMATCHED_REMOVAL,
                field,
                f'{field} removal did not match any existing entry: "{candidate}"',
            )

    for candidate in changes.added:
        trimmed = str(candidate or "").strip()
        if trimmed:
            result.append(trimmed)

    return tuple(result)


def apply_inventory_changes(
    current: Sequence[str],
    changes: StateChanges,
    diagnostics: DiagnosticsCollector | None = None,
) -> tuple[str, ...]:
    # Inventory misses are silent.
    return apply_list_changes(
        current,
        changes,
        field="inventory",
        warn_on_miss=False,
        diagnostics=diagnostics,
    )


def apply_health_changes(
    current: Sequence[str],
    changes: StateChanges,
    diagnostics: DiagnosticsCollector | None = None,
) -> tuple[str, ...]:
    return apply_list_changes(
        current,
        changes,
        field="health",
        warn_on_miss=True,
        diagnostics=diagnostics,
    )


def apply_state_changes(
    current: Sequence[str],
    changes: StateChanges,
    diagnostics: DiagnosticsCollector | None = None,
) -> tuple[str, ...]:
    return apply_list_changes(
        current,
        changes,
        field="accumulatedState",
        warn_on_miss=True,
        diagnostics=diagnostics,
    )


__all__ = [
    "StateChanges",
    "find_entry_index",
    "has_entry",
    "count_entry",
    "apply_list_changes",
    "apply_inventory_changes",
    "apply_health_changes",
    "apply_state_changes",
]
