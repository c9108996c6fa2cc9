from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from storyweave.modules.state.diagnostics import (
    CATEGORY_MISMATCH,
    DUPLICATE_PREFIX,
    UNMATCHED_REMOVAL,
    DiagnosticsCollector,
    warn_into,
)
from storyweave.modules.state.tagged_entry import (
    StateCategory,
    TaggedStateEntry,
    extract_prefix_from_removal,
    parse_tagged_entry,
)


@dataclass(frozen=True, slots=True)
class ActiveState:
    current_location: str = ""
    active_threats: tuple[TaggedStateEntry, ...] = ()
    active_constraints: tuple[TaggedStateEntry, ...] = ()
    open_threads: tuple[TaggedStateEntry, ...] = ()

    def to_dict(self) -> dict:
        return {
            "currentLocation": self.current_location,
            "activeThreats": [entry.to_dict() for entry in self.active_threats],
            "activeConstraints": [entry.to_dict() for entry in self.active_constraints],
            "openThreads": [entry.to_dict() for entry in self.open_threads],
        }

    @classmethod
    def from_dict(cls, payload: dict | None) -> ActiveState:
        data = payload if isinstance(payload, dict) else {}

        def entries(key: str, category: StateCategory) -> tuple[TaggedStateEntry, ...]:
            out: list[TaggedStateEntry] = []
            for item in data.get(key) or []:
                entry = TaggedStateEntry.from_dict(item)
                if entry is not None and entry.category == category:
                    out.append(entry)
            return tuple(out)

        return cls(
            current_location=str(data.get("currentLocation") or ""),
            active_threats=entries("activeThreats", StateCategory.THREAT),
            active_constraints=entries("activeConstraints", StateCategory.CONSTRAINT),
            open_threads=entries("openThreads", StateCategory.THREAD),
        )


@dataclass(frozen=True, slots=True)
class ActiveStateChanges:
    new_location: str | None = None
    threats_added: tuple[str, ...] = ()
    threats_removed: tuple[str, ...] = ()
    constraints_added: tuple[str, ...] = ()
    constraints_removed: tuple[str, ...] = ()
    threads_added: tuple[str, ...] = ()
    threads_resolved: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "newLocation": self.new_location,
            "threatsAdded": list(self.threats_added),
            "threatsRemoved": list(self.threats_removed),
            "constraintsAdded": list(self.constraints_added),
            "constraintsRemoved": list(self.constraints_removed),
            "threadsAdded": list(self.threads_added),
            "threadsResolved": list(self.threads_resolved),
        }


@dataclass(frozen=True, slots=True)
class ActiveStateKnownIds:
    threats: frozenset[str] = field(default_factory=frozenset)
    constraints: frozenset[str] = field(default_factory=frozenset)
    threads: frozenset[str] = field(default_factory=frozenset)


def _ids_of(entries: Sequence[TaggedStateEntry]) -> frozenset[str]:
    ids: set[str] = set()
    for entry in entries:
        ids.add(entry.prefix)
        ids.add(entry.entry_id)
    return frozenset(ids)


def known_ids(state: ActiveState) -> ActiveStateKnownIds:
    return ActiveStateKnownIds(
        threats=_ids_of(state.active_threats),
        constraints=_ids_of(state.active_constraints),
        threads=_ids_of(state.open_threads),
    )


def _apply_tagged_changes(
    current: Sequence[TaggedStateEntry],
    added: Sequence[str],
    removed: Sequence[str],
    *,
    category: StateCategory,
    field_name: str,
    diagnostics: DiagnosticsCollector | None,
) -> tuple[TaggedStateEntry, ...]:
    result = list(current)

    for removal in removed:
        key = extract_prefix_from_removal(removal, diagnostics, field=f"{field_name}.removed")
        if key is None:
            continue
        index = next((i for i, entry in enumerate(result) if entry.matches(key)), -1)
        if index < 0:
            warn_into(
                diagnostics,
                UNMATCHED_REMOVAL,
                f"{field_name}.removed",
                f'Removal "{key}" did not match any {category.value.lower()} entry.',
            )
            continue
        del result[index]

    for raw in added:
        entry = parse_tagged_entry(raw, diagnostics, field=f"{field_name}.added")
        if entry is None:
            continue
        if entry.category != category:
            warn_into(
                diagnostics,
                CATEGORY_MISMATCH,
                f"{field_name}.added",
                f'Entry "{entry.prefix}" is a {entry.category.value} and cannot be added to {field_name}.',
            )
            continue
        if any(existing.prefix == entry.prefix for existing in result):
            warn_into(
                diagnostics,
                DUPLICATE_PREFIX,
                f"{field_name}.added",
                f'Entry prefix "{entry.prefix}" is already active; addition skipped.',
            )
            continue
        result.append(entry)

    return tuple(result)


def apply_active_state_changes(
    current: ActiveState,
    changes: ActiveStateChanges,
    diagnostics: DiagnosticsCollector | None = None,
) -> ActiveState:
    """Fold one change-set into an active-state snapshot.

    Pure: the result depends only on ``current`` and ``changes``. For each of
    threats, constraints and threads every removal is applied before any
    addition.
    """
    return ActiveState(
        current_location=(
            changes.new_location if changes.new_location is not None else current.current_location
        ),
        active_threats=_apply_tagged_changes(
            current.active_threats,
            changes.threats_added,
            changes.threats_removed,
            category=StateCategory.THREAT,
            field_name="activeThreats",
            diagnostics=diagnostics,
        ),
        active_constraints=_apply_tagged_changes(
            current.active_constraints,
            changes.constraints_added,
            changes.constraints_removed,
            category=StateCategory.CONSTRAINT,
            field_name="activeConstraints",
            diagnostics=diagnostics,
        ),
        open_threads=_apply_tagged_changes(
            current.open_threads,
            changes.threads_added,
            changes.threads_resolved,
            category=StateCategory.THREAD,
            field_name="openThreads",
            diagnostics=diagnostics,
        ),
    )


__all__ = [
    "ActiveState",
    "ActiveStateChanges",
    "ActiveStateKnownIds",
    "known_ids",
    "apply_active_state_changes",
]
