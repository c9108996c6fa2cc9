"""Planner intents -> validated state delta.

Validation problems never raise. Unknown removal ids, malformed replace
payloads and duplicate canon facts are dropped and reported as
:class:`StateReconciliationDiagnostic` entries on the result.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from storyweave.modules.reconcile.intents import (
    CharacterCanonAdd,
    CharacterStateReplace,
    ConstraintAdd,
    StateIntents,
    TextIntentReplace,
    ThreadAdd,
    ThreatAdd,
    TypedIntentReplace,
)
from storyweave.modules.reconcile.text import (
    dedupe_by_key,
    intent_comparison_key,
    normalize_id,
    normalize_intent_text,
    normalize_text_intents,
)
from storyweave.modules.state.active_state import ActiveState, known_ids
from storyweave.modules.state.character_state import (
    ReconciledCharacterStateAdd,
    get_character_state,
    normalize_character_state_adds,
)
from storyweave.modules.state.diagnostics import (
    DUPLICATE_CANON_FACT,
    MALFORMED_REPLACE_PAYLOAD,
    UNKNOWN_STATE_ID,
    DiagnosticsCollector,
    StateReconciliationDiagnostic,
)
from storyweave.modules.state.tagged_entry import (
    ConstraintType,
    ThreadType,
    ThreatType,
    Urgency,
    is_constraint_type,
    is_thread_type,
    is_threat_type,
    is_urgency,
)


@dataclass(frozen=True, slots=True)
class StateReconciliationPreviousState:
    active_state: ActiveState = field(default_factory=ActiveState)
    inventory: tuple[str, ...] = ()
    health: tuple[str, ...] = ()
    accumulated_state: tuple[str, ...] = ()
    character_state: Mapping[str, Sequence[str]] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> StateReconciliationPreviousState:
        return cls()

    @classmethod
    def from_page(cls, page) -> StateReconciliationPreviousState:
        """Snapshot of a persisted page's accumulated state."""
        return cls(
            active_state=page.active_state,
            inventory=tuple(page.accumulated_inventory),
            health=tuple(page.accumulated_health),
            accumulated_state=tuple(page.accumulated_state),
            character_state={name: list(states) for name, states in page.accumulated_character_state.items()},
        )


@dataclass(slots=True)
class StateReconciliationResult:
    current_location: str = ""
    threats_added: list[ThreatAdd] = field(default_factory=list)
    threats_removed: list[str] = field(default_factory=list)
    constraints_added: list[ConstraintAdd] = field(default_factory=list)
    constraints_removed: list[str] = field(default_factory=list)
    threads_added: list[ThreadAdd] = field(default_factory=list)
    threads_resolved: list[str] = field(default_factory=list)
    inventory_added: list[str] = field(default_factory=list)
    inventory_removed: list[str] = field(default_factory=list)
    health_added: list[str] = field(default_factory=list)
    health_removed: list[str] = field(default_factory=list)
    state_changes_added: list[str] = field(default_factory=list)
    state_changes_removed: list[str] = field(default_factory=list)
    character_state_changes_added: list[ReconciledCharacterStateAdd] = field(default_factory=list)
    character_state_changes_removed: list[ReconciledCharacterStateAdd] = field(default_factory=list)
    new_canon_facts: list[str] = field(default_factory=list)
    new_character_canon_facts: dict[str, list[str]] = field(default_factory=dict)
    reconciliation_diagnostics: list[StateReconciliationDiagnostic] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "currentLocation": self.current_location,
            "threatsAdded": [entry.to_dict() for entry in self.threats_added],
            "threatsRemoved": list(self.threats_removed),
            "constraintsAdded": [entry.to_dict() for entry in self.constraints_added],
            "constraintsRemoved": list(self.constraints_removed),
            "threadsAdded": [entry.to_dict() for entry in self.threads_added],
            "threadsResolved": list(self.threads_resolved),
            "inventoryAdded": list(self.inventory_added),
            "inventoryRemoved": list(self.inventory_removed),
            "healthAdded": list(self.health_added),
            "healthRemoved": list(self.health_removed),
            "stateChangesAdded": list(self.state_changes_added),
            "stateChangesRemoved": list(self.state_changes_removed),
            "characterStateChangesAdded": [entry.to_dict() for entry in self.character_state_changes_added],
            "characterStateChangesRemoved": [entry.to_dict() for entry in self.character_state_changes_removed],
            "newCanonFacts": list(self.new_canon_facts),
            "newCharacterCanonFacts": {name: list(facts) for name, facts in self.new_character_canon_facts.items()},
            "reconciliationDiagnostics": [item.to_dict() for item in self.reconciliation_diagnostics],
        }


def normalize_and_validate_remove_ids(
    ids: Iterable[str],
    known: Collection[str],
    field: str,
    diagnostics: DiagnosticsCollector,
    *,
    match_key: Callable[[str], str] | None = None,
) -> list[str]:
    """Trim, dedupe by exact value, and keep only ids present in ``known``.

    With ``match_key`` membership is tested on ``match_key(id)`` against the
    keys of ``known`` (used for free-text lists matched case-insensitively),
    and each accepted id consumes one matching entry.
    """
    if match_key is None:
        accepted = Counter({value: 1 for value in known})
        key_fn: Callable[[str], str] = lambda value: value
    else:
        accepted = Counter(match_key(value) for value in known)
        key_fn = match_key

    result: list[str] = []
    for value in dedupe_by_key((normalize_id(item) for item in ids), lambda value: value):
        key = key_fn(value)
        if accepted[key] <= 0:
            diagnostics.add(UNKNOWN_STATE_ID, field, f'Unknown state ID "{value}" in {field}.')
            continue
        accepted[key] -= 1
        result.append(value)
    return result


def normalize_threat_adds(additions: Iterable[ThreatAdd]) -> list[ThreatAdd]:
    normalized = [
        ThreatAdd(text=normalize_intent_text(entry.text), threat_type=ThreatType(entry.threat_type))
        for entry in additions
        if is_threat_type(entry.threat_type)
    ]
    return dedupe_by_key(
        [entry for entry in normalized if entry.text],
        lambda entry: f"{intent_comparison_key(entry.text)}|{entry.threat_type.value}",
    )


def normalize_constraint_adds(additions: Iterable[ConstraintAdd]) -> list[ConstraintAdd]:
    normalized = [
        ConstraintAdd(text=normalize_intent_text(entry.text), constraint_type=ConstraintType(entry.constraint_type))
        for entry in additions
        if is_constraint_type(entry.constraint_type)
    ]
    return dedupe_by_key(
        [entry for entry in normalized if entry.text],
        lambda entry: f"{intent_comparison_key(entry.text)}|{entry.constraint_type.value}",
    )


def normalize_thread_adds(additions: Iterable[ThreadAdd]) -> list[ThreadAdd]:
    normalized = [
        ThreadAdd(
            text=normalize_intent_text(entry.text),
            thread_type=ThreadType(entry.thread_type) if is_thread_type(entry.thread_type) else ThreadType.INFORMATION,
            urgency=Urgency(entry.urgency) if is_urgency(entry.urgency) else Urgency.MEDIUM,
        )
        for entry in additions
    ]
    return dedupe_by_key(
        [entry for entry in normalized if entry.text],
        lambda entry: f"{intent_comparison_key(entry.text)}|{entry.thread_type.value}|{entry.urgency.value}",
    )


def _malformed_replace(diagnostics: DiagnosticsCollector, field: str, index: int) -> None:
    location = f"{field}.replace[{index}]"
    diagnostics.add(MALFORMED_REPLACE_PAYLOAD, location, f"Malformed replace payload at {location}.")


def expand_text_replacements(
    replacements: Sequence[TextIntentReplace],
    field: str,
    diagnostics: DiagnosticsCollector,
) -> tuple[list[str], list[str]]:
    add: list[str] = []
    remove_ids: list[str] = []
    for index, entry in enumerate(replacements):
        remove_id = normalize_id(entry.remove_id)
        add_text = normalize_intent_text(entry.add_text)
        if not remove_id or not add_text:
            _malformed_replace(diagnostics, field, index)
            continue
        remove_ids.append(remove_id)
        add.append(add_text)
    return add, remove_ids


def expand_typed_replacements(
    replacements: Sequence[TypedIntentReplace],
    field: str,
    diagnostics: DiagnosticsCollector,
) -> tuple[list, list[str]]:
    add: list = []
    remove_ids: list[str] = []
    for index, entry in enumerate(replacements):
        remove_id = normalize_id(entry.remove_id)
        text = normalize_intent_text(entry.add.text) if entry.add is not None else ""
        if not remove_id or not text:
            _malformed_replace(diagnostics, field, index)
            continue
        remove_ids.append(remove_id)
        add.append(entry.add)
    return add, remove_ids


def expand_character_state_replacements(
    replacements: Sequence[CharacterStateReplace],
    diagnostics: DiagnosticsCollector,
) -> tuple[list[ReconciledCharacterStateAdd], list[ReconciledCharacterStateAdd]]:
    """Split each replace into a removal of ``remove_id`` and an add, both for the named character."""
    add: list[ReconciledCharacterStateAdd] = []
    remove: list[ReconciledCharacterStateAdd] = []
    for index, entry in enumerate(replacements):
        remove_id = normalize_intent_text(entry.remove_id)
        character_name = normalize_intent_text(entry.add.character_name) if entry.add is not None else ""
        states = (
            dedupe_by_key(
                [text for text in map(normalize_intent_text, entry.add.states) if text],
                intent_comparison_key,
            )
            if entry.add is not None
            else []
        )
        if not remove_id or not character_name or not states:
            _malformed_replace(diagnostics, "stateIntents.characterState", index)
            continue
        remove.append(ReconciledCharacterStateAdd(character_name=character_name, states=[remove_id]))
        add.append(ReconciledCharacterStateAdd(character_name=character_name, states=states))
    return add, remove


def normalize_canon_facts(values: Sequence[str], diagnostics: DiagnosticsCollector) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for index, value in enumerate(values):
        normalized = normalize_intent_text(value)
        key = intent_comparison_key(value)
        if not normalized:
            continue
        if key in seen:
            diagnostics.add(
                DUPLICATE_CANON_FACT,
                f"stateIntents.canon.worldAdd[{index}]",
                f'Duplicate canon fact after normalization: "{normalized}".',
            )
            continue
        seen.add(key)
        result.append(normalized)
    return result


def normalize_character_canon_facts(
    entries: Sequence[CharacterCanonAdd],
    diagnostics: DiagnosticsCollector,
) -> dict[str, list[str]]:
    names: dict[str, str] = {}
    facts_by_character: dict[str, list[str]] = {}
    seen_by_character: dict[str, set[str]] = {}

    for character_index, entry in enumerate(entries):
        character_name = normalize_intent_text(entry.character_name)
        if not character_name:
            continue
        character_key = intent_comparison_key(character_name)
        display_name = names.get(character_key, character_name)
        facts = facts_by_character.get(character_key, [])
        seen = seen_by_character.get(character_key, set())

        for fact_index, fact in enumerate(entry.facts):
            normalized = normalize_intent_text(fact)
            if not normalized:
                continue
            fact_key = intent_comparison_key(normalized)
            if fact_key in seen:
                diagnostics.add(
                    DUPLICATE_CANON_FACT,
                    f"stateIntents.canon.characterAdd[{character_index}].facts[{fact_index}]",
                    f'Duplicate canon fact for character "{display_name}" after normalization: "{normalized}".',
                )
                continue
            seen.add(fact_key)
            facts.append(normalized)

        if facts:
            names[character_key] = display_name
            facts_by_character[character_key] = facts
            seen_by_character[character_key] = seen

    return {names[key]: facts for key, facts in facts_by_character.items()}


def _validate_character_state_removals(
    removals: Sequence[ReconciledCharacterStateAdd],
    current: Mapping[str, Sequence[str]],
    diagnostics: DiagnosticsCollector,
) -> list[ReconciledCharacterStateAdd]:
    by_character: dict[str, ReconciledCharacterStateAdd] = {}
    for removal in removals:
        character_name = normalize_intent_text(removal.character_name)
        if not character_name:
            continue
        character_key = intent_comparison_key(character_name)
        entry = by_character.setdefault(
            character_key,
            ReconciledCharacterStateAdd(character_name=character_name, states=[]),
        )
        valid = normalize_and_validate_remove_ids(
            [normalize_intent_text(state) for state in removal.states],
            get_character_state(current, character_name),
            "characterStateChangesRemoved",
            diagnostics,
            match_key=intent_comparison_key,
        )
        entry.states = dedupe_by_key([*entry.states, *valid], intent_comparison_key)
    return [entry for entry in by_character.values() if entry.states]


def reconcile_state(
    intents: StateIntents,
    previous_state: StateReconciliationPreviousState,
) -> StateReconciliationResult:
    diagnostics = DiagnosticsCollector()
    ids = known_ids(previous_state.active_state)

    threat_replace_add, threat_replace_remove = expand_typed_replacements(
        intents.threats.replace, "stateIntents.threats", diagnostics
    )
    constraint_replace_add, constraint_replace_remove = expand_typed_replacements(
        intents.constraints.replace, "stateIntents.constraints", diagnostics
    )
    thread_replace_add, thread_replace_resolve = expand_typed_replacements(
        intents.threads.replace, "stateIntents.threads", diagnostics
    )
    inventory_replace_add, inventory_replace_remove = expand_text_replacements(
        intents.inventory.replace, "stateIntents.inventory", diagnostics
    )
    health_replace_add, health_replace_remove = expand_text_replacements(
        intents.health.replace, "stateIntents.health", diagnostics
    )
    state_replace_add, state_replace_remove = expand_text_replacements(
        intents.state_changes.replace, "stateIntents.stateChanges", diagnostics
    )
    character_replace_add, character_replace_remove = expand_character_state_replacements(
        intents.character_state.replace, diagnostics
    )

    threats_removed = normalize_and_validate_remove_ids(
        [*intents.threats.remove_ids, *threat_replace_remove], ids.threats, "threatsRemoved", diagnostics
    )
    constraints_removed = normalize_and_validate_remove_ids(
        [*intents.constraints.remove_ids, *constraint_replace_remove],
        ids.constraints,
        "constraintsRemoved",
        diagnostics,
    )
    threads_resolved = normalize_and_validate_remove_ids(
        [*intents.threads.resolve_ids, *thread_replace_resolve], ids.threads, "threadsResolved", diagnostics
    )
    inventory_removed = normalize_and_validate_remove_ids(
        [*intents.inventory.remove_ids, *inventory_replace_remove],
        previous_state.inventory,
        "inventoryRemoved",
        diagnostics,
        match_key=intent_comparison_key,
    )
    health_removed = normalize_and_validate_remove_ids(
        [*intents.health.remove_ids, *health_replace_remove],
        previous_state.health,
        "healthRemoved",
        diagnostics,
        match_key=intent_comparison_key,
    )
    state_changes_removed = normalize_and_validate_remove_ids(
        [*intents.state_changes.remove_ids, *state_replace_remove],
        previous_state.accumulated_state,
        "stateChangesRemoved",
        diagnostics,
        match_key=intent_comparison_key,
    )
    character_state_removed = _validate_character_state_removals(
        [*intents.character_state.remove, *character_replace_remove], previous_state.character_state, diagnostics
    )

    location = normalize_intent_text(intents.current_location)
    return StateReconciliationResult(
        current_location=location or previous_state.active_state.current_location,
        threats_added=normalize_threat_adds([*intents.threats.add, *threat_replace_add]),
        threats_removed=threats_removed,
        constraints_added=normalize_constraint_adds([*intents.constraints.add, *constraint_replace_add]),
        constraints_removed=constraints_removed,
        threads_added=normalize_thread_adds([*intents.threads.add, *thread_replace_add]),
        threads_resolved=threads_resolved,
        inventory_added=normalize_text_intents([*intents.inventory.add, *inventory_replace_add]),
        inventory_removed=inventory_removed,
        health_added=normalize_text_intents([*intents.health.add, *health_replace_add]),
        health_removed=health_removed,
        state_changes_added=normalize_text_intents([*intents.state_changes.add, *state_replace_add]),
        state_changes_removed=state_changes_removed,
        character_state_changes_added=normalize_character_state_adds(
            [*intents.character_state.add, *character_replace_add]
        ),
        character_state_changes_removed=character_state_removed,
        new_canon_facts=normalize_canon_facts(intents.canon.world_add, diagnostics),
        new_character_canon_facts=normalize_character_canon_facts(intents.canon.character_add, diagnostics),
        reconciliation_diagnostics=diagnostics.items,
    )


__all__ = [
    "StateReconciliationPreviousState",
    "StateReconciliationResult",
    "normalize_and_validate_remove_ids",
    "normalize_threat_adds",
    "normalize_constraint_adds",
    "normalize_thread_adds",
    "expand_text_replacements",
    "expand_typed_replacements",
    "expand_character_state_replacements",
    "normalize_canon_facts",
    "normalize_character_canon_facts",
    "reconcile_state",
]
