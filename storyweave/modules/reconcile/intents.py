"""Tolerant decoding of the ``stateIntents`` block emitted by the planner stage.

Nothing here validates semantics: declared sub-types are carried through as
strings and unknown identifiers are kept. The reconciler decides what
survives. Structurally unusable items (non-dict where a dict is required,
non-string text) are skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from storyweave.modules.state.character_state import ReconciledCharacterStateAdd


@dataclass(slots=True)
class ThreatAdd:
    text: str
    threat_type: str

    def to_dict(self) -> dict:
        return {"text": self.text, "threatType": str(getattr(self.threat_type, "value", self.threat_type))}


@dataclass(slots=True)
class ConstraintAdd:
    text: str
    constraint_type: str

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "constraintType": str(getattr(self.constraint_type, "value", self.constraint_type)),
        }


@dataclass(slots=True)
class ThreadAdd:
    text: str
    thread_type: str = "INFORMATION"
    urgency: str = "MEDIUM"

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "threadType": str(getattr(self.thread_type, "value", self.thread_type)),
            "urgency": str(getattr(self.urgency, "value", self.urgency)),
        }


@dataclass(slots=True)
class TextIntentReplace:
    remove_id: str
    add_text: str


@dataclass(slots=True)
class TypedIntentReplace:
    remove_id: str
    add: ThreatAdd | ConstraintAdd | ThreadAdd | None


@dataclass(slots=True)
class TextIntents:
    add: list[str] = field(default_factory=list)
    remove_ids: list[str] = field(default_factory=list)
    replace: list[TextIntentReplace] = field(default_factory=list)


@dataclass(slots=True)
class ThreatIntents:
    add: list[ThreatAdd] = field(default_factory=list)
    remove_ids: list[str] = field(default_factory=list)
    replace: list[TypedIntentReplace] = field(default_factory=list)


@dataclass(slots=True)
class ConstraintIntents:
    add: list[ConstraintAdd] = field(default_factory=list)
    remove_ids: list[str] = field(default_factory=list)
    replace: list[TypedIntentReplace] = field(default_factory=list)


@dataclass(slots=True)
class ThreadIntents:
    add: list[ThreadAdd] = field(default_factory=list)
    resolve_ids: list[str] = field(default_factory=list)
    replace: list[TypedIntentReplace] = field(default_factory=list)


@dataclass(slots=True)
class CharacterStateReplace:
    remove_id: str
    add: ReconciledCharacterStateAdd | None


@dataclass(slots=True)
class CharacterStateIntents:
    add: list[ReconciledCharacterStateAdd] = field(default_factory=list)
    remove: list[ReconciledCharacterStateAdd] = field(default_factory=list)
    replace: list[CharacterStateReplace] = field(default_factory=list)


@dataclass(slots=True)
class CharacterCanonAdd:
    character_name: str
    facts: list[str]


@dataclass(slots=True)
class CanonIntents:
    world_add: list[str] = field(default_factory=list)
    character_add: list[CharacterCanonAdd] = field(default_factory=list)


@dataclass(slots=True)
class StateIntents:
    current_location: str | None = None
    threats: ThreatIntents = field(default_factory=ThreatIntents)
    constraints: ConstraintIntents = field(default_factory=ConstraintIntents)
    threads: ThreadIntents = field(default_factory=ThreadIntents)
    inventory: TextIntents = field(default_factory=TextIntents)
    health: TextIntents = field(default_factory=TextIntents)
    state_changes: TextIntents = field(default_factory=TextIntents)
    character_state: CharacterStateIntents = field(default_factory=CharacterStateIntents)
    canon: CanonIntents = field(default_factory=CanonIntents)


def _as_dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: object) -> list:
    return value if isinstance(value, list) else []


def _strings(value: object) -> list[str]:
    return [item for item in _as_list(value) if isinstance(item, str)]


def _text(value: object) -> str:
    return value if isinstance(value, str) else ""


def _threat_add(item: object) -> ThreatAdd | None:
    if not isinstance(item, dict) or not isinstance(item.get("text"), str):
        return None
    return ThreatAdd(text=item["text"], threat_type=_text(item.get("threatType")))


def _constraint_add(item: object) -> ConstraintAdd | None:
    if not isinstance(item, dict) or not isinstance(item.get("text"), str):
        return None
    return ConstraintAdd(text=item["text"], constraint_type=_text(item.get("constraintType")))


def _thread_add(item: object) -> ThreadAdd | None:
    if isinstance(item, str):
        return ThreadAdd(text=item)
    if not isinstance(item, dict) or not isinstance(item.get("text"), str):
        return None
    return ThreadAdd(
        text=item["text"],
        thread_type=_text(item.get("threadType")) or "INFORMATION",
        urgency=_text(item.get("urgency")) or "MEDIUM",
    )


def _character_entries(value: object, list_key: str) -> list[ReconciledCharacterStateAdd]:
    out: list[ReconciledCharacterStateAdd] = []
    for item in _as_list(value):
        if not isinstance(item, dict):
            continue
        out.append(
            ReconciledCharacterStateAdd(
                character_name=_text(item.get("characterName")),
                states=_strings(item.get(list_key)),
            )
        )
    return out


def _character_replace(value: object) -> list[CharacterStateReplace]:
    out: list[CharacterStateReplace] = []
    for item in _as_list(value):
        if not isinstance(item, dict):
            continue
        added = _character_entries([item.get("add")], "states")
        out.append(CharacterStateReplace(remove_id=_text(item.get("removeId")), add=added[0] if added else None))
    return out


def _text_intents(value: object) -> TextIntents:
    data = _as_dict(value)
    replace: list[TextIntentReplace] = []
    for item in _as_list(data.get("replace")):
        if not isinstance(item, dict):
            continue
        replace.append(TextIntentReplace(remove_id=_text(item.get("removeId")), add_text=_text(item.get("addText"))))
    return TextIntents(add=_strings(data.get("add")), remove_ids=_strings(data.get("removeIds")), replace=replace)


def _typed_replace(value: object, *, id_key: str, decode) -> list[TypedIntentReplace]:
    out: list[TypedIntentReplace] = []
    for item in _as_list(value):
        if not isinstance(item, dict):
            continue
        out.append(TypedIntentReplace(remove_id=_text(item.get(id_key)), add=decode(item.get("add"))))
    return out


def parse_state_intents(payload: object) -> StateIntents:
    data = _as_dict(payload)
    threats = _as_dict(data.get("threats"))
    constraints = _as_dict(data.get("constraints"))
    threads = _as_dict(data.get("threads"))
    character_state = _as_dict(data.get("characterState"))
    canon = _as_dict(data.get("canon"))

    location = data.get("currentLocation")
    return StateIntents(
        current_location=location if isinstance(location, str) else None,
        threats=ThreatIntents(
            add=[entry for entry in map(_threat_add, _as_list(threats.get("add"))) if entry is not None],
            remove_ids=_strings(threats.get("removeIds")),
            replace=_typed_replace(threats.get("replace"), id_key="removeId", decode=_threat_add),
        ),
        constraints=ConstraintIntents(
            add=[entry for entry in map(_constraint_add, _as_list(constraints.get("add"))) if entry is not None],
            remove_ids=_strings(constraints.get("removeIds")),
            replace=_typed_replace(constraints.get("replace"), id_key="removeId", decode=_constraint_add),
        ),
        threads=ThreadIntents(
            add=[entry for entry in map(_thread_add, _as_list(threads.get("add"))) if entry is not None],
            resolve_ids=_strings(threads.get("resolveIds")),
            replace=_typed_replace(threads.get("replace"), id_key="resolveId", decode=_thread_add),
        ),
        inventory=_text_intents(data.get("inventory")),
        health=_text_intents(data.get("health")),
        state_changes=_text_intents(data.get("stateChanges")),
        character_state=CharacterStateIntents(
            add=_character_entries(character_state.get("add"), "states"),
            remove=_character_entries(character_state.get("remove"), "states"),
            replace=_character_replace(character_state.get("replace")),
        ),
        canon=CanonIntents(
            world_add=_strings(canon.get("worldAdd")),
            character_add=[
                CharacterCanonAdd(character_name=entry.character_name, facts=entry.states)
                for entry in _character_entries(canon.get("characterAdd"), "facts")
            ],
        ),
    )


__all__ = [
    "ThreatAdd",
    "ConstraintAdd",
    "ThreadAdd",
    "TextIntentReplace",
    "TypedIntentReplace",
    "TextIntents",
    "ThreatIntents",
    "ConstraintIntents",
    "ThreadIntents",
    "CharacterStateReplace",
    "CharacterStateIntents",
    "CharacterCanonAdd",
    "CanonIntents",
    "StateIntents",
    "parse_state_intents",
]
