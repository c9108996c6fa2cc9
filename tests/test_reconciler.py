from __future__ import annotations

from storyweave.modules.reconcile.intents import (
    ThreadAdd,
    ThreatAdd,
    parse_state_intents,
)
from storyweave.modules.reconcile.reconciler import (
    StateReconciliationPreviousState,
    normalize_and_validate_remove_ids,
    normalize_thread_adds,
    normalize_threat_adds,
    reconcile_state,
)
from storyweave.modules.reconcile.text import intent_comparison_key
from storyweave.modules.state.active_state import ActiveState
from storyweave.modules.state.diagnostics import (
    DUPLICATE_CANON_FACT,
    MALFORMED_REPLACE_PAYLOAD,
    UNKNOWN_STATE_ID,
    DiagnosticsCollector,
)
from storyweave.modules.state.tagged_entry import ThreatType, ThreadType, Urgency, parse_tagged_entry


def _previous(**overrides) -> StateReconciliationPreviousState:
    payload = {
        "active_state": ActiveState(
            current_location="Gatehouse",
            active_threats=(parse_tagged_entry("THREAT_1: A guard approaches"),),
            active_constraints=(parse_tagged_entry("CONSTRAINT_1: Gate is locked"),),
            open_threads=(parse_tagged_entry("THREAD_1: Who rang the bell?"),),
        ),
        "inventory": ("Rusty key", "Lantern"),
        "health": ("Bruised ribs",),
        "accumulated_state": ("Owes the smith",),
        "character_state": {"Aria": ["Wounded"]},
    }
    payload.update(overrides)
    return StateReconciliationPreviousState(**payload)


def test_remove_ids_are_deduped_and_unknown_ids_reported() -> None:
    diagnostics = DiagnosticsCollector()

    result = normalize_and_validate_remove_ids(["X", "X", "Y"], {"X"}, "threatsRemoved", diagnostics)

    assert result == ["X"]
    assert len(diagnostics) == 1
    item = diagnostics.items[0]
    assert item.code == UNKNOWN_STATE_ID
    assert item.field == "threatsRemoved"
    assert item.message == 'Unknown state ID "Y" in threatsRemoved.'


def test_ambush_threat_against_empty_state_has_no_diagnostics() -> None:
    intents = parse_state_intents(
        {"threats": {"add": [{"text": "A guard approaches", "threatType": "AMBUSH"}], "removeIds": []}}
    )

    result = reconcile_state(intents, StateReconciliationPreviousState.empty())

    assert [entry.to_dict() for entry in result.threats_added] == [
        {"text": "A guard approaches", "threatType": "AMBUSH"}
    ]
    assert result.threats_removed == []
    assert result.reconciliation_diagnostics == []


def test_unknown_remove_id_is_dropped_with_diagnostic() -> None:
    intents = parse_state_intents(
        {
            "threats": {
                "add": [{"text": "A guard approaches", "threatType": "AMBUSH"}],
                "removeIds": ["THREAT_4"],
            }
        }
    )

    result = reconcile_state(intents, StateReconciliationPreviousState.empty())

    assert len(result.threats_added) == 1
    assert result.threats_removed == []
    assert [(item.code, item.field) for item in result.reconciliation_diagnostics] == [
        (UNKNOWN_STATE_ID, "threatsRemoved")
    ]


def test_known_ids_match_prefix_or_entry_id() -> None:
    previous = _previous()
    guard_id = previous.active_state.active_threats[0].entry_id
    intents = parse_state_intents(
        {
            "threats": {"removeIds": [guard_id]},
            "constraints": {"removeIds": ["CONSTRAINT_1", "THREAT_1"]},
            "threads": {"resolveIds": [" THREAD_1 "]},
        }
    )

    result = reconcile_state(intents, previous)

    assert result.threats_removed == [guard_id]
    assert result.constraints_removed == ["CONSTRAINT_1"]
    assert result.threads_resolved == ["THREAD_1"]
    assert [item.field for item in result.reconciliation_diagnostics] == ["constraintsRemoved"]


def test_replace_expands_into_remove_and_add() -> None:
    intents = parse_state_intents(
        {
            "threats": {
                "replace": [
                    {"removeId": "THREAT_1", "add": {"text": "The guard draws a sword", "threatType": "HOSTILE_AGENT"}},
                    {"removeId": "", "add": {"text": "Nobody", "threatType": "CREATURE"}},
                ]
            },
            "inventory": {"replace": [{"removeId": "rusty KEY", "addText": "Broken key"}, {"removeId": "Lantern"}]},
        }
    )

    result = reconcile_state(intents, _previous())

    assert result.threats_removed == ["THREAT_1"]
    assert [entry.text for entry in result.threats_added] == ["The guard draws a sword"]
    assert result.inventory_removed == ["rusty KEY"]
    assert result.inventory_added == ["Broken key"]
    assert [(item.code, item.field) for item in result.reconciliation_diagnostics] == [
        (MALFORMED_REPLACE_PAYLOAD, "stateIntents.threats.replace[1]"),
        (MALFORMED_REPLACE_PAYLOAD, "stateIntents.inventory.replace[1]"),
    ]


def test_text_removals_validated_against_previous_lists() -> None:
    intents = parse_state_intents(
        {
            "inventory": {"add": ["Torch", " torch "], "removeIds": ["LANTERN", "Sword"]},
            "health": {"removeIds": ["bruised ribs"]},
            "stateChanges": {"removeIds": ["Knighted"]},
        }
    )

    result = reconcile_state(intents, _previous())

    assert result.inventory_added == ["Torch"]
    assert result.inventory_removed == ["LANTERN"]
    assert result.health_removed == ["bruised ribs"]
    assert result.state_changes_removed == []
    assert [item.field for item in result.reconciliation_diagnostics] == ["inventoryRemoved", "stateChangesRemoved"]


def test_invalid_threat_types_are_dropped_and_thread_defaults_apply() -> None:
    threats = normalize_threat_adds(
        [
            ThreatAdd(text="Wolves", threat_type="CREATURE"),
            ThreatAdd(text=" wolves ", threat_type="CREATURE"),
            ThreatAdd(text="Wolves", threat_type="ENVIRONMENTAL"),
            ThreatAdd(text="Ghost", threat_type="SPOOKY"),
        ]
    )
    threads = normalize_thread_adds([ThreadAdd(text="Find the heir", thread_type="??", urgency="")])

    assert [(entry.text, entry.threat_type) for entry in threats] == [
        ("Wolves", ThreatType.CREATURE),
        ("Wolves", ThreatType.ENVIRONMENTAL),
    ]
    assert threads[0].thread_type == ThreadType.INFORMATION
    assert threads[0].urgency == Urgency.MEDIUM


def test_thread_add_accepts_plain_string() -> None:
    intents = parse_state_intents({"threads": {"add": ["Who is the stranger?"]}})
    result = reconcile_state(intents, StateReconciliationPreviousState.empty())
    assert [entry.to_dict() for entry in result.threads_added] == [
        {"text": "Who is the stranger?", "threadType": "INFORMATION", "urgency": "MEDIUM"}
    ]


def test_duplicate_canon_facts_are_reported() -> None:
    intents = parse_state_intents(
        {
            "canon": {
                "worldAdd": ["The moon is red", "the moon  is RED", ""],
                "characterAdd": [
                    {"characterName": "Aria", "facts": ["Is a knight"]},
                    {"characterName": " aria ", "facts": ["is a KNIGHT", "Has a sister"]},
                ],
            }
        }
    )

    result = reconcile_state(intents, StateReconciliationPreviousState.empty())

    assert result.new_canon_facts == ["The moon is red"]
    assert result.new_character_canon_facts == {"Aria": ["Is a knight", "Has a sister"]}
    assert [(item.code, item.field) for item in result.reconciliation_diagnostics] == [
        (DUPLICATE_CANON_FACT, "stateIntents.canon.worldAdd[1]"),
        (DUPLICATE_CANON_FACT, "stateIntents.canon.characterAdd[1].facts[0]"),
    ]


def test_character_state_removals_validated_per_character() -> None:
    intents = parse_state_intents(
        {
            "characterState": {
                "add": [{"characterName": "Bren", "states": ["Asleep"]}],
                "remove": [
                    {"characterName": "aria", "states": ["wounded", "Angry"]},
                    {"characterName": "Bren", "states": ["Asleep"]},
                ],
            }
        }
    )

    result = reconcile_state(intents, _previous())

    assert [entry.to_dict() for entry in result.character_state_changes_removed] == [
        {"characterName": "aria", "states": ["wounded"]}
    ]
    assert [entry.to_dict() for entry in result.character_state_changes_added] == [
        {"characterName": "Bren", "states": ["Asleep"]}
    ]
    assert [item.code for item in result.reconciliation_diagnostics] == [UNKNOWN_STATE_ID, UNKNOWN_STATE_ID]
    assert {item.field for item in result.reconciliation_diagnostics} == {"characterStateChangesRemoved"}


def test_character_state_replace_swaps_one_state() -> None:
    intents = parse_state_intents(
        {
            "characterState": {
                "replace": [
                    {"removeId": " wounded ", "add": {"characterName": "Aria", "states": ["Bandaged", "bandaged"]}},
                    {"removeId": "", "add": {"characterName": "Aria", "states": ["Calm"]}},
                    {"removeId": "Angry", "add": {"characterName": " ", "states": ["Calm"]}},
                    {"removeId": "Angry", "add": {"characterName": "Aria", "states": ["  "]}},
                    {"removeId": "Angry"},
                ]
            }
        }
    )

    result = reconcile_state(intents, _previous())

    assert [entry.to_dict() for entry in result.character_state_changes_removed] == [
        {"characterName": "Aria", "states": ["wounded"]}
    ]
    assert [entry.to_dict() for entry in result.character_state_changes_added] == [
        {"characterName": "Aria", "states": ["Bandaged"]}
    ]
    assert [(item.code, item.field) for item in result.reconciliation_diagnostics] == [
        (MALFORMED_REPLACE_PAYLOAD, f"stateIntents.characterState.replace[{index}]") for index in range(1, 5)
    ]


def test_character_state_replace_against_empty_state_still_adds() -> None:
    intents = parse_state_intents(
        {"characterState": {"replace": [{"removeId": "x", "add": {"characterName": "Aria", "states": ["Wounded"]}}]}}
    )

    result = reconcile_state(intents, StateReconciliationPreviousState.empty())

    assert [entry.to_dict() for entry in result.character_state_changes_added] == [
        {"characterName": "Aria", "states": ["Wounded"]}
    ]
    assert result.character_state_changes_removed == []
    assert [(item.code, item.field) for item in result.reconciliation_diagnostics] == [
        (UNKNOWN_STATE_ID, "characterStateChangesRemoved")
    ]


def test_text_removals_consume_one_matching_entry_each() -> None:
    diagnostics = DiagnosticsCollector()

    single = normalize_and_validate_remove_ids(
        ["Sword", "sword"], ("Sword",), "healthRemoved", diagnostics, match_key=intent_comparison_key
    )
    double = normalize_and_validate_remove_ids(
        ["Sword", "sword"], ("Sword", "sword"), "inventoryRemoved", diagnostics, match_key=intent_comparison_key
    )

    assert single == ["Sword"]
    assert double == ["Sword", "sword"]
    assert [(item.code, item.field) for item in diagnostics.items] == [(UNKNOWN_STATE_ID, "healthRemoved")]


def test_location_falls_back_to_previous() -> None:
    previous = _previous()
    assert reconcile_state(parse_state_intents({}), previous).current_location == "Gatehouse"
    moved = reconcile_state(parse_state_intents({"currentLocation": "  The  courtyard "}), previous)
    assert moved.current_location == "The courtyard"


def test_parse_state_intents_tolerates_garbage() -> None:
    intents = parse_state_intents(
        {
            "threats": {"add": ["not a dict", {"text": 3}], "removeIds": ["THREAT_1", 7]},
            "inventory": "nope",
            "currentLocation": 12,
        }
    )
    assert intents.threats.add == []
    assert intents.threats.remove_ids == ["THREAT_1"]
    assert intents.inventory.add == []
    assert intents.current_location is None
    assert parse_state_intents(None).threads.add == []


def test_result_to_dict_uses_camel_case_keys() -> None:
    intents = parse_state_intents({"threats": {"add": [{"text": "Rockslide", "threatType": "ENVIRONMENTAL"}]}})
    payload = reconcile_state(intents, StateReconciliationPreviousState.empty()).to_dict()
    assert payload["threatsAdded"] == [{"text": "Rockslide", "threatType": "ENVIRONMENTAL"}]
    assert payload["reconciliationDiagnostics"] == []
    assert "newCharacterCanonFacts" in payload
