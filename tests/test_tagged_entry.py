from __future__ import annotations

import pytest

from storyweave.modules.reconcile.text import (
    dedupe_by_key,
    intent_comparison_key,
    normalize_character_name,
    normalize_intent_text,
    normalize_text_intents,
)
from storyweave.modules.state.diagnostics import (
    MALFORMED_TAGGED_ENTRY,
    REMOVAL_DESCRIPTION_IGNORED,
    UNKNOWN_CATEGORY,
    DiagnosticsCollector,
)
from storyweave.modules.state.tagged_entry import (
    StateCategory,
    TaggedStateEntry,
    category_of_prefix,
    encode_tagged_entry,
    extract_prefix_from_removal,
    is_thread_type,
    is_threat_type,
    is_urgency,
    make_entry_id,
    next_prefix_number,
    parse_tagged_entry,
)


@pytest.mark.parametrize(
    "raw",
    [
        "THREAT_1: A guard approaches",
        "CONSTRAINT_7: The bridge is out",
        "THREAD_12: Who sent the letter?",
        "THREAT_a1: Time is: running out",
    ],
)
def test_parse_tagged_entry_round_trips_raw(raw: str) -> None:
    entry = parse_tagged_entry(raw)
    assert entry is not None
    assert entry.raw == raw
    assert encode_tagged_entry(entry.category, entry.suffix, entry.description) == raw


def test_parse_tagged_entry_splits_on_first_colon() -> None:
    entry = parse_tagged_entry("THREAT_a1: Time is: running out")
    assert entry is not None
    assert entry.prefix == "THREAT_a1"
    assert entry.description == "Time is: running out"
    assert entry.category == StateCategory.THREAT


@pytest.mark.parametrize("raw", ["THREAT_1 no colon", "", "   "])
def test_parse_tagged_entry_without_colon_returns_none(raw: str) -> None:
    diagnostics = DiagnosticsCollector()
    assert parse_tagged_entry(raw, diagnostics) is None
    assert diagnostics.codes() == [MALFORMED_TAGGED_ENTRY]


def test_parse_tagged_entry_unknown_category_and_empty_description() -> None:
    diagnostics = DiagnosticsCollector()
    assert parse_tagged_entry("DANGER_1: something", diagnostics) is None
    assert parse_tagged_entry("THREAT_1:   ", diagnostics) is None
    assert diagnostics.codes() == [UNKNOWN_CATEGORY, MALFORMED_TAGGED_ENTRY]


def test_entry_id_is_stable_across_description_edits() -> None:
    first = parse_tagged_entry("THREAT_3: A wolf circles")
    reworded = parse_tagged_entry("THREAT_3: A grey wolf circles closer")
    other = parse_tagged_entry("CONSTRAINT_3: A wolf circles")
    assert first is not None and reworded is not None and other is not None
    assert first.entry_id == reworded.entry_id == make_entry_id(StateCategory.THREAT, "THREAT_3")
    assert first.entry_id.startswith("th-")
    assert other.entry_id != first.entry_id
    assert first.matches("THREAT_3")
    assert first.matches(first.entry_id)
    assert not first.matches("THREAT_30")


def test_tagged_entry_from_dict_accepts_legacy_strings() -> None:
    entry = parse_tagged_entry("THREAD_2: Find the key")
    assert entry is not None
    assert TaggedStateEntry.from_dict(entry.to_dict()) == entry
    assert TaggedStateEntry.from_dict("THREAD_2: Find the key") == entry
    assert TaggedStateEntry.from_dict({"prefix": "THREAD_2", "description": "Find the key"}) == entry
    assert TaggedStateEntry.from_dict(42) is None


def test_encode_tagged_entry_rejects_bad_suffix() -> None:
    with pytest.raises(ValueError):
        encode_tagged_entry(StateCategory.THREAT, "", "x")
    with pytest.raises(ValueError):
        encode_tagged_entry(StateCategory.THREAT, "1 2", "x")


def test_extract_prefix_from_removal() -> None:
    diagnostics = DiagnosticsCollector()
    assert extract_prefix_from_removal("THREAT_1", diagnostics) == "THREAT_1"
    assert extract_prefix_from_removal("  ", diagnostics) is None
    assert extract_prefix_from_removal(": orphan", diagnostics) is None
    assert diagnostics.codes() == []

    assert extract_prefix_from_removal("THREAT_1: A guard approaches", diagnostics) == "THREAT_1"
    assert diagnostics.codes() == [REMOVAL_DESCRIPTION_IGNORED]


def test_next_prefix_number_ignores_other_categories_and_non_numeric() -> None:
    prefixes = ["THREAT_1", "THREAT_4", "THREAT_x", "CONSTRAINT_9", "junk"]
    assert next_prefix_number(StateCategory.THREAT, prefixes) == 5
    assert next_prefix_number(StateCategory.CONSTRAINT, prefixes) == 10
    assert next_prefix_number(StateCategory.THREAD, prefixes) == 1


def test_category_of_prefix() -> None:
    assert category_of_prefix("THREAD_3") == StateCategory.THREAD
    assert category_of_prefix(" CONSTRAINT_1 ") == StateCategory.CONSTRAINT
    assert category_of_prefix("THREAT") is None


def test_type_guards() -> None:
    assert is_threat_type("AMBUSH")
    assert not is_threat_type("ambush")
    assert not is_threat_type(None)
    assert is_thread_type("MORAL")
    assert is_urgency("HIGH")
    assert not is_urgency("CRITICAL")


def test_intent_text_helpers() -> None:
    assert normalize_intent_text("  a \n  b\t c ") == "a b c"
    assert normalize_intent_text(None) == ""
    assert intent_comparison_key(" Rusty  KEY ") == "rusty key"
    assert normalize_text_intents(["Sword", " sword ", "", "Shield"]) == ["Sword", "Shield"]
    assert dedupe_by_key(["a", "", "A", "b"], str.lower) == ["a", "b"]
    assert normalize_character_name("Dr. Cohen") == normalize_character_name("dr  cohen") == "dr cohen"
