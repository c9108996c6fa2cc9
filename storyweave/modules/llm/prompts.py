from __future__ import annotations

import json
from dataclasses import dataclass

from storyweave.config import settings

STRICT_SYSTEM_TEXT = "Return STRICT JSON. No markdown. No explanation."
_MAX_STATE_ITEMS = 12
_MAX_CHOICES = 4


@dataclass(frozen=True, slots=True)
class PromptEnvelope:
    system_text: str
    user_text: str
    schema_name: str
    schema_payload: dict | None = None
    tags: tuple[str, ...] = ()
    strict: bool = False

    def to_messages(self) -> list[dict]:
        return [
            {"role": "system", "content": self.system_text},
            {"role": "user", "content": self.user_text},
        ]

    def response_format(self) -> dict | None:
        if self.schema_payload is None:
            return None
        return {
            "type": "json_schema",
            "json_schema": {"name": self.schema_name, "strict": self.strict, "schema": self.schema_payload},
        }


def _string_list() -> dict:
    return {"type": "array", "items": {"type": "string"}}


def _text_intent_schema() -> dict:
    return {
        "type": "object",
        "properties": {
            "add": _string_list(),
            "removeIds": _string_list(),
            "replace": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"removeId": {"type": "string"}, "addText": {"type": "string"}},
                    "required": ["removeId", "addText"],
                },
            },
        },
    }


def _typed_intent_schema(type_key: str, id_key: str, extra: dict | None = None) -> dict:
    add_item = {
        "type": "object",
        "properties": {"text": {"type": "string"}, type_key: {"type": "string"}, **(extra or {})},
        "required": ["text", type_key],
    }
    return {
        "type": "object",
        "properties": {
            "add": {"type": "array", "items": add_item},
            f"{id_key}s": _string_list(),
            "replace": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {id_key: {"type": "string"}, "add": add_item},
                    "required": [id_key, "add"],
                },
            },
        },
    }


def _character_list_schema(list_key: str) -> dict:
    return {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {"characterName": {"type": "string"}, list_key: _string_list()},
            "required": ["characterName", list_key],
        },
    }


def schema_planner() -> dict:
    return {
        "type": "object",
        "required": ["sceneIntent", "stateIntents"],
        "properties": {
            "sceneIntent": {"type": "string"},
            "stateIntents": {
                "type": "object",
                "properties": {
                    "currentLocation": {"type": ["string", "null"]},
                    "threats": _typed_intent_schema("threatType", "removeId"),
                    "constraints": _typed_intent_schema("constraintType", "removeId"),
                    "threads": _typed_intent_schema(
                        "threadType",
                        "resolveId",
                        extra={"urgency": {"type": "string"}},
                    ),
                    "inventory": _text_intent_schema(),
                    "health": _text_intent_schema(),
                    "stateChanges": _text_intent_schema(),
                    "characterState": {
                        "type": "object",
                        "properties": {
                            "add": _character_list_schema("states"),
                            "remove": _character_list_schema("states"),
                            "replace": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "properties": {
                                        "removeId": {"type": "string"},
                                        "add": _character_list_schema("states")["items"],
                                    },
                                    "required": ["removeId", "add"],
                                },
                            },
                        },
                    },
                    "canon": {
                        "type": "object",
                        "properties": {
                            "worldAdd": _string_list(),
                            "characterAdd": _character_list_schema("facts"),
                        },
                    },
                },
            },
        },
    }


def schema_writer() -> dict:
    return {
        "type": "object",
        "required": ["narrative", "choices"],
        "properties": {
            "narrative": {"type": "string", "minLength": 1},
            "choices": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["text"],
                    "properties": {
                        "text": {"type": "string", "minLength": 1},
                        "choiceType": {"type": "string"},
                        "primaryDelta": {"type": "string"},
                    },
                },
            },
            "sceneSummary": {"type": "string"},
            "isEnding": {"type": "boolean"},
        },
    }


def schema_analyst() -> dict:
    return {
        "type": "object",
        "required": ["beatConcluded", "deviationDetected"],
        "properties": {
            "beatConcluded": {"type": "boolean"},
            "beatResolution": {"type": "string"},
            "deviationDetected": {"type": "boolean"},
            "deviationReason": {"type": "string"},
            "invalidatedBeatIds": _string_list(),
            "narrativeSummary": {"type": "string"},
            "pacingIssueDetected": {"type": "boolean"},
            "pacingIssueReason": {"type": "string"},
            "recommendedAction": {"type": "string", "enum": ["none", "nudge", "rewrite"]},
        },
    }


def _trim_prompt_text(text: str) -> str:
    limit = max(1500, int(settings.llm_prompt_max_chars))
    normalized = " ".join(str(text or "").split())
    if len(normalized) <= limit:
        return normalized
    return normalized[:limit]


def _clip_text(value: object, *, limit: int = 120) -> str:
    text = " ".join(str(value or "").split())
    if len(text) <= limit:
        return text
    return text[:limit]


def _clip_list(values: object, *, limit: int = 120) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    out: list[str] = []
    for item in values:
        text = _clip_text(item, limit=limit)
        if text:
            out.append(text)
        if len(out) >= _MAX_STATE_ITEMS:
            break
    return out


def _compact_state(state: dict | None) -> dict:
    """Reduce a page snapshot to what the stages need: ids and short text."""
    if not isinstance(state, dict):
        return {}
    out: dict[str, object] = {}
    location = _clip_text(state.get("currentLocation"), limit=120)
    if location:
        out["currentLocation"] = location
    for key in ("activeThreats", "activeConstraints", "openThreads"):
        entries: list[str] = []
        for item in state.get(key) or []:
            raw = item.get("raw") if isinstance(item, dict) else item
            text = _clip_text(raw, limit=160)
            if text:
                entries.append(text)
        if entries:
            out[key] = entries[:_MAX_STATE_ITEMS]
    for key in ("inventory", "health", "accumulatedState"):
        values = _clip_list(state.get(key))
        if values:
            out[key] = values
    character_state = state.get("characterState")
    if isinstance(character_state, dict) and character_state:
        out["characterState"] = {
            _clip_text(name, limit=48): _clip_list(states, limit=80)
            for name, states in character_state.items()
            if _clip_text(name, limit=48)
        }
    return out


def build_planner_envelope(
    *,
    premise: str,
    previous_narrative: str,
    choice_text: str,
    state: dict,
) -> PromptEnvelope:
    context = {
        "premise": _clip_text(premise, limit=600),
        "previous_narrative": _clip_text(previous_narrative, limit=1600),
        "selected_choice": _clip_text(choice_text, limit=240),
        "state": _compact_state(state),
    }
    prompt_text = (
        "Page planning task. "
        "Decide what the next page should accomplish and which state changes it implies. "
        "Refer to existing threats, constraints and threads only by their prefix (for example THREAT_2). "
        "Use only listed ids in removeIds/resolveIds. "
        "A characterState replace names the state to drop in removeId and the character it belongs to in add. "
        "Context:"
        + json.dumps(context, ensure_ascii=False, separators=(",", ":"))
    )
    return PromptEnvelope(
        system_text=STRICT_SYSTEM_TEXT,
        user_text=_trim_prompt_text(prompt_text),
        schema_name="page_planner",
        schema_payload=schema_planner(),
        tags=("page", "planner"),
    )


def build_writer_envelope(
    *,
    premise: str,
    previous_narrative: str,
    choice_text: str,
    scene_intent: str,
    state: dict,
) -> PromptEnvelope:
    context = {
        "premise": _clip_text(premise, limit=600),
        "previous_narrative": _clip_text(previous_narrative, limit=1600),
        "selected_choice": _clip_text(choice_text, limit=240),
        "scene_intent": _clip_text(scene_intent, limit=600),
        "state": _compact_state(state),
    }
    prompt_text = (
        "Page writing task. "
        f"Write the next page in second person and offer 2-{_MAX_CHOICES} distinct choices that start with a verb. "
        "Set isEnding true only when the story concludes; an ending page has no choices. "
        "Context:"
        + json.dumps(context, ensure_ascii=False, separators=(",", ":"))
    )
    return PromptEnvelope(
        system_text=STRICT_SYSTEM_TEXT,
        user_text=_trim_prompt_text(prompt_text),
        schema_name="writer_generation",
        schema_payload=schema_writer(),
        tags=("page", "writer"),
    )


def build_analyst_envelope(
    *,
    premise: str,
    narrative: str,
    previous_summary: str,
) -> PromptEnvelope:
    context = {
        "premise": _clip_text(premise, limit=600),
        "previous_summary": _clip_text(previous_summary, limit=600),
        "narrative": _clip_text(narrative, limit=2400),
    }
    prompt_text = (
        "Story analysis task. "
        "Judge whether the current beat concluded, whether planned beats are invalidated, and whether pacing suffers. "
        "Always populate narrativeSummary. "
        "Context:"
        + json.dumps(context, ensure_ascii=False, separators=(",", ":"))
    )
    return PromptEnvelope(
        system_text=STRICT_SYSTEM_TEXT,
        user_text=_trim_prompt_text(prompt_text),
        schema_name="analyst_evaluation",
        schema_payload=schema_analyst(),
        tags=("page", "analyst"),
    )


__all__ = [
    "PromptEnvelope",
    "STRICT_SYSTEM_TEXT",
    "schema_planner",
    "schema_writer",
    "schema_analyst",
    "build_planner_envelope",
    "build_writer_envelope",
    "build_analyst_envelope",
]
