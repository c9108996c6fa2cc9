"""Stage output parsers handed to :func:`run_stage`.

The stage runner hands each parser JSON it has already decoded. The parser
checks it against the stage schema and builds a typed result. Any structural
failure is a retryable ``GenerationError`` so the runner retries it like any
other bad response.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from storyweave.modules.llm.prompts import schema_analyst, schema_planner, schema_writer
from storyweave.modules.llm.result_merger import (
    RECOMMENDED_ACTIONS,
    AnalystResult,
    PageWriterResult,
    WriterChoice,
)
from storyweave.modules.llm.runtime.errors import (
    ERROR_SCHEMA_VALIDATION,
    ERROR_VALIDATION,
    OUTPUT_SCHEMA_VALIDATE,
    OUTPUT_SHAPE,
    GenerationError,
)
from storyweave.modules.reconcile.intents import StateIntents, parse_state_intents


@dataclass(frozen=True, slots=True)
class PagePlan:
    scene_intent: str
    state_intents: StateIntents


def output_snippet(payload: object, limit: int = 240) -> str:
    text = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False, default=str)
    return " ".join(text.split())[:limit]


def _invalid_output(message: str, payload: object, *, code: str, error_kind: str, **context) -> GenerationError:
    return GenerationError(
        message,
        code=code,
        retryable=True,
        context={"errorKind": error_kind, "rawSnippet": output_snippet(payload), **context},
    )


def check_stage_output(stage: str, payload: object, schema: dict) -> dict:
    """Validate decoded stage JSON against ``schema`` and return it as a dict."""
    error = best_match(Draft202012Validator(schema).iter_errors(payload))
    if error is not None:
        path = "/".join(str(part) for part in error.absolute_path)
        location = f" at {path}" if path else ""
        raise _invalid_output(
            f"{stage} output failed schema check{location}: {error.message}",
            payload,
            code=ERROR_SCHEMA_VALIDATION,
            error_kind=OUTPUT_SCHEMA_VALIDATE,
            path=path,
        )
    if not isinstance(payload, dict):
        raise _invalid_output(
            f"{stage} output must be a JSON object",
            payload,
            code=ERROR_VALIDATION,
            error_kind=OUTPUT_SHAPE,
        )
    return payload


def _text(value: object) -> str:
    return str(value or "").strip() if isinstance(value, str) else ""


def parse_planner_output(payload: object) -> PagePlan:
    data = check_stage_output("planner", payload, schema_planner())
    return PagePlan(
        scene_intent=_text(data.get("sceneIntent")),
        state_intents=parse_state_intents(data.get("stateIntents")),
    )


def parse_writer_output(payload: object) -> PageWriterResult:
    data = check_stage_output("writer", payload, schema_writer())
    narrative = _text(data.get("narrative"))
    if not narrative:
        raise _invalid_output("narrative must not be blank", data, code=ERROR_VALIDATION, error_kind=ERROR_VALIDATION)

    choices: list[WriterChoice] = []
    seen: set[str] = set()
    for item in data.get("choices") or []:
        text = _text(item.get("text"))
        if not text or text.casefold() in seen:
            continue
        seen.add(text.casefold())
        choices.append(
            WriterChoice(
                text=text,
                choice_type=_text(item.get("choiceType")) or None,
                primary_delta=_text(item.get("primaryDelta")) or None,
            )
        )

    is_ending = bool(data.get("isEnding"))
    if not is_ending and len(choices) < 2:
        raise _invalid_output(
            "non-ending page needs at least 2 distinct choices",
            data,
            code=ERROR_VALIDATION,
            error_kind=ERROR_VALIDATION,
        )
    return PageWriterResult(
        narrative=narrative,
        choices=() if is_ending else tuple(choices),
        scene_summary=_text(data.get("sceneSummary")),
        is_ending=is_ending,
    )


def parse_analyst_output(payload: object) -> AnalystResult:
    data = check_stage_output("analyst", payload, schema_analyst())
    action = _text(data.get("recommendedAction")) or "none"
    beat_ids = data.get("invalidatedBeatIds") or []
    return AnalystResult(
        beat_concluded=bool(data.get("beatConcluded")),
        beat_resolution=_text(data.get("beatResolution")),
        deviation_detected=bool(data.get("deviationDetected")),
        deviation_reason=_text(data.get("deviationReason")),
        invalidated_beat_ids=tuple(_text(item) for item in beat_ids if _text(item)),
        narrative_summary=_text(data.get("narrativeSummary")),
        pacing_issue_detected=bool(data.get("pacingIssueDetected")),
        pacing_issue_reason=_text(data.get("pacingIssueReason")),
        recommended_action=action if action in RECOMMENDED_ACTIONS else "none",
    )


__all__ = [
    "PagePlan",
    "check_stage_output",
    "output_snippet",
    "parse_planner_output",
    "parse_writer_output",
    "parse_analyst_output",
]
