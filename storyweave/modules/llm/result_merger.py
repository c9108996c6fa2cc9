from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from storyweave.modules.reconcile.reconciler import StateReconciliationResult
from storyweave.modules.state.diagnostics import StateReconciliationDiagnostic

RecommendedAction = Literal["none", "nudge", "rewrite"]
RECOMMENDED_ACTIONS: frozenset[str] = frozenset({"none", "nudge", "rewrite"})


@dataclass(frozen=True, slots=True)
class WriterChoice:
    text: str
    choice_type: str | None = None
    primary_delta: str | None = None

    def to_dict(self) -> dict:
        payload: dict[str, object] = {"text": self.text}
        if self.choice_type:
            payload["choiceType"] = self.choice_type
        if self.primary_delta:
            payload["primaryDelta"] = self.primary_delta
        return payload


@dataclass(frozen=True, slots=True)
class PageWriterResult:
    narrative: str
    choices: tuple[WriterChoice, ...] = ()
    scene_summary: str = ""
    is_ending: bool = False
    raw_response: str = ""

    def to_dict(self) -> dict:
        return {
            "narrative": self.narrative,
            "choices": [choice.to_dict() for choice in self.choices],
            "sceneSummary": self.scene_summary,
            "isEnding": self.is_ending,
            "rawResponse": self.raw_response,
        }


@dataclass(frozen=True, slots=True)
class AnalystResult:
    beat_concluded: bool = False
    beat_resolution: str = ""
    deviation_detected: bool = False
    deviation_reason: str = ""
    invalidated_beat_ids: tuple[str, ...] = ()
    narrative_summary: str = ""
    pacing_issue_detected: bool = False
    pacing_issue_reason: str = ""
    recommended_action: RecommendedAction = "none"
    raw_response: str = ""


@dataclass(frozen=True, slots=True)
class BeatDeviation:
    detected: bool
    reason: str = ""
    invalidated_beat_ids: tuple[str, ...] = ()
    narrative_summary: str = ""

    def to_dict(self) -> dict:
        if not self.detected:
            return {"detected": False}
        return {
            "detected": True,
            "reason": self.reason,
            "invalidatedBeatIds": list(self.invalidated_beat_ids),
            "narrativeSummary": self.narrative_summary,
        }


NO_DEVIATION = BeatDeviation(detected=False)


@dataclass(frozen=True, slots=True)
class PageGenerationResult:
    writer: PageWriterResult
    state: StateReconciliationResult
    beat_concluded: bool = False
    beat_resolution: str = ""
    pacing_issue_detected: bool = False
    pacing_issue_reason: str = ""
    recommended_action: RecommendedAction = "none"
    narrative_summary: str = ""
    deviation: BeatDeviation = field(default=NO_DEVIATION)

    @property
    def narrative(self) -> str:
        return self.writer.narrative

    @property
    def choices(self) -> tuple[WriterChoice, ...]:
        return self.writer.choices

    @property
    def is_ending(self) -> bool:
        return self.writer.is_ending

    @property
    def raw_response(self) -> str:
        return self.writer.raw_response

    @property
    def reconciliation_diagnostics(self) -> list[StateReconciliationDiagnostic]:
        return list(self.state.reconciliation_diagnostics)

    def to_dict(self) -> dict:
        return {
            **self.writer.to_dict(),
            **self.state.to_dict(),
            "beatConcluded": self.beat_concluded,
            "beatResolution": self.beat_resolution,
            "pacingIssueDetected": self.pacing_issue_detected,
            "pacingIssueReason": self.pacing_issue_reason,
            "recommendedAction": self.recommended_action,
            "narrativeSummary": self.narrative_summary,
            "deviation": self.deviation.to_dict(),
        }


def build_deviation(analyst: AnalystResult | None) -> BeatDeviation:
    """A deviation needs every piece; anything partial collapses to no deviation."""
    if analyst is None or not analyst.deviation_detected:
        return NO_DEVIATION
    reason = analyst.deviation_reason.strip()
    summary = analyst.narrative_summary.strip()
    beat_ids = tuple(beat_id for beat_id in analyst.invalidated_beat_ids if beat_id.strip())
    if not reason or not summary or not beat_ids:
        return NO_DEVIATION
    return BeatDeviation(
        detected=True,
        reason=reason,
        invalidated_beat_ids=beat_ids,
        narrative_summary=summary,
    )


def merge_page_writer_and_reconciled_state_with_analyst_results(
    writer: PageWriterResult,
    reconciliation: StateReconciliationResult,
    analyst: AnalystResult | None,
) -> PageGenerationResult:
    if analyst is None:
        return PageGenerationResult(writer=writer, state=reconciliation)
    return PageGenerationResult(
        writer=writer,
        state=reconciliation,
        beat_concluded=analyst.beat_concluded,
        beat_resolution=analyst.beat_resolution,
        pacing_issue_detected=analyst.pacing_issue_detected,
        pacing_issue_reason=analyst.pacing_issue_reason,
        recommended_action=analyst.recommended_action,
        narrative_summary=analyst.narrative_summary,
        deviation=build_deviation(analyst),
    )


__all__ = [
    "RecommendedAction",
    "RECOMMENDED_ACTIONS",
    "WriterChoice",
    "PageWriterResult",
    "AnalystResult",
    "BeatDeviation",
    "NO_DEVIATION",
    "PageGenerationResult",
    "build_deviation",
    "merge_page_writer_and_reconciled_state_with_analyst_results",
]
