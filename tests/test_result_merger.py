from __future__ import annotations

from storyweave.modules.llm.result_merger import (
    NO_DEVIATION,
    AnalystResult,
    PageWriterResult,
    WriterChoice,
    build_deviation,
    merge_page_writer_and_reconciled_state_with_analyst_results,
)
from storyweave.modules.reconcile.intents import parse_state_intents
from storyweave.modules.reconcile.reconciler import StateReconciliationPreviousState, reconcile_state


def _writer() -> PageWriterResult:
    return PageWriterResult(
        narrative="The door creaks.",
        choices=(WriterChoice(text="Enter", choice_type="ACTION"), WriterChoice(text="Leave")),
        scene_summary="A door.",
        raw_response='{"narrative":"The door creaks."}',
    )


def _reconciliation():
    intents = parse_state_intents({"threats": {"removeIds": ["THREAT_7"]}})
    return reconcile_state(intents, StateReconciliationPreviousState.empty())


def test_merge_without_analyst_uses_defaults() -> None:
    result = merge_page_writer_and_reconciled_state_with_analyst_results(_writer(), _reconciliation(), None)

    assert result.narrative == "The door creaks."
    assert result.beat_concluded is False
    assert result.recommended_action == "none"
    assert result.deviation is NO_DEVIATION
    assert [item.code for item in result.reconciliation_diagnostics] == ["UNKNOWN_STATE_ID"]


def test_merge_with_analyst_carries_every_field() -> None:
    analyst = AnalystResult(
        beat_concluded=True,
        beat_resolution="Door opened.",
        deviation_detected=True,
        deviation_reason=" Skipped the key hunt ",
        invalidated_beat_ids=("beat-3",),
        narrative_summary="You opened the door early.",
        pacing_issue_detected=True,
        pacing_issue_reason="Too fast.",
        recommended_action="rewrite",
    )

    result = merge_page_writer_and_reconciled_state_with_analyst_results(_writer(), _reconciliation(), analyst)
    payload = result.to_dict()

    assert payload["narrative"] == "The door creaks."
    assert payload["choices"] == [{"text": "Enter", "choiceType": "ACTION"}, {"text": "Leave"}]
    assert payload["beatConcluded"] is True
    assert payload["pacingIssueReason"] == "Too fast."
    assert payload["recommendedAction"] == "rewrite"
    assert payload["deviation"] == {
        "detected": True,
        "reason": "Skipped the key hunt",
        "invalidatedBeatIds": ["beat-3"],
        "narrativeSummary": "You opened the door early.",
    }
    assert payload["reconciliationDiagnostics"][0]["field"] == "threatsRemoved"
    assert payload["rawResponse"] == '{"narrative":"The door creaks."}'


def test_partial_deviation_collapses_to_none() -> None:
    assert build_deviation(None) is NO_DEVIATION
    assert build_deviation(AnalystResult(deviation_detected=True, deviation_reason="why")) is NO_DEVIATION
    assert (
        build_deviation(
            AnalystResult(
                deviation_detected=True,
                deviation_reason="why",
                narrative_summary="summary",
                invalidated_beat_ids=(" ",),
            )
        )
        is NO_DEVIATION
    )
    assert NO_DEVIATION.to_dict() == {"detected": False}
