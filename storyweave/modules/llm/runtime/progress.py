from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class GenerationStage(str, Enum):
    PLANNER = "planner"
    WRITER = "writer"
    ANALYST = "analyst"
    RECONCILER = "reconciler"


STAGE_STARTED = "started"
STAGE_RETRY = "retry"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"

_STAGE_LABELS = {
    GenerationStage.PLANNER: "Planning the next page",
    GenerationStage.WRITER: "Writing the page",
    GenerationStage.ANALYST: "Analyzing story structure",
    GenerationStage.RECONCILER: "Reconciling story state",
}


@dataclass(slots=True, frozen=True)
class StageEvent:
    stage: str
    status: str
    label: str
    attempt: int | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "stage": str(self.stage or "").strip(),
            "status": str(self.status or "").strip(),
            "label": str(self.label or "").strip(),
        }
        if self.attempt is not None:
            payload["attempt"] = int(self.attempt)
        if self.error_code:
            payload["error_code"] = str(self.error_code)
        return payload


StageEmitter = Callable[[StageEvent], None]


def stage_label(stage: str) -> str:
    try:
        return _STAGE_LABELS[GenerationStage(str(stage or "").strip().lower())]
    except ValueError:
        return "Generating"


def build_stage_event(
    *,
    stage: str,
    status: str,
    attempt: int | None = None,
    error_code: str | None = None,
) -> StageEvent:
    stage_name = str(getattr(stage, "value", stage) or "").strip()
    return StageEvent(
        stage=stage_name,
        status=str(status or "").strip(),
        label=stage_label(stage_name),
        attempt=attempt,
        error_code=(str(error_code).strip() if error_code is not None else None) or None,
    )


def emit_stage(
    stage_emitter: StageEmitter | None,
    *,
    stage: str,
    status: str,
    attempt: int | None = None,
    error_code: str | None = None,
) -> None:
    if stage_emitter is None:
        return
    event = build_stage_event(stage=stage, status=status, attempt=attempt, error_code=error_code)
    try:
        stage_emitter(event)
    except Exception:  # noqa: BLE001
        # Observer errors are logged and dropped.
        logger.debug("stage emitter failed for %s/%s", event.stage, event.status, exc_info=True)
        return


__all__ = [
    "GenerationStage",
    "StageEvent",
    "StageEmitter",
    "STAGE_STARTED",
    "STAGE_RETRY",
    "STAGE_COMPLETED",
    "STAGE_FAILED",
    "stage_label",
    "build_stage_event",
    "emit_stage",
]
