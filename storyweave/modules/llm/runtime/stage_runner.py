from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from storyweave.config import settings
from storyweave.modules.llm.runtime.chat_completions_client import (
    StageRequest,
    extract_message_content,
    parse_message_json_content,
    post_chat_completions,
)
from storyweave.modules.llm.runtime.errors import GenerationError
from storyweave.modules.llm.runtime.progress import (
    STAGE_COMPLETED,
    STAGE_FAILED,
    STAGE_RETRY,
    STAGE_STARTED,
    StageEmitter,
    emit_stage,
)
from storyweave.modules.llm.runtime.retry import with_retry

logger = logging.getLogger(__name__)

TParsed = TypeVar("TParsed")


@dataclass(frozen=True, slots=True)
class StageResult(Generic[TParsed]):
    parsed: TParsed
    raw_response: str


async def run_stage_once(
    stage: str,
    request: StageRequest,
    parse_response: Callable[[object], TParsed],
) -> StageResult[TParsed]:
    logger.debug("stage %s: posting request model=%s", stage, request.model)
    response_payload = await post_chat_completions(request)
    content = extract_message_content(response_payload)
    message = parse_message_json_content(content)

    try:
        parsed = parse_response(message.parsed)
    except GenerationError as exc:
        raise GenerationError(
            exc.message,
            code=exc.code,
            retryable=exc.retryable,
            context={**exc.context, "rawContent": message.raw_text},
        ) from exc
    return StageResult(parsed=parsed, raw_response=message.raw_text)


async def run_stage(
    stage: str,
    request: StageRequest,
    parse_response: Callable[[object], TParsed],
    *,
    stage_emitter: StageEmitter | None = None,
    max_retries: int | None = None,
    base_delay_ms: int | None = None,
) -> StageResult[TParsed]:
    """Run one generation stage with retry, reporting progress to ``stage_emitter``.

    Non-retryable failures abort immediately. Retryable ones back off
    exponentially until ``max_retries`` attempts have been made, after which
    the last error propagates.
    """
    emit_stage(stage_emitter, stage=stage, status=STAGE_STARTED, attempt=1)

    def _on_retry(attempt: int, error: BaseException) -> None:
        emit_stage(
            stage_emitter,
            stage=stage,
            status=STAGE_RETRY,
            attempt=attempt + 1,
            error_code=getattr(error, "code", None),
        )

    try:
        result = await with_retry(
            lambda: run_stage_once(stage, request, parse_response),
            max_retries=settings.llm_retry_max_attempts if max_retries is None else max_retries,
            base_delay_ms=settings.llm_retry_base_delay_ms if base_delay_ms is None else base_delay_ms,
            on_retry=_on_retry,
        )
    except Exception as exc:
        emit_stage(stage_emitter, stage=stage, status=STAGE_FAILED, error_code=getattr(exc, "code", None))
        raise

    emit_stage(stage_emitter, stage=stage, status=STAGE_COMPLETED)
    return result


__all__ = [
    "StageResult",
    "run_stage_once",
    "run_stage",
]
