from storyweave.modules.llm.runtime.chat_completions_client import ParsedMessage, StageRequest
from storyweave.modules.llm.runtime.errors import GenerationError
from storyweave.modules.llm.runtime.progress import GenerationStage, StageEvent, emit_stage
from storyweave.modules.llm.runtime.retry import with_retry
from storyweave.modules.llm.runtime.stage_runner import StageResult, run_stage

__all__ = [
    "GenerationError",
    "StageRequest",
    "ParsedMessage",
    "GenerationStage",
    "StageEvent",
    "emit_stage",
    "with_retry",
    "StageResult",
    "run_stage",
]
