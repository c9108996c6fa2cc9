from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

OPENROUTER_CHAT_COMPLETIONS_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_STORIES_DIR = "stories"
STAGE_NAMES: frozenset[str] = frozenset({"planner", "writer", "analyst"})


class Settings(BaseSettings):
    app_name: str = "storyweave"
    env: str = "dev"

    llm_api_url: str = OPENROUTER_CHAT_COMPLETIONS_URL
    llm_api_key: str = ""
    llm_model_default: str = "anthropic/claude-sonnet-4.5"
    llm_model_planner: str = ""
    llm_model_writer: str = ""
    llm_model_analyst: str = ""
    llm_temperature: float = 0.8
    llm_max_tokens: int = 8192
    llm_timeout_s: float = 120.0
    llm_connect_timeout_s: float = 10.0
    llm_read_timeout_s: float = 120.0
    llm_retry_max_attempts: int = 3
    llm_retry_base_delay_ms: int = 1000
    llm_prompt_max_chars: int = 12000
    llm_referer: str = "http://localhost:3000"
    llm_app_title: str = "storyweave"

    storage_stories_dir: str = DEFAULT_STORIES_DIR

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def stage_model(self, stage: str) -> str:
        stage_key = str(stage or "").strip().lower()
        if stage_key not in STAGE_NAMES:
            return self.llm_model_default
        override = str(getattr(self, f"llm_model_{stage_key}", "") or "").strip()
        return override or self.llm_model_default


def validate_storage_dir(raw_dir: str | None) -> str:
    candidate = (raw_dir or "").strip()
    if not candidate:
        raise RuntimeError(
            "STORAGE_STORIES_DIR cannot be empty because story documents would be written to the working directory. "
            f"Set STORAGE_STORIES_DIR={DEFAULT_STORIES_DIR} or another directory."
        )
    return candidate


def stories_root() -> Path:
    return Path(validate_storage_dir(settings.storage_stories_dir)).resolve()


settings = Settings()
