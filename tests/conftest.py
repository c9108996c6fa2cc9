from __future__ import annotations

import pytest

from storyweave.config import OPENROUTER_CHAT_COMPLETIONS_URL, settings


@pytest.fixture(autouse=True)
def _reset_settings(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "llm_api_url", OPENROUTER_CHAT_COMPLETIONS_URL)
    monkeypatch.setattr(settings, "llm_api_key", "")
    monkeypatch.setattr(settings, "llm_model_default", "test/default-model")
    monkeypatch.setattr(settings, "llm_model_planner", "")
    monkeypatch.setattr(settings, "llm_model_writer", "")
    monkeypatch.setattr(settings, "llm_model_analyst", "")
    monkeypatch.setattr(settings, "llm_retry_max_attempts", 3)
    monkeypatch.setattr(settings, "llm_retry_base_delay_ms", 1000)
    monkeypatch.setattr(settings, "storage_stories_dir", str(tmp_path / "stories"))
    yield
