from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from storyweave.config import settings
from storyweave.modules.llm.runtime import chat_completions_client as client
from storyweave.modules.llm.runtime.errors import GenerationError


class _FakeResponse:
    def __init__(self, *, status_code: int, payload: object | None = None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text if text is not None else json.dumps(self._payload)
        self.request = httpx.Request("POST", settings.llm_api_url)

    def json(self) -> object:
        return json.loads(self.text)


class _FakeAsyncClient:
    scenarios: list[object] = []
    requests: list[dict] = []

    def __init__(self, *, timeout):
        self.timeout = timeout

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url: str, *, headers: dict, json: dict):
        _FakeAsyncClient.requests.append({"url": url, "headers": headers, "json": json})
        if not _FakeAsyncClient.scenarios:
            raise RuntimeError("no fake scenario configured")
        outcome = _FakeAsyncClient.scenarios.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _install(monkeypatch: pytest.MonkeyPatch, *scenarios: object) -> None:
    _FakeAsyncClient.scenarios = list(scenarios)
    _FakeAsyncClient.requests = []
    monkeypatch.setattr(client.httpx, "AsyncClient", _FakeAsyncClient)


def _request(**overrides) -> client.StageRequest:
    payload = {
        "model": "test/model",
        "temperature": 0.5,
        "max_tokens": 256,
        "messages": [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}],
        "response_format": {"type": "json_schema", "json_schema": {"name": "x", "strict": True, "schema": {}}},
        "api_key": "k",
    }
    payload.update(overrides)
    return client.StageRequest(**payload)


def test_post_sends_headers_and_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=200, payload={"choices": [{"message": {"content": "{}"}}]}))

    body = asyncio.run(client.post_chat_completions(_request()))

    assert body == {"choices": [{"message": {"content": "{}"}}]}
    req = _FakeAsyncClient.requests[0]
    assert req["url"] == settings.llm_api_url
    assert req["headers"]["Authorization"] == "Bearer k"
    assert req["headers"]["Content-Type"] == "application/json"
    assert req["headers"]["HTTP-Referer"] == settings.llm_referer
    assert req["headers"]["X-Title"] == settings.llm_app_title
    assert set(req["json"].keys()) == {"model", "messages", "temperature", "max_tokens", "response_format"}
    assert req["json"]["max_tokens"] == 256


def test_normalize_messages_drops_unknown_roles() -> None:
    payload = client.build_chat_completion_payload(
        _request(messages=[{"role": "tool", "content": "x"}, {"role": "USER", "content": "hi"}])
    )
    assert payload["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.parametrize(("status", "retryable"), [(400, False), (401, False), (429, True), (500, True), (503, True)])
def test_http_errors_are_classified(monkeypatch: pytest.MonkeyPatch, status: int, retryable: bool) -> None:
    body = {"error": {"code": "bad", "message": "nope"}}
    _install(monkeypatch, _FakeResponse(status_code=status, payload=body))

    with pytest.raises(GenerationError) as exc_info:
        asyncio.run(client.post_chat_completions(_request()))

    error = exc_info.value
    assert error.code == f"HTTP_{status}"
    assert error.retryable is retryable
    assert error.message == "nope"
    assert error.context["httpStatus"] == status
    assert error.context["model"] == "test/model"
    assert error.context["parsedError"] == {"code": "bad", "message": "nope"}
    assert json.loads(error.context["rawErrorBody"]) == body


def test_http_error_with_plain_text_body(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=502, text="bad gateway"))

    with pytest.raises(GenerationError) as exc_info:
        asyncio.run(client.post_chat_completions(_request()))

    assert exc_info.value.message == "bad gateway"
    assert exc_info.value.context["parsedError"] is None


def test_http_error_with_empty_body_uses_status_message(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=500, text=""))

    with pytest.raises(GenerationError) as exc_info:
        asyncio.run(client.post_chat_completions(_request()))

    assert "500" in exc_info.value.message
    assert exc_info.value.context["rawErrorBody"] == ""


def test_transport_failures_become_retryable(monkeypatch: pytest.MonkeyPatch) -> None:
    request = httpx.Request("POST", settings.llm_api_url)
    _install(
        monkeypatch,
        httpx.ReadTimeout("slow", request=request),
        httpx.ConnectError("refused", request=request),
    )

    with pytest.raises(GenerationError) as timeout_info:
        asyncio.run(client.post_chat_completions(_request()))
    with pytest.raises(GenerationError) as network_info:
        asyncio.run(client.post_chat_completions(_request()))

    assert timeout_info.value.code == "TIMEOUT"
    assert timeout_info.value.retryable is True
    assert network_info.value.code == "NETWORK_ERROR"
    assert network_info.value.retryable is True


@pytest.mark.parametrize(
    "payload",
    [
        {"choices": []},
        {"choices": [{"message": {"content": ""}}]},
        {"choices": [{"message": {"content": "   "}}]},
        {"choices": [{"message": {}}]},
        {},
    ],
)
def test_extract_message_content_empty_is_retryable(payload: dict) -> None:
    with pytest.raises(GenerationError) as exc_info:
        client.extract_message_content(payload)
    assert exc_info.value.code == "EMPTY_RESPONSE"
    assert exc_info.value.retryable is True


def test_parse_message_json_content_plain_string() -> None:
    message = client.parse_message_json_content('{"a": 1}')
    assert message.parsed == {"a": 1}
    assert message.raw_text == '{"a": 1}'


def test_parse_message_json_content_passes_objects_through() -> None:
    message = client.parse_message_json_content({"a": [1, 2]})
    assert message.parsed == {"a": [1, 2]}
    assert json.loads(message.raw_text) == {"a": [1, 2]}


def test_parse_message_json_content_strips_code_fence() -> None:
    message = client.parse_message_json_content('```json\n{"narrative": "x"}\n```')
    assert message.parsed == {"narrative": "x"}


def test_parse_message_json_content_extracts_embedded_json() -> None:
    message = client.parse_message_json_content('Here you go: {"ok": true} hope it helps')
    assert message.parsed == {"ok": True}


def test_parse_message_json_content_repairs_trailing_commas_and_closers() -> None:
    assert client.parse_message_json_content('{"items": [1, 2,],}').parsed == {"items": [1, 2]}
    assert client.parse_message_json_content('{"items": [1, 2').parsed == {"items": [1, 2]}


def test_parse_message_json_content_joins_text_parts() -> None:
    content = [{"type": "text", "text": '{"a":'}, {"type": "text", "text": "1}"}]
    message = client.parse_message_json_content(content)
    assert message.parsed == {"a": 1}
    assert message.raw_text == '{"a":\n1}'


def test_parse_message_json_content_invalid_raises_invalid_json() -> None:
    with pytest.raises(GenerationError) as exc_info:
        client.parse_message_json_content("definitely not json")

    error = exc_info.value
    assert error.code == "INVALID_JSON"
    assert error.retryable is True
    assert error.context["rawContent"] == "definitely not json"
    assert error.context["parseStage"] == "message_content"


def test_repair_json_rejects_mismatched_closers() -> None:
    assert client.repair_json('{"a": [1}') is None
