from __future__ import annotations

import io
import json
from typing import Any
from urllib import error

import pytest

from agent_engine.app import llm as llm_module
from agent_engine.app.decision import Decision
from agent_engine.app.llm import OpenAIChatCompletionsAdapter, build_llm_adapter
from conftest import make_settings


class FakeResponse:
    def __init__(self, body: dict[str, Any]) -> None:
        self.body = json.dumps(body).encode("utf-8")

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None

    def read(self) -> bytes:
        return self.body


def _completion(content: Any) -> dict[str, Any]:
    return {"choices": [{"message": {"content": content}}]}


def _http_error(code: int, body: str) -> error.HTTPError:
    return error.HTTPError(
        "https://api.openai.com/v1/chat/completions", code, "error", {}, io.BytesIO(body.encode())
    )


def _install(monkeypatch: pytest.MonkeyPatch, *outcomes: Any) -> list[dict[str, Any]]:
    sent: list[dict[str, Any]] = []
    queue = list(outcomes)

    def fake_urlopen(req, timeout):
        sent.append(json.loads(req.data.decode("utf-8")))
        outcome = queue.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return FakeResponse(outcome)

    monkeypatch.setattr(llm_module.request, "urlopen", fake_urlopen)
    return sent


def _adapter(**kwargs: Any) -> OpenAIChatCompletionsAdapter:
    return OpenAIChatCompletionsAdapter(api_key="sk-test", backoff_s=0.0, **kwargs)


def test_structured_completion_is_validated(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = _install(
        monkeypatch,
        _completion('{"action": "tool", "tool": "create_image", "arguments": {"prompt": "a cat"}}'),
    )

    decision = _adapter().generate_structured(
        system_prompt="sys", user_prompt="draw a cat", response_model=Decision, timeout_s=5.0
    )

    assert decision.tool == "create_image"
    assert sent[0]["response_format"]["json_schema"]["name"] == "decision"


def test_text_completion_joins_content_parts(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _completion([{"type": "text", "text": "Hello "}, {"text": "there"}]))

    text = _adapter().generate_text(system_prompt="sys", user_prompt="hi", timeout_s=5.0)

    assert text == "Hello there"


def test_server_errors_are_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = _install(monkeypatch, _http_error(503, "overloaded"), _completion("ok"))

    text = _adapter(max_retries=1).generate_text(
        system_prompt="sys", user_prompt="hi", timeout_s=5.0
    )

    assert text == "ok"
    assert len(sent) == 2


def test_client_errors_are_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = _install(monkeypatch, _http_error(400, "bad schema"), _completion("never"))

    with pytest.raises(error.HTTPError) as excinfo:
        _adapter(max_retries=3).generate_text(system_prompt="sys", user_prompt="hi", timeout_s=5.0)

    assert excinfo.value.code == 400
    assert "bad schema" in str(excinfo.value)
    assert len(sent) == 1


def test_adapter_requires_an_api_key() -> None:
    assert build_llm_adapter(make_settings(openai_api_key="")) is None
    assert isinstance(
        build_llm_adapter(make_settings(openai_api_key="sk-test")), OpenAIChatCompletionsAdapter
    )
