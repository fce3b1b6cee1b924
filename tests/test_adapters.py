import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import ScriptedAdapter, canned
from video_quiz_pipeline.adapters.google_adapter import GeminiAdapter
from video_quiz_pipeline.adapters.mock_adapter import MockAdapter
from video_quiz_pipeline.adapters.openai_adapter import OpenAIAdapter
from video_quiz_pipeline.core.errors import ContentBlockedError, ProviderError
from video_quiz_pipeline.core.gateway import ModelGateway
from video_quiz_pipeline.core.schemas import schema_for
from video_quiz_pipeline.core.types import GenerationConfig, ProviderConfig, VideoInput

MESSAGES = [
    {"role": "system", "content": "Be concise."},
    {"role": "user", "content": "Write a question."},
]


def _params(task="true-false", **extra):
    params = {
        "temperature": 0.5,
        "max_output_tokens": 1536,
        "top_k": 30,
        "top_p": 0.8,
        "response_schema": schema_for(task),
        "schema_name": f"{task.replace('-', '_')}_question",
    }
    params.update(extra)
    return params


async def _send(adapter, params):
    try:
        return await adapter.send(MESSAGES, params)
    finally:
        await adapter.aclose()


def test_openai_structured_output_request(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o-2024-08-06",
                "choices": [{"message": {"content": '{"question": "x"}'}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18},
            },
        )

    adapter = OpenAIAdapter(model="gpt-4o-2024-08-06", transport=httpx.MockTransport(handler))
    response = asyncio.run(_send(adapter, _params()))

    body = seen["body"]
    assert seen["path"] == "/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert body["max_tokens"] == 1536
    assert body["messages"] == MESSAGES
    assert body["response_format"]["type"] == "json_schema"
    assert body["response_format"]["json_schema"]["name"] == "true_false_question"
    assert body["response_format"]["json_schema"]["strict"] is True
    assert body["response_format"]["json_schema"]["schema"]["additionalProperties"] is False
    assert response["text"] == '{"question": "x"}'
    assert response["tokens_in"] == 11
    assert response["total_tokens"] == 18


def test_openai_rate_limit_becomes_provider_error(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    def handler(request):
        return httpx.Response(429, json={"error": {"type": "rate_limit", "message": "slow down"}})

    adapter = OpenAIAdapter(model="gpt-4o", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_send(adapter, _params()))
    assert excinfo.value.status == 429
    assert "Rate limit" in str(excinfo.value)


def test_openai_refusal_is_a_content_block(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    def handler(request):
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": None, "refusal": "I can't help"}, "finish_reason": "stop"}]},
        )

    adapter = OpenAIAdapter(model="gpt-4o", transport=httpx.MockTransport(handler))
    with pytest.raises(ContentBlockedError):
        asyncio.run(_send(adapter, _params()))


def test_openai_rejects_video_and_missing_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    adapter = OpenAIAdapter(model="gpt-4o", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_send(adapter, _params()))
    assert excinfo.value.status == 401

    adapter = OpenAIAdapter(model="gpt-4o", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(ProviderError):
        asyncio.run(_send(adapter, _params(video=VideoInput(file_uri="https://v"))))


def test_gemini_payload_with_video_window():
    adapter = GeminiAdapter(model="gemini-2.5-flash", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    payload = adapter.build_payload(
        MESSAGES,
        _params("hotspot", video=VideoInput(file_uri="https://youtu.be/x", start_offset=34.5, end_offset=35.0)),
    )

    parts = payload["contents"][0]["parts"]
    assert parts[0]["fileData"]["fileUri"] == "https://youtu.be/x"
    assert parts[0]["videoMetadata"] == {"startOffset": "34.5s", "endOffset": "35s"}
    assert parts[1]["text"].startswith("Be concise.")
    assert "Write a question." in parts[1]["text"]
    config = payload["generationConfig"]
    assert config["responseMimeType"] == "application/json"
    assert config["topK"] == 30
    assert "additionalProperties" not in json.dumps(config["responseSchema"])


def test_gemini_send_and_usage(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "g-test")
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["key"] = request.url.params["key"]
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": '{"a":'}, {"text": " 1}"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 3, "totalTokenCount": 8},
                "modelVersion": "gemini-2.5-pro",
            },
        )

    adapter = GeminiAdapter(model="gemini-2.5-flash", transport=httpx.MockTransport(handler))
    response = asyncio.run(_send(adapter, _params(model="gemini-2.5-pro")))

    assert seen["path"] == "/v1beta/models/gemini-2.5-pro:generateContent"
    assert seen["key"] == "g-test"
    assert response["text"] == '{"a": 1}'
    assert response["total_tokens"] == 8
    assert response["model"] == "gemini-2.5-pro"


@pytest.mark.parametrize(
    "body",
    [
        {"candidates": [{"content": {"parts": []}, "finishReason": "SAFETY"}]},
        {"candidates": [], "promptFeedback": {"blockReason": "OTHER"}},
    ],
)
def test_gemini_blocks(monkeypatch, body):
    monkeypatch.setenv("GEMINI_API_KEY", "g-test")
    adapter = GeminiAdapter(model="gemini-2.5-flash", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
    with pytest.raises(ContentBlockedError):
        asyncio.run(_send(adapter, _params()))


def test_mock_adapter_answers_by_schema_name():
    adapter = MockAdapter("gemini", responses={"true_false_question": {"question": "override"}})
    response = asyncio.run(_send(adapter, _params()))
    assert json.loads(response["text"]) == {"question": "override"}
    assert adapter.calls[0]["params"]["schema_name"] == "true_false_question"


@pytest.mark.parametrize(
    "make_adapter",
    [
        lambda transport: OpenAIAdapter(model="gpt-4o", transport=transport),
        lambda transport: GeminiAdapter(model="gemini-2.5-flash", transport=transport),
    ],
)
def test_non_json_body_becomes_provider_error(monkeypatch, make_adapter):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("GEMINI_API_KEY", "g-test")
    transport = httpx.MockTransport(lambda r: httpx.Response(200, text="<html>gateway</html>"))
    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_send(make_adapter(transport), _params()))
    assert excinfo.value.status == 200
    assert "non-JSON" in str(excinfo.value)
    assert excinfo.value.body == "<html>gateway</html>"


@pytest.mark.parametrize("body", [{"candidates": ["oops"]}, ["not", "an", "object"]])
def test_gemini_malformed_shape_becomes_provider_error(monkeypatch, body):
    monkeypatch.setenv("GEMINI_API_KEY", "g-test")
    adapter = GeminiAdapter(model="gemini-2.5-flash", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
    with pytest.raises(ProviderError):
        asyncio.run(_send(adapter, _params()))


def test_gateway_falls_back_after_non_json_body(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, text="<html>gateway</html>")

    primary = OpenAIAdapter(model="gpt-4o", transport=httpx.MockTransport(handler))
    fallback = ScriptedAdapter("gemini", [canned("true_false_question")])
    gateway = ModelGateway(
        {"openai": primary, "gemini": fallback}, ProviderConfig(retry_attempts=2, retry_delay_ms=0)
    )
    config = GenerationConfig(temperature=0.5, max_output_tokens=512, top_k=10, top_p=0.9)

    async def run():
        try:
            return await gateway.generate("true-false", "prompt", config)
        finally:
            await gateway.aclose()

    result = asyncio.run(run())

    assert result.provider_used == "gemini"
    assert len(calls) == 2
    assert "non-JSON" in result.provider_errors["openai"]
