import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import ScriptedAdapter, canned
from video_quiz_pipeline.core.errors import (
    AllProvidersFailedError,
    ContentBlockedError,
    ParseError,
    ProviderError,
    describe_error,
)
from video_quiz_pipeline.core.gateway import ModelGateway, parse_json_object
from video_quiz_pipeline.core.observability import ObservabilitySink
from video_quiz_pipeline.core.types import GenerationConfig, ProviderConfig, VideoInput

CONFIG = GenerationConfig(temperature=0.5, max_output_tokens=512, top_k=10, top_p=0.9)


def _gateway(primary, fallback, sink=None, attempts=3):
    provider_config = ProviderConfig(retry_attempts=attempts, retry_delay_ms=0)
    return ModelGateway({"openai": primary, "gemini": fallback}, provider_config, sink=sink)


def test_parse_json_object_is_strict():
    assert parse_json_object('{"a": 1}') == {"a": 1}
    for text in ['```json\n{"a": 1}\n```', 'Sure! {"a": 1}', "[1, 2]", "", None]:
        with pytest.raises(ParseError):
            parse_json_object(text)


def test_fallback_serves_when_primary_always_fails():
    primary = ScriptedAdapter("openai", [ProviderError("server exploded", provider="openai", status=500)])
    fallback = ScriptedAdapter("gemini", [canned("true_false_question")])
    gateway = _gateway(primary, fallback)

    result = asyncio.run(gateway.generate("true-false", "prompt", CONFIG))

    assert result.provider_used == "gemini"
    assert result.content["correct_answer"] is True
    assert "server exploded" in result.provider_errors["openai"]
    assert len(primary.calls) == 3
    assert len(fallback.calls) == 1
    assert result.usage.total_tokens == 30


def test_all_providers_failed_names_both_errors():
    primary = ScriptedAdapter("openai", [ProviderError("rate limited", provider="openai", status=429)])
    fallback = ScriptedAdapter("gemini", ["definitely not json"])
    gateway = _gateway(primary, fallback, attempts=2)

    with pytest.raises(AllProvidersFailedError) as excinfo:
        asyncio.run(gateway.generate("true-false", "prompt", CONFIG))

    error = excinfo.value
    assert set(error.errors) == {"openai", "gemini"}
    assert "Primary (openai): rate limited" in str(error)
    assert "Fallback (gemini)" in str(error)
    assert len(fallback.calls) == 2


def test_parse_error_is_retried_on_same_provider():
    primary = ScriptedAdapter("openai", ["Here you go: {}", canned("true_false_question")])
    fallback = ScriptedAdapter("gemini", [canned("true_false_question")])
    gateway = _gateway(primary, fallback)

    result = asyncio.run(gateway.generate("true-false", "prompt", CONFIG))

    assert result.provider_used == "openai"
    assert result.provider_errors == {}
    assert len(primary.calls) == 2
    assert fallback.calls == []


def test_auth_errors_and_blocks_skip_retries():
    primary = ScriptedAdapter("openai", [ProviderError("bad key", provider="openai", status=401)])
    fallback = ScriptedAdapter("gemini", [ContentBlockedError("blocked", provider="gemini", reason="SAFETY")])
    gateway = _gateway(primary, fallback)

    with pytest.raises(AllProvidersFailedError):
        asyncio.run(gateway.generate("true-false", "prompt", CONFIG))

    assert len(primary.calls) == 1
    assert len(fallback.calls) == 1


def test_video_requests_skip_text_only_providers():
    primary = ScriptedAdapter("openai", [canned("hotspot_question")], supports_video=False)
    fallback = ScriptedAdapter("gemini", [canned("hotspot_question")])
    gateway = _gateway(primary, fallback)

    result = asyncio.run(
        gateway.generate("hotspot", "prompt", CONFIG, video=VideoInput(file_uri="https://v", start_offset=1.5, end_offset=2))
    )

    assert result.provider_used == "gemini"
    assert primary.calls == []
    assert "video" in result.provider_errors["openai"]
    assert fallback.calls[0]["params"]["video"].start_offset == 1.5
    assert fallback.calls[0]["params"]["schema_name"] == "hotspot_question"


def test_model_override_applies_only_to_its_provider():
    config = GenerationConfig(
        temperature=0.1, max_output_tokens=100, top_k=1, top_p=0.8, model="gemini-2.5-pro", model_provider="gemini"
    )
    primary = ScriptedAdapter("openai", [ProviderError("down", provider="openai", status=503)])
    fallback = ScriptedAdapter("gemini", [canned("true_false_question")])
    gateway = _gateway(primary, fallback, attempts=1)

    result = asyncio.run(gateway.generate("true-false", "prompt", config))

    assert "model" not in primary.calls[0]["params"]
    assert fallback.calls[0]["params"]["model"] == "gemini-2.5-pro"
    assert result.model_used == "gemini-2.5-pro"


def test_every_attempt_reaches_the_trace_sink(tmp_path):
    trace = tmp_path / "logs" / "trace.jsonl"
    sink = ObservabilitySink(trace_path=trace)
    primary = ScriptedAdapter("openai", ["oops", canned("true_false_question")])
    fallback = ScriptedAdapter("gemini", [canned("true_false_question")])
    gateway = _gateway(primary, fallback, sink=sink)

    async def _run():
        await gateway.generate("true-false", "prompt", CONFIG)
        await gateway.flush()

    asyncio.run(_run())

    events = sink.events
    assert [event["success"] for event in events] == [False, True]
    assert events[0]["task"] == "true-false"
    assert events[1]["usage"]["total_tokens"] == 30
    assert len(trace.read_text(encoding="utf-8").splitlines()) == 2


def test_failing_sink_never_breaks_generation():
    class BrokenSink(ObservabilitySink):
        async def log_attempt(self, **event):
            raise RuntimeError("disk full")

    primary = ScriptedAdapter("openai", [canned("true_false_question")])
    gateway = _gateway(primary, ScriptedAdapter("gemini", [{}]), sink=BrokenSink())

    async def _run():
        result = await gateway.generate("true-false", "prompt", CONFIG)
        await gateway.flush()
        return result

    assert asyncio.run(_run()).provider_used == "openai"


def test_health_check_reports_each_provider():
    primary = ScriptedAdapter("openai", [ProviderError("bad key", provider="openai", status=401)])
    fallback = ScriptedAdapter("gemini", [{"status": "ok"}])
    gateway = _gateway(primary, fallback)

    results = asyncio.run(gateway.health_check())

    assert results["openai"]["healthy"] is False
    assert "bad key" in results["openai"]["error"]
    assert results["gemini"]["healthy"] is True
    assert results["gemini"]["error"] is None


def test_describe_error_unwraps_causes():
    try:
        try:
            raise ValueError("root cause")
        except ValueError as exc:
            raise RuntimeError("wrapper") from exc
    except RuntimeError as wrapped:
        assert describe_error(wrapped) == "root cause"
