"""Model gateway: one request contract over two interchangeable providers.

The gateway owns retrying (exponential backoff through tenacity), strict JSON
parsing and the preferred/fallback provider switch. Adapters make exactly one
HTTP request per call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..adapters.base import ChatAdapter, ChatResponse
from .errors import (
    AllProvidersFailedError,
    ContentBlockedError,
    ParseError,
    ProviderError,
    describe_error,
)
from .observability import NullSink, ObservabilitySink
from .schemas import schema_for, schema_name
from .types import GatewayResult, GenerationConfig, ProviderConfig, TokenUsage, VideoInput

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert educational content creator. Generate high-quality quiz "
    "questions according to the provided schema."
)

# Authentication and unknown-model failures do not improve on retry
NON_RETRYABLE_STATUSES = {400, 401, 403, 404}


def parse_json_object(text: Optional[str]) -> Dict[str, Any]:
    """Parse a model response as one strict JSON object.

    Prose around the JSON or markdown code fences are rejected, never repaired.
    """
    if text is None or not text.strip():
        raise ParseError("Model returned an empty response", raw=text or "")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Model response is not valid JSON: {exc.msg}", raw=text, cause=exc) from exc
    if not isinstance(data, dict):
        raise ParseError(
            f"Model response must be a JSON object, got {type(data).__name__}", raw=text
        )
    return data


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ParseError):
        return True
    if isinstance(exc, ContentBlockedError):
        return False
    if isinstance(exc, ProviderError):
        return exc.status not in NON_RETRYABLE_STATUSES
    return False


def _usage(response: ChatResponse) -> TokenUsage:
    prompt_tokens = response.get("tokens_in") or 0
    completion_tokens = response.get("tokens_out") or 0
    total = response.get("total_tokens") or (prompt_tokens + completion_tokens)
    return TokenUsage(
        prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, total_tokens=total
    )


class ModelGateway:
    """Routes one structured-output request to the preferred provider, then the fallback."""

    def __init__(
        self,
        adapters: Mapping[str, ChatAdapter],
        config: ProviderConfig,
        sink: Optional[ObservabilitySink] = None,
    ) -> None:
        self.adapters = dict(adapters)
        self.config = config
        self.sink = sink or NullSink()
        self._pending: set[asyncio.Task] = set()

    def provider_order(self) -> list[str]:
        order = []
        for name in (self.config.preferred_provider, self.config.fallback_provider):
            if name and name not in order:
                order.append(name)
        return order

    async def generate(
        self,
        question_type: str,
        prompt: str,
        config: GenerationConfig,
        *,
        schema: Optional[Dict[str, Any]] = None,
        video: Optional[VideoInput] = None,
        system_prompt: str = SYSTEM_PROMPT,
        retry_attempts: Optional[int] = None,
    ) -> GatewayResult:
        """Generate one JSON object for ``question_type`` (or a pipeline task name).

        Raises AllProvidersFailedError naming each provider's final error when
        every provider is exhausted.
        """
        response_schema = schema if schema is not None else schema_for(question_type)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]
        errors: Dict[str, str] = {}

        for provider in self.provider_order():
            adapter = self.adapters.get(provider)
            if adapter is None:
                errors[provider] = "provider is not configured"
                continue
            if video is not None and not getattr(adapter, "supports_video", False):
                errors[provider] = "provider does not support video input"
                continue

            params: Dict[str, Any] = config.as_params()
            params["response_schema"] = response_schema
            params["schema_name"] = schema_name(question_type)
            if video is not None:
                params["video"] = video
            if config.model and config.model_provider == provider:
                params["model"] = config.model

            try:
                result = await self._generate_with_retry(
                    adapter, question_type, messages, params, retry_attempts
                )
            except (ProviderError, ParseError) as exc:
                message = describe_error(exc)
                errors[provider] = message
                log.warning("[gateway] %s failed for %s: %s", provider, question_type, message[:200])
                continue

            result.provider_errors = dict(errors)
            if errors:
                log.info(
                    "[gateway] %s served by fallback %s after: %s",
                    question_type,
                    provider,
                    "; ".join(f"{p}: {e[:80]}" for p, e in errors.items()),
                )
            return result

        raise AllProvidersFailedError(errors)

    async def _generate_with_retry(
        self,
        adapter: ChatAdapter,
        task: str,
        messages: list[dict[str, str]],
        params: Dict[str, Any],
        retry_attempts: Optional[int],
    ) -> GatewayResult:
        attempts = max(1, retry_attempts or self.config.retry_attempts)
        delay_seconds = max(0, self.config.retry_delay_ms) / 1000
        attempt_number = 0
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=delay_seconds, min=0),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        ):
            with attempt:
                attempt_number += 1
                return await self._attempt(adapter, task, messages, params, attempt_number)
        raise AssertionError("unreachable")

    async def _attempt(
        self,
        adapter: ChatAdapter,
        task: str,
        messages: list[dict[str, str]],
        params: Dict[str, Any],
        attempt_number: int,
    ) -> GatewayResult:
        model = params.get("model") or adapter.model
        prompt_text = messages[-1]["content"]
        start = time.perf_counter()
        response: Optional[ChatResponse] = None
        try:
            response = await adapter.send(messages, params)
            content = parse_json_object(response.get("text"))
            if not content:
                raise ParseError("Model returned an empty JSON object", raw=response.get("text", ""))
        except (ProviderError, ParseError) as exc:
            latency_ms = int((time.perf_counter() - start) * 1000)
            self._emit(
                provider=adapter.id,
                model=model,
                task=task,
                attempt=attempt_number,
                prompt=prompt_text,
                response_text=response.get("text") if response else None,
                usage=None,
                latency_ms=latency_ms,
                success=False,
                error=describe_error(exc),
            )
            log.debug("[gateway] %s attempt %d on %s failed: %s", task, attempt_number, adapter.id, exc)
            raise

        latency_ms = response.get("latency_ms") or int((time.perf_counter() - start) * 1000)
        usage = _usage(response)
        self._emit(
            provider=adapter.id,
            model=response.get("model") or model,
            task=task,
            attempt=attempt_number,
            prompt=prompt_text,
            response_text=response.get("text"),
            usage=usage.__dict__,
            latency_ms=latency_ms,
            success=True,
        )
        return GatewayResult(
            content=content,
            usage=usage,
            provider_used=adapter.id,
            model_used=response.get("model") or model,
            latency_ms=latency_ms,
        )

    def _emit(self, **event: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self.sink.log_attempt(**event))
        except RuntimeError as exc:
            log.warning("[gateway] trace event dropped: %s", exc)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for queued trace events to be written."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def health_check(self) -> Dict[str, Dict[str, Any]]:
        """Probe every configured provider with a one-line JSON request."""
        results: Dict[str, Dict[str, Any]] = {}
        probe = GenerationConfig(temperature=0.0, max_output_tokens=32, top_k=1, top_p=1.0)
        for provider in self.provider_order():
            adapter = self.adapters.get(provider)
            if adapter is None:
                results[provider] = {"healthy": False, "latency_ms": 0, "error": "provider is not configured"}
                continue
            params = probe.as_params()
            params["response_schema"] = schema_for("health_check")
            params["schema_name"] = schema_name("health_check")
            messages = [{"role": "user", "content": 'Respond with the JSON object {"status": "ok"}.'}]
            start = time.perf_counter()
            try:
                response = await adapter.send(messages, params)
                parse_json_object(response.get("text"))
            except (ProviderError, ParseError) as exc:
                results[provider] = {
                    "healthy": False,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                    "error": describe_error(exc),
                }
                continue
            results[provider] = {
                "healthy": True,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "error": None,
            }
        return results

    async def aclose(self) -> None:
        await self.flush()
        for adapter in self.adapters.values():
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()
