from __future__ import annotations

import os
import time
from typing import Any, Union

import httpx

from ..core.errors import ContentBlockedError, ProviderError
from ..core.schemas import to_openai_strict_schema
from .base import ChatResponse


class OpenAIAdapter:
    id = "openai"
    supports_video = False

    def __init__(
        self,
        model: str,
        api_key_env: str = "OPENAI_API_KEY",
        transport: Union[httpx.AsyncBaseTransport, None] = None,
        timeout: float = 120.0,
    ) -> None:
        self.model = model
        self.api_key_env = api_key_env
        self.api_key = os.environ.get(api_key_env, "")
        self.timeout = timeout
        proxy = os.environ.get("HTTPS_PROXY") or os.environ.get("HTTP_PROXY")
        if transport is not None:
            self.client = httpx.AsyncClient(
                base_url="https://api.openai.com/v1", transport=transport
            )
        elif proxy:
            self.client = httpx.AsyncClient(
                base_url="https://api.openai.com/v1", proxy=proxy
            )
        else:
            self.client = httpx.AsyncClient(
                base_url="https://api.openai.com/v1"
            )

    def build_payload(
        self, messages: list[dict[str, str]], params: Union[dict[str, Any], None] = None
    ) -> dict[str, Any]:
        params = params or {}
        model = params.get("model") or self.model
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
        }
        if "temperature" in params:
            payload["temperature"] = params["temperature"]
        if "max_output_tokens" in params:
            payload["max_tokens"] = params["max_output_tokens"]
        if "top_p" in params:
            payload["top_p"] = params["top_p"]
        schema = params.get("response_schema")
        if schema:
            name = str(params.get("schema_name") or "response").replace("-", "_")
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": name,
                    "schema": to_openai_strict_schema(schema),
                    "strict": True,
                },
            }
        else:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def send(
        self, messages: list[dict[str, str]], params: Union[dict[str, Any], None] = None
    ) -> ChatResponse:
        params = params or {}
        if params.get("video") is not None:
            raise ProviderError(
                f"OpenAI model '{self.model}' does not accept video input",
                provider=self.id,
            )
        if not self.api_key:
            raise ProviderError(
                f"❌ Missing OpenAI API key.\n💡 Set the {self.api_key_env} environment variable.",
                provider=self.id,
                status=401,
            )
        payload = self.build_payload(messages, params)
        headers = {"Authorization": f"Bearer {self.api_key}"}
        start = time.perf_counter()
        try:
            resp = await self.client.post(
                "/chat/completions", json=payload, headers=headers, timeout=self.timeout
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                self._parse_api_error(e.response, payload["model"]),
                provider=self.id,
                status=e.response.status_code,
                body=e.response.text[:2000],
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"OpenAI API request failed for model '{payload['model']}': {e}",
                provider=self.id,
            ) from e
        latency_ms = int((time.perf_counter() - start) * 1000)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(
                f"OpenAI returned a non-JSON body for model '{payload['model']}'",
                provider=self.id,
                status=resp.status_code,
                body=resp.text[:2000],
            ) from e
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                f"OpenAI response for model '{payload['model']}' has no choices",
                provider=self.id,
                status=resp.status_code,
                body=resp.text[:2000],
            ) from e
        if not isinstance(choice, dict) or not isinstance(message, dict):
            raise ProviderError(
                f"OpenAI response for model '{payload['model']}' has a malformed choice",
                provider=self.id,
                status=resp.status_code,
                body=resp.text[:2000],
            )
        finish_reason = choice.get("finish_reason")
        if message.get("refusal") or finish_reason == "content_filter":
            raise ContentBlockedError(
                f"OpenAI refused to answer: {message.get('refusal') or finish_reason}",
                provider=self.id,
                reason=str(message.get("refusal") or finish_reason),
            )
        usage = data.get("usage") or {}
        return ChatResponse(
            text=message.get("content") or "",
            tokens_in=usage.get("prompt_tokens"),
            tokens_out=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
            latency_ms=latency_ms,
            model=data.get("model") or payload["model"],
            finish_reason=finish_reason,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def _parse_api_error(self, response, model_name):
        """Parse OpenAI API error response and provide actionable error message."""
        try:
            error_data = response.json()
            error = error_data.get("error", {})
            error_type = error.get("type", "unknown_error")
            error_message = error.get("message", "Unknown error occurred")
        except ValueError:
            return f"❌ OpenAI API error ({response.status_code}) for model '{model_name}'.\n" \
                   f"📋 Response: {response.text[:200]}..."

        status_code = response.status_code
        if status_code == 404:
            return f"❌ Model '{model_name}' not found or not accessible.\n" \
                   f"💡 Check the model id in config/pipeline.yaml.\n" \
                   f"📋 Original error: {error_message}"
        if status_code == 401:
            return f"❌ Authentication failed for OpenAI API.\n" \
                   f"💡 Check your {self.api_key_env} environment variable.\n" \
                   f"📋 Original error: {error_message}"
        if status_code == 403:
            return f"❌ Access forbidden for model '{model_name}'.\n" \
                   f"💡 Your API key may not have access to this model.\n" \
                   f"📋 Original error: {error_message}"
        if status_code == 429:
            return f"❌ Rate limit exceeded for OpenAI API.\n" \
                   f"💡 Try again in a few moments or upgrade your API plan.\n" \
                   f"📋 Original error: {error_message}"
        if status_code == 400 and "schema" in error_message.lower():
            return f"❌ OpenAI rejected the structured-output schema for model '{model_name}'.\n" \
                   f"📋 Original error: {error_message}"
        return f"❌ OpenAI API error ({status_code}) for model '{model_name}'.\n" \
               f"📋 Error type: {error_type}\n" \
               f"📋 Message: {error_message}"
