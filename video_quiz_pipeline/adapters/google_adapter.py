from __future__ import annotations

import os
import time
from typing import Any, Union

import httpx

from ..core.errors import ContentBlockedError, ProviderError
from ..core.schemas import to_gemini_schema
from .base import ChatResponse

BLOCKED_FINISH_REASONS = {"SAFETY", "RECITATION"}


def _offset(seconds: float) -> str:
    value = f"{seconds:.3f}".rstrip("0").rstrip(".")
    return f"{value}s"


class GeminiAdapter:
    id = "gemini"
    supports_video = True

    def __init__(
        self,
        model: str,
        api_key_env: str = "GEMINI_API_KEY",
        transport: Union[httpx.AsyncBaseTransport, None] = None,
        timeout: float = 300.0,
    ) -> None:
        self.model = model
        self.api_key_env = api_key_env
        self.api_key = os.environ.get(api_key_env, "")
        self.timeout = timeout
        if transport is not None:
            self.client = httpx.AsyncClient(
                base_url="https://generativelanguage.googleapis.com/v1beta", transport=transport
            )
        else:
            self.client = httpx.AsyncClient(base_url="https://generativelanguage.googleapis.com/v1beta")

    def build_payload(
        self, messages: list[dict[str, str]], params: Union[dict[str, Any], None] = None
    ) -> dict[str, Any]:
        params = params or {}
        # Gemini has no system role, fold system text into the user turn
        system_text = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        user_text = "\n\n".join(m["content"] for m in messages if m["role"] != "system")
        text = f"{system_text}\n\n{user_text}" if system_text else user_text

        parts: list[dict[str, Any]] = []
        video = params.get("video")
        if video is not None:
            video_part: dict[str, Any] = {"fileData": {"fileUri": video.file_uri}}
            if video.start_offset is not None or video.end_offset is not None:
                metadata = {}
                if video.start_offset is not None:
                    metadata["startOffset"] = _offset(video.start_offset)
                if video.end_offset is not None:
                    metadata["endOffset"] = _offset(video.end_offset)
                video_part["videoMetadata"] = metadata
            parts.append(video_part)
        parts.append({"text": text})

        generation_config: dict[str, Any] = {
            "temperature": params.get("temperature", 0.7),
            "maxOutputTokens": params.get("max_output_tokens", 2048),
            "candidateCount": 1,
            "responseMimeType": "application/json",
        }
        if "top_k" in params:
            generation_config["topK"] = params["top_k"]
        if "top_p" in params:
            generation_config["topP"] = params["top_p"]
        schema = params.get("response_schema")
        if schema:
            generation_config["responseSchema"] = to_gemini_schema(schema)

        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }

    async def send(
        self, messages: list[dict[str, str]], params: Union[dict[str, Any], None] = None
    ) -> ChatResponse:
        params = params or {}
        model = params.get("model") or self.model
        if not self.api_key:
            raise ProviderError(
                f"❌ Missing Gemini API key.\n💡 Set the {self.api_key_env} environment variable.",
                provider=self.id,
                status=401,
            )
        payload = self.build_payload(messages, params)
        url = f"/models/{model}:generateContent"
        headers = {"Content-Type": "application/json"}

        start_time = time.perf_counter()
        try:
            response = await self.client.post(
                url,
                json=payload,
                headers=headers,
                params={"key": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                self._parse_api_error(e.response, model),
                provider=self.id,
                status=e.response.status_code,
                body=e.response.text[:2000],
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"Gemini API request failed for model '{model}': {e}", provider=self.id
            ) from e
        latency_ms = int((time.perf_counter() - start_time) * 1000)
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"Gemini returned a non-JSON body for model '{model}'",
                provider=self.id,
                status=response.status_code,
                body=response.text[:2000],
            ) from e
        if not isinstance(data, dict):
            raise ProviderError(
                f"Gemini response for model '{model}' is not a JSON object",
                provider=self.id,
                status=response.status_code,
                body=response.text[:2000],
            )

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ContentBlockedError(
                    f"Gemini blocked the prompt: {block_reason}", provider=self.id, reason=block_reason
                )
            raise ProviderError(
                f"Gemini response for model '{model}' has no candidates",
                provider=self.id,
                status=response.status_code,
                body=response.text[:2000],
            )

        candidate = candidates[0] if isinstance(candidates, list) else None
        if not isinstance(candidate, dict):
            raise ProviderError(
                f"Gemini response for model '{model}' has a malformed candidate",
                provider=self.id,
                status=response.status_code,
                body=response.text[:2000],
            )
        finish_reason = candidate.get("finishReason")
        if finish_reason in BLOCKED_FINISH_REASONS:
            raise ContentBlockedError(
                f"Gemini stopped generation with finish reason {finish_reason}",
                provider=self.id,
                reason=finish_reason,
            )
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)

        usage = data.get("usageMetadata", {})
        return ChatResponse(
            text=text,
            tokens_in=usage.get("promptTokenCount"),
            tokens_out=usage.get("candidatesTokenCount"),
            total_tokens=usage.get("totalTokenCount"),
            latency_ms=latency_ms,
            model=data.get("modelVersion") or model,
            finish_reason=finish_reason,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def _parse_api_error(self, response, model_name):
        """Parse Gemini API error response and provide actionable error message."""
        try:
            error_data = response.json()
            error_message = error_data.get("error", {}).get("message", "Unknown error occurred")
        except ValueError:
            return f"❌ Gemini API error ({response.status_code}) for model '{model_name}'.\n" \
                   f"📋 Response: {response.text[:200]}..."

        status_code = response.status_code
        if status_code == 400:
            if "api key" in error_message.lower():
                return f"❌ Invalid Gemini API key.\n" \
                       f"💡 Check your {self.api_key_env} environment variable.\n" \
                       f"📋 Original error: {error_message}"
            return f"❌ Bad request to Gemini API for model '{model_name}'.\n" \
                   f"📋 Original error: {error_message}"
        if status_code in (401, 403):
            return f"❌ Access denied for Gemini model '{model_name}'.\n" \
                   f"💡 Check {self.api_key_env}, API enablement and billing.\n" \
                   f"📋 Original error: {error_message}"
        if status_code == 404:
            return f"❌ Gemini model '{model_name}' not found.\n" \
                   f"💡 Check the model id in config/pipeline.yaml.\n" \
                   f"📋 Original error: {error_message}"
        if status_code == 429:
            return f"❌ Rate limit exceeded for Gemini API.\n" \
                   f"💡 Try again in a few moments or upgrade your quota.\n" \
                   f"📋 Original error: {error_message}"
        return f"❌ Gemini API error ({status_code}) for model '{model_name}'.\n" \
               f"📋 Message: {error_message}"
