from __future__ import annotations

from typing import Any, Protocol, TypedDict, Union


class ChatResponse(TypedDict, total=False):
    text: str
    tokens_in: Union[int, None]
    tokens_out: Union[int, None]
    total_tokens: Union[int, None]
    latency_ms: int
    model: str
    finish_reason: Union[str, None]


class ChatAdapter(Protocol):
    """One generative-model backend.

    ``params`` carries the generation settings (``temperature``,
    ``max_output_tokens``, ``top_k``, ``top_p``), an optional ``model``
    override, the structured-output ``response_schema`` with its
    ``schema_name``, and an optional ``video`` (``VideoInput``). Adapters make
    exactly one request per call and raise ``ProviderError`` on failure;
    retrying is the gateway's job.
    """

    id: str
    model: str
    supports_video: bool

    async def send(
        self, messages: list[dict[str, str]], params: Union[dict[str, Any], None] = None
    ) -> ChatResponse: ...

    async def aclose(self) -> None: ...
