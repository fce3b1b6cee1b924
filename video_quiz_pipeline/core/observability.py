"""Fire-and-forget trace sink for model calls."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .logging_utils import rotate_log_if_needed

log = logging.getLogger(__name__)

MAX_TEXT_CHARS = 4000


def _truncate(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    if len(text) <= MAX_TEXT_CHARS:
        return text
    return text[:MAX_TEXT_CHARS] + f"... [truncated {len(text) - MAX_TEXT_CHARS} chars]"


class ObservabilitySink:
    """Collects one event per provider attempt.

    Events are kept in a bounded in-memory buffer and, when ``trace_path`` is
    set, appended to a JSONL file. Writers are serialized by an asyncio lock.
    Nothing raised in here ever reaches the caller.
    """

    def __init__(self, trace_path: Optional[Path] = None, max_events: int = 1000) -> None:
        self.trace_path = trace_path
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)
        self._lock = asyncio.Lock()

    @property
    def events(self) -> list[dict[str, Any]]:
        return list(self._events)

    async def log_attempt(
        self,
        *,
        provider: str,
        model: str,
        task: str,
        attempt: int,
        prompt: str,
        response_text: Optional[str],
        usage: Optional[dict[str, Any]],
        latency_ms: int,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        event = {
            "logged_at": datetime.now(timezone.utc).isoformat(),
            "provider": provider,
            "model": model,
            "task": task,
            "attempt": attempt,
            "prompt": _truncate(prompt),
            "response": _truncate(response_text),
            "usage": usage or {},
            "latency_ms": latency_ms,
            "success": success,
            "error": error,
        }
        await self.record(event)

    async def record(self, event: dict[str, Any]) -> None:
        try:
            async with self._lock:
                self._events.append(event)
                if self.trace_path is not None:
                    self._write(event)
        except Exception as exc:
            log.warning("[trace] dropped event for %s: %s", event.get("task"), exc)

    def _write(self, event: dict[str, Any]) -> None:
        path = self.trace_path
        path.parent.mkdir(parents=True, exist_ok=True)
        rotate_log_if_needed(path)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")


class NullSink(ObservabilitySink):
    """Sink that discards everything."""

    def __init__(self) -> None:
        super().__init__(trace_path=None, max_events=1)

    async def record(self, event: dict[str, Any]) -> None:
        return None
