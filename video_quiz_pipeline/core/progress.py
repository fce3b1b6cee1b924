"""Stage and question progress events for external observers."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

log = logging.getLogger(__name__)

STAGE_WEIGHTS: Dict[str, float] = {
    "initialization": 0.05,
    "planning": 0.25,
    "generation": 0.50,
    "quality_verification": 0.15,
    "storage": 0.05,
}


@dataclass
class ProgressUpdate:
    stage: str
    stage_progress: float
    overall_progress: float
    current_step: str
    details: Dict[str, Any] = field(default_factory=dict)
    kind: str = "stage"


@dataclass
class QuestionProgressUpdate:
    question_id: str
    question_type: str
    status: str
    progress: float
    reasoning: Optional[str] = None
    provider_used: Optional[str] = None
    processing_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    kind: str = "question"


Listener = Callable[[Dict[str, Any]], Any]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ProgressTracker:
    """Concurrency-safe progress sink.

    Updates are appended to a bounded buffer under an asyncio lock and logged.
    Listeners are called after the lock is released, so a slow observer only
    delays the task that published the event. Listener failures are logged and
    swallowed.
    """

    def __init__(self, session_id: str = "", course_id: str = "", max_events: int = 1000) -> None:
        self.session_id = session_id
        self.course_id = course_id
        self.current_stage = "initialization"
        self._events: Deque[Dict[str, Any]] = deque(maxlen=max_events)
        self._listeners: List[Listener] = []
        self._lock = asyncio.Lock()
        self._start = time.perf_counter()

    @property
    def events(self) -> List[Dict[str, Any]]:
        return list(self._events)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)

    def overall_progress(self, stage: str, stage_progress: float) -> float:
        completed = 0.0
        for name, weight in STAGE_WEIGHTS.items():
            if name == stage:
                return _clamp(completed + weight * _clamp(stage_progress))
            completed += weight
        return _clamp(completed)

    async def _publish(self, event: Dict[str, Any]) -> None:
        try:
            event["session_id"] = self.session_id
            event["course_id"] = self.course_id
            event["recorded_at"] = datetime.now(timezone.utc).isoformat()
            async with self._lock:
                self._events.append(event)
                listeners = list(self._listeners)
        except Exception as exc:
            log.warning("[progress] dropped %s event: %s", event.get("kind"), exc)
            return
        for listener in listeners:
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                log.warning("[progress] listener failed: %s", exc)

    async def update_progress(self, update: ProgressUpdate) -> None:
        self.current_stage = update.stage
        log.info(
            "[progress] %s %d%% - %s",
            update.stage,
            round(update.overall_progress * 100),
            update.current_step,
        )
        await self._publish(asdict(update))

    async def update_question_progress(self, update: QuestionProgressUpdate) -> None:
        log.debug(
            "[progress] question %s %s %d%%",
            update.question_id,
            update.status,
            round(update.progress * 100),
        )
        await self._publish(asdict(update))

    # Stage helpers

    async def start_stage(self, stage: str, step: str, details: Optional[Dict[str, Any]] = None) -> None:
        await self.update_stage_progress(stage, 0.0, step, {**(details or {}), "stage_started": True})

    async def update_stage_progress(
        self, stage: str, stage_progress: float, step: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        await self.update_progress(
            ProgressUpdate(
                stage=stage,
                stage_progress=_clamp(stage_progress),
                overall_progress=self.overall_progress(stage, stage_progress),
                current_step=step,
                details={**(details or {}), "elapsed_time_ms": self.elapsed_ms()},
            )
        )

    async def complete_stage(self, stage: str, step: str, details: Optional[Dict[str, Any]] = None) -> None:
        await self.update_stage_progress(stage, 1.0, step, {**(details or {}), "stage_completed": True})

    async def mark_complete(self, details: Optional[Dict[str, Any]] = None) -> None:
        await self.update_progress(
            ProgressUpdate(
                stage="completed",
                stage_progress=1.0,
                overall_progress=1.0,
                current_step="Processing completed successfully",
                details={**(details or {}), "total_time_ms": self.elapsed_ms()},
            )
        )

    async def mark_failed(self, error: str, details: Optional[Dict[str, Any]] = None) -> None:
        await self.update_progress(
            ProgressUpdate(
                stage="failed",
                stage_progress=0.0,
                overall_progress=self.overall_progress(self.current_stage, 0.0),
                current_step=f"Failed: {error}",
                details={**(details or {}), "error_message": error, "elapsed_time_ms": self.elapsed_ms()},
            )
        )

    # Question helpers

    async def plan_question(self, question_id: str, question_type: str, reasoning: str) -> None:
        await self.update_question_progress(
            QuestionProgressUpdate(question_id, question_type, "planned", 0.0, reasoning=reasoning)
        )

    async def start_question_generation(
        self, question_id: str, question_type: str, reasoning: str, provider: Optional[str] = None
    ) -> None:
        await self.update_question_progress(
            QuestionProgressUpdate(
                question_id, question_type, "generating", 0.5, reasoning=reasoning, provider_used=provider
            )
        )

    async def complete_question(
        self,
        question_id: str,
        question_type: str,
        reasoning: str,
        provider: Optional[str],
        processing_time_ms: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.update_question_progress(
            QuestionProgressUpdate(
                question_id,
                question_type,
                "completed",
                1.0,
                reasoning=reasoning,
                provider_used=provider,
                processing_time_ms=processing_time_ms,
                metadata=metadata or {},
            )
        )

    async def fail_question(
        self, question_id: str, question_type: str, error: str, provider: Optional[str] = None
    ) -> None:
        await self.update_question_progress(
            QuestionProgressUpdate(
                question_id, question_type, "failed", 0.0, provider_used=provider, error_message=error
            )
        )
