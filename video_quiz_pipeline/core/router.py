"""Stage 2: fan question plans out to their processors and collect every outcome."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .config import PipelineConfigLoader, pipeline_config
from .errors import QuestionGenerationError, describe_error
from .gateway import ModelGateway
from .processors.base import ProcessedQuestion, ProcessorContext, QuestionProcessor
from .processors.hotspot import HotspotProcessor
from .processors.matching import MatchingProcessor
from .processors.multiple_choice import MultipleChoiceProcessor
from .processors.sequencing import SequencingProcessor
from .processors.true_false import TrueFalseProcessor
from .progress import ProgressTracker
from .transcript import extract_transcript_context
from .types import (
    GenerationMetadata,
    GenerationResult,
    QuestionError,
    QuestionPlan,
    VideoTranscript,
)

log = logging.getLogger(__name__)


def build_processors(defaults: Optional[Dict[str, Any]] = None) -> Dict[str, QuestionProcessor]:
    """Map each question type tag to its processor."""
    defaults = defaults or pipeline_config.pipeline_defaults()
    low, high = defaults.get("hotspot_jitter_ms", (500, 1500))
    return {
        "multiple-choice": MultipleChoiceProcessor(),
        "true-false": TrueFalseProcessor(),
        "matching": MatchingProcessor(),
        "sequencing": SequencingProcessor(),
        "hotspot": HotspotProcessor(
            jitter_ms=(int(low), int(high)),
            attempts=int(defaults.get("hotspot_attempts", 3)),
            strict_reconciliation=bool(defaults.get("strict_hotspot_reconciliation", False)),
            retry_delay_ms=int(defaults.get("hotspot_retry_delay_ms", 1000)),
        ),
    }


Outcome = Union[ProcessedQuestion, QuestionGenerationError]


class GenerationRouter:
    def __init__(
        self,
        gateway: ModelGateway,
        config: Optional[PipelineConfigLoader] = None,
        progress: Optional[ProgressTracker] = None,
        processors: Optional[Mapping[str, QuestionProcessor]] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or pipeline_config
        self.progress = progress
        defaults = self.config.pipeline_defaults()
        self.processors = dict(processors) if processors is not None else build_processors(defaults)
        self.window_seconds = float(defaults["context_window_seconds"])
        limit = defaults["max_concurrency"] if max_concurrency is None else max_concurrency
        self._semaphore = asyncio.Semaphore(limit) if limit and limit > 0 else None

    async def _process(
        self, plan: QuestionPlan, transcript: VideoTranscript, video_url: str
    ) -> ProcessedQuestion:
        processor = self.processors.get(plan.question_type)
        if processor is None:
            raise QuestionGenerationError(
                f"Unsupported question type: {plan.question_type}",
                plan.question_id,
                plan.question_type,
            )
        context = ProcessorContext(
            video_url=video_url,
            transcript=extract_transcript_context(transcript, plan.timestamp, self.window_seconds),
            config=self.config.generation_config(plan.question_type),
        )
        if self._semaphore is None:
            return await processor.generate(plan, context, self.gateway)
        async with self._semaphore:
            return await processor.generate(plan, context, self.gateway)

    async def _run_one(
        self, plan: QuestionPlan, transcript: VideoTranscript, video_url: str
    ) -> Tuple[QuestionPlan, Outcome]:
        """Never raises except on cancellation; failures come back as QuestionGenerationError."""
        started = time.perf_counter()
        if self.progress:
            await self.progress.start_question_generation(
                plan.question_id, plan.question_type, plan.educational_rationale
            )
        try:
            processed = await self._process(plan, transcript, video_url)
        except QuestionGenerationError as exc:
            outcome: Outcome = exc
        except Exception as exc:
            log.debug("[router] %s failed", plan.question_id, exc_info=True)
            outcome = QuestionGenerationError(
                f"Failed to generate {plan.question_type} question: {describe_error(exc)}",
                plan.question_id,
                plan.question_type,
                context={"error_type": type(exc).__name__},
            )
        else:
            outcome = processed

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if isinstance(outcome, QuestionGenerationError):
            log.warning("[router] %s (%s) failed: %s", plan.question_id, plan.question_type, outcome)
            if self.progress:
                await self.progress.fail_question(plan.question_id, plan.question_type, str(outcome))
        else:
            assessment = outcome.assessment
            log.info(
                "[router] %s (%s) done via %s in %dms, quality %s",
                plan.question_id,
                plan.question_type,
                outcome.provider_used,
                elapsed_ms,
                assessment.score if assessment else "n/a",
            )
            if self.progress:
                await self.progress.complete_question(
                    plan.question_id,
                    plan.question_type,
                    plan.educational_rationale,
                    outcome.provider_used,
                    elapsed_ms,
                    {"quality_assessment": assessment.__dict__ if assessment else None},
                )
        return plan, outcome

    async def generate_all(
        self,
        plans: List[QuestionPlan],
        transcript: VideoTranscript,
        video_url: str,
        deadline_seconds: Optional[float] = None,
    ) -> GenerationResult:
        """Run every plan concurrently and wait for all of them to settle.

        Plans still running when ``deadline_seconds`` elapses are cancelled and
        reported as errors; completed questions are kept.
        """
        started = time.perf_counter()
        total = len(plans)
        log.info("[router] generating %d questions", total)
        if self.progress:
            await self.progress.update_stage_progress(
                "generation", 0.1, f"Generating {total} questions", {"total_questions": total}
            )

        tasks = {
            asyncio.create_task(self._run_one(plan, transcript, video_url)): index
            for index, plan in enumerate(plans)
        }
        outcomes: Dict[int, Outcome] = {}
        pending = set(tasks)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + deadline_seconds if deadline_seconds is not None else None

        try:
            while pending:
                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                done, pending = await asyncio.wait(
                    pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    break
                for task in done:
                    _, outcome = task.result()
                    outcomes[tasks[task]] = outcome
                if self.progress and total:
                    await self.progress.update_stage_progress(
                        "generation",
                        0.1 + (len(outcomes) / total) * 0.7,
                        f"Generated {len(outcomes)}/{total} questions",
                    )
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        cancelled = 0
        for task in pending:
            plan = plans[tasks[task]]
            cancelled += 1
            outcomes[tasks[task]] = QuestionGenerationError(
                f"Generation cancelled after the {deadline_seconds}s deadline",
                plan.question_id,
                plan.question_type,
                stage="cancelled",
            )
        if cancelled:
            log.warning("[router] deadline reached, cancelled %d of %d questions", cancelled, total)

        if self.progress:
            await self.progress.update_stage_progress("generation", 0.8, "Collecting generated questions")

        questions = []
        errors: List[QuestionError] = []
        for index, plan in enumerate(plans):
            outcome = outcomes[index]
            if isinstance(outcome, QuestionGenerationError):
                errors.append(
                    QuestionError(
                        question_id=plan.question_id,
                        error_message=str(outcome),
                        question_type=plan.question_type,
                        stage=outcome.stage,
                    )
                )
            else:
                questions.append(outcome.question)

        metadata = GenerationMetadata(
            requested_questions=total,
            successful_generations=len(questions),
            failed_generations=len(errors),
            generation_time_ms=int((time.perf_counter() - started) * 1000),
            type_breakdown=dict(Counter(question.type for question in questions)),
            cancelled=cancelled,
        )
        log.info(
            "[router] %d/%d questions generated, %d failed",
            metadata.successful_generations,
            total,
            metadata.failed_generations,
        )
        if self.progress:
            await self.progress.update_stage_progress(
                "generation",
                0.95,
                f"Generated {len(questions)} of {total} questions",
                {"successful": len(questions), "failed": len(errors)},
            )
        return GenerationResult(generated_questions=questions, errors=errors, generation_metadata=metadata)
