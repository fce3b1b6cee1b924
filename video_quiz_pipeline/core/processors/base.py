"""Shared pieces of the per-type question processors.

A processor turns one QuestionPlan into one GeneratedQuestion. Every processor
offers ``build_prompt``, ``validate``, ``normalize`` and ``assess_quality``;
``generate`` runs them around a single gateway call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from ..errors import ValidationError
from ..gateway import ModelGateway
from ..timestamps import format_seconds_for_display
from ..transcript import (
    TranscriptContext,
    find_next_natural_pause,
    find_optimal_question_timestamp,
    is_interrupting_sentence,
)
from ..types import GeneratedQuestion, GenerationConfig, QualityAssessment, QuestionPlan, TokenUsage, VideoTranscript

log = logging.getLogger(__name__)


@dataclass
class ProcessorContext:
    video_url: str
    transcript: TranscriptContext
    config: GenerationConfig


@dataclass
class ProcessedQuestion:
    question: GeneratedQuestion
    provider_used: str
    model_used: str
    usage: TokenUsage
    assessment: Optional[QualityAssessment] = None


class QuestionProcessor(Protocol):
    question_type: str

    def build_prompt(self, plan: QuestionPlan, context: TranscriptContext) -> str: ...

    def validate(self, data: Dict[str, Any]) -> None: ...

    def normalize(self, plan: QuestionPlan, data: Dict[str, Any]) -> GeneratedQuestion: ...

    def assess_quality(self, question: GeneratedQuestion) -> QualityAssessment: ...

    async def generate(
        self, plan: QuestionPlan, context: ProcessorContext, gateway: ModelGateway
    ) -> ProcessedQuestion: ...


def require_text(data: Dict[str, Any], field: str, min_length: int, question_type: str, label: str = "") -> str:
    value = data.get(field)
    if not isinstance(value, str) or len(value.strip()) < min_length:
        name = label or field.capitalize()
        raise ValidationError(
            f"{name} must be a string of at least {min_length} characters",
            question_type=question_type,
            field=field,
        )
    return value.strip()


def optional_dict(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        return {}
    return {key: item for key, item in value.items() if item is not None}


def resolve_timestamp(plan: QuestionPlan, data: Dict[str, Any]) -> int:
    """Model-suggested ``optimal_timestamp`` when it is a positive number, else the plan's."""
    suggested = data.get("optimal_timestamp")
    if isinstance(suggested, (int, float)) and not isinstance(suggested, bool) and suggested > 0:
        return int(round(suggested))
    return plan.timestamp


def plan_section(plan: QuestionPlan) -> str:
    return "\n".join(
        [
            "## QUESTION PLAN",
            f"- Learning Objective: {plan.learning_objective}",
            f"- Content Context: {plan.content_context}",
            f"- Key Concepts: {', '.join(plan.key_concepts)}",
            f"- Bloom's Level: {plan.bloom_level}",
            f"- Educational Rationale: {plan.educational_rationale}",
            f"- Difficulty Level: {plan.difficulty_level}",
            f"- Planning Notes: {plan.planning_notes or 'None'}",
            f"- Suggested Timestamp: {plan.timestamp}s ({format_seconds_for_display(plan.timestamp)})",
        ]
    )


def transcript_section(plan: QuestionPlan, context: TranscriptContext) -> str:
    if not context.segments:
        return f"Note: No transcript context available. Use the suggested timestamp of {plan.timestamp}s."
    suggested = find_optimal_question_timestamp(context, plan.timestamp)
    lines = [
        "## TRANSCRIPT CONTEXT",
        f"Transcript content around {format_seconds_for_display(plan.timestamp)} ({plan.timestamp}s):",
        "",
        context.formatted_context,
        "",
        f"Key Concepts Nearby: {', '.join(context.nearby_concepts) or 'None'}",
        f"Visual Context: {context.visual_context or 'N/A'}",
    ]
    if context.is_salient_moment:
        lines.append(f"This is a salient learning moment ({context.event_type or 'other'}).")
    lines.extend(
        [
            "",
            "## TIMING",
            "Return an optimal_timestamp (seconds) at which the question should appear: after the last",
            "relevant explanation ends and before the video moves on to unrelated topics.",
            f"Based on the segment boundaries above, {suggested}s is a reasonable choice.",
        ]
    )
    window = VideoTranscript(full_transcript=context.segments)
    if is_interrupting_sentence(window, plan.timestamp):
        pause = find_next_natural_pause(window, plan.timestamp)
        if pause is not None:
            lines.append(
                f"{plan.timestamp}s falls mid-sentence; the next natural pause is around {round(pause)}s."
            )
    return "\n".join(lines)


def assemble_prompt(rubric: str, plan: QuestionPlan, context: TranscriptContext, closing: str) -> str:
    return "\n\n".join(
        [rubric.strip(), plan_section(plan), transcript_section(plan, context), closing]
    )


def length_band(
    value: int,
    low: int,
    high: int,
    good: str,
    short: str,
    long: str,
    strengths: List[str],
    improvements: List[str],
) -> int:
    """Score deduction for a length outside ``[low, high]``: 10 when short, 5 when long."""
    if low <= value <= high:
        strengths.append(good)
        return 0
    if value < low:
        improvements.append(short)
        return 10
    improvements.append(long)
    return 5


class TextQuestionProcessor:
    """Processor whose question is generated from the transcript alone."""

    question_type = ""
    closing = ""

    def build_prompt(self, plan: QuestionPlan, context: TranscriptContext) -> str:
        raise NotImplementedError

    def validate(self, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def normalize(self, plan: QuestionPlan, data: Dict[str, Any]) -> GeneratedQuestion:
        raise NotImplementedError

    def assess_quality(self, question: GeneratedQuestion) -> QualityAssessment:
        raise NotImplementedError

    async def generate(
        self, plan: QuestionPlan, context: ProcessorContext, gateway: ModelGateway
    ) -> ProcessedQuestion:
        log.info(
            "[%s] generating %s (bloom %s, planned at %s)",
            self.question_type,
            plan.question_id,
            plan.bloom_level,
            format_seconds_for_display(plan.timestamp),
        )
        prompt = self.build_prompt(plan, context.transcript)
        result = await gateway.generate(self.question_type, prompt, context.config)
        self.validate(result.content)
        question = self.normalize(plan, result.content)
        if question.timestamp != plan.timestamp:
            log.info(
                "[%s] %s moved from %s to %s",
                self.question_type,
                plan.question_id,
                format_seconds_for_display(plan.timestamp),
                format_seconds_for_display(question.timestamp),
            )
        return ProcessedQuestion(
            question=question,
            provider_used=result.provider_used,
            model_used=result.model_used,
            usage=result.usage,
            assessment=self.assess_quality(question),
        )
