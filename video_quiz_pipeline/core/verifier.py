"""Stage 3 (optional): rubric-based quality verification of generated questions."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from .config import PipelineConfigLoader, pipeline_config
from .errors import QualityVerificationError, QuizPipelineError, describe_error
from .gateway import ModelGateway
from .progress import ProgressTracker
from .timestamps import format_seconds_for_display
from .types import (
    QUALITY_DIMENSIONS,
    GeneratedQuestion,
    HotspotQuestion,
    MatchingQuestion,
    MultipleChoiceQuestion,
    QualityDimension,
    QualityVerificationResult,
    QuestionError,
    QuestionPlan,
    SequencingQuestion,
    TrueFalseQuestion,
    VerificationResult,
)

log = logging.getLogger(__name__)

VERIFIER_SYSTEM_PROMPT = (
    "You are an expert educational assessment specialist. Evaluate quiz questions with "
    "evidence-based analysis and respond with JSON only."
)

VERIFICATION_PROMPT = """
Evaluate the quality of one quiz question against its original plan. Score each of the six
dimensions independently from 0 to 100 and support every score with evidence and concerns.

## DIMENSIONS
- educational_value: learning impact and relevance to the learning objective
- clarity_and_precision: unambiguous wording and precise instructions
- cognitive_appropriateness: cognitive load suited to the audience and difficulty level
- bloom_alignment: actual cognitive demand matches the stated Bloom's level
- misconception_handling: distractors and explanation identify and address misconceptions
- explanation_quality: the explanation teaches why, not only what

## OUTPUT
Return overall_score (0-100), quality_dimensions, overall_assessment, specific_strengths,
improvement_recommendations, verification_confidence (0-1) and meets_quality_threshold.
A question meets the threshold with an overall score of at least 75 and no dimension below 60.
"""


def _letter(index: int) -> str:
    return chr(ord("A") + index)


def format_answer_details(question: GeneratedQuestion) -> str:
    if isinstance(question, MultipleChoiceQuestion):
        options = "\n".join(f"  {_letter(i)}. {option}" for i, option in enumerate(question.options))
        return f"Options:\n{options}\nCorrect Answer: {_letter(question.correct_answer)}"
    if isinstance(question, TrueFalseQuestion):
        return f"Correct Answer: {'True' if question.correct_answer else 'False'}"
    if isinstance(question, HotspotQuestion):
        return (
            f"Target Objects: {', '.join(question.target_objects)}\n"
            f"Frame Timestamp: {format_seconds_for_display(question.frame_timestamp)}\n"
            f"Bounding Boxes: {len(question.bounding_boxes)} elements\n"
            f"Visual Learning Objective: {question.visual_learning_objective or 'Not specified'}"
        )
    if isinstance(question, MatchingQuestion):
        pairs = "\n".join(
            f'  {i + 1}. "{pair.left}" -> "{pair.right}"' for i, pair in enumerate(question.matching_pairs)
        )
        return f"Matching Pairs:\n{pairs}"
    if isinstance(question, SequencingQuestion):
        items = "\n".join(f"  {i + 1}. {item}" for i, item in enumerate(question.sequence_items))
        return f"Sequence Items (in correct order):\n{items}"
    return "Not specified"


def build_verification_prompt(question: GeneratedQuestion, plan: QuestionPlan) -> str:
    return f"""{VERIFICATION_PROMPT.strip()}

## QUESTION TO EVALUATE
Question ID: {question.question_id}
Question Type: {question.type}
Timestamp: {format_seconds_for_display(question.timestamp)} ({question.timestamp}s)
Question: {question.question}
{format_answer_details(question)}
Explanation: {question.explanation}
Target Bloom's Level: {question.bloom_level}

## PLANNING CONTEXT
Learning Objective: {plan.learning_objective}
Content Context: {plan.content_context}
Key Concepts: {', '.join(plan.key_concepts)}
Educational Rationale: {plan.educational_rationale}
Planning Notes: {plan.planning_notes or 'None'}
"""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_verification(data: Dict[str, Any], question_id: str = "") -> None:
    """Raise QualityVerificationError unless every dimension is present and in range."""

    def fail(message: str) -> None:
        raise QualityVerificationError(message, question_id=question_id)

    overall = data.get("overall_score")
    if not _is_number(overall) or not 0 <= overall <= 100:
        fail("overall_score must be a number between 0 and 100")
    dimensions = data.get("quality_dimensions")
    if not isinstance(dimensions, dict):
        fail("quality_dimensions must be an object")
    for name in QUALITY_DIMENSIONS:
        dimension = dimensions.get(name)
        if not isinstance(dimension, dict):
            fail(f"Missing quality dimension: {name}")
        score = dimension.get("score")
        if not _is_number(score) or not 0 <= score <= 100:
            fail(f"{name}.score must be a number between 0 and 100")
        assessment = dimension.get("assessment")
        if not isinstance(assessment, str) or len(assessment.strip()) < 10:
            fail(f"{name}.assessment must be a meaningful string")
        for field in ("evidence", "concerns"):
            if not isinstance(dimension.get(field), list):
                fail(f"{name}.{field} must be an array")
    assessment = data.get("overall_assessment")
    if not isinstance(assessment, str) or len(assessment.strip()) < 20:
        fail("overall_assessment must be a comprehensive string")
    for field in ("specific_strengths", "improvement_recommendations"):
        if not isinstance(data.get(field), list):
            fail(f"{field} must be an array")
    confidence = data.get("verification_confidence")
    if not _is_number(confidence) or not 0 <= confidence <= 1:
        fail("verification_confidence must be a number between 0 and 1")
    if not isinstance(data.get("meets_quality_threshold"), bool):
        fail("meets_quality_threshold must be a boolean")


def meets_threshold(
    overall_score: float, dimension_scores: List[float], minimum_overall: float = 75, minimum_dimension: float = 60
) -> bool:
    return overall_score >= minimum_overall and all(score >= minimum_dimension for score in dimension_scores)


def quality_distribution(results: List[QualityVerificationResult]) -> Dict[str, int]:
    return {
        "excellent": sum(1 for r in results if r.overall_score >= 85),
        "good": sum(1 for r in results if 75 <= r.overall_score < 85),
        "needs_work": sum(1 for r in results if r.overall_score < 75),
    }


class QualityVerifier:
    def __init__(
        self,
        gateway: ModelGateway,
        config: Optional[PipelineConfigLoader] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or pipeline_config
        self.progress = progress
        self.thresholds = self.config.quality_thresholds()

    def build_result(self, question_id: str, data: Dict[str, Any]) -> QualityVerificationResult:
        dimensions = {
            name: QualityDimension(
                score=float(data["quality_dimensions"][name]["score"]),
                assessment=data["quality_dimensions"][name]["assessment"].strip(),
                evidence=[str(e) for e in data["quality_dimensions"][name]["evidence"]],
                concerns=[str(c) for c in data["quality_dimensions"][name]["concerns"]],
            )
            for name in QUALITY_DIMENSIONS
        }
        overall = float(data["overall_score"])
        verdict = meets_threshold(
            overall,
            [dimension.score for dimension in dimensions.values()],
            self.thresholds["minimum_overall_score"],
            self.thresholds["minimum_dimension_score"],
        )
        reported = data["meets_quality_threshold"]
        if reported != verdict:
            log.info(
                "[verifier] %s: model reported threshold=%s, scores give %s", question_id, reported, verdict
            )
        confidence = float(data["verification_confidence"])
        if confidence < self.thresholds["required_confidence"]:
            log.warning("[verifier] %s verified with low confidence %.2f", question_id, confidence)
        recommendations = [str(r) for r in data["improvement_recommendations"]]
        return QualityVerificationResult(
            question_id=question_id,
            overall_score=overall,
            quality_dimensions=dimensions,
            overall_assessment=data["overall_assessment"].strip(),
            specific_strengths=[str(s) for s in data["specific_strengths"]],
            improvement_recommendations=recommendations[: int(self.thresholds["max_recommendations"])],
            verification_confidence=confidence,
            meets_quality_threshold=verdict,
            model_reported_threshold=reported,
        )

    async def verify_question(self, question: GeneratedQuestion, plan: QuestionPlan) -> QualityVerificationResult:
        """Verify one question. Raises QualityVerificationError."""
        try:
            response = await self.gateway.generate(
                "verification",
                build_verification_prompt(question, plan),
                self.config.generation_config("verification"),
                system_prompt=VERIFIER_SYSTEM_PROMPT,
            )
        except QuizPipelineError as exc:
            raise QualityVerificationError(
                f"Verification request failed: {describe_error(exc)}", question_id=question.question_id
            ) from exc
        validate_verification(response.content, question.question_id)
        result = self.build_result(question.question_id, response.content)
        log.info(
            "[verifier] %s scored %.0f/100 (%s)",
            question.question_id,
            result.overall_score,
            "meets threshold" if result.meets_quality_threshold else "below threshold",
        )
        return result

    async def verify_batch(
        self,
        questions: List[GeneratedQuestion],
        plans: List[QuestionPlan],
        delay_ms: Optional[int] = None,
    ) -> VerificationResult:
        """Verify questions one after another, pausing ``delay_ms`` between calls."""
        started = time.perf_counter()
        if delay_ms is None:
            delay_ms = int(self.config.pipeline_defaults()["verification_delay_ms"])
        plans_by_id = {plan.question_id: plan for plan in plans}
        results: List[QualityVerificationResult] = []
        errors: List[QuestionError] = []
        total = len(questions)
        if self.progress:
            await self.progress.start_stage("quality_verification", f"Verifying {total} questions")

        for index, question in enumerate(questions):
            plan = plans_by_id.get(question.question_id)
            if plan is None:
                log.warning("[verifier] no plan found for %s, skipping", question.question_id)
                errors.append(
                    QuestionError(
                        question_id=question.question_id,
                        error_message="No originating plan found",
                        question_type=question.type,
                        stage="quality_verification",
                    )
                )
                continue
            try:
                results.append(await self.verify_question(question, plan))
            except QualityVerificationError as exc:
                log.warning("[verifier] %s failed: %s", question.question_id, exc)
                errors.append(
                    QuestionError(
                        question_id=question.question_id,
                        error_message=str(exc),
                        question_type=question.type,
                        stage="quality_verification",
                    )
                )
            if self.progress:
                await self.progress.update_stage_progress(
                    "quality_verification", (index + 1) / total, f"Verified {index + 1}/{total} questions"
                )
            if delay_ms > 0 and index < total - 1:
                await asyncio.sleep(delay_ms / 1000)

        metadata = {
            "total_questions_verified": len(results),
            "average_score": round(sum(r.overall_score for r in results) / len(results), 1) if results else 0.0,
            "questions_meeting_threshold": sum(1 for r in results if r.meets_quality_threshold),
            "verification_time_ms": int((time.perf_counter() - started) * 1000),
            "quality_distribution": quality_distribution(results),
        }
        log.info(
            "[verifier] %d verified, average %.1f, %d meet threshold",
            len(results),
            metadata["average_score"],
            metadata["questions_meeting_threshold"],
        )
        if self.progress:
            await self.progress.complete_stage(
                "quality_verification", f"Verified {len(results)} questions", {"failed": len(errors)}
            )
        return VerificationResult(results=results, errors=errors, verification_metadata=metadata)
