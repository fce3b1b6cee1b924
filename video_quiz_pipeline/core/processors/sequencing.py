from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from ..errors import ValidationError
from ..transcript import TranscriptContext
from ..types import QualityAssessment, QuestionPlan, SequencingQuestion
from .base import TextQuestionProcessor, assemble_prompt, length_band, optional_dict, require_text, resolve_timestamp

log = logging.getLogger(__name__)

SEQUENCING_PROMPT = """
You are an expert educational designer specializing in sequencing questions that test understanding
of essential causal relationships and logical dependencies.

## WHEN TO SEQUENCE
Only sequence steps when each step enables, requires or causes the next, and a wrong order would
lead to failure or misunderstanding. Never sequence items merely because the video mentions them
in that order.

## ITEMS
- 3 to 6 distinct steps, listed in the correct order
- Each step a short, self-contained description (at least 5 characters)
- Steps neither trivially fine-grained nor ambiguously coarse

## EXPLANATION
- Explain WHY the order matters: what each step enables and what fails if the order changes
"""


def unwrap_sequence_items(items: Any) -> List[str]:
    """Accept bare strings or ``{"content": ...}`` / ``{"text": ...}`` wrappers."""
    if not isinstance(items, list):
        raise ValidationError("sequence_items must be an array", "sequencing", "sequence_items")
    unwrapped: List[str] = []
    for index, item in enumerate(items):
        if isinstance(item, dict):
            value = item.get("content")
            if not isinstance(value, str):
                value = item.get("text")
            if not isinstance(value, str):
                raise ValidationError(
                    f"sequence_items[{index}] object must have 'content' or 'text' property, "
                    f"got: {json.dumps(item)[:100]}",
                    "sequencing",
                    "sequence_items",
                )
            item = value
        elif not isinstance(item, str):
            raise ValidationError(
                f"sequence_items[{index}] must be a string, got {type(item).__name__}",
                "sequencing",
                "sequence_items",
            )
        unwrapped.append(item)
    return unwrapped


class SequencingProcessor(TextQuestionProcessor):
    question_type = "sequencing"
    closing = "Generate a sequencing question whose order is logically necessary."

    def build_prompt(self, plan: QuestionPlan, context: TranscriptContext) -> str:
        return assemble_prompt(SEQUENCING_PROMPT, plan, context, self.closing)

    def validate(self, data: Dict[str, Any]) -> None:
        require_text(data, "question", 15, self.question_type)
        items = unwrap_sequence_items(data.get("sequence_items"))
        if not 3 <= len(items) <= 6:
            raise ValidationError(
                f"Sequencing must have 3-6 items, got {len(items)}", self.question_type, "sequence_items"
            )
        lowered = [item.strip().lower() for item in items]
        if len(set(lowered)) != len(lowered):
            raise ValidationError("All sequence items must be unique", self.question_type, "sequence_items")
        for index, item in enumerate(items):
            if len(item.strip()) < 5:
                raise ValidationError(
                    f"sequence_items[{index}] must be at least 5 characters long",
                    self.question_type,
                    "sequence_items",
                )
        require_text(data, "explanation", 30, self.question_type)

        if not optional_dict(data.get("sequence_analysis")).get("sequence_type"):
            log.warning("[sequencing] no sequence type specified")

    def normalize(self, plan: QuestionPlan, data: Dict[str, Any]) -> SequencingQuestion:
        analysis = optional_dict(data.get("sequence_analysis"))
        return SequencingQuestion(
            question_id=plan.question_id,
            timestamp=resolve_timestamp(plan, data),
            type=self.question_type,
            question=data["question"].strip(),
            explanation=data["explanation"].strip(),
            bloom_level=plan.bloom_level,
            educational_rationale=plan.educational_rationale,
            sequence_items=[item.strip() for item in unwrap_sequence_items(data["sequence_items"])],
            sequence_analysis=analysis,
            sequence_type=str(analysis.get("sequence_type") or ""),
        )

    def assess_quality(self, question: SequencingQuestion) -> QualityAssessment:
        strengths: list[str] = []
        improvements: list[str] = []
        score = 100
        score -= length_band(
            len(question.question),
            20,
            150,
            "Question instruction is clear and appropriate length",
            "Question instruction could be more detailed",
            "Question instruction may be too verbose",
            strengths,
            improvements,
        )

        item_count = len(question.sequence_items)
        if 3 <= item_count <= 6:
            strengths.append(f"Optimal number of items ({item_count}) for sequencing")
        elif item_count < 3:
            improvements.append("Too few items - may not provide sufficient sequencing challenge")
            score -= 15
        else:
            improvements.append("Too many items - may cause cognitive overload")
            score -= 10

        if len(question.explanation) >= 50:
            strengths.append("Explanation provides good educational value")
        else:
            improvements.append("Explanation could better address sequence logic")
            score -= 15

        if question.sequence_type:
            strengths.append("Clear sequence type specified")
        else:
            improvements.append("Could benefit from sequence type analysis")
            score -= 10

        if item_count:
            average = sum(len(item) for item in question.sequence_items) / item_count
            if 15 <= average <= 80:
                strengths.append("Sequence items are appropriately detailed")
            elif average < 15:
                improvements.append("Sequence items could be more descriptive")
                score -= 5
            else:
                improvements.append("Sequence items may be too verbose")
                score -= 5

        if question.sequence_analysis.get("dependency_pattern"):
            strengths.append("Includes dependency pattern analysis")
        else:
            improvements.append("Could benefit from dependency analysis")
            score -= 5

        if question.bloom_level in ("understand", "apply"):
            strengths.append("Appropriate cognitive level for sequencing format")
        elif question.bloom_level == "analyze":
            strengths.append("Targets higher-order process analysis")

        return QualityAssessment(score=max(0, score), strengths=strengths, improvements=improvements)
