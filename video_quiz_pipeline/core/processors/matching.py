from __future__ import annotations

import logging
from typing import Any, Dict

from ..errors import ValidationError
from ..transcript import TranscriptContext
from ..types import MatchingPair, MatchingQuestion, QualityAssessment, QuestionPlan
from .base import TextQuestionProcessor, assemble_prompt, length_band, optional_dict, require_text, resolve_timestamp

log = logging.getLogger(__name__)

MATCHING_PROMPT = """
You are an expert educational designer specializing in matching questions that test understanding
of meaningful relationships between concepts.

## PAIRS
- 3 to 5 pairs; every left item and every right item distinct
- Each pair expresses one relationship type: cause-effect, category-example, process-outcome,
  theory-application or concept-definition
- Avoid pairs that can be matched by surface word overlap alone
- Keep left and right items of comparable length

## EXPLANATION
- Explain WHY each item connects to its partner and why the relationship matters
"""

RELATIONSHIP_WORDS = ("connect", "relationship", "because", "correspond")
FOCUS_WORDS = ("connect", "relationship", "because", "important")


class MatchingProcessor(TextQuestionProcessor):
    question_type = "matching"
    closing = "Create pairs that reveal understanding of relationships rather than surface associations."

    def build_prompt(self, plan: QuestionPlan, context: TranscriptContext) -> str:
        return assemble_prompt(MATCHING_PROMPT, plan, context, self.closing)

    def validate(self, data: Dict[str, Any]) -> None:
        require_text(data, "question", 15, self.question_type)
        pairs = data.get("matching_pairs")
        if not isinstance(pairs, list) or not 3 <= len(pairs) <= 5:
            raise ValidationError("Matching must have 3-5 pairs", self.question_type, "matching_pairs")
        for index, pair in enumerate(pairs):
            if not isinstance(pair, dict):
                raise ValidationError(f"Pair {index} must be an object", self.question_type, "matching_pairs")
            for side in ("left", "right"):
                value = pair.get(side)
                if not isinstance(value, str) or len(value.strip()) < 2:
                    raise ValidationError(
                        f"Pair {index} {side} item must be a meaningful string",
                        self.question_type,
                        "matching_pairs",
                    )
        explanation = require_text(data, "explanation", 30, self.question_type)

        for side in ("left", "right"):
            values = [pair[side].strip().lower() for pair in pairs]
            if len(set(values)) != len(values):
                raise ValidationError(
                    f"All {side} column items must be unique", self.question_type, "matching_pairs"
                )

        if not any(word in explanation.lower() for word in RELATIONSHIP_WORDS):
            log.warning("[matching] explanation may lack relationship focus")
        if not optional_dict(data.get("relationship_analysis")).get("relationship_type"):
            log.warning("[matching] no relationship type specified")

    def normalize(self, plan: QuestionPlan, data: Dict[str, Any]) -> MatchingQuestion:
        analysis = optional_dict(data.get("relationship_analysis"))
        return MatchingQuestion(
            question_id=plan.question_id,
            timestamp=resolve_timestamp(plan, data),
            type=self.question_type,
            question=data["question"].strip(),
            explanation=data["explanation"].strip(),
            bloom_level=plan.bloom_level,
            educational_rationale=plan.educational_rationale,
            matching_pairs=[
                MatchingPair(left=pair["left"].strip(), right=pair["right"].strip())
                for pair in data["matching_pairs"]
            ],
            relationship_analysis=analysis,
            relationship_type=str(analysis.get("relationship_type") or ""),
        )

    def assess_quality(self, question: MatchingQuestion) -> QualityAssessment:
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

        pair_count = len(question.matching_pairs)
        if 3 <= pair_count <= 5:
            strengths.append(f"Optimal number of pairs ({pair_count}) for cognitive engagement")
        elif pair_count < 3:
            improvements.append("Too few pairs - may not provide sufficient interaction")
            score -= 15
        else:
            improvements.append("Too many pairs - may cause cognitive overload")
            score -= 10

        if len(question.explanation) >= 50:
            strengths.append("Explanation provides good educational value")
        else:
            improvements.append("Explanation could better address relationship patterns")
            score -= 15

        if question.relationship_type:
            strengths.append("Clear relationship type specified")
        else:
            improvements.append("Could benefit from relationship type analysis")
            score -= 10

        if pair_count:
            left = sum(len(pair.left) for pair in question.matching_pairs) / pair_count
            right = sum(len(pair.right) for pair in question.matching_pairs) / pair_count
            if abs(left - right) < 20:
                strengths.append("Balanced item lengths between columns")
            else:
                improvements.append("Consider balancing item lengths between columns")
                score -= 5

        if any(word in question.explanation.lower() for word in FOCUS_WORDS):
            strengths.append("Explanation focuses on relationship understanding")
        else:
            improvements.append("Could better explain why relationships matter")
            score -= 10

        if question.bloom_level in ("understand", "apply"):
            strengths.append("Appropriate cognitive level for matching format")
        elif question.bloom_level == "analyze":
            strengths.append("Targets higher-order relationship analysis")

        return QualityAssessment(score=max(0, score), strengths=strengths, improvements=improvements)
