from __future__ import annotations

import logging
from typing import Any, Dict

from ..errors import ValidationError
from ..transcript import TranscriptContext
from ..types import QualityAssessment, QuestionPlan, TrueFalseQuestion
from .base import TextQuestionProcessor, assemble_prompt, length_band, optional_dict, require_text, resolve_timestamp

log = logging.getLogger(__name__)

TRUE_FALSE_PROMPT = """
You are an expert educational assessment designer specializing in true/false questions that
test conceptual understanding. Create a single true/false item that reveals deep understanding.

## STATEMENT
- A declarative statement, not a question
- Unambiguously true or false based on the video content
- One clear idea; avoid absolutes ("always", "never", "all") unless essential to the concept
- A false statement should capture a believable, common misconception

## EXPLANATION
- Explain the concept, not just the verdict
- For false statements, explain why students might think it is true
"""

ABSOLUTE_WORDS = ("always", "never", "all", "none", "every", "only")
TRIVIAL_WORDS = ("always", "never", "all", "none")
EXPLANATORY_WORDS = ("because", "therefore", "why")


class TrueFalseProcessor(TextQuestionProcessor):
    question_type = "true-false"
    closing = "Focus on a statement that reveals deep understanding of the concept."

    def build_prompt(self, plan: QuestionPlan, context: TranscriptContext) -> str:
        return assemble_prompt(TRUE_FALSE_PROMPT, plan, context, self.closing)

    def validate(self, data: Dict[str, Any]) -> None:
        statement = require_text(data, "question", 10, self.question_type)
        if not isinstance(data.get("correct_answer"), bool):
            raise ValidationError(
                "correct_answer must be a boolean (true or false)", self.question_type, "correct_answer"
            )
        explanation = require_text(data, "explanation", 20, self.question_type)

        if "?" in statement:
            log.warning("[true-false] statement is phrased as a question: %s", statement[:80])
        lowered = statement.lower()
        if any(word in lowered.split() for word in ABSOLUTE_WORDS):
            log.warning("[true-false] statement contains absolute terms: %s", statement[:80])
        if not any(word in explanation.lower() for word in EXPLANATORY_WORDS):
            log.warning("[true-false] explanation may lack explanatory language")

    def normalize(self, plan: QuestionPlan, data: Dict[str, Any]) -> TrueFalseQuestion:
        return TrueFalseQuestion(
            question_id=plan.question_id,
            timestamp=resolve_timestamp(plan, data),
            type=self.question_type,
            question=data["question"].strip(),
            explanation=data["explanation"].strip(),
            bloom_level=plan.bloom_level,
            educational_rationale=plan.educational_rationale,
            correct_answer=data["correct_answer"],
            concept_analysis=optional_dict(data.get("concept_analysis")),
            misconception_addressed=str(data.get("misconception_addressed") or ""),
        )

    def assess_quality(self, question: TrueFalseQuestion) -> QualityAssessment:
        strengths: list[str] = []
        improvements: list[str] = []
        score = 100
        score -= length_band(
            len(question.question),
            15,
            150,
            "Statement length is appropriate",
            "Statement could be more detailed",
            "Statement may be too complex for true/false format",
            strengths,
            improvements,
        )

        if len(question.explanation) >= 40:
            strengths.append("Explanation provides good educational value")
        else:
            improvements.append("Explanation could be more comprehensive")
            score -= 15

        if question.concept_analysis.get("key_concept"):
            strengths.append("Includes clear concept analysis")
        else:
            improvements.append("Could benefit from concept analysis")
            score -= 10

        if not question.correct_answer:
            if question.misconception_addressed:
                strengths.append("Addresses important misconception")
            else:
                improvements.append("False statement should address specific misconception")
                score -= 10

        words = question.question.lower().split()
        if any(word in words for word in TRIVIAL_WORDS):
            improvements.append("Avoid absolute terms that might make question too obvious")
            score -= 5
        else:
            strengths.append("Avoids obvious absolute terms")

        if question.bloom_level in ("understand", "apply"):
            strengths.append("Targets appropriate cognitive level for true/false format")
        elif question.bloom_level == "remember":
            improvements.append("Could target higher-order thinking")
            score -= 5

        return QualityAssessment(score=max(0, score), strengths=strengths, improvements=improvements)
