from __future__ import annotations

import logging
from typing import Any, Dict

from ..errors import ValidationError
from ..transcript import TranscriptContext
from ..types import MultipleChoiceQuestion, QualityAssessment, QuestionPlan
from .base import TextQuestionProcessor, assemble_prompt, length_band, optional_dict, require_text, resolve_timestamp

log = logging.getLogger(__name__)

MULTIPLE_CHOICE_PROMPT = """
You are an expert multiple choice question creator specializing in educational assessment design.
Create a single, high-quality MCQ that tests deep understanding rather than surface-level recall.

## QUESTION STEM
- Write a clear, unambiguous question that addresses the learning objective
- Test understanding, application or analysis, not memorization
- Avoid negative constructions ("Which is NOT...") unless essential

## ANSWER OPTIONS
- Exactly 4 options with one unambiguously correct answer
- Three educational distractors, each representing a specific student error:
  1. Misconception-based: a common misunderstanding of the concept
  2. Incomplete knowledge: partial understanding that leads to a wrong conclusion
  3. Logical confusion: reasonable but incorrect application of a related concept
- Options similar in length and grammatical form; no "all/none of the above"

## EXPLANATION
- Explain WHY the correct answer is right, not just WHAT it is
- Briefly address why the distractors are incorrect
"""

EXPLANATORY_WORDS = ("correct", "because", "why")
HIGHER_ORDER_WORDS = ("understand", "apply", "analyze", "evaluate", "create")


class MultipleChoiceProcessor(TextQuestionProcessor):
    question_type = "multiple-choice"
    closing = "Generate a high-quality multiple choice question based on this plan."

    def build_prompt(self, plan: QuestionPlan, context: TranscriptContext) -> str:
        return assemble_prompt(MULTIPLE_CHOICE_PROMPT, plan, context, self.closing)

    def validate(self, data: Dict[str, Any]) -> None:
        require_text(data, "question", 10, self.question_type)
        options = data.get("options")
        if not isinstance(options, list) or len(options) != 4:
            raise ValidationError("MCQ must have exactly 4 options", self.question_type, "options")
        for index, option in enumerate(options):
            if not isinstance(option, str) or len(option.strip()) < 2:
                raise ValidationError(f"Option {index} must be a non-empty string", self.question_type, "options")
        if len({option.strip().lower() for option in options}) < 4:
            raise ValidationError("All options must be unique", self.question_type, "options")

        answer = data.get("correct_answer")
        if isinstance(answer, bool) or not isinstance(answer, int) or not 0 <= answer < len(options):
            raise ValidationError(
                "correct_answer must be an integer between 0 and 3", self.question_type, "correct_answer"
            )
        explanation = require_text(data, "explanation", 20, self.question_type)

        if not any(word in explanation.lower() for word in EXPLANATORY_WORDS):
            log.warning("[multiple-choice] explanation may lack explanatory language")

    def normalize(self, plan: QuestionPlan, data: Dict[str, Any]) -> MultipleChoiceQuestion:
        return MultipleChoiceQuestion(
            question_id=plan.question_id,
            timestamp=resolve_timestamp(plan, data),
            type=self.question_type,
            question=data["question"].strip(),
            explanation=data["explanation"].strip(),
            bloom_level=plan.bloom_level,
            educational_rationale=plan.educational_rationale,
            options=[option.strip() for option in data["options"]],
            correct_answer=data["correct_answer"],
            misconception_analysis=optional_dict(data.get("misconception_analysis")),
        )

    def assess_quality(self, question: MultipleChoiceQuestion) -> QualityAssessment:
        strengths: list[str] = []
        improvements: list[str] = []
        score = 100
        score -= length_band(
            len(question.question),
            20,
            200,
            "Question length is appropriate",
            "Question could be more detailed",
            "Question may be too verbose",
            strengths,
            improvements,
        )

        average_option = sum(len(option) for option in question.options) / len(question.options)
        if 10 <= average_option <= 100:
            strengths.append("Option lengths are well-balanced")
        else:
            improvements.append("Option lengths could be more balanced")
            score -= 5

        if len(question.explanation) >= 50:
            strengths.append("Explanation provides good educational value")
        else:
            improvements.append("Explanation could be more comprehensive")
            score -= 15

        if len(question.misconception_analysis) >= 2:
            strengths.append("Includes misconception analysis for learning")
        else:
            improvements.append("Could benefit from misconception analysis")
            score -= 10

        text = f"{question.question} {question.explanation}".lower()
        if any(word in text for word in HIGHER_ORDER_WORDS):
            strengths.append("Targets higher-order thinking skills")
        else:
            improvements.append("Could target higher-order thinking skills")
            score -= 5

        return QualityAssessment(score=max(0, score), strengths=strengths, improvements=improvements)
