"""Visual hotspot questions.

The model looks at a half-second window of the video ending at the plan's
frame timestamp and returns question text, an explanation and one bounding
box per visible object. Boxes arrive as ``[y_min, x_min, y_max, x_max]`` on a
0-1000 scale and are stored as 0-1 top-left/width/height.

Exactly one box must end up marked correct. When the model marks none or
several, the plan's target-object labels are used to pick one; failing that,
the first marked box wins unless strict reconciliation is enabled. A frame
with no correct box is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import ReconciliationFailure, ValidationError
from ..gateway import ModelGateway
from ..transcript import TranscriptContext
from ..types import BoundingBox, HotspotQuestion, QualityAssessment, QuestionPlan, VideoInput
from .base import ProcessedQuestion, ProcessorContext, length_band, require_text

log = logging.getLogger(__name__)

FRAME_WINDOW_SECONDS = 0.5
DEFAULT_LABEL = "Unknown Object"
DEFAULT_CONFIDENCE = 0.8
WHY_DISTRACTORS_MATTER = "These alternatives test understanding versus mere recognition"

HOTSPOT_PROMPT = """
You are creating a visual hotspot question for educational purposes. Generate question text, an
explanation, and bounding boxes for the visible objects in this frame.

LEARNING OBJECTIVE: {learning_objective}
VISUAL LEARNING OBJECTIVE: {visual_learning_objective}
QUESTION CONTEXT: {question_context}
TARGET OBJECTS: {target_objects}
KEY CONCEPTS: {key_concepts}
BLOOM LEVEL: {bloom_level}
{transcript}
Requirements:
1. Question text that asks students to identify the target object, connected to the learning objective
2. An explanation of why identifying this object matters, linked to: {key_concepts}
3. Bounding boxes for the target and for other visible objects with minimal overlap (3-5 boxes)
4. Mark is_correct_answer=true ONLY for the target object; all other boxes are false
5. Choose distractor objects that test understanding, not random objects
6. Keep boxes as small as possible; skip objects covering more than 30% of the frame
7. Give every box a unique, descriptive label
"""


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def convert_box(raw: Any) -> Optional[BoundingBox]:
    """Convert one model box to normalized geometry, or None when ``box_2d`` is unusable."""
    if not isinstance(raw, dict):
        return None
    coords = raw.get("box_2d")
    if not isinstance(coords, list) or len(coords) != 4:
        return None
    if not all(isinstance(c, (int, float)) and not isinstance(c, bool) for c in coords):
        return None
    y_min, x_min, y_max, x_max = coords
    if x_max <= x_min or y_max <= y_min:
        return None
    confidence = raw.get("confidence_score")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        confidence = DEFAULT_CONFIDENCE
    return BoundingBox(
        label=str(raw.get("label") or DEFAULT_LABEL),
        x=_clamp(x_min / 1000),
        y=_clamp(y_min / 1000),
        width=_clamp((x_max - x_min) / 1000),
        height=_clamp((y_max - y_min) / 1000),
        is_correct_answer=raw.get("is_correct_answer") is True,
        confidence_score=_clamp(float(confidence)),
    )


def convert_boxes(raw_boxes: Sequence[Any]) -> List[BoundingBox]:
    boxes = []
    for index, raw in enumerate(raw_boxes):
        box = convert_box(raw)
        if box is None:
            log.warning("[hotspot] skipping invalid bounding box %d: %r", index, raw)
            continue
        boxes.append(box)
    return boxes


def _matches_target(box: BoundingBox, targets: Sequence[str]) -> bool:
    label = box.label.lower()
    return any(target and target in label for target in targets)


def reconcile_correct_answers(
    boxes: List[BoundingBox],
    target_objects: Sequence[str],
    strict: bool = False,
    question_id: str = "",
) -> List[BoundingBox]:
    """Return a copy of ``boxes`` with exactly one box marked correct.

    Raises ReconciliationFailure when no box can be identified as the target,
    or in strict mode when several marked boxes cannot be told apart.
    """
    targets = [target.strip().lower() for target in target_objects if target.strip()]
    marked = [index for index, box in enumerate(boxes) if box.is_correct_answer]
    if len(marked) == 1:
        return [replace(box) for box in boxes]

    chosen: Optional[int] = None
    if not marked:
        chosen = next((i for i, box in enumerate(boxes) if _matches_target(box, targets)), None)
    else:
        matching = [i for i in marked if _matches_target(boxes[i], targets)]
        if len(matching) == 1 or (matching and not strict):
            chosen = matching[0]
        elif strict:
            labels = ", ".join(boxes[i].label for i in marked)
            raise ReconciliationFailure(
                f"{len(marked)} boxes marked correct ({labels}) and the target objects "
                f"'{', '.join(target_objects)}' do not single one out. Hotspot question discarded.",
                question_id=question_id,
            )
        else:
            chosen = marked[0]
        log.warning(
            "[hotspot] %s: %d boxes marked correct, keeping '%s'",
            question_id,
            len(marked),
            boxes[chosen].label,
        )

    if chosen is None:
        detected = ", ".join(box.label for box in boxes) or "none"
        raise ReconciliationFailure(
            f"Correct answer object(s) '{', '.join(target_objects)}' not detected in video frame "
            f"(detected: {detected}). Hotspot question discarded.",
            question_id=question_id,
        )
    return [replace(box, is_correct_answer=index == chosen) for index, box in enumerate(boxes)]


def extract_expected_distractors(plan: QuestionPlan, limit: int = 3) -> List[str]:
    distractors: List[str] = []
    match = re.search(r"distractors?[:\-\s]+([^.]+)", plan.planning_notes, re.IGNORECASE)
    if match:
        distractors.extend(part.strip() for part in re.split(r"[,;]", match.group(1)) if part.strip())
    targets = [target.lower() for target in plan.target_objects]
    for concept in plan.key_concepts:
        if any(concept.lower() in target for target in targets):
            continue
        if concept.lower() not in (d.lower() for d in distractors):
            distractors.append(concept)
    return distractors[:limit]


class HotspotProcessor:
    question_type = "hotspot"

    def __init__(
        self,
        jitter_ms: Tuple[int, int] = (500, 1500),
        attempts: int = 3,
        strict_reconciliation: bool = False,
        retry_delay_ms: int = 1000,
    ) -> None:
        self.jitter_ms = jitter_ms
        self.attempts = max(1, attempts)
        self.retry_delay_ms = retry_delay_ms
        self.strict_reconciliation = strict_reconciliation

    def build_prompt(self, plan: QuestionPlan, context: TranscriptContext) -> str:
        transcript = ""
        if context.segments:
            transcript = (
                "\nTRANSCRIPT CONTEXT:\n"
                f"Visual Description at Timestamp: {context.visual_context or 'Not available'}\n"
                f"Content being discussed:\n{context.formatted_context}\n"
            )
        return HOTSPOT_PROMPT.format(
            learning_objective=plan.learning_objective,
            visual_learning_objective=plan.visual_learning_objective,
            question_context=plan.question_context,
            target_objects=", ".join(plan.target_objects),
            key_concepts=", ".join(plan.key_concepts),
            bloom_level=plan.bloom_level,
            transcript=transcript,
        ).strip()

    def validate(self, data: Dict[str, Any]) -> None:
        require_text(data, "question", 1, self.question_type)
        require_text(data, "explanation", 1, self.question_type)
        raw_boxes = data.get("bounding_boxes")
        if not isinstance(raw_boxes, list):
            raise ValidationError("bounding_boxes must be an array", self.question_type, "bounding_boxes")
        boxes = convert_boxes(raw_boxes)
        if len(boxes) < 2:
            raise ValidationError(
                f"Insufficient bounding boxes detected: {len(boxes)}. Need at least 2 for meaningful interaction.",
                self.question_type,
                "bounding_boxes",
            )

    def normalize(self, plan: QuestionPlan, data: Dict[str, Any]) -> HotspotQuestion:
        boxes = reconcile_correct_answers(
            convert_boxes(data["bounding_boxes"]),
            plan.target_objects,
            strict=self.strict_reconciliation,
            question_id=plan.question_id,
        )
        return HotspotQuestion(
            question_id=plan.question_id,
            timestamp=plan.timestamp,
            type=self.question_type,
            question=data["question"].strip(),
            explanation=data["explanation"].strip(),
            bloom_level=plan.bloom_level,
            educational_rationale=plan.educational_rationale,
            target_objects=list(plan.target_objects),
            frame_timestamp=self.frame_timestamp(plan),
            bounding_boxes=boxes,
            question_context=plan.question_context,
            visual_learning_objective=plan.visual_learning_objective,
            distractor_guidance={
                "expected_distractors": extract_expected_distractors(plan),
                "why_distractors_matter": WHY_DISTRACTORS_MATTER,
            },
        )

    def assess_quality(self, question: HotspotQuestion) -> QualityAssessment:
        strengths: list[str] = []
        improvements: list[str] = []
        score = 100
        score -= length_band(
            len(question.question),
            20,
            200,
            "Question length is appropriate",
            "Question could be more specific about what to identify",
            "Question may be too verbose",
            strengths,
            improvements,
        )

        if len(question.explanation) >= 50:
            strengths.append("Explanation provides good educational value")
        else:
            improvements.append("Explanation could be more comprehensive")
            score -= 15

        box_count = len(question.bounding_boxes)
        if box_count >= 3:
            strengths.append(f"Offers {box_count} selectable regions")
        else:
            improvements.append("More distractor regions would make selection meaningful")
            score -= 10

        if question.distractor_guidance.get("expected_distractors"):
            strengths.append("Distractors are tied to related concepts")
        else:
            improvements.append("Could name expected distractors")
            score -= 5

        correct = [box for box in question.bounding_boxes if box.is_correct_answer]
        if correct and correct[0].confidence_score >= 0.7:
            strengths.append("Target region detected with high confidence")
        else:
            improvements.append("Target region confidence is low")
            score -= 10

        return QualityAssessment(score=max(0, score), strengths=strengths, improvements=improvements)

    def frame_timestamp(self, plan: QuestionPlan) -> float:
        return float(plan.frame_timestamp if plan.frame_timestamp is not None else plan.timestamp)

    def _require_visual_fields(self, plan: QuestionPlan) -> None:
        for field in ("target_objects", "visual_learning_objective", "question_context"):
            if not getattr(plan, field):
                raise ValidationError(
                    f"Hotspot plan {plan.question_id} is missing {field}", self.question_type, field
                )

    async def generate(
        self, plan: QuestionPlan, context: ProcessorContext, gateway: ModelGateway
    ) -> ProcessedQuestion:
        low, high = self.jitter_ms
        if high > 0:
            # pre-request jitter
            await asyncio.sleep(random.uniform(low, high) / 1000)

        self._require_visual_fields(plan)
        frame = self.frame_timestamp(plan)
        video = VideoInput(
            file_uri=context.video_url,
            start_offset=max(0.0, frame - FRAME_WINDOW_SECONDS),
            end_offset=frame,
        )
        log.info(
            "[hotspot] generating %s at frame %.1fs, targets: %s",
            plan.question_id,
            frame,
            ", ".join(plan.target_objects),
        )
        prompt = self.build_prompt(plan, context.transcript)
        for attempt in range(1, self.attempts + 1):
            if attempt > 1 and self.retry_delay_ms > 0:
                await asyncio.sleep(self.retry_delay_ms * 2 ** (attempt - 2) / 1000)
            result = await gateway.generate(
                self.question_type,
                prompt,
                context.config,
                video=video,
                retry_attempts=self.attempts,
            )
            try:
                self.validate(result.content)
                break
            except ValidationError as exc:
                # only box detection failures are retried
                if exc.field != "bounding_boxes" or attempt == self.attempts:
                    raise
                log.warning(
                    "[hotspot] %s attempt %d/%d: %s, retrying",
                    plan.question_id,
                    attempt,
                    self.attempts,
                    exc,
                )
        question = self.normalize(plan, result.content)
        correct = next(box for box in question.bounding_boxes if box.is_correct_answer)
        log.info(
            "[hotspot] %s ready with %d boxes, correct: %s",
            plan.question_id,
            len(question.bounding_boxes),
            correct.label,
        )
        return ProcessedQuestion(
            question=question,
            provider_used=result.provider_used,
            model_used=result.model_used,
            usage=result.usage,
            assessment=self.assess_quality(question),
        )
