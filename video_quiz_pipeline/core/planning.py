"""Stage 1: transcribe the video and plan the questions.

One request to a video-capable model returns the full transcript plus a list
of question plans. Timestamps cross the model boundary as "MM:SS" text and
are converted to integer seconds here, before anything else sees them.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import PipelineConfigLoader, pipeline_config
from .errors import PipelineError, QuizPipelineError, ValidationError, describe_error
from .gateway import ModelGateway
from .progress import ProgressTracker
from .timestamps import parse_timestamp
from .types import (
    BLOOM_LEVELS,
    DIFFICULTY_LEVELS,
    EVENT_TYPES,
    QUESTION_TYPES,
    KeyConcept,
    PipelineRequest,
    PlanningResult,
    QuestionError,
    QuestionPlan,
    TranscriptReference,
    TranscriptSegment,
    VideoInput,
    VideoTranscript,
)

log = logging.getLogger(__name__)

PLANNING_SYSTEM_PROMPT = (
    "You are an expert educational content creator and instructional designer with deep "
    "expertise in learning theory, cognitive psychology, and assessment design."
)

PLANNING_PROMPT = """
Your mission is to first transcribe and analyze this video, then create a plan for
diverse, high-quality quiz questions that promote deep learning and understanding.

## PHASE 1: VIDEO TRANSCRIPTION AND ANALYSIS
- Full audio transcript of all spoken content, split into timestamped segments
- A visual description of what is on screen for every segment (code, diagrams, demonstrations)
- Mark salient events: concept introductions, examples, summaries, transitions, visual highlights
- A timeline of key concepts: when each is first mentioned and every time it is explained
- A 2-3 sentence summary of the video and its learning potential

## PHASE 2: QUESTION PLANNING
Each plan describes a question before it is written. For every plan provide:
- learning_objective: a "Students will..." statement
- content_context: the relevant transcript text and visual description
- transcript_reference: the start/end of the transcript span the question is based on
- key_concepts: concepts taken directly from the transcript
- bloom_level, difficulty_level, educational_rationale, planning_notes, estimated_time_seconds

### Question types
- multiple-choice: conceptual understanding through misconception-based distractors (understand, apply, analyze)
- true-false: clear understanding of key principles; address a common confusion (remember, understand)
- hotspot: visual identification tied to a concept (understand, apply, analyze)
- matching: meaningful relationships such as cause-effect or concept-definition (understand, apply)
- sequencing: processes, chronology and logical progression (understand, apply, analyze)

### Bloom's taxonomy
- remember: recall facts and basic concepts
- understand: explain ideas and interpret meaning
- apply: use information in new situations
- analyze: draw connections and examine relationships
- evaluate: justify a decision against criteria
- create: produce new or original work

## TIMESTAMP FORMAT
Every timestamp you return (segment start/end, concept mentions, question timestamp,
frame_timestamp, transcript_reference start/end) MUST be a string in "MM:SS" format,
for example "0:45", "3:07" or "12:30". Minutes may exceed 59 for long videos.
Place each question timestamp AFTER the concept it tests has been fully explained.
"""


def build_planning_prompt(
    max_questions: int,
    difficulty_level: str,
    distribution: Dict[str, float],
    focus_topics: Iterable[str] = (),
    enable_visual_questions: bool = True,
) -> str:
    lines = [PLANNING_PROMPT.strip(), "", "## REQUIREMENTS FOR THIS VIDEO"]
    lines.append(f"- Plan exactly {max_questions} questions at {difficulty_level} difficulty.")
    lines.append("- Target this question type distribution:")
    for question_type, weight in distribution.items():
        lines.append(f"  - {question_type}: {round(weight * 100)}%")
    if enable_visual_questions:
        lines.append(
            "- For hotspot plans also provide frame_timestamp, visual_learning_objective, "
            "target_objects (objects visible in the frame per the visual description) and question_context."
        )
    else:
        lines.append("- Do NOT plan hotspot questions.")
    topics = [t for t in focus_topics if t]
    if topics:
        lines.append(f"- Prioritize these focus topics: {', '.join(topics)}.")
    lines.append("")
    lines.append(
        "Return JSON with both video_transcript and question_plans following the provided schema."
    )
    return "\n".join(lines)


def normalize_distribution(
    distribution: Optional[Dict[str, float]],
    default: Dict[str, float],
    enable_visual_questions: bool = True,
) -> Dict[str, float]:
    source = distribution or default
    weights = {
        t: float(w)
        for t, w in source.items()
        if t in QUESTION_TYPES and w and float(w) > 0
    }
    if not enable_visual_questions:
        weights.pop("hotspot", None)
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("question_distribution must give a positive weight to at least one question type")
    return {t: w / total for t, w in weights.items()}


# Parsing


def _optional(raw: Dict[str, Any], key: str) -> Any:
    value = raw.get(key)
    return None if value in (None, "") else value


def _list_field(raw: Dict[str, Any], key: str) -> List[Any]:
    value = raw.get(key)
    return value if isinstance(value, list) else []


def parse_transcript(raw: Dict[str, Any]) -> Tuple[VideoTranscript, List[str]]:
    """Convert the model's transcript block; returns the transcript and per-segment warnings."""
    warnings: List[str] = []
    if not isinstance(raw, dict):
        return VideoTranscript(full_transcript=[]), [f"video_transcript is not an object: {type(raw).__name__}"]
    segments: List[TranscriptSegment] = []
    for index, item in enumerate(_list_field(raw, "full_transcript")):
        try:
            start = parse_timestamp(item.get("timestamp"))
            end_raw = _optional(item, "end_timestamp")
            end = parse_timestamp(end_raw) if end_raw is not None else None
        except (ValueError, AttributeError) as exc:
            warnings.append(f"segment {index}: {exc}")
            continue
        event_type = _optional(item, "event_type")
        segments.append(
            TranscriptSegment(
                timestamp=start,
                end_timestamp=end,
                text=str(item.get("text") or ""),
                visual_description=str(item.get("visual_description") or ""),
                is_salient_event=bool(item.get("is_salient_event")),
                event_type=event_type if event_type in EVENT_TYPES else None,
            )
        )

    segments.sort(key=lambda s: s.timestamp)
    for current, following in zip(segments, segments[1:]):
        if current.end_timestamp is None:
            current.end_timestamp = following.timestamp

    concepts: List[KeyConcept] = []
    for item in _list_field(raw, "key_concepts_timeline"):
        try:
            concepts.append(
                KeyConcept(
                    concept=str(item["concept"]),
                    first_mentioned=parse_timestamp(item.get("first_mentioned")),
                    explanation_timestamps=[
                        parse_timestamp(ts) for ts in item.get("explanation_timestamps") or []
                    ],
                )
            )
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            warnings.append(f"concept {item!r:.60}: {exc}")

    return (
        VideoTranscript(
            full_transcript=segments,
            key_concepts_timeline=concepts,
            video_summary=str(raw.get("video_summary") or ""),
        ),
        warnings,
    )


def parse_plan(raw: Dict[str, Any], index: int) -> QuestionPlan:
    """Build a QuestionPlan from one raw plan object. Raises ValidationError."""
    if not isinstance(raw, dict):
        raise ValidationError(f"plan {index} is not an object", field="question_plans")
    question_type = str(raw.get("question_type") or "")
    try:
        timestamp = parse_timestamp(raw.get("timestamp"))
        frame_raw = _optional(raw, "frame_timestamp")
        frame_timestamp = parse_timestamp(frame_raw) if frame_raw is not None else None
        reference = None
        ref_raw = raw.get("transcript_reference")
        if isinstance(ref_raw, dict):
            reference = TranscriptReference(
                start_timestamp=parse_timestamp(ref_raw.get("start_timestamp")),
                end_timestamp=parse_timestamp(ref_raw.get("end_timestamp")),
                relevant_text=str(ref_raw.get("relevant_text") or ""),
                visual_context=str(ref_raw.get("visual_context") or ""),
            )
    except ValueError as exc:
        raise ValidationError(f"invalid timestamp: {exc}", question_type=question_type, field="timestamp") from exc

    estimated = raw.get("estimated_time_seconds")
    try:
        return _build_plan(raw, question_type, timestamp, frame_timestamp, reference, estimated)
    except (TypeError, ValueError, AttributeError, OverflowError) as exc:
        raise ValidationError(f"malformed plan {index}: {exc}", question_type=question_type) from exc


def _string_list(raw: Dict[str, Any], key: str) -> List[str]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{key} must be a list, got {type(value).__name__}")
    return [str(item) for item in value if str(item).strip()]


def _build_plan(
    raw: Dict[str, Any],
    question_type: str,
    timestamp: int,
    frame_timestamp: Optional[int],
    reference: Optional[TranscriptReference],
    estimated: Any,
) -> QuestionPlan:
    return QuestionPlan(
        question_id=str(raw.get("question_id") or ""),
        timestamp=timestamp,
        question_type=question_type,
        learning_objective=str(raw.get("learning_objective") or ""),
        content_context=str(raw.get("content_context") or ""),
        key_concepts=_string_list(raw, "key_concepts"),
        bloom_level=str(raw.get("bloom_level") or ""),
        educational_rationale=str(raw.get("educational_rationale") or ""),
        planning_notes=str(raw.get("planning_notes") or ""),
        difficulty_level=str(raw.get("difficulty_level") or "intermediate"),
        estimated_time_seconds=int(estimated) if isinstance(estimated, (int, float)) else None,
        transcript_reference=reference,
        frame_timestamp=frame_timestamp,
        target_objects=_string_list(raw, "target_objects"),
        visual_learning_objective=str(raw.get("visual_learning_objective") or ""),
        question_context=str(raw.get("question_context") or ""),
    )


def validate_plan(
    plan: QuestionPlan,
    transcript: VideoTranscript,
    allowed_types: Iterable[str] = QUESTION_TYPES,
) -> None:
    """Reject plans the generation stage cannot use. Raises ValidationError."""
    allowed = set(allowed_types)

    def fail(message: str, field: str) -> None:
        raise ValidationError(message, question_type=plan.question_type, field=field)

    if plan.question_type not in QUESTION_TYPES:
        fail(f"unsupported question type '{plan.question_type}'", "question_type")
    if plan.question_type not in allowed:
        fail(f"question type '{plan.question_type}' is disabled for this run", "question_type")
    if not plan.learning_objective.strip():
        fail("missing learning_objective", "learning_objective")
    if not plan.educational_rationale.strip():
        fail("missing educational_rationale", "educational_rationale")
    if plan.bloom_level not in BLOOM_LEVELS:
        fail(f"invalid bloom level '{plan.bloom_level}'", "bloom_level")
    if plan.difficulty_level not in DIFFICULTY_LEVELS:
        fail(f"invalid difficulty level '{plan.difficulty_level}'", "difficulty_level")
    if not plan.content_context.strip():
        fail("empty content_context", "content_context")
    if not plan.key_concepts:
        fail("empty key_concepts", "key_concepts")
    if plan.question_type == "hotspot":
        if not plan.target_objects:
            fail("hotspot plan missing target_objects", "target_objects")
        if not plan.visual_learning_objective.strip():
            fail("hotspot plan missing visual_learning_objective", "visual_learning_objective")
        if not plan.question_context.strip():
            fail("hotspot plan missing question_context", "question_context")

    start, end = transcript.start, transcript.duration
    if plan.timestamp > end:
        fail(f"timestamp {plan.timestamp}s is past the end of the video ({end}s)", "timestamp")
    reference = plan.transcript_reference
    if reference is None:
        fail("missing transcript_reference", "transcript_reference")
    if reference.start_timestamp > reference.end_timestamp:
        fail("transcript_reference starts after it ends", "transcript_reference")
    if reference.start_timestamp < start or reference.end_timestamp > end:
        fail(
            f"transcript_reference {reference.start_timestamp}s-{reference.end_timestamp}s "
            f"is outside the transcript range {start}s-{end}s",
            "transcript_reference",
        )


def calculate_educational_score(plan: QuestionPlan) -> int:
    bloom_index = BLOOM_LEVELS.index(plan.bloom_level) if plan.bloom_level in BLOOM_LEVELS else 0
    score = (bloom_index + 1) * 2
    score += 3 if len(plan.educational_rationale) > 50 else 1
    objective = plan.learning_objective
    score += 3 if "will" in objective and len(objective) > 30 else 1
    score += 1 if plan.question_type == "multiple-choice" else 2
    return score


def prioritize_plans(plans: List[QuestionPlan], max_questions: int) -> List[QuestionPlan]:
    if len(plans) <= max_questions:
        return list(plans)
    # sorted() is stable, so equal scores keep the model's order
    ranked = sorted(plans, key=calculate_educational_score, reverse=True)
    return ranked[:max_questions]


def ensure_unique_identifiers(plans: List[QuestionPlan]) -> List[QuestionPlan]:
    seen: set[str] = set()
    for index, plan in enumerate(plans):
        if not plan.question_id or plan.question_id in seen:
            base = f"q{index + 1}_{plan.question_type}_{plan.timestamp}"
            candidate, suffix = base, 2
            while candidate in seen:
                candidate = f"{base}_{suffix}"
                suffix += 1
            plan.question_id = candidate
        seen.add(plan.question_id)
    return plans


def plan_distribution(plans: Iterable[QuestionPlan], attribute: str) -> Dict[str, int]:
    return dict(Counter(getattr(plan, attribute) for plan in plans))


class PlanningStage:
    def __init__(
        self,
        gateway: ModelGateway,
        config: Optional[PipelineConfigLoader] = None,
        progress: Optional[ProgressTracker] = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or pipeline_config
        self.progress = progress

    async def run(self, request: PipelineRequest) -> PlanningResult:
        """Transcribe and plan. Raises PipelineError when nothing usable comes back."""
        started = time.perf_counter()
        defaults = self.config.pipeline_defaults()
        max_questions = request.max_questions or defaults["max_questions"]
        difficulty = request.difficulty_level or defaults["difficulty_level"]
        distribution = normalize_distribution(
            request.question_distribution,
            defaults["question_distribution"],
            request.enable_visual_questions,
        )

        prompt = build_planning_prompt(
            max_questions,
            difficulty,
            distribution,
            request.focus_topics,
            request.enable_visual_questions,
        )
        log.info("[planning] analyzing %s for %d questions", request.video_source_url, max_questions)
        if self.progress:
            await self.progress.start_stage("planning", "Transcribing video and planning questions")

        try:
            response = await self.gateway.generate(
                "planning",
                prompt,
                self.config.generation_config("planning"),
                video=VideoInput(file_uri=request.video_source_url),
                system_prompt=PLANNING_SYSTEM_PROMPT,
            )
        except QuizPipelineError as exc:
            raise PipelineError(f"Planning request failed: {describe_error(exc)}", stage="planning") from exc

        content = response.content
        transcript, warnings = parse_transcript(content.get("video_transcript") or {})
        for warning in warnings:
            log.warning("[planning] dropped transcript entry: %s", warning)
        if not transcript.full_transcript:
            raise PipelineError("Planning returned an empty transcript", stage="planning")

        allowed_types = set(distribution)
        valid: List[QuestionPlan] = []
        errors: List[QuestionError] = []
        for index, raw in enumerate(_list_field(content, "question_plans")):
            plan_id = str(raw.get("question_id") or f"plan_{index + 1}") if isinstance(raw, dict) else f"plan_{index + 1}"
            try:
                plan = parse_plan(raw, index)
                validate_plan(plan, transcript, allowed_types)
            except ValidationError as exc:
                log.warning("[planning] dropped plan %s: %s", plan_id, exc)
                errors.append(
                    QuestionError(
                        question_id=plan_id,
                        error_message=str(exc),
                        question_type=exc.question_type,
                        stage="planning",
                    )
                )
                continue
            valid.append(plan)

        if not valid:
            raise PipelineError(
                f"Planning produced no usable question plans ({len(errors)} rejected)", stage="planning"
            )

        if len(valid) > max_questions:
            log.info("[planning] limiting %d plans to %d by educational value", len(valid), max_questions)
        plans = prioritize_plans(valid, max_questions)
        plans.sort(key=lambda p: p.timestamp)
        plans = ensure_unique_identifiers(plans)

        if self.progress:
            for plan in plans:
                await self.progress.plan_question(
                    plan.question_id, plan.question_type, plan.educational_rationale
                )

        planning_time_ms = int((time.perf_counter() - started) * 1000)
        metadata = {
            "total_planned": len(plans),
            "rejected_plans": len(errors),
            "bloom_distribution": plan_distribution(plans, "bloom_level"),
            "type_distribution": plan_distribution(plans, "question_type"),
            "difficulty_distribution": plan_distribution(plans, "difficulty_level"),
            "planning_time_ms": planning_time_ms,
            "provider_used": response.provider_used,
            "model_used": response.model_used,
            "token_usage": response.usage.__dict__,
            "transcript_segments": len(transcript.full_transcript),
            "video_duration": transcript.duration,
        }
        log.info(
            "[planning] %d plans ready (%d rejected), bloom %s",
            len(plans),
            len(errors),
            metadata["bloom_distribution"],
        )
        if self.progress:
            await self.progress.complete_stage(
                "planning", f"Planned {len(plans)} questions", {"rejected_plans": len(errors)}
            )
        return PlanningResult(
            transcript=transcript,
            question_plans=plans,
            planning_metadata=metadata,
            errors=errors,
        )
