"""Map generated questions to the flat row shape the question store persists.

``correct_answer`` is type-dependent: the option index for multiple-choice,
``0`` (True) / ``1`` (False) for true-false, and ``1`` for the types whose
answer lives in ``metadata`` (hotspot boxes, matching pairs, sequence order).
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from .types import QUALITY_DIMENSIONS, GeneratedQuestion, QualityVerificationResult

log = logging.getLogger(__name__)

VISUAL_TYPES = ("hotspot", "matching", "sequencing")
METADATA_ANSWER = 1
DEFAULT_VIDEO_DIMENSIONS = {"width": 1000, "height": 1000}

QuestionLike = Union[GeneratedQuestion, Mapping[str, Any]]


def encode_true_false_answer(value: Any) -> int:
    """Index into ``["True", "False"]``: True -> 0, False -> 1.

    Accepts a bool, the strings ``"true"``/``"false"`` (any case) or an
    already-encoded 0/1. Raises ValueError for anything else.
    """
    if isinstance(value, bool):
        return 0 if value else 1
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return 0 if lowered == "true" else 1
        raise ValueError(f"Unknown true/false answer: {value!r}")
    if isinstance(value, int) and value in (0, 1):
        return value
    raise ValueError(f"Unknown true/false answer: {value!r}")


def normalize_question_type(question_type: str) -> str:
    return question_type.strip().replace("_", "-")


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def _as_dict(question: QuestionLike) -> Dict[str, Any]:
    if dataclasses.is_dataclass(question) and not isinstance(question, type):
        return dataclasses.asdict(question)
    return dict(question)


def _type_metadata(question_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    if question_type == "multiple-choice":
        return {"misconception_analysis": data.get("misconception_analysis") or None}
    if question_type == "true-false":
        return {
            "concept_analysis": data.get("concept_analysis") or None,
            "misconception_addressed": data.get("misconception_addressed") or None,
        }
    if question_type == "hotspot":
        return {
            "target_objects": data.get("target_objects") or [],
            "frame_timestamp": data.get("frame_timestamp"),
            "question_context": data.get("question_context"),
            "visual_learning_objective": data.get("visual_learning_objective"),
            "distractor_guidance": data.get("distractor_guidance") or None,
            "detected_elements": data.get("bounding_boxes") or [],
            "video_dimensions": data.get("video_dimensions") or DEFAULT_VIDEO_DIMENSIONS,
            "video_overlay": True,
        }
    if question_type == "matching":
        return {
            "matching_pairs": data.get("matching_pairs") or [],
            "relationship_analysis": data.get("relationship_analysis") or None,
            "relationship_type": data.get("relationship_type") or None,
            "video_overlay": True,
        }
    if question_type == "sequencing":
        return {
            "sequence_items": data.get("sequence_items") or [],
            "sequence_analysis": data.get("sequence_analysis") or None,
            "sequence_type": data.get("sequence_type") or None,
            "video_overlay": True,
        }
    return {}


def _correct_answer(question_type: str, data: Dict[str, Any]) -> int:
    if question_type == "true-false":
        return encode_true_false_answer(data.get("correct_answer"))
    if question_type == "multiple-choice":
        return int(data.get("correct_answer") or 0)
    return METADATA_ANSWER


def transform_question_for_storage(
    question: QuestionLike,
    course_id: str,
    quality: Optional[QualityVerificationResult] = None,
) -> Dict[str, Any]:
    """Build one question row. The same input always yields an identical row."""
    data = _as_dict(question)
    question_type = normalize_question_type(str(data.get("type") or ""))

    options = None
    if question_type == "multiple-choice":
        options = _dumps(list(data.get("options") or []))

    metadata = {
        key: value for key, value in _type_metadata(question_type, data).items() if value is not None
    }
    metadata["bloom_level"] = data.get("bloom_level")
    metadata["educational_rationale"] = data.get("educational_rationale")
    metadata = {key: value for key, value in metadata.items() if value is not None}

    frame_timestamp = None
    if question_type == "hotspot" and data.get("frame_timestamp") is not None:
        frame_timestamp = int(round(float(data["frame_timestamp"])))

    row: Dict[str, Any] = {
        "question_id": str(data.get("question_id") or ""),
        "course_id": course_id,
        "timestamp": int(round(float(data.get("timestamp") or 0))),
        "question": str(data.get("question") or ""),
        "type": question_type,
        "options": options,
        "correct_answer": _correct_answer(question_type, data),
        "explanation": str(data.get("explanation") or ""),
        "has_visual_asset": question_type in VISUAL_TYPES,
        "frame_timestamp": frame_timestamp,
        "metadata": _dumps(metadata) if metadata else None,
    }
    if quality is not None:
        row["quality_score"] = quality.overall_score
        row["meets_threshold"] = quality.meets_quality_threshold
    return row


def extract_bounding_boxes(question: QuestionLike, question_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Rows for the bounding-box table; empty for non-hotspot questions."""
    data = _as_dict(question)
    if normalize_question_type(str(data.get("type") or "")) != "hotspot":
        return []
    owner = question_id or str(data.get("question_id") or "")
    rows = []
    for box in data.get("bounding_boxes") or []:
        confidence = box.get("confidence_score")
        rows.append(
            {
                "question_id": owner,
                "label": str(box.get("label") or ""),
                "x": round(float(box["x"]), 4),
                "y": round(float(box["y"]), 4),
                "width": round(float(box["width"]), 4),
                "height": round(float(box["height"]), 4),
                "is_correct_answer": bool(box.get("is_correct_answer", False)),
                "confidence_score": 0.8 if confidence is None else float(confidence),
            }
        )
    return rows


def quality_metrics_row(result: QualityVerificationResult) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "question_id": result.question_id,
        "overall_score": result.overall_score,
        "meets_threshold": result.meets_quality_threshold,
        "verification_confidence": result.verification_confidence,
    }
    for name in QUALITY_DIMENSIONS:
        dimension = result.quality_dimensions.get(name)
        row[f"{name}_score"] = dimension.score if dimension else None
    row["quality_analysis"] = _dumps(
        {
            "overall_assessment": result.overall_assessment,
            "specific_strengths": result.specific_strengths,
            "improvement_recommendations": result.improvement_recommendations,
            "quality_dimensions": {
                name: dataclasses.asdict(dimension) for name, dimension in result.quality_dimensions.items()
            },
            "model_reported_threshold": result.model_reported_threshold,
        }
    )
    return row
