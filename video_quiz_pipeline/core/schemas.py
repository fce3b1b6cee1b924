"""Structured-output JSON schemas and provider-specific schema dialects.

Every model call in the pipeline is constrained by one of these schemas. The
base schemas are written once in a provider-neutral subset of JSON Schema;
``to_openai_strict_schema`` and ``to_gemini_schema`` derive the dialect each
backend accepts.
"""

from __future__ import annotations

import copy
from typing import Any, Dict

from .types import BLOOM_LEVELS, DIFFICULTY_LEVELS, EVENT_TYPES, QUALITY_DIMENSIONS, QUESTION_TYPES

_OPTIMAL_TIMESTAMP = {
    "type": "number",
    "description": "Seconds into the video where the question should appear, after the relevant explanation ends",
}

_DIFFICULTY_INDICATORS = {
    "type": "object",
    "properties": {
        "requires_application": {"type": "boolean"},
        "tests_misconceptions": {"type": "boolean"},
        "involves_analysis": {"type": "boolean"},
    },
    "required": ["requires_application", "tests_misconceptions", "involves_analysis"],
    "additionalProperties": False,
}

MULTIPLE_CHOICE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "question": {"type": "string", "description": "Clear question stem testing understanding"},
        "options": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": 4,
            "maxItems": 4,
            "description": "Exactly four answer options",
        },
        "correct_answer": {
            "type": "integer",
            "minimum": 0,
            "maximum": 3,
            "description": "Index of the correct option",
        },
        "explanation": {"type": "string"},
        "misconception_analysis": {
            "type": "object",
            "properties": {
                "option_1": {"type": "string"},
                "option_2": {"type": "string"},
                "option_3": {"type": "string"},
            },
            "required": ["option_1", "option_2", "option_3"],
            "additionalProperties": False,
        },
        "educational_rationale": {"type": "string"},
        "cognitive_level": {"type": "string", "enum": ["understand", "apply", "analyze"]},
        "difficulty_indicators": _DIFFICULTY_INDICATORS,
        "optimal_timestamp": _OPTIMAL_TIMESTAMP,
    },
    "required": [
        "question",
        "options",
        "correct_answer",
        "explanation",
        "misconception_analysis",
        "educational_rationale",
        "cognitive_level",
        "difficulty_indicators",
    ],
    "additionalProperties": False,
}

TRUE_FALSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "question": {"type": "string", "description": "A declarative statement, not a question"},
        "correct_answer": {"type": "boolean"},
        "explanation": {"type": "string"},
        "concept_analysis": {
            "type": "object",
            "properties": {
                "key_concept": {"type": "string"},
                "why_important": {"type": "string"},
                "common_confusion": {"type": "string"},
            },
            "required": ["key_concept", "why_important", "common_confusion"],
            "additionalProperties": False,
        },
        "educational_rationale": {"type": "string"},
        "cognitive_level": {"type": "string", "enum": ["remember", "understand", "apply"]},
        "misconception_addressed": {"type": "string"},
        "difficulty_indicators": _DIFFICULTY_INDICATORS,
        "optimal_timestamp": _OPTIMAL_TIMESTAMP,
    },
    "required": [
        "question",
        "correct_answer",
        "explanation",
        "concept_analysis",
        "educational_rationale",
        "cognitive_level",
        "misconception_addressed",
        "difficulty_indicators",
    ],
    "additionalProperties": False,
}

MATCHING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "question": {"type": "string"},
        "matching_pairs": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"left": {"type": "string"}, "right": {"type": "string"}},
                "required": ["left", "right"],
                "additionalProperties": False,
            },
            "minItems": 3,
            "maxItems": 5,
        },
        "explanation": {"type": "string"},
        "relationship_analysis": {
            "type": "object",
            "properties": {
                "relationship_type": {
                    "type": "string",
                    "enum": [
                        "cause-effect",
                        "category-example",
                        "process-outcome",
                        "theory-application",
                        "concept-definition",
                    ],
                },
                "why_important": {"type": "string"},
                "common_confusions": {"type": "string"},
            },
            "required": ["relationship_type", "why_important", "common_confusions"],
            "additionalProperties": False,
        },
        "educational_rationale": {"type": "string"},
        "cognitive_level": {"type": "string", "enum": ["understand", "apply", "analyze"]},
        "optimal_timestamp": _OPTIMAL_TIMESTAMP,
    },
    "required": [
        "question",
        "matching_pairs",
        "explanation",
        "relationship_analysis",
        "educational_rationale",
        "cognitive_level",
    ],
    "additionalProperties": False,
}

SEQUENCING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "question": {"type": "string"},
        "sequence_items": {
            "type": "array",
            "items": {"type": "string"},
            "minItems": 3,
            "maxItems": 6,
            "description": "Items listed in the correct order",
        },
        "explanation": {"type": "string"},
        "sequence_analysis": {
            "type": "object",
            "properties": {
                "sequence_type": {
                    "type": "string",
                    "enum": ["chronological", "procedural", "logical", "causal", "hierarchical"],
                },
                "key_principle": {"type": "string"},
                "common_mistakes": {"type": "string"},
                "dependency_pattern": {"type": "string"},
            },
            "required": ["sequence_type", "key_principle", "common_mistakes", "dependency_pattern"],
            "additionalProperties": False,
        },
        "educational_rationale": {"type": "string"},
        "cognitive_level": {"type": "string", "enum": ["understand", "apply", "analyze"]},
        "optimal_timestamp": _OPTIMAL_TIMESTAMP,
    },
    "required": [
        "question",
        "sequence_items",
        "explanation",
        "sequence_analysis",
        "educational_rationale",
        "cognitive_level",
    ],
    "additionalProperties": False,
}

HOTSPOT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "question": {
            "type": "string",
            "description": "Question asking students to identify the target object",
        },
        "explanation": {
            "type": "string",
            "description": "Why identifying this object matters for the learning objective",
        },
        "bounding_boxes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "box_2d": {
                        "type": "array",
                        "items": {"type": "integer"},
                        "description": "[y_min, x_min, y_max, x_max] normalized to 0-1000",
                    },
                    "label": {"type": "string"},
                    "is_correct_answer": {"type": "boolean"},
                    "confidence_score": {"type": "number"},
                },
                "required": ["box_2d", "label", "is_correct_answer"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["question", "explanation", "bounding_boxes"],
    "additionalProperties": False,
}

_MMSS = {"type": "string", "description": "Timestamp in MM:SS format"}

PLANNING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "video_transcript": {
            "type": "object",
            "properties": {
                "full_transcript": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "timestamp": _MMSS,
                            "end_timestamp": _MMSS,
                            "text": {"type": "string"},
                            "visual_description": {"type": "string"},
                            "is_salient_event": {"type": "boolean"},
                            "event_type": {"type": "string", "enum": list(EVENT_TYPES)},
                        },
                        "required": ["timestamp", "text", "visual_description", "is_salient_event"],
                        "additionalProperties": False,
                    },
                },
                "key_concepts_timeline": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "concept": {"type": "string"},
                            "first_mentioned": _MMSS,
                            "explanation_timestamps": {"type": "array", "items": _MMSS},
                        },
                        "required": ["concept", "first_mentioned", "explanation_timestamps"],
                        "additionalProperties": False,
                    },
                },
                "video_summary": {"type": "string"},
            },
            "required": ["full_transcript", "key_concepts_timeline", "video_summary"],
            "additionalProperties": False,
        },
        "question_plans": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "question_id": {"type": "string"},
                    "timestamp": _MMSS,
                    "frame_timestamp": _MMSS,
                    "question_type": {"type": "string", "enum": list(QUESTION_TYPES)},
                    "learning_objective": {"type": "string", "description": "Students will... statement"},
                    "content_context": {"type": "string"},
                    "transcript_reference": {
                        "type": "object",
                        "properties": {
                            "start_timestamp": _MMSS,
                            "end_timestamp": _MMSS,
                            "relevant_text": {"type": "string"},
                            "visual_context": {"type": "string"},
                        },
                        "required": ["start_timestamp", "end_timestamp", "relevant_text"],
                        "additionalProperties": False,
                    },
                    "key_concepts": {"type": "array", "items": {"type": "string"}},
                    "bloom_level": {"type": "string", "enum": list(BLOOM_LEVELS)},
                    "educational_rationale": {"type": "string"},
                    "planning_notes": {"type": "string"},
                    "difficulty_level": {"type": "string", "enum": list(DIFFICULTY_LEVELS)},
                    "estimated_time_seconds": {"type": "integer"},
                    "visual_learning_objective": {"type": "string"},
                    "target_objects": {"type": "array", "items": {"type": "string"}},
                    "question_context": {"type": "string"},
                },
                "required": [
                    "question_id",
                    "timestamp",
                    "question_type",
                    "learning_objective",
                    "content_context",
                    "transcript_reference",
                    "key_concepts",
                    "bloom_level",
                    "educational_rationale",
                    "planning_notes",
                    "difficulty_level",
                    "estimated_time_seconds",
                ],
                "additionalProperties": False,
            },
        },
    },
    "required": ["video_transcript", "question_plans"],
    "additionalProperties": False,
}

_DIMENSION = {
    "type": "object",
    "properties": {
        "score": {"type": "number", "minimum": 0, "maximum": 100},
        "assessment": {"type": "string"},
        "evidence": {"type": "array", "items": {"type": "string"}},
        "concerns": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["score", "assessment", "evidence", "concerns"],
    "additionalProperties": False,
}

VERIFICATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "overall_score": {"type": "number", "minimum": 0, "maximum": 100},
        "quality_dimensions": {
            "type": "object",
            "properties": {name: _DIMENSION for name in QUALITY_DIMENSIONS},
            "required": list(QUALITY_DIMENSIONS),
            "additionalProperties": False,
        },
        "overall_assessment": {"type": "string"},
        "specific_strengths": {"type": "array", "items": {"type": "string"}},
        "improvement_recommendations": {"type": "array", "items": {"type": "string"}},
        "verification_confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "meets_quality_threshold": {"type": "boolean"},
    },
    "required": [
        "overall_score",
        "quality_dimensions",
        "overall_assessment",
        "specific_strengths",
        "improvement_recommendations",
        "verification_confidence",
        "meets_quality_threshold",
    ],
    "additionalProperties": False,
}

HEALTH_CHECK_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"status": {"type": "string"}},
    "required": ["status"],
    "additionalProperties": False,
}

SCHEMAS: Dict[str, Dict[str, Any]] = {
    "multiple-choice": MULTIPLE_CHOICE_SCHEMA,
    "true-false": TRUE_FALSE_SCHEMA,
    "matching": MATCHING_SCHEMA,
    "sequencing": SEQUENCING_SCHEMA,
    "hotspot": HOTSPOT_SCHEMA,
    "planning": PLANNING_SCHEMA,
    "verification": VERIFICATION_SCHEMA,
    "health_check": HEALTH_CHECK_SCHEMA,
}

_SCHEMA_NAMES = {
    "planning": "planning_response",
    "verification": "quality_verification",
    "health_check": "health_check",
}


def schema_for(task: str) -> Dict[str, Any]:
    if task not in SCHEMAS:
        raise KeyError(f"No response schema registered for '{task}'")
    return copy.deepcopy(SCHEMAS[task])


def schema_name(task: str) -> str:
    """Identifier sent with the structured-output request, e.g. ``multiple_choice_question``."""
    if task in _SCHEMA_NAMES:
        return _SCHEMA_NAMES[task]
    return f"{task.replace('-', '_')}_question"


def to_gemini_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Gemini's responseSchema rejects ``additionalProperties``; drop it at every level."""
    if isinstance(schema, dict):
        return {
            key: to_gemini_schema(value)
            for key, value in schema.items()
            if key != "additionalProperties"
        }
    if isinstance(schema, list):
        return [to_gemini_schema(item) for item in schema]
    return schema


def to_openai_strict_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """OpenAI strict mode wants every property required; optional ones become nullable."""
    if not isinstance(schema, dict):
        return schema
    converted = {key: value for key, value in schema.items()}
    if converted.get("type") == "object" and "properties" in converted:
        required = set(converted.get("required", []))
        properties = {}
        for name, prop in converted["properties"].items():
            prop = to_openai_strict_schema(prop)
            if name not in required:
                prop = dict(prop)
                prop_type = prop.get("type")
                if isinstance(prop_type, str):
                    prop["type"] = [prop_type, "null"]
                if "enum" in prop:
                    prop["enum"] = list(prop["enum"]) + [None]
            properties[name] = prop
        converted["properties"] = properties
        converted["required"] = list(properties)
        converted["additionalProperties"] = False
    elif converted.get("type") == "array" and "items" in converted:
        converted["items"] = to_openai_strict_schema(converted["items"])
    return converted
