from __future__ import annotations

import copy
import json
import time
from typing import Any, Union

from .base import ChatResponse

CANNED_RESPONSES: dict[str, dict[str, Any]] = {
    "planning_response": {
        "video_transcript": {
            "full_transcript": [
                {
                    "timestamp": "0:00",
                    "end_timestamp": "0:20",
                    "text": "Today we look at how plants turn light into chemical energy.",
                    "visual_description": "Title slide reading Photosynthesis over a photo of a leaf",
                    "is_salient_event": True,
                    "event_type": "concept_introduction",
                },
                {
                    "timestamp": "0:20",
                    "end_timestamp": "0:50",
                    "text": "Chlorophyll inside the chloroplasts absorbs light, mostly red and blue wavelengths.",
                    "visual_description": "Diagram of a leaf cell with the chloroplast, nucleus and cell wall labelled",
                    "is_salient_event": True,
                    "event_type": "diagram_explanation",
                },
                {
                    "timestamp": "0:50",
                    "end_timestamp": "1:30",
                    "text": "In the light-dependent reactions water is split, releasing oxygen and producing ATP and NADPH.",
                    "visual_description": "Flow diagram of the thylakoid membrane",
                    "is_salient_event": False,
                },
                {
                    "timestamp": "1:30",
                    "end_timestamp": "2:10",
                    "text": "The Calvin cycle then uses ATP and NADPH to fix carbon dioxide into glucose.",
                    "visual_description": "Cycle diagram showing carbon fixation in the stroma",
                    "is_salient_event": True,
                    "event_type": "example_demonstration",
                },
                {
                    "timestamp": "2:10",
                    "end_timestamp": "2:30",
                    "text": "To summarize: light comes in, water is split, oxygen goes out and sugar is built.",
                    "visual_description": "Summary slide with four bullet points",
                    "is_salient_event": True,
                    "event_type": "summary",
                },
            ],
            "key_concepts_timeline": [
                {"concept": "chlorophyll", "first_mentioned": "0:20", "explanation_timestamps": ["0:25", "0:40"]},
                {"concept": "light-dependent reactions", "first_mentioned": "0:50", "explanation_timestamps": ["1:00"]},
                {"concept": "Calvin cycle", "first_mentioned": "1:30", "explanation_timestamps": ["1:40", "2:00"]},
            ],
            "video_summary": "An introduction to photosynthesis covering light absorption, the light-dependent reactions and the Calvin cycle.",
        },
        "question_plans": [
            {
                "question_id": "q1_mcq_chlorophyll",
                "timestamp": "0:45",
                "question_type": "multiple-choice",
                "learning_objective": "Students will explain why leaves appear green based on how chlorophyll absorbs light.",
                "content_context": "Chlorophyll absorbs mostly red and blue wavelengths.",
                "transcript_reference": {
                    "start_timestamp": "0:20",
                    "end_timestamp": "0:50",
                    "relevant_text": "Chlorophyll inside the chloroplasts absorbs light, mostly red and blue wavelengths.",
                },
                "key_concepts": ["chlorophyll", "light absorption"],
                "bloom_level": "understand",
                "educational_rationale": "Tests whether students connect absorption spectra with the visible colour of leaves.",
                "planning_notes": "Distractors should reflect the belief that chlorophyll absorbs green light.",
                "difficulty_level": "intermediate",
                "estimated_time_seconds": 45,
            },
            {
                "question_id": "q2_tf_oxygen",
                "timestamp": "1:25",
                "question_type": "true-false",
                "learning_objective": "Students will identify the source of the oxygen released in photosynthesis.",
                "content_context": "Water is split in the light-dependent reactions, releasing oxygen.",
                "transcript_reference": {
                    "start_timestamp": "0:50",
                    "end_timestamp": "1:30",
                    "relevant_text": "In the light-dependent reactions water is split, releasing oxygen.",
                },
                "key_concepts": ["light-dependent reactions", "oxygen"],
                "bloom_level": "remember",
                "educational_rationale": "Addresses the common misconception that released oxygen comes from carbon dioxide.",
                "planning_notes": "",
                "difficulty_level": "beginner",
                "estimated_time_seconds": 20,
            },
            {
                "question_id": "q3_matching_stages",
                "timestamp": "2:05",
                "question_type": "matching",
                "learning_objective": "Students will match each stage of photosynthesis with its inputs and outputs.",
                "content_context": "Light reactions produce ATP and NADPH; the Calvin cycle fixes carbon dioxide.",
                "transcript_reference": {
                    "start_timestamp": "0:50",
                    "end_timestamp": "2:10",
                    "relevant_text": "Water is split... the Calvin cycle then uses ATP and NADPH to fix carbon dioxide.",
                },
                "key_concepts": ["light-dependent reactions", "Calvin cycle"],
                "bloom_level": "apply",
                "educational_rationale": "Connecting stages with their products builds a working model of the whole process.",
                "planning_notes": "",
                "difficulty_level": "intermediate",
                "estimated_time_seconds": 60,
            },
            {
                "question_id": "q4_sequence_process",
                "timestamp": "2:25",
                "question_type": "sequencing",
                "learning_objective": "Students will order the main events of photosynthesis from light capture to sugar.",
                "content_context": "Light in, water split, oxygen out, sugar built.",
                "transcript_reference": {
                    "start_timestamp": "2:10",
                    "end_timestamp": "2:30",
                    "relevant_text": "Light comes in, water is split, oxygen goes out and sugar is built.",
                },
                "key_concepts": ["photosynthesis", "Calvin cycle"],
                "bloom_level": "understand",
                "educational_rationale": "Each step depends on the products of the step before it.",
                "planning_notes": "",
                "difficulty_level": "intermediate",
                "estimated_time_seconds": 50,
            },
            {
                "question_id": "q5_hotspot_chloroplast",
                "timestamp": "0:40",
                "frame_timestamp": "0:35",
                "question_type": "hotspot",
                "learning_objective": "Students will locate the organelle where photosynthesis takes place.",
                "content_context": "Diagram of a leaf cell with labelled organelles.",
                "transcript_reference": {
                    "start_timestamp": "0:20",
                    "end_timestamp": "0:50",
                    "relevant_text": "Chlorophyll inside the chloroplasts absorbs light.",
                    "visual_context": "Leaf cell diagram",
                },
                "key_concepts": ["chloroplast", "nucleus"],
                "bloom_level": "apply",
                "educational_rationale": "Recognising the chloroplast in a diagram ties the process to a structure.",
                "planning_notes": "Distractors: nucleus, cell wall.",
                "difficulty_level": "beginner",
                "estimated_time_seconds": 30,
                "visual_learning_objective": "Identify the chloroplast among other cell structures.",
                "target_objects": ["chloroplast"],
                "question_context": "Students see a labelled leaf cell diagram.",
            },
        ],
    },
    "multiple_choice_question": {
        "question": "Why do most leaves appear green to our eyes?",
        "options": [
            "Chlorophyll reflects green light while absorbing red and blue light",
            "Chlorophyll absorbs green light more strongly than other colours",
            "Leaves produce green pigment only when photosynthesis stops",
            "Green light is converted directly into glucose inside the leaf",
        ],
        "correct_answer": 0,
        "explanation": "The correct answer is the first option because chlorophyll absorbs mostly red and blue wavelengths and reflects green, which is why we see leaves as green.",
        "misconception_analysis": {
            "option_1": "Confuses the colour we see with the colour that is absorbed.",
            "option_2": "Mixes up pigment production with seasonal colour change.",
            "option_3": "Assumes light energy is stored directly as sugar.",
        },
        "educational_rationale": "Targets the absorbed-versus-reflected misconception.",
        "cognitive_level": "understand",
        "difficulty_indicators": {
            "requires_application": False,
            "tests_misconceptions": True,
            "involves_analysis": False,
        },
        "optimal_timestamp": 52,
    },
    "true_false_question": {
        "question": "The oxygen released during photosynthesis comes from splitting water molecules.",
        "correct_answer": True,
        "explanation": "This is true because the light-dependent reactions split water, and the oxygen atoms from water are released as oxygen gas.",
        "concept_analysis": {
            "key_concept": "Photolysis of water",
            "why_important": "Explains where atmospheric oxygen comes from.",
            "common_confusion": "Many students think the oxygen comes from carbon dioxide.",
        },
        "educational_rationale": "Corrects a widespread misconception about the source of oxygen.",
        "cognitive_level": "understand",
        "misconception_addressed": "Oxygen is released from carbon dioxide.",
        "difficulty_indicators": {
            "requires_application": False,
            "tests_misconceptions": True,
            "involves_analysis": False,
        },
    },
    "matching_question": {
        "question": "Match each part of photosynthesis with what it produces or does.",
        "matching_pairs": [
            {"left": "Light-dependent reactions", "right": "Produce ATP and NADPH"},
            {"left": "Splitting of water", "right": "Releases oxygen gas"},
            {"left": "Calvin cycle", "right": "Fixes carbon dioxide into sugar"},
        ],
        "explanation": "Each stage connects to its output because the products of the light reactions power the Calvin cycle, which builds sugar from carbon dioxide.",
        "relationship_analysis": {
            "relationship_type": "process-outcome",
            "why_important": "Shows how the stages depend on one another.",
            "common_confusions": "Students often attribute oxygen release to the Calvin cycle.",
        },
        "educational_rationale": "Builds a connected model of the two stages.",
        "cognitive_level": "apply",
    },
    "sequencing_question": {
        "question": "Put the main events of photosynthesis in the order they occur.",
        "sequence_items": [
            "Chlorophyll absorbs light energy",
            "Water molecules are split",
            "ATP and NADPH are produced",
            "Carbon dioxide is fixed into glucose",
        ],
        "explanation": "Light must be absorbed before water can be split; splitting water drives ATP and NADPH production, which the Calvin cycle needs to fix carbon dioxide.",
        "sequence_analysis": {
            "sequence_type": "causal",
            "key_principle": "Each stage consumes the products of the previous one.",
            "common_mistakes": "Placing carbon fixation before energy capture.",
            "dependency_pattern": "Linear chain of energy transfer",
        },
        "educational_rationale": "Tests understanding of the dependency chain.",
        "cognitive_level": "understand",
    },
    "hotspot_question": {
        "question": "Click on the organelle where photosynthesis takes place in this leaf cell.",
        "explanation": "The chloroplast contains chlorophyll and the thylakoid membranes where light energy is captured, so it is where photosynthesis happens.",
        "bounding_boxes": [
            {"box_2d": [300, 200, 450, 380], "label": "Chloroplast", "is_correct_answer": True, "confidence_score": 0.92},
            {"box_2d": [500, 550, 700, 750], "label": "Nucleus", "is_correct_answer": False, "confidence_score": 0.88},
            {"box_2d": [50, 50, 120, 950], "label": "Cell wall", "is_correct_answer": False, "confidence_score": 0.81},
        ],
    },
    "quality_verification": {
        "overall_score": 82,
        "quality_dimensions": {
            name: {
                "score": 80,
                "assessment": "Clear and well aligned with the stated objective.",
                "evidence": ["Directly references the transcript content"],
                "concerns": [],
            }
            for name in (
                "educational_value",
                "clarity_and_precision",
                "cognitive_appropriateness",
                "bloom_alignment",
                "misconception_handling",
                "explanation_quality",
            )
        },
        "overall_assessment": "A solid question that targets a real misconception with a clear explanation.",
        "specific_strengths": ["Clear wording", "Grounded in the video"],
        "improvement_recommendations": ["Add a second misconception example"],
        "verification_confidence": 0.9,
        "meets_quality_threshold": True,
    },
    "health_check": {"status": "ok"},
}


class MockAdapter:
    """Offline adapter that returns canned JSON for each structured-output schema."""

    def __init__(
        self,
        provider: str = "mock",
        model: str = "mock",
        responses: Union[dict[str, Any], None] = None,
        supports_video: bool = True,
    ) -> None:
        self.id = provider
        self.model = model
        self.supports_video = supports_video
        self.responses = copy.deepcopy(CANNED_RESPONSES)
        self.responses.update(responses or {})
        self.calls: list[dict[str, Any]] = []

    async def send(
        self, messages: list[dict[str, str]], params: Union[dict[str, Any], None] = None
    ) -> ChatResponse:
        start = time.perf_counter()
        params = params or {}
        self.calls.append({"messages": messages, "params": params})
        payload = self.responses.get(params.get("schema_name", ""), {})
        text = payload if isinstance(payload, str) else json.dumps(payload)
        latency_ms = int((time.perf_counter() - start) * 1000)
        return ChatResponse(
            text=text,
            tokens_in=0,
            tokens_out=0,
            total_tokens=0,
            latency_ms=latency_ms,
            model=params.get("model") or self.model,
            finish_reason="stop",
        )

    async def aclose(self) -> None:
        return None
