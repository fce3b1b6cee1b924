import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import ScriptedAdapter, canned, make_plan, make_transcript
from video_quiz_pipeline.core.errors import ValidationError
from video_quiz_pipeline.core.gateway import ModelGateway
from video_quiz_pipeline.core.processors.base import ProcessorContext, resolve_timestamp
from video_quiz_pipeline.core.processors.matching import MatchingProcessor
from video_quiz_pipeline.core.processors.multiple_choice import MultipleChoiceProcessor
from video_quiz_pipeline.core.processors.sequencing import SequencingProcessor, unwrap_sequence_items
from video_quiz_pipeline.core.processors.true_false import TrueFalseProcessor
from video_quiz_pipeline.core.transcript import TranscriptContext, extract_transcript_context
from video_quiz_pipeline.core.types import GenerationConfig, ProviderConfig, TranscriptSegment, VideoTranscript

CONFIG = GenerationConfig(temperature=0.5, max_output_tokens=512, top_k=10, top_p=0.9)


def _context(timestamp=45):
    return ProcessorContext(
        video_url="https://youtu.be/abc",
        transcript=extract_transcript_context(make_transcript(), timestamp),
        config=CONFIG,
    )


def _gateway(*outcomes):
    return ModelGateway(
        {"openai": ScriptedAdapter("openai", list(outcomes)), "gemini": ScriptedAdapter("gemini", [{}])},
        ProviderConfig(retry_attempts=1, retry_delay_ms=0),
    )


def test_multiple_choice_generation_uses_model_timestamp():
    gateway = _gateway(canned("multiple_choice_question"))
    processed = asyncio.run(MultipleChoiceProcessor().generate(make_plan(), _context(), gateway))

    question = processed.question
    assert question.type == "multiple-choice"
    assert question.timestamp == 52
    assert question.correct_answer == 0
    assert len(question.options) == 4
    assert question.bloom_level == "understand"
    assert processed.provider_used == "openai"
    assert processed.assessment.score == 95
    assert "Could target higher-order thinking skills" in processed.assessment.improvements

    prompt = gateway.adapters["openai"].calls[0]["messages"][-1]["content"]
    assert "## TRANSCRIPT CONTEXT" in prompt
    assert "Suggested Timestamp: 45s (0:45)" in prompt
    assert gateway.adapters["openai"].calls[0]["params"]["schema_name"] == "multiple_choice_question"


@pytest.mark.parametrize(
    "change, message",
    [
        ({"options": ["a1", "b2", "c3"]}, "exactly 4 options"),
        ({"options": ["Same", "same", "Other", "Fourth"]}, "unique"),
        ({"correct_answer": 4}, "correct_answer"),
        ({"correct_answer": True}, "correct_answer"),
        ({"explanation": "Too short."}, "at least 20"),
        ({"question": "Why?"}, "at least 10"),
    ],
)
def test_multiple_choice_validation(change, message):
    data = canned("multiple_choice_question")
    data.update(change)
    with pytest.raises(ValidationError, match=message):
        MultipleChoiceProcessor().validate(data)


def test_resolve_timestamp_ignores_unusable_suggestions():
    plan = make_plan(timestamp=45)
    assert resolve_timestamp(plan, {"optimal_timestamp": 61.6}) == 62
    for value in (0, -5, True, "70", None):
        assert resolve_timestamp(plan, {"optimal_timestamp": value}) == 45


def test_prompt_points_to_the_next_pause_when_planned_mid_sentence():
    paused = VideoTranscript(
        full_transcript=[
            TranscriptSegment(timestamp=0, end_timestamp=10, text="Light hits the leaf."),
            TranscriptSegment(timestamp=14, end_timestamp=30, text="Chlorophyll absorbs it."),
        ]
    )
    processor = MultipleChoiceProcessor()

    prompt = processor.build_prompt(make_plan(timestamp=5), extract_transcript_context(paused, 5))
    assert "5s falls mid-sentence; the next natural pause is around 12s." in prompt

    prompt = processor.build_prompt(make_plan(timestamp=9), extract_transcript_context(paused, 9))
    assert "mid-sentence" not in prompt


def test_prompt_without_transcript_context():
    prompt = MultipleChoiceProcessor().build_prompt(make_plan(), TranscriptContext())
    assert "No transcript context available. Use the suggested timestamp of 45s." in prompt


def test_true_false_requires_real_boolean():
    processor = TrueFalseProcessor()
    data = canned("true_false_question")
    processor.validate(data)

    data["correct_answer"] = "true"
    with pytest.raises(ValidationError, match="boolean"):
        processor.validate(data)


def test_true_false_quality():
    processor = TrueFalseProcessor()
    question = processor.normalize(make_plan("true-false"), canned("true_false_question"))
    assert question.correct_answer is True
    assert question.timestamp == 45
    assert processor.assess_quality(question).score == 100

    data = canned("true_false_question")
    data.update(correct_answer=False, misconception_addressed="", question="Plants always release oxygen at night.")
    question = processor.normalize(make_plan("true-false", bloom_level="remember"), data)
    assessment = processor.assess_quality(question)
    assert assessment.score == 80
    assert "False statement should address specific misconception" in assessment.improvements


def test_matching_validation():
    processor = MatchingProcessor()
    data = canned("matching_question")
    processor.validate(data)
    question = processor.normalize(make_plan("matching"), data)
    assert question.relationship_type == "process-outcome"
    assert [pair.left for pair in question.matching_pairs][0] == "Light-dependent reactions"

    too_few = canned("matching_question")
    too_few["matching_pairs"] = too_few["matching_pairs"][:2]
    with pytest.raises(ValidationError, match="3-5 pairs"):
        processor.validate(too_few)

    duplicate = canned("matching_question")
    duplicate["matching_pairs"][1]["right"] = "produce atp and nadph"
    with pytest.raises(ValidationError, match="right column items must be unique"):
        processor.validate(duplicate)


def test_sequence_items_unwrap_objects():
    assert unwrap_sequence_items(["First step", {"content": "Second step"}, {"text": "Third step"}]) == [
        "First step",
        "Second step",
        "Third step",
    ]
    with pytest.raises(ValidationError, match="'content' or 'text'"):
        unwrap_sequence_items([{"label": "x"}])
    with pytest.raises(ValidationError, match="must be a string"):
        unwrap_sequence_items([42])


def test_sequencing_duplicates_are_reported_before_length():
    data = canned("sequencing_question")
    data["sequence_items"] = [{"content": "A"}, {"content": "B"}, {"content": "A"}]
    with pytest.raises(ValidationError, match="unique"):
        SequencingProcessor().validate(data)

    data["sequence_items"] = [{"content": "A"}, {"content": "B"}, {"content": "C"}]
    with pytest.raises(ValidationError, match="at least 5 characters"):
        SequencingProcessor().validate(data)


def test_sequencing_generation():
    gateway = _gateway(canned("sequencing_question"))
    processed = asyncio.run(
        SequencingProcessor().generate(make_plan("sequencing", timestamp=145), _context(145), gateway)
    )
    question = processed.question
    assert question.sequence_items[0] == "Chlorophyll absorbs light energy"
    assert question.sequence_type == "causal"
    assert processed.assessment.score == 100
