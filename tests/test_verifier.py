import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import ScriptedAdapter, canned, fast_config, make_plan
from video_quiz_pipeline.core.errors import QualityVerificationError
from video_quiz_pipeline.core.gateway import ModelGateway
from video_quiz_pipeline.core.processors.multiple_choice import MultipleChoiceProcessor
from video_quiz_pipeline.core.processors.true_false import TrueFalseProcessor
from video_quiz_pipeline.core.progress import ProgressTracker
from video_quiz_pipeline.core.types import ProviderConfig
from video_quiz_pipeline.core.verifier import (
    QualityVerifier,
    build_verification_prompt,
    meets_threshold,
    validate_verification,
)


def _verifier(tmp_path, *outcomes, progress=None):
    gateway = ModelGateway(
        {"openai": ScriptedAdapter("openai", list(outcomes)), "gemini": ScriptedAdapter("gemini", [{}])},
        ProviderConfig(retry_attempts=1, retry_delay_ms=0),
    )
    return QualityVerifier(gateway, fast_config(tmp_path), progress), gateway


def _mcq(question_id="q1"):
    plan = make_plan(question_id=question_id)
    return MultipleChoiceProcessor().normalize(plan, canned("multiple_choice_question")), plan


def _tf(question_id="q2"):
    plan = make_plan("true-false", question_id=question_id)
    return TrueFalseProcessor().normalize(plan, canned("true_false_question")), plan


def test_validate_verification_checks_every_dimension():
    validate_verification(canned("quality_verification"))

    missing = canned("quality_verification")
    del missing["quality_dimensions"]["bloom_alignment"]
    with pytest.raises(QualityVerificationError, match="Missing quality dimension: bloom_alignment"):
        validate_verification(missing, "q1")

    for field, value, message in [
        ("overall_score", 120, "overall_score"),
        ("verification_confidence", 1.5, "verification_confidence"),
        ("meets_quality_threshold", "yes", "meets_quality_threshold"),
        ("overall_assessment", "ok", "overall_assessment"),
    ]:
        data = canned("quality_verification")
        data[field] = value
        with pytest.raises(QualityVerificationError, match=message):
            validate_verification(data)


def test_threshold_rule():
    assert meets_threshold(75, [60, 90]) is True
    assert meets_threshold(74.9, [90]) is False
    assert meets_threshold(95, [59.5, 100]) is False


def test_threshold_is_computed_from_scores(tmp_path):
    data = canned("quality_verification")
    data["quality_dimensions"]["misconception_handling"]["score"] = 55
    data["improvement_recommendations"] = ["a", "b", "c", "d", "e"]
    verifier, _ = _verifier(tmp_path, data)
    question, plan = _mcq()

    result = asyncio.run(verifier.verify_question(question, plan))

    assert result.overall_score == 82
    assert result.meets_quality_threshold is False
    assert result.model_reported_threshold is True
    assert result.quality_dimensions["misconception_handling"].score == 55
    assert result.improvement_recommendations == ["a", "b", "c"]


def test_prompt_describes_answer_and_plan():
    question, plan = _mcq()
    prompt = build_verification_prompt(question, plan)
    assert "Question Type: multiple-choice" in prompt
    assert "Correct Answer: A" in prompt
    assert "Learning Objective: Students will explain how chlorophyll absorbs light energy." in prompt

    question, plan = _tf()
    assert "Correct Answer: True" in build_verification_prompt(question, plan)


def test_batch_keeps_going_after_failures(tmp_path):
    broken = canned("quality_verification")
    broken["verification_confidence"] = 3
    progress = ProgressTracker("s1", "course-1")
    verifier, gateway = _verifier(tmp_path, canned("quality_verification"), broken, progress=progress)
    mcq, mcq_plan = _mcq("q1")
    tf, tf_plan = _tf("q2")
    orphan, _ = _mcq("q3")

    result = asyncio.run(verifier.verify_batch([mcq, tf, orphan], [mcq_plan, tf_plan], delay_ms=0))

    assert [r.question_id for r in result.results] == ["q1"]
    assert {error.question_id: error.error_message for error in result.errors} == {
        "q2": "verification_confidence must be a number between 0 and 1",
        "q3": "No originating plan found",
    }
    assert all(error.stage == "quality_verification" for error in result.errors)
    assert len(gateway.adapters["openai"].calls) == 2

    metadata = result.verification_metadata
    assert metadata["total_questions_verified"] == 1
    assert metadata["average_score"] == 82.0
    assert metadata["questions_meeting_threshold"] == 1
    assert metadata["quality_distribution"] == {"excellent": 0, "good": 1, "needs_work": 0}
    assert progress.events[-1]["details"]["stage_completed"] is True


def test_provider_failure_becomes_verification_error(tmp_path):
    verifier, _ = _verifier(tmp_path, "not json")
    question, plan = _mcq()

    with pytest.raises(QualityVerificationError, match="Verification request failed"):
        asyncio.run(verifier.verify_question(question, plan))
