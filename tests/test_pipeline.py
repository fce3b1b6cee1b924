import asyncio
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import ScriptedAdapter, canned, fast_config
from video_quiz_pipeline.adapters.mock_adapter import MockAdapter
from video_quiz_pipeline.core.pipeline import (
    build_adapters,
    build_gateway,
    execute,
    request_from_mapping,
    run_pipeline,
)
from video_quiz_pipeline.core.progress import ProgressTracker
from video_quiz_pipeline.core.sqlite_store import (
    connect,
    fetch_bounding_boxes,
    fetch_quality_metrics,
    fetch_questions,
    fetch_run,
)
from video_quiz_pipeline.core.types import PipelineRequest, ProviderConfig


def _request(**overrides):
    values = dict(course_id="course-1", video_source_url="https://youtu.be/abc")
    values.update(overrides)
    return PipelineRequest(**values)


def _run(request, config, **kwargs):
    gateway = build_gateway(config, use_mocks=True)

    async def _go():
        try:
            return await run_pipeline(request, gateway, config=config, **kwargs)
        finally:
            await gateway.aclose()

    return asyncio.run(_go())


def test_mock_run_produces_every_question_type(tmp_path):
    progress = ProgressTracker("s1", "course-1")
    response = _run(_request(), fast_config(tmp_path), progress=progress)

    assert response["success"] is True
    assert response["course_id"] == "course-1"
    assert response["total_duration"] == 150
    assert response["video_summary"].startswith("An introduction to photosynthesis")
    assert response["verification_result"] is None

    generation = response["generation_result"]
    assert generation["successful_generations"] == 5
    assert generation["type_breakdown"]["hotspot"] == 1
    assert generation["errors"] == []

    planning = response["planning_result"]
    assert planning["planning_metadata"]["provider_used"] == "gemini"
    assert len(planning["question_plans"]) == 5

    final = response["final_questions"]
    assert [q["type"] for q in final] == ["hotspot", "multiple-choice", "true-false", "matching", "sequencing"]
    assert final[1]["timestamp"] == 52
    assert final[1]["options"][0].startswith("Chlorophyll reflects")
    assert final[2]["correct_answer"] == 0
    assert final[0]["metadata"]["target_objects"] == ["chloroplast"]

    metadata = response["pipeline_metadata"]
    assert metadata["error_count"] == 0
    assert metadata["success_rate"] == 1.0
    assert metadata["verification_enabled"] is False
    assert set(metadata["per_stage_timings"]) == {"initialization", "planning", "generation", "verification", "storage"}

    assert progress.events[-1]["stage"] == "completed"
    assert progress.events[-1]["overall_progress"] == 1.0


def test_verification_and_persistence(tmp_path):
    conn = connect(tmp_path / "db" / "quiz.sqlite3")
    response = _run(
        _request(enable_quality_verification=True), fast_config(tmp_path), conn=conn, run_id="run-1"
    )

    verification = response["verification_result"]
    assert verification["verification_metadata"]["total_questions_verified"] == 5
    assert verification["verification_metadata"]["questions_meeting_threshold"] == 5
    assert all(q["quality_score"] == 82 for q in response["final_questions"])

    run = fetch_run(conn, "run-1")
    assert run["status"] == "completed"
    assert run["summary"]["successful_generations"] == 5
    assert run["request"]["video_source_url"] == "https://youtu.be/abc"
    stored = fetch_questions(conn, "course-1")
    assert len(stored) == 5
    assert all(row["meets_threshold"] is True for row in stored)
    hotspot = next(row for row in stored if row["type"] == "hotspot")
    assert len(fetch_bounding_boxes(conn, "run-1", hotspot["question_id"])) == 3
    assert len(fetch_quality_metrics(conn, "run-1")) == 5
    conn.close()


def test_planning_failure_returns_failure_response(tmp_path):
    planning = canned("planning_response")
    planning["video_transcript"]["full_transcript"] = []
    config = fast_config(tmp_path)
    adapters = {
        "openai": ScriptedAdapter("openai", [{}], supports_video=False),
        "gemini": MockAdapter("gemini", responses={"planning_response": planning}),
    }
    conn = connect(tmp_path / "quiz.sqlite3")
    progress = ProgressTracker()

    async def _go():
        gateway = build_gateway(config, adapters=adapters)
        return await run_pipeline(_request(), gateway, config=config, progress=progress, conn=conn, run_id="run-x")

    response = asyncio.run(_go())

    assert response["success"] is False
    assert response["failed_stage"] == "planning"
    assert response["error"] == "Planning returned an empty transcript"
    assert response["final_questions"] == []
    assert response["pipeline_metadata"]["error_count"] == 1
    assert fetch_run(conn, "run-x")["status"] == "failed"
    assert fetch_questions(conn, "course-1") == []
    assert progress.events[-1]["stage"] == "failed"
    conn.close()


def test_invalid_request_fails_at_initialization(tmp_path):
    response = _run(_request(max_questions=0), fast_config(tmp_path))
    assert response["success"] is False
    assert response["failed_stage"] == "initialization"
    assert "max_questions" in response["error"]


def test_partial_generation_is_still_a_success(tmp_path):
    broken = canned("sequencing_question")
    broken["sequence_items"] = ["Only one step here"]
    config = fast_config(tmp_path)
    adapters = {
        "openai": MockAdapter("openai", responses={"sequencing_question": broken}, supports_video=False),
        "gemini": MockAdapter("gemini", responses={"sequencing_question": broken}),
    }

    async def _go():
        gateway = build_gateway(config, adapters=adapters)
        return await run_pipeline(_request(), gateway, config=config)

    response = asyncio.run(_go())

    assert response["success"] is True
    assert response["generation_result"]["successful_generations"] == 4
    assert response["generation_result"]["errors"][0]["question_type"] == "sequencing"
    assert response["pipeline_metadata"]["error_count"] == 1
    assert response["pipeline_metadata"]["success_rate"] == 0.8


def test_execute_closes_clients(tmp_path):
    response = asyncio.run(execute(_request(max_questions=2), config=fast_config(tmp_path), use_mocks=True))
    assert response["success"] is True
    assert response["generation_result"]["requested_questions"] == 2


def test_adapter_selection_and_request_mapping(tmp_path):
    mocks = build_adapters(ProviderConfig(models={"openai": "gpt-x", "gemini": "gem-y"}), use_mocks=True)
    assert mocks["openai"].supports_video is False
    assert mocks["gemini"].model == "gem-y"

    request = request_from_mapping(
        {"course_id": "c", "video_source_url": "u", "focus_topics": None, "unknown": 1, "max_questions": 3}
    )
    assert request.focus_topics == []
    assert request.max_questions == 3


def test_malformed_plans_are_dropped_not_fatal(tmp_path):
    planning = canned("planning_response")
    planning["question_plans"][0]["timestamp"] = ["0:45"]
    planning["question_plans"][1]["key_concepts"] = 7
    config = fast_config(tmp_path)
    adapters = {
        "openai": MockAdapter("openai", supports_video=False),
        "gemini": MockAdapter("gemini", responses={"planning_response": planning}),
    }

    async def _go():
        gateway = build_gateway(config, adapters=adapters)
        return await run_pipeline(_request(), gateway, config=config)

    response = asyncio.run(_go())

    assert response["success"] is True
    errors = response["planning_result"]["errors"]
    assert [e["question_id"] for e in errors] == ["q1_mcq_chlorophyll", "q2_tf_oxygen"]
    assert all(e["stage"] == "planning" for e in errors)
    assert "invalid timestamp" in errors[0]["error_message"]
    assert "key_concepts must be a list" in errors[1]["error_message"]
    assert response["generation_result"]["requested_questions"] == 3


@pytest.mark.parametrize(
    "overrides",
    [
        {"enable_visual_questions": False, "question_distribution": {"hotspot": 1.0}},
        {"question_distribution": {"essay": 2.0}},
        {"question_distribution": {"true-false": "lots"}},
        {"question_distribution": ["true-false"]},
    ],
)
def test_unusable_distribution_fails_at_initialization(tmp_path, overrides):
    conn = connect(tmp_path / "quiz.sqlite3")
    response = _run(_request(**overrides), fast_config(tmp_path), conn=conn, run_id="run-d")

    assert response["success"] is False
    assert response["failed_stage"] == "initialization"
    assert "question_distribution" in response["error"]
    assert fetch_run(conn, "run-d")["status"] == "failed"
    conn.close()


def test_deadline_bounds_the_planning_call(tmp_path):
    config = fast_config(tmp_path)
    slow_planner = ScriptedAdapter("gemini", [canned("planning_response")], delay=1.5)
    adapters = {"openai": MockAdapter("openai", supports_video=False), "gemini": slow_planner}

    async def _go():
        gateway = build_gateway(config, adapters=adapters)
        return await run_pipeline(_request(), gateway, config=config, deadline_seconds=0.2)

    started = time.perf_counter()
    response = asyncio.run(_go())
    elapsed = time.perf_counter() - started

    assert elapsed < 1.0
    assert response["success"] is False
    assert response["failed_stage"] == "planning"
    assert "deadline" in response["error"]
    assert len(slow_planner.calls) == 1
