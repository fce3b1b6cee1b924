import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from video_quiz_pipeline.core.progress import STAGE_WEIGHTS, ProgressTracker


def test_stage_weights_cover_the_whole_run():
    assert sum(STAGE_WEIGHTS.values()) == pytest.approx(1.0)
    tracker = ProgressTracker()
    assert tracker.overall_progress("initialization", 1.0) == pytest.approx(0.05)
    assert tracker.overall_progress("generation", 0.5) == pytest.approx(0.55)
    assert tracker.overall_progress("storage", 2.0) == pytest.approx(1.0)
    assert tracker.overall_progress("unknown", 0.0) == pytest.approx(1.0)


def test_stage_and_question_events():
    tracker = ProgressTracker("session-1", "course-1")
    seen = []
    tracker.add_listener(seen.append)

    async def _run():
        await tracker.start_stage("planning", "Planning")
        await tracker.plan_question("q1", "true-false", "because")
        await tracker.complete_question("q1", "true-false", "because", "openai", 12)
        await tracker.complete_stage("planning", "Planned")
        await tracker.mark_complete({"questions": 1})

    asyncio.run(_run())

    kinds = [(event["kind"], event.get("stage") or event.get("status")) for event in seen]
    assert kinds == [
        ("stage", "planning"),
        ("question", "planned"),
        ("question", "completed"),
        ("stage", "planning"),
        ("stage", "completed"),
    ]
    assert seen[0]["details"]["stage_started"] is True
    assert seen[0]["overall_progress"] == pytest.approx(0.05)
    assert seen[3]["overall_progress"] == pytest.approx(0.30)
    assert seen[2]["provider_used"] == "openai"
    assert seen[-1]["overall_progress"] == 1.0
    assert all(event["session_id"] == "session-1" for event in seen)


def test_failing_listeners_are_swallowed():
    tracker = ProgressTracker()
    received = []

    def broken(event):
        raise RuntimeError("listener down")

    async def async_listener(event):
        received.append(event["current_step"])

    tracker.add_listener(broken)
    tracker.add_listener(async_listener)

    async def _run():
        await tracker.start_stage("generation", "Generating")
        await tracker.mark_failed("boom")

    asyncio.run(_run())

    assert received == ["Generating", "Failed: boom"]
    assert tracker.events[-1]["stage"] == "failed"
    assert tracker.events[-1]["overall_progress"] == pytest.approx(0.30)


def test_concurrent_updates_are_all_recorded():
    tracker = ProgressTracker()

    async def _run():
        await asyncio.gather(
            *(tracker.fail_question(f"q{i}", "matching", "nope") for i in range(25))
        )

    asyncio.run(_run())
    assert sorted(event["question_id"] for event in tracker.events) == sorted(f"q{i}" for i in range(25))


def test_slow_listener_does_not_block_other_publishers():
    tracker = ProgressTracker()
    gate = asyncio.Event()
    delivered = []

    async def slow_listener(event):
        if event["question_id"] == "q1":
            await gate.wait()
        delivered.append(event["question_id"])

    tracker.add_listener(slow_listener)

    async def _run():
        stalled = asyncio.ensure_future(tracker.fail_question("q1", "matching", "nope"))
        await asyncio.sleep(0)
        await asyncio.wait_for(tracker.fail_question("q2", "matching", "nope"), timeout=1.0)
        assert delivered == ["q2"]
        assert [event["question_id"] for event in tracker.events] == ["q1", "q2"]
        gate.set()
        await stalled

    asyncio.run(_run())
    assert delivered == ["q2", "q1"]


def test_event_buffer_is_bounded():
    tracker = ProgressTracker(max_events=3)
    seen = []
    tracker.add_listener(seen.append)

    async def _run():
        for i in range(5):
            await tracker.plan_question(f"q{i}", "true-false", "because")

    asyncio.run(_run())
    assert [event["question_id"] for event in tracker.events] == ["q2", "q3", "q4"]
    assert len(seen) == 5
