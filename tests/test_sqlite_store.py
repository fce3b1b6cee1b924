import sqlite3
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import canned, make_plan
from video_quiz_pipeline.core.processors.hotspot import HotspotProcessor
from video_quiz_pipeline.core.processors.multiple_choice import MultipleChoiceProcessor
from video_quiz_pipeline.core.sqlite_store import (
    connect,
    fetch_bounding_boxes,
    fetch_questions,
    fetch_run,
    fetch_runs,
    insert_bounding_boxes,
    insert_question_rows,
    insert_run,
    mark_stale_runs_failed,
    update_run_status,
)
from video_quiz_pipeline.core.storage import extract_bounding_boxes, transform_question_for_storage


def test_runs_lifecycle(tmp_path):
    conn = connect(tmp_path / "db" / "quiz.sqlite3")
    insert_run(conn, "run-1", "course-1", "https://youtu.be/a", "running", {"max_questions": 3})
    insert_run(conn, "run-2", "course-1", "https://youtu.be/b", "running")
    update_run_status(conn, "run-2", "completed", {"questions": 2})

    assert mark_stale_runs_failed(conn) == ["run-1"]
    run = fetch_run(conn, "run-1")
    assert run["status"] == "failed"
    assert run["request"] == {"max_questions": 3}
    assert run["summary"] == {}
    assert fetch_run(conn, "run-2")["summary"] == {"questions": 2}
    assert {item["run_id"] for item in fetch_runs(conn)} == {"run-1", "run-2"}
    assert fetch_run(conn, "missing") is None
    conn.close()


def test_questions_round_trip_through_rows(tmp_path):
    conn = connect(tmp_path / "quiz.sqlite3")
    mcq = MultipleChoiceProcessor().normalize(make_plan(), canned("multiple_choice_question"))
    hotspot = HotspotProcessor().normalize(make_plan("hotspot", question_id="q5", timestamp=40), canned("hotspot_question"))
    rows = [transform_question_for_storage(q, "course-1") for q in (mcq, hotspot)]

    assert insert_question_rows(conn, "run-1", rows) == 2
    assert insert_bounding_boxes(conn, "run-1", extract_bounding_boxes(hotspot)) == 3
    assert insert_question_rows(conn, "run-1", []) == 0

    stored = fetch_questions(conn, "course-1")
    assert [item["question_id"] for item in stored] == ["q5", "q1"]
    assert stored[0]["has_visual_asset"] is True
    assert stored[0]["options"] is None
    assert stored[0]["metadata"]["target_objects"] == ["chloroplast"]
    assert stored[1]["options"][1].startswith("Chlorophyll absorbs green")
    assert stored[1]["quality_score"] is None
    assert fetch_questions(conn, "other-course") == []

    boxes = fetch_bounding_boxes(conn, "run-1", "q5")
    assert [box["is_correct_answer"] for box in boxes] == [True, False, False]
    conn.close()


def test_old_databases_gain_new_columns(tmp_path):
    path = tmp_path / "old.sqlite3"
    raw = sqlite3.connect(path)
    raw.execute(
        "CREATE TABLE pipeline_runs (run_id TEXT PRIMARY KEY, course_id TEXT NOT NULL, "
        "video_source_url TEXT NOT NULL, created_at TEXT NOT NULL, status TEXT NOT NULL, request_json TEXT NOT NULL)"
    )
    raw.execute("INSERT INTO pipeline_runs VALUES ('old', 'c', 'u', '2024-01-01', 'completed', '{}')")
    raw.commit()
    raw.close()

    conn = connect(path)
    assert fetch_run(conn, "old")["summary"] == {}
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(questions)")}
    assert {"quality_score", "meets_threshold"} <= columns
    conn.close()
