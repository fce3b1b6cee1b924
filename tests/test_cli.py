import json
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import fast_config
from video_quiz_pipeline.cli import main as cli_main
from video_quiz_pipeline.core import pipeline as pipeline_module
from video_quiz_pipeline.core.sqlite_store import connect, fetch_runs

runner = CliRunner()


@pytest.fixture()
def runtime_dir(tmp_path, monkeypatch):
    runtime = tmp_path / "runtime-data"
    config = fast_config(tmp_path)
    monkeypatch.setenv("VIDEO_QUIZ_RUNTIME_DIR", str(runtime))
    monkeypatch.setenv("VIDEO_QUIZ_ENV", "mock")
    monkeypatch.setattr(pipeline_module, "pipeline_config", config)
    monkeypatch.setattr(cli_main, "pipeline_config", config)
    return runtime


def test_generate_stores_questions(runtime_dir, tmp_path):
    output = tmp_path / "out" / "response.json"
    result = runner.invoke(
        cli_main.app,
        ["generate", "course-1", "https://youtu.be/abc", "--verify", "--output", str(output)],
    )

    assert result.exit_code == 0, result.output
    assert "Mock mode" in result.output
    assert "Requested: 5" in result.output
    assert "Successful: 5" in result.output
    assert "5 meet the threshold" in result.output
    assert "Stored under run" in result.output

    data = json.loads(output.read_text(encoding="utf-8"))
    assert data["success"] is True
    assert len(data["final_questions"]) == 5

    conn = connect(runtime_dir / "db" / "quizpipeline.sqlite3")
    runs = fetch_runs(conn)
    conn.close()
    assert [run["status"] for run in runs] == ["completed"]
    assert (runtime_dir / "logs" / "llm_trace.jsonl").exists()

    listing = runner.invoke(cli_main.app, ["questions:list", "course-1"])
    assert listing.exit_code == 0
    assert "5 question(s) for course-1" in listing.output
    assert "[hotspot]" in listing.output
    assert "(quality 82)" in listing.output


def test_generate_without_storage(runtime_dir):
    result = runner.invoke(
        cli_main.app, ["generate", "course-2", "https://youtu.be/abc", "--no-store", "--max-questions", "2"]
    )
    assert result.exit_code == 0, result.output
    assert "Requested: 2" in result.output
    assert "Stored under run" not in result.output

    listing = runner.invoke(cli_main.app, ["questions:list", "course-2"])
    assert "No questions stored for course course-2" in listing.output


def test_generate_reports_failure(runtime_dir):
    result = runner.invoke(cli_main.app, ["generate", "course-1", "https://youtu.be/abc", "--max-questions", "0"])
    assert result.exit_code == 1
    assert "Pipeline failed during initialization" in result.output


def test_providers_health_in_mock_mode(runtime_dir):
    result = runner.invoke(cli_main.app, ["providers:health"])
    assert result.exit_code == 0
    assert "✅ openai: healthy" in result.output
    assert "✅ gemini: healthy" in result.output
