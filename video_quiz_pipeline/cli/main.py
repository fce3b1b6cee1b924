from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from ..core.config import pipeline_config
from ..core.logging_utils import configure_logging
from ..core.pipeline import build_gateway, run_sync, use_mock_providers
from ..core.runtime_data import get_runtime_paths
from ..core.sqlite_store import connect, fetch_questions
from ..core.types import PipelineRequest

app = typer.Typer()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    configure_logging(verbose)


def _print_summary(response: dict) -> None:
    generation = response["generation_result"]
    requested = generation["requested_questions"]
    successful = generation["successful_generations"]
    failed = generation["failed_generations"]
    typer.echo(f"📊 Requested: {requested}  ✅ Successful: {successful}  ❌ Failed: {failed}")
    for error in response["planning_result"].get("errors", []):
        typer.echo(f"   ⚠️  plan {error['question_id']} rejected: {error['error_message'][:150]}")
    for error in generation["errors"]:
        typer.echo(
            f"   ❌ {error['question_id']} ({error['question_type']}, {error['stage']}): "
            f"{error['error_message'][:150]}"
        )
    verification = response.get("verification_result")
    if verification:
        meta = verification["verification_metadata"]
        typer.echo(
            f"🔍 Verified {meta['total_questions_verified']} questions, average score "
            f"{meta['average_score']}, {meta['questions_meeting_threshold']} meet the threshold"
        )
    for question in response["final_questions"]:
        typer.echo(f"   • {question['timestamp']:>5}s [{question['type']}] {question['question']}")


@app.command("generate")
def generate(
    course_id: str,
    video_url: str,
    max_questions: Optional[int] = typer.Option(None, "--max-questions"),
    difficulty: Optional[str] = typer.Option(None, "--difficulty"),
    focus_topic: Optional[List[str]] = typer.Option(None, "--focus-topic"),
    no_visual: bool = typer.Option(False, "--no-visual"),
    verify: bool = typer.Option(False, "--verify"),
    output: Optional[Path] = typer.Option(None, "--output"),
    no_store: bool = typer.Option(False, "--no-store"),
    deadline: Optional[float] = typer.Option(None, "--deadline", help="Seconds before pending questions are cancelled"),
) -> None:
    """Generate quiz questions for one video and store them under COURSE_ID."""
    request = PipelineRequest(
        course_id=course_id,
        video_source_url=video_url,
        max_questions=max_questions,
        difficulty_level=difficulty,
        focus_topics=list(focus_topic or []),
        enable_visual_questions=not no_visual,
        enable_quality_verification=verify,
    )
    if use_mock_providers():
        typer.echo("🧪 Mock mode: using canned provider responses")
    typer.echo(f"🎬 Generating questions for {video_url}")

    runtime_paths = get_runtime_paths()
    run_id = uuid.uuid4().hex
    conn = None if no_store else connect(runtime_paths.db_path)
    try:
        response = run_sync(
            request,
            trace_path=runtime_paths.trace_path,
            deadline_seconds=deadline,
            conn=conn,
            run_id=None if conn is None else run_id,
        )
    finally:
        if conn is not None:
            conn.close()

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(response, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        typer.echo(f"📁 Response written to {output}")

    if not response["success"]:
        typer.echo(f"❌ Pipeline failed during {response['failed_stage']}: {response['error']}", err=True)
        raise typer.Exit(1)

    _print_summary(response)
    if conn is not None:
        typer.echo(f"💾 Stored under run {run_id}")


async def _health() -> dict:
    gateway = build_gateway(pipeline_config)
    try:
        return await gateway.health_check()
    finally:
        await gateway.aclose()


@app.command("providers:health")
def providers_health() -> None:
    """Probe each configured provider with a tiny JSON request."""
    results = asyncio.run(_health())
    for provider, status in results.items():
        if status["healthy"]:
            typer.echo(f"✅ {provider}: healthy ({status['latency_ms']}ms)")
        else:
            typer.echo(f"❌ {provider}: {status['error']}")
    if not any(status["healthy"] for status in results.values()):
        raise typer.Exit(1)


@app.command("questions:list")
def questions_list(course_id: str) -> None:
    """List the stored questions for a course."""
    runtime_paths = get_runtime_paths()
    conn = connect(runtime_paths.db_path)
    rows = fetch_questions(conn, course_id)
    conn.close()
    if not rows:
        typer.echo(f"No questions stored for course {course_id}")
        return
    typer.echo(f"📚 {len(rows)} question(s) for {course_id}:")
    for row in rows:
        score = f" (quality {row['quality_score']:.0f})" if row.get("quality_score") is not None else ""
        typer.echo(f"  {row['timestamp']:>5}s [{row['type']}] {row['question']}{score}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    typer.echo(f"🚀 Serving the quiz pipeline API on http://{host}:{port}")
    uvicorn.run("video_quiz_pipeline.api.app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
