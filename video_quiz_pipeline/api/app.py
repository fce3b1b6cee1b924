from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Literal

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..core.config import pipeline_config
from ..core.pipeline import build_gateway, execute
from ..core.runtime_data import get_runtime_paths
from ..core.sqlite_store import connect, fetch_questions, fetch_run, fetch_runs, mark_stale_runs_failed
from ..core.types import PipelineRequest

load_dotenv()

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime_paths = get_runtime_paths()
    conn = connect(runtime_paths.db_path)
    stale = mark_stale_runs_failed(conn)
    conn.close()
    if stale:
        log.warning("[api] marked %d interrupted run(s) as failed", len(stale))
    yield


app = FastAPI(lifespan=lifespan)


class PipelineRequestModel(BaseModel):
    course_id: str = Field(min_length=1)
    video_source_url: str = Field(min_length=1)
    max_questions: int | None = Field(None, ge=1, le=50)
    difficulty_level: Literal["beginner", "intermediate", "advanced"] | None = None
    focus_topics: list[str] = Field(default_factory=list)
    enable_visual_questions: bool = True
    enable_quality_verification: bool = False
    question_distribution: dict[str, float] | None = None
    deadline_seconds: float | None = Field(None, gt=0)

    def to_request(self) -> PipelineRequest:
        return PipelineRequest(
            course_id=self.course_id,
            video_source_url=self.video_source_url,
            max_questions=self.max_questions,
            difficulty_level=self.difficulty_level,
            focus_topics=list(self.focus_topics),
            enable_visual_questions=self.enable_visual_questions,
            enable_quality_verification=self.enable_quality_verification,
            question_distribution=self.question_distribution,
        )


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/api/providers/health")
async def providers_health() -> dict:
    gateway = build_gateway(pipeline_config)
    try:
        providers = await gateway.health_check()
    finally:
        await gateway.aclose()
    return {"providers": providers}


@app.post("/api/pipeline/runs")
async def create_pipeline_run(req: PipelineRequestModel) -> dict:
    runtime_paths = get_runtime_paths()
    run_id = uuid.uuid4().hex
    conn = connect(runtime_paths.db_path)
    try:
        response = await execute(
            req.to_request(),
            trace_path=runtime_paths.trace_path,
            deadline_seconds=req.deadline_seconds,
            conn=conn,
            run_id=run_id,
        )
    finally:
        conn.close()
    return {"run_id": run_id, **response}


@app.get("/api/courses/{course_id}/questions")
def list_course_questions(course_id: str) -> dict:
    runtime_paths = get_runtime_paths()
    conn = connect(runtime_paths.db_path)
    questions = fetch_questions(conn, course_id)
    conn.close()
    return {"questions": questions}


@app.get("/api/runs")
def list_runs() -> dict:
    runtime_paths = get_runtime_paths()
    conn = connect(runtime_paths.db_path)
    runs = fetch_runs(conn)
    conn.close()
    return {"runs": runs}


@app.get("/api/runs/{run_id}")
def get_run(run_id: str) -> dict:
    runtime_paths = get_runtime_paths()
    conn = connect(runtime_paths.db_path)
    run = fetch_run(conn, run_id)
    conn.close()
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"run": run}
