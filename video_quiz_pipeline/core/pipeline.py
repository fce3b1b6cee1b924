"""Pipeline orchestration: plan, generate, optionally verify, then store."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ..adapters.base import ChatAdapter
from ..adapters.google_adapter import GeminiAdapter
from ..adapters.mock_adapter import MockAdapter
from ..adapters.openai_adapter import OpenAIAdapter
from .config import PipelineConfigLoader, pipeline_config
from .errors import PipelineError
from .gateway import ModelGateway
from .observability import ObservabilitySink
from .planning import PlanningStage, normalize_distribution
from .progress import ProgressTracker
from .router import GenerationRouter
from .sqlite_store import (
    insert_bounding_boxes,
    insert_question_rows,
    insert_quality_metrics,
    insert_run,
    update_run_status,
)
from .storage import extract_bounding_boxes, quality_metrics_row, transform_question_for_storage
from .types import (
    DIFFICULTY_LEVELS,
    GenerationResult,
    PipelineRequest,
    PlanningResult,
    ProviderConfig,
    QuestionError,
    VerificationResult,
)
from .verifier import QualityVerifier

log = logging.getLogger(__name__)


def use_mock_providers() -> bool:
    return os.environ.get("VIDEO_QUIZ_ENV", "real").strip().lower() == "mock"


def build_adapters(provider_config: ProviderConfig, use_mocks: bool = False) -> Dict[str, ChatAdapter]:
    models = provider_config.models
    keys = provider_config.api_key_envs
    if use_mocks:
        return {
            "openai": MockAdapter("openai", model=models.get("openai") or "mock", supports_video=False),
            "gemini": MockAdapter("gemini", model=models.get("gemini") or "mock"),
        }
    return {
        "openai": OpenAIAdapter(
            model=models.get("openai") or "gpt-4o-2024-08-06",
            api_key_env=keys.get("openai") or "OPENAI_API_KEY",
        ),
        "gemini": GeminiAdapter(
            model=models.get("gemini") or "gemini-2.5-flash",
            api_key_env=keys.get("gemini") or "GEMINI_API_KEY",
        ),
    }


def build_gateway(
    config: Optional[PipelineConfigLoader] = None,
    *,
    use_mocks: Optional[bool] = None,
    trace_path: Optional[Path] = None,
    adapters: Optional[Mapping[str, ChatAdapter]] = None,
) -> ModelGateway:
    """Construct one gateway for one pipeline run."""
    config = config or pipeline_config
    provider_config = config.provider_config()
    if adapters is None:
        adapters = build_adapters(provider_config, use_mock_providers() if use_mocks is None else use_mocks)
    env_trace = os.environ.get("VIDEO_QUIZ_TRACE_FILE", "").strip()
    if trace_path is None and env_trace:
        trace_path = Path(env_trace)
    return ModelGateway(adapters, provider_config, sink=ObservabilitySink(trace_path=trace_path))


def request_from_mapping(data: Mapping[str, Any]) -> PipelineRequest:
    fields = {f.name for f in dataclasses.fields(PipelineRequest)}
    values = {key: value for key, value in data.items() if key in fields and value is not None}
    values["focus_topics"] = list(values.get("focus_topics") or [])
    return PipelineRequest(**values)


def validate_request(request: PipelineRequest, defaults: Optional[Mapping[str, Any]] = None) -> None:
    if not request.course_id or not request.course_id.strip():
        raise PipelineError("course_id is required", stage="initialization")
    if not request.video_source_url or not request.video_source_url.strip():
        raise PipelineError("video_source_url is required", stage="initialization")
    if request.max_questions is not None and request.max_questions < 1:
        raise PipelineError("max_questions must be at least 1", stage="initialization")
    if request.difficulty_level is not None and request.difficulty_level not in DIFFICULTY_LEVELS:
        raise PipelineError(
            f"difficulty_level must be one of {', '.join(DIFFICULTY_LEVELS)}", stage="initialization"
        )
    if request.question_distribution is not None and not isinstance(request.question_distribution, dict):
        raise PipelineError("question_distribution must map question types to weights", stage="initialization")
    default_distribution = (defaults or {}).get("question_distribution") or {}
    try:
        normalize_distribution(
            request.question_distribution, default_distribution, request.enable_visual_questions
        )
    except (ValueError, TypeError) as exc:
        raise PipelineError(f"Invalid question_distribution: {exc}", stage="initialization") from exc


def _errors(errors: List[QuestionError]) -> List[Dict[str, Any]]:
    return [dataclasses.asdict(error) for error in errors]


def _planning_section(result: PlanningResult) -> Dict[str, Any]:
    return {
        "success": True,
        "video_summary": result.transcript.video_summary,
        "total_duration": result.transcript.duration,
        "transcript": dataclasses.asdict(result.transcript),
        "question_plans": [dataclasses.asdict(plan) for plan in result.question_plans],
        "planning_metadata": result.planning_metadata,
        "errors": _errors(result.errors),
    }


def _generation_section(result: GenerationResult) -> Dict[str, Any]:
    return {
        "success": bool(result.generated_questions),
        "generated_questions": [dataclasses.asdict(question) for question in result.generated_questions],
        "errors": _errors(result.errors),
        **dataclasses.asdict(result.generation_metadata),
    }


def _verification_section(result: VerificationResult) -> Dict[str, Any]:
    return {
        "success": not result.errors,
        "verification_results": [dataclasses.asdict(item) for item in result.results],
        "errors": _errors(result.errors),
        "verification_metadata": result.verification_metadata,
    }


def _final_question(row: Dict[str, Any]) -> Dict[str, Any]:
    item = dict(row)
    item["options"] = json.loads(item["options"]) if item.get("options") else None
    item["metadata"] = json.loads(item["metadata"]) if item.get("metadata") else None
    return item


def _failure_response(
    request: PipelineRequest, error: PipelineError, timings: Dict[str, int], started: float
) -> Dict[str, Any]:
    return {
        "success": False,
        "course_id": request.course_id,
        "error": str(error),
        "failed_stage": error.stage,
        "video_summary": "",
        "total_duration": 0,
        "planning_result": {"success": False, "question_plans": [], "errors": [], "error": str(error)},
        "generation_result": {
            "success": False,
            "generated_questions": [],
            "errors": [],
            "requested_questions": 0,
            "successful_generations": 0,
            "failed_generations": 0,
            "generation_time_ms": 0,
            "type_breakdown": {},
            "cancelled": 0,
        },
        "verification_result": None,
        "final_questions": [],
        "pipeline_metadata": {
            "total_time_ms": int((time.perf_counter() - started) * 1000),
            "per_stage_timings": timings,
            "error_count": 1,
            "success_rate": 0.0,
            "verification_enabled": request.enable_quality_verification,
        },
    }


def _store(
    conn: sqlite3.Connection,
    run_id: str,
    rows: List[Dict[str, Any]],
    generation: GenerationResult,
    verification: Optional[VerificationResult],
) -> Dict[str, int]:
    boxes = [box for question in generation.generated_questions for box in extract_bounding_boxes(question)]
    metrics = [quality_metrics_row(result) for result in verification.results] if verification else []
    return {
        "questions": insert_question_rows(conn, run_id, rows),
        "bounding_boxes": insert_bounding_boxes(conn, run_id, boxes),
        "quality_metrics": insert_quality_metrics(conn, run_id, metrics),
    }


async def run_pipeline(
    request: PipelineRequest,
    gateway: ModelGateway,
    *,
    config: Optional[PipelineConfigLoader] = None,
    progress: Optional[ProgressTracker] = None,
    deadline_seconds: Optional[float] = None,
    conn: Optional[sqlite3.Connection] = None,
    run_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Run one video through every stage and return the pipeline response.

    A fatal planning failure returns ``success: False`` with no questions.
    Per-question failures are reported in the stage results and never abort
    the run. When ``conn`` and ``run_id`` are given, rows are persisted.
    """
    config = config or pipeline_config
    started = time.perf_counter()
    timings: Dict[str, int] = {}
    persist = conn is not None and run_id is not None

    if persist:
        insert_run(
            conn, run_id, request.course_id, request.video_source_url, "running", dataclasses.asdict(request)
        )

    try:
        stage_started = time.perf_counter()
        if progress:
            await progress.start_stage("initialization", "Validating request")
        validate_request(request, config.pipeline_defaults())
        if progress:
            await progress.complete_stage("initialization", "Request accepted")
        timings["initialization"] = int((time.perf_counter() - stage_started) * 1000)

        log.info("[pipeline] stage 1: planning for course %s", request.course_id)
        stage_started = time.perf_counter()
        planning_stage = PlanningStage(gateway, config, progress)
        if deadline_seconds is None:
            planning = await planning_stage.run(request)
        else:
            budget = max(0.0, deadline_seconds - (time.perf_counter() - started))
            try:
                planning = await asyncio.wait_for(planning_stage.run(request), timeout=budget)
            except asyncio.TimeoutError as exc:
                raise PipelineError(
                    f"Planning did not finish within the {deadline_seconds:g}s deadline", stage="planning"
                ) from exc
        timings["planning"] = int((time.perf_counter() - stage_started) * 1000)
    except PipelineError as exc:
        log.error("[pipeline] %s stage failed: %s", exc.stage, exc)
        if progress:
            await progress.mark_failed(str(exc), {"stage": exc.stage})
        if persist:
            update_run_status(conn, run_id, "failed", {"error": str(exc), "stage": exc.stage})
        await gateway.flush()
        return _failure_response(request, exc, timings, started)

    plans = planning.question_plans
    log.info("[pipeline] stage 2: generating %d questions", len(plans))
    stage_started = time.perf_counter()
    if progress:
        await progress.start_stage("generation", f"Generating {len(plans)} questions")
    remaining = None
    if deadline_seconds is not None:
        remaining = max(0.0, deadline_seconds - (time.perf_counter() - started))
    generation = await GenerationRouter(gateway, config, progress).generate_all(
        plans, planning.transcript, request.video_source_url, deadline_seconds=remaining
    )
    if progress:
        await progress.complete_stage(
            "generation", f"Generated {len(generation.generated_questions)} questions"
        )
    timings["generation"] = int((time.perf_counter() - stage_started) * 1000)

    verification: Optional[VerificationResult] = None
    stage_started = time.perf_counter()
    if request.enable_quality_verification:
        if deadline_seconds is not None and time.perf_counter() - started >= deadline_seconds:
            log.warning("[pipeline] deadline reached, skipping quality verification")
        else:
            log.info("[pipeline] stage 3: verifying %d questions", len(generation.generated_questions))
            verification = await QualityVerifier(gateway, config, progress).verify_batch(
                generation.generated_questions, plans
            )
    else:
        log.info("[pipeline] stage 3: quality verification disabled")
    timings["verification"] = int((time.perf_counter() - stage_started) * 1000)

    stage_started = time.perf_counter()
    if progress:
        await progress.start_stage("storage", "Preparing questions for storage")
    quality_by_id = {result.question_id: result for result in verification.results} if verification else {}
    rows = [
        transform_question_for_storage(question, request.course_id, quality_by_id.get(question.question_id))
        for question in generation.generated_questions
    ]
    stored: Dict[str, int] = {}
    if persist:
        stored = _store(conn, run_id, rows, generation, verification)
        log.info("[pipeline] stored %s for run %s", stored, run_id)
    if progress:
        await progress.complete_stage("storage", f"Prepared {len(rows)} questions", stored)
    timings["storage"] = int((time.perf_counter() - stage_started) * 1000)

    error_count = len(planning.errors) + len(generation.errors)
    if verification:
        error_count += len(verification.errors)
    success_rate = len(generation.generated_questions) / len(plans) if plans else 0.0
    total_time_ms = int((time.perf_counter() - started) * 1000)
    metadata = {
        "total_time_ms": total_time_ms,
        "per_stage_timings": timings,
        "error_count": error_count,
        "success_rate": round(success_rate, 4),
        "verification_enabled": request.enable_quality_verification,
    }
    response = {
        "success": True,
        "course_id": request.course_id,
        "video_summary": planning.transcript.video_summary,
        "total_duration": planning.transcript.duration,
        "planning_result": _planning_section(planning),
        "generation_result": _generation_section(generation),
        "verification_result": _verification_section(verification) if verification else None,
        "final_questions": [_final_question(row) for row in rows],
        "pipeline_metadata": metadata,
    }
    log.info(
        "[pipeline] complete in %dms: %d/%d questions, %d errors",
        total_time_ms,
        len(generation.generated_questions),
        len(plans),
        error_count,
    )
    if persist:
        update_run_status(
            conn,
            run_id,
            "completed",
            {
                "requested_questions": len(plans),
                "successful_generations": len(generation.generated_questions),
                "error_count": error_count,
                "success_rate": metadata["success_rate"],
                "total_time_ms": total_time_ms,
            },
        )
    if progress:
        await progress.mark_complete({"questions": len(rows), "error_count": error_count})
    await gateway.flush()
    return response


async def execute(
    request: PipelineRequest,
    *,
    config: Optional[PipelineConfigLoader] = None,
    use_mocks: Optional[bool] = None,
    trace_path: Optional[Path] = None,
    progress: Optional[ProgressTracker] = None,
    deadline_seconds: Optional[float] = None,
    conn: Optional[sqlite3.Connection] = None,
    run_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a gateway, run the pipeline once and close the provider clients."""
    gateway = build_gateway(config, use_mocks=use_mocks, trace_path=trace_path)
    try:
        return await run_pipeline(
            request,
            gateway,
            config=config,
            progress=progress,
            deadline_seconds=deadline_seconds,
            conn=conn,
            run_id=run_id,
        )
    finally:
        await gateway.aclose()


def run_sync(request: PipelineRequest, **kwargs: Any) -> Dict[str, Any]:
    return asyncio.run(execute(request, **kwargs))
