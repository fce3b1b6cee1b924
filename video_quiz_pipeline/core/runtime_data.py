from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimePaths:
    root: Path
    db_path: Path
    logs_dir: Path
    outputs_dir: Path

    @property
    def trace_path(self) -> Path:
        return self.logs_dir / "llm_trace.jsonl"


def build_runtime_paths(root: Path) -> RuntimePaths:
    db_path = root / "db" / "quizpipeline.sqlite3"
    logs_dir = root / "logs"
    outputs_dir = root / "outputs"

    db_path.parent.mkdir(parents=True, exist_ok=True)
    logs_dir.mkdir(parents=True, exist_ok=True)
    outputs_dir.mkdir(parents=True, exist_ok=True)

    return RuntimePaths(
        root=root,
        db_path=db_path,
        logs_dir=logs_dir,
        outputs_dir=outputs_dir,
    )


def get_runtime_paths() -> RuntimePaths:
    env_path = os.environ.get("VIDEO_QUIZ_RUNTIME_DIR", "").strip()
    if env_path:
        root = Path(env_path)
    else:
        root = Path(__file__).resolve().parents[2] / "runtime-data"

    return build_runtime_paths(root)
