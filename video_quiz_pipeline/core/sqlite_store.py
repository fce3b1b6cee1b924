from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .types import QUALITY_DIMENSIONS


def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    _init_db(conn)
    return conn


def _init_db(conn: sqlite3.Connection) -> None:
    dimension_columns = "\n".join(f"            {name}_score REAL," for name in QUALITY_DIMENSIONS)
    conn.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS pipeline_runs (
            run_id TEXT PRIMARY KEY,
            course_id TEXT NOT NULL,
            video_source_url TEXT NOT NULL,
            created_at TEXT NOT NULL,
            status TEXT NOT NULL,
            request_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS questions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL,
            question_id TEXT NOT NULL,
            course_id TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            question TEXT NOT NULL,
            type TEXT NOT NULL,
            options TEXT,
            correct_answer INTEGER NOT NULL,
            explanation TEXT NOT NULL,
            has_visual_asset INTEGER NOT NULL,
            frame_timestamp INTEGER,
            metadata TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS bounding_boxes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL,
            question_id TEXT NOT NULL,
            label TEXT NOT NULL,
            x REAL NOT NULL,
            y REAL NOT NULL,
            width REAL NOT NULL,
            height REAL NOT NULL,
            is_correct_answer INTEGER NOT NULL DEFAULT 0,
            confidence_score REAL NOT NULL DEFAULT 0.8
        );

        CREATE TABLE IF NOT EXISTS quality_metrics (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL,
            question_id TEXT NOT NULL,
            overall_score REAL NOT NULL,
{dimension_columns}
            meets_threshold INTEGER NOT NULL,
            verification_confidence REAL NOT NULL,
            quality_analysis TEXT NOT NULL
        );
        """
    )
    _ensure_column(conn, "pipeline_runs", "summary_json", "TEXT NOT NULL DEFAULT '{}'", "{}")
    _ensure_column(conn, "questions", "quality_score", "REAL")
    _ensure_column(conn, "questions", "meets_threshold", "INTEGER")
    conn.commit()


def _ensure_column(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    definition: str,
    default_value: str | None = None,
) -> None:
    columns = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
    if column in columns:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    if default_value is not None:
        conn.execute(f"UPDATE {table} SET {column} = ? WHERE {column} IS NULL", (default_value,))
    conn.commit()


def _bool(value) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def insert_run(
    conn: sqlite3.Connection,
    run_id: str,
    course_id: str,
    video_source_url: str,
    status: str,
    request: dict | None = None,
) -> None:
    created_at = datetime.now(timezone.utc).isoformat()
    conn.execute(
        """
        INSERT OR REPLACE INTO pipeline_runs
        (run_id, course_id, video_source_url, created_at, status, request_json, summary_json)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            run_id,
            course_id,
            video_source_url,
            created_at,
            status,
            json.dumps(request or {}, ensure_ascii=False, sort_keys=True),
            "{}",
        ),
    )
    conn.commit()


def update_run_status(
    conn: sqlite3.Connection, run_id: str, status: str, summary: dict | None = None
) -> None:
    if summary is None:
        conn.execute("UPDATE pipeline_runs SET status=? WHERE run_id=?", (status, run_id))
    else:
        conn.execute(
            "UPDATE pipeline_runs SET status=?, summary_json=? WHERE run_id=?",
            (status, json.dumps(summary, ensure_ascii=False, sort_keys=True), run_id),
        )
    conn.commit()


def mark_stale_runs_failed(
    conn: sqlite3.Connection,
    statuses: Iterable[str] = ("running",),
    new_status: str = "failed",
) -> list[str]:
    status_list = list(statuses)
    if not status_list:
        return []
    placeholders = ", ".join(["?"] * len(status_list))
    rows = conn.execute(
        f"SELECT run_id FROM pipeline_runs WHERE status IN ({placeholders})",
        status_list,
    ).fetchall()
    run_ids = [row["run_id"] for row in rows]
    if run_ids:
        conn.execute(
            f"UPDATE pipeline_runs SET status = ? WHERE status IN ({placeholders})",
            (new_status, *status_list),
        )
        conn.commit()
    return run_ids


def insert_question_rows(conn: sqlite3.Connection, run_id: str, rows: Iterable[dict]) -> int:
    created_at = datetime.now(timezone.utc).isoformat()
    payload = []
    for row in rows:
        payload.append(
            (
                run_id,
                row["question_id"],
                row["course_id"],
                row["timestamp"],
                row["question"],
                row["type"],
                row.get("options"),
                row["correct_answer"],
                row["explanation"],
                1 if row.get("has_visual_asset") else 0,
                row.get("frame_timestamp"),
                row.get("metadata"),
                row.get("quality_score"),
                _bool(row.get("meets_threshold")),
                created_at,
            )
        )
    if payload:
        conn.executemany(
            """
            INSERT INTO questions
            (run_id, question_id, course_id, timestamp, question, type, options, correct_answer,
             explanation, has_visual_asset, frame_timestamp, metadata, quality_score, meets_threshold, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            payload,
        )
        conn.commit()
    return len(payload)


def insert_bounding_boxes(conn: sqlite3.Connection, run_id: str, rows: Iterable[dict]) -> int:
    payload = [
        (
            run_id,
            row["question_id"],
            row["label"],
            row["x"],
            row["y"],
            row["width"],
            row["height"],
            1 if row.get("is_correct_answer") else 0,
            row.get("confidence_score", 0.8),
        )
        for row in rows
    ]
    if payload:
        conn.executemany(
            """
            INSERT INTO bounding_boxes
            (run_id, question_id, label, x, y, width, height, is_correct_answer, confidence_score)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            payload,
        )
        conn.commit()
    return len(payload)


def insert_quality_metrics(conn: sqlite3.Connection, run_id: str, rows: Iterable[dict]) -> int:
    dimension_columns = [f"{name}_score" for name in QUALITY_DIMENSIONS]
    columns = [
        "run_id",
        "question_id",
        "overall_score",
        *dimension_columns,
        "meets_threshold",
        "verification_confidence",
        "quality_analysis",
    ]
    payload = [
        (
            run_id,
            row["question_id"],
            row["overall_score"],
            *(row.get(column) for column in dimension_columns),
            1 if row.get("meets_threshold") else 0,
            row["verification_confidence"],
            row["quality_analysis"],
        )
        for row in rows
    ]
    if payload:
        conn.executemany(
            f"INSERT INTO quality_metrics ({', '.join(columns)}) VALUES ({', '.join(['?'] * len(columns))})",
            payload,
        )
        conn.commit()
    return len(payload)


def _question_item(row: sqlite3.Row) -> dict:
    item = dict(row)
    item["has_visual_asset"] = bool(item["has_visual_asset"])
    item["options"] = json.loads(item["options"]) if item["options"] else None
    item["metadata"] = json.loads(item["metadata"]) if item["metadata"] else None
    if item.get("meets_threshold") is not None:
        item["meets_threshold"] = bool(item["meets_threshold"])
    return item


def fetch_questions(conn: sqlite3.Connection, course_id: str) -> list[dict]:
    rows = conn.execute(
        """
        SELECT run_id, question_id, course_id, timestamp, question, type, options, correct_answer,
               explanation, has_visual_asset, frame_timestamp, metadata, quality_score, meets_threshold,
               created_at
        FROM questions
        WHERE course_id = ?
        ORDER BY timestamp ASC, id ASC
        """,
        (course_id,),
    ).fetchall()
    return [_question_item(row) for row in rows]


def fetch_bounding_boxes(conn: sqlite3.Connection, run_id: str, question_id: str) -> list[dict]:
    rows = conn.execute(
        """
        SELECT question_id, label, x, y, width, height, is_correct_answer, confidence_score
        FROM bounding_boxes
        WHERE run_id = ? AND question_id = ?
        ORDER BY id ASC
        """,
        (run_id, question_id),
    ).fetchall()
    items = []
    for row in rows:
        item = dict(row)
        item["is_correct_answer"] = bool(item["is_correct_answer"])
        items.append(item)
    return items


def fetch_quality_metrics(conn: sqlite3.Connection, run_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM quality_metrics WHERE run_id = ? ORDER BY id ASC",
        (run_id,),
    ).fetchall()
    items = []
    for row in rows:
        item = dict(row)
        item.pop("id", None)
        item["meets_threshold"] = bool(item["meets_threshold"])
        item["quality_analysis"] = json.loads(item["quality_analysis"])
        items.append(item)
    return items


def _run_item(row: sqlite3.Row) -> dict:
    item = dict(row)
    item["request"] = json.loads(item.pop("request_json"))
    item["summary"] = json.loads(item.pop("summary_json") or "{}")
    return item


def fetch_runs(conn: sqlite3.Connection) -> list[dict]:
    rows = conn.execute(
        """
        SELECT run_id, course_id, video_source_url, created_at, status, request_json, summary_json
        FROM pipeline_runs
        ORDER BY created_at DESC
        """
    ).fetchall()
    return [_run_item(row) for row in rows]


def fetch_run(conn: sqlite3.Connection, run_id: str) -> dict | None:
    row = conn.execute(
        """
        SELECT run_id, course_id, video_source_url, created_at, status, request_json, summary_json
        FROM pipeline_runs
        WHERE run_id = ?
        """,
        (run_id,),
    ).fetchone()
    if not row:
        return None
    return _run_item(row)
