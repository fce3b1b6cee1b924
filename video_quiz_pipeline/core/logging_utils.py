from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

from .config import _env_int

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for entry points. Library modules never call this."""
    level_name = os.environ.get("VIDEO_QUIZ_LOG_LEVEL", "").strip().upper()
    if verbose:
        level = logging.DEBUG
    elif level_name:
        level = getattr(logging, level_name, logging.INFO)
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _rotation_settings() -> tuple[int, int, int]:
    max_bytes = _env_int("VIDEO_QUIZ_LOG_MAX_BYTES", 5 * 1024 * 1024)
    max_age_hours = _env_int("VIDEO_QUIZ_LOG_MAX_AGE_HOURS", 24)
    max_files = _env_int("VIDEO_QUIZ_LOG_MAX_FILES", 5)
    return max_bytes, max_age_hours, max_files


def rotate_log_if_needed(path: Path) -> bool:
    """Move ``path`` aside when it is too large or too old. Returns True if rotated."""
    max_bytes, max_age_hours, max_files = _rotation_settings()
    if max_bytes <= 0 and max_age_hours <= 0:
        return False
    if not path.is_file():
        return False

    now = datetime.now(timezone.utc)
    try:
        stat = path.stat()
    except FileNotFoundError:
        return False

    size_exceeded = max_bytes > 0 and stat.st_size >= max_bytes
    if max_age_hours > 0:
        mtime = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        age_exceeded = (now - mtime).total_seconds() >= max_age_hours * 3600
    else:
        age_exceeded = False

    if not size_exceeded and not age_exceeded:
        return False

    timestamp = now.strftime("%Y%m%d-%H%M%S-%f")
    rotated_path = path.with_name(f"{path.stem}.{timestamp}{path.suffix}")
    shutil.move(str(path), str(rotated_path))

    if max_files > 0:
        rotated_files = sorted(
            path.parent.glob(f"{path.stem}.*{path.suffix}"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in rotated_files[max_files:]:
            try:
                old.unlink()
            except FileNotFoundError:
                continue
    return True
