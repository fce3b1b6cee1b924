"""Timestamp conversions between the model-facing "MM:SS" format and seconds."""

from __future__ import annotations

import math
from typing import Union


def mmss_to_seconds(mmss: str) -> int:
    """Convert "M:SS" / "MM:SS" (minutes may exceed 59) to integer seconds."""
    parts = mmss.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid MM:SS format: {mmss}")
    try:
        minutes = int(parts[0])
        seconds = int(parts[1])
    except ValueError as exc:
        raise ValueError(f"Invalid MM:SS format: {mmss}") from exc
    if minutes < 0 or seconds < 0 or seconds >= 60:
        raise ValueError(f"Invalid MM:SS format: {mmss}")
    return minutes * 60 + seconds


def seconds_to_mmss(seconds: float) -> str:
    """45 -> "0:45", 605 -> "10:05", 3661 -> "61:01"."""
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


def format_seconds_for_display(seconds: float) -> str:
    total = int(seconds)
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def parse_timestamp(value: Union[str, int, float, None]) -> int:
    """Normalize a timestamp received from a model to integer seconds.

    Accepts "MM:SS", "H:MM:SS", numeric strings and plain numbers. Anything
    else raises ValueError so the caller can drop the offending record.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Invalid timestamp: {value!r}")
        if value < 0:
            raise ValueError(f"Negative timestamp: {value}")
        return int(round(value))
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    parts = text.split(":")
    if len(parts) == 2:
        return mmss_to_seconds(text)
    if len(parts) == 3:
        try:
            hours = int(parts[0])
        except ValueError as exc:
            raise ValueError(f"Invalid H:MM:SS format: {value}") from exc
        if hours < 0:
            raise ValueError(f"Invalid H:MM:SS format: {value}")
        return hours * 3600 + mmss_to_seconds(f"{parts[1]}:{parts[2]}")
    try:
        number = float(text)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value!r}") from exc
    return parse_timestamp(number)
