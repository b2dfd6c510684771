"""Time formatting helpers for status output."""

from __future__ import annotations

import math


def format_seconds(seconds: float) -> str:
    """Format seconds as MM:SS or H:MM:SS when needed."""
    return _format(_coerce_seconds(seconds), force_hours=False)


def format_position(position_s: float, duration_s: float) -> str:
    """Format `position / duration` with a shared width; unknown duration is dashed."""
    position = _coerce_seconds(position_s)
    duration = _coerce_seconds(duration_s)
    hours_mode = position >= 3600 or duration >= 3600
    left = _format(position, force_hours=hours_mode)
    if duration <= 0:
        right = "--:--:--" if hours_mode else "--:--"
    else:
        right = _format(duration, force_hours=hours_mode)
    return f"{left} / {right}"


def _format(total_seconds: int, *, force_hours: bool) -> str:
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0 or force_hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


def _coerce_seconds(value: float) -> int:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(numeric):
        return 0
    return max(0, int(numeric))
