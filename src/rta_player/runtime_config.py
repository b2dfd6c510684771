"""Runtime configuration normalization helpers.

These keep CLI flags and persisted preferences interpreted the same way.
"""

from __future__ import annotations

import math

RATE_MIN = 0.25
RATE_MAX = 3.0
RATE_PRESETS = (0.5, 0.75, 1.0, 1.25, 1.5, 1.75, 2.0)
BACKENDS = ("fake", "vlc")


def resolve_log_level(*, verbose: bool, quiet: bool, default: str = "INFO") -> str:
    """Resolve effective log level from CLI flags.

    Precedence is deterministic: --quiet overrides --verbose, and either flag
    overrides the persisted `default`.
    """
    if quiet:
        return "WARNING"
    if verbose:
        return "DEBUG"
    return default


def normalize_rate(value: float, default: float = 1.0) -> float:
    """Clamp a playback rate into the supported range; junk maps to `default`."""
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(rate) or rate <= 0:
        return default
    return max(RATE_MIN, min(rate, RATE_MAX))


def normalize_volume(value: float, default: float = 1.0) -> float:
    """Clamp a volume into [0, 1]; junk maps to `default`."""
    try:
        volume = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(volume):
        return default
    return max(0.0, min(volume, 1.0))


def normalize_backend(value: str, default: str = "vlc") -> str:
    normalized = value.strip().lower()
    return normalized if normalized in BACKENDS else default
