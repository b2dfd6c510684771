"""JSON persistence for user playback preferences.

Loading is tolerant: missing, unreadable or malformed files degrade to defaults
with a user-facing notice instead of blocking startup.
"""

from __future__ import annotations

import json
import logging
import math
from contextlib import suppress
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from rta_player.runtime_config import (
    normalize_backend,
    normalize_rate,
    normalize_volume,
)
from rta_player.services.progress_checkpointer import DEFAULT_INTERVAL_S

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayerPreferences:
    """Preferences restored into the player at startup."""

    rate: float = 1.0
    volume: float = 1.0
    muted: bool = False
    playback_backend: str = "vlc"
    checkpoint_interval_s: float = DEFAULT_INTERVAL_S
    log_level: str = "INFO"


def _coerce_preferences(data: dict[str, Any]) -> PlayerPreferences:
    def _number(value: Any) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value) if math.isfinite(value) else None

    defaults = PlayerPreferences()
    rate = _number(data.get("rate"))
    volume = _number(data.get("volume"))
    interval = _number(data.get("checkpoint_interval_s"))
    muted = data.get("muted")
    backend = data.get("playback_backend")
    log_level = data.get("log_level")
    return PlayerPreferences(
        rate=normalize_rate(rate) if rate is not None else defaults.rate,
        volume=normalize_volume(volume) if volume is not None else defaults.volume,
        muted=muted if isinstance(muted, bool) else defaults.muted,
        playback_backend=normalize_backend(backend)
        if isinstance(backend, str)
        else defaults.playback_backend,
        checkpoint_interval_s=interval
        if interval is not None and interval > 0
        else defaults.checkpoint_interval_s,
        log_level=log_level.upper()
        if isinstance(log_level, str) and log_level.strip()
        else defaults.log_level,
    )


def load_preferences_with_notice(path: Path) -> tuple[PlayerPreferences, str | None]:
    """Load preferences and return an optional user-facing notice."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("Preferences file missing at %s; using defaults.", path)
        return PlayerPreferences(), None
    except OSError as exc:
        logger.warning("Failed to read preferences %s: %s; using defaults.", path, exc)
        return (
            PlayerPreferences(),
            "Playback preferences were reset to defaults.\n"
            "Likely cause: preferences file is unreadable.\n"
            f"Next step: check access to '{path}' and restart.",
        )

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Preferences at %s are invalid JSON; using defaults.", path)
        return (
            PlayerPreferences(),
            "Playback preferences were reset to defaults.\n"
            "Likely cause: preferences file is corrupt or partially written.\n"
            f"Next step: remove or repair '{path}' and restart.",
        )

    if not isinstance(data, dict):
        logger.warning("Preferences at %s are not a JSON object; using defaults.", path)
        return (
            PlayerPreferences(),
            "Playback preferences were reset to defaults.\n"
            "Likely cause: preferences file format is not recognized.\n"
            f"Next step: remove '{path}' and restart.",
        )

    return _coerce_preferences(data), None


def load_preferences(path: Path) -> PlayerPreferences:
    preferences, _notice = load_preferences_with_notice(path)
    return preferences


def save_preferences(path: Path, preferences: PlayerPreferences) -> None:
    """Persist preferences atomically via write-then-replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
    payload = json.dumps(asdict(preferences), indent=2, sort_keys=True)
    try:
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)
    finally:
        with suppress(OSError):
            tmp_path.unlink()
