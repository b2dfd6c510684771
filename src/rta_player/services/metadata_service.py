"""Build `Track` objects for local audio files using mutagen."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from mutagen import File as MutagenFile

from rta_player.services.track import Chapter, Track
from rta_player.utils.async_utils import run_blocking

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetadataPayload:
    title: str | None = None
    duration_s: float | None = None
    error: str | None = None


async def probe_track(
    path: Path,
    *,
    chapters: list[Chapter] | None = None,
    track_id: str | None = None,
) -> Track:
    """Return a `Track` for `path` with tag title and duration when readable.

    Unreadable tags are not fatal: the file stem stands in for the title and
    the duration is left for the backend to report.
    """
    payload = await run_blocking(_read_metadata, path)
    if payload.error is not None:
        logger.warning("Metadata unavailable for %s: %s", path, payload.error)
    return Track(
        id=track_id or _stable_track_id(path),
        title=payload.title or path.stem,
        media_uri=path.resolve().as_uri(),
        chapters=tuple(chapters or ()),
        duration_s=payload.duration_s,
    )


def parse_chapter_spec(values: list[str]) -> list[Chapter]:
    """Parse `START|TITLE` entries into chapters numbered in start order.

    START is seconds or `[H:]MM:SS`. Raises `ValueError` on malformed entries.
    """
    parsed: list[tuple[float, str]] = []
    for raw in values:
        start_text, sep, title = raw.partition("|")
        start_s = _parse_offset(start_text.strip())
        parsed.append((start_s, title.strip() if sep else ""))
    parsed.sort(key=lambda item: item[0])
    return [
        Chapter(number=index, title=title or f"Chapter {index}", start_s=start_s)
        for index, (start_s, title) in enumerate(parsed, start=1)
    ]


def _read_metadata(path: Path) -> MetadataPayload:
    try:
        audio = MutagenFile(path, easy=True)
    except Exception as exc:
        return MetadataPayload(error=str(exc))
    if audio is None:
        return MetadataPayload(error="Unsupported or unreadable file")
    tags = audio.tags or {}
    duration_s = None
    length = getattr(audio.info, "length", None)
    if isinstance(length, (int, float)) and length > 0:
        duration_s = float(length)
    return MetadataPayload(title=_first_tag(tags, "title"), duration_s=duration_s)


def _first_tag(tags: dict, key: str) -> str | None:
    value = tags.get(key)
    if isinstance(value, list) and value:
        first = value[0]
        return str(first) if first is not None else None
    if isinstance(value, str):
        return value
    return None


def _parse_offset(text: str) -> float:
    if not text:
        raise ValueError("Chapter start is empty")
    parts = text.split(":")
    if len(parts) > 3:
        raise ValueError(f"Invalid chapter start {text!r}")
    total = 0.0
    for part in parts:
        total = total * 60 + float(part)
    if total < 0:
        raise ValueError(f"Invalid chapter start {text!r}")
    return total


def _stable_track_id(path: Path) -> str:
    digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()
    return digest[:16]
