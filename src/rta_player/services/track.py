"""Track and chapter models plus chapter boundary detection.

Chapter lookup runs on every position update from the backend, so it is a
bisect over a precomputed tuple of start offsets rather than a scan.
"""

from __future__ import annotations

import math
from bisect import bisect_right
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Chapter:
    """Chapter marker inside a track."""

    number: int
    title: str
    start_s: float


@dataclass(frozen=True)
class ResumePoint:
    """Previously saved position used to seed a track load."""

    chapter_number: int
    position_s: float


@dataclass(frozen=True)
class Track:
    """One playable audiobook resource. Immutable once loaded."""

    id: str
    title: str
    media_uri: str
    chapters: tuple[Chapter, ...] = ()
    duration_s: float | None = None
    _starts: tuple[float, ...] = field(
        init=False, repr=False, compare=False, default=()
    )

    def __post_init__(self) -> None:
        chapters = tuple(self.chapters)
        previous: float | None = None
        for chapter in chapters:
            if chapter.number < 1:
                raise ValueError(f"Chapter number must be >= 1, got {chapter.number}")
            if not math.isfinite(chapter.start_s) or chapter.start_s < 0:
                raise ValueError(
                    f"Chapter {chapter.number} has invalid start {chapter.start_s}"
                )
            if previous is not None and chapter.start_s <= previous:
                raise ValueError(
                    "Chapter start offsets must be strictly increasing "
                    f"(chapter {chapter.number} starts at {chapter.start_s})"
                )
            previous = chapter.start_s
        object.__setattr__(self, "chapters", chapters)
        object.__setattr__(
            self, "_starts", tuple(chapter.start_s for chapter in chapters)
        )

    def chapter_at(self, position_s: float) -> int:
        """Return the chapter number active at `position_s`."""
        return _chapter_at(self._starts, self.chapters, position_s)

    def find_chapter(self, number: int) -> Chapter | None:
        for chapter in self.chapters:
            if chapter.number == number:
                return chapter
        return None


def chapter_at(
    position_s: float, chapters: tuple[Chapter, ...] | list[Chapter]
) -> int:
    """Return the number of the last chapter starting at or before `position_s`.

    Falls back to chapter 1 when the position precedes the first chapter or
    there are no chapters. `chapters` must be sorted by start offset.
    """
    ordered = tuple(chapters)
    starts = tuple(chapter.start_s for chapter in ordered)
    return _chapter_at(starts, ordered, position_s)


def _chapter_at(
    starts: tuple[float, ...], chapters: tuple[Chapter, ...], position_s: float
) -> int:
    if not chapters:
        return 1
    index = bisect_right(starts, position_s) - 1
    if index < 0:
        return 1
    return chapters[index].number
