"""Playback backend contracts and event payloads.

`PlayerService` depends on this protocol to stay backend-agnostic. A backend is
the only code allowed to touch the media primitive; concrete implementations
(fake/VLC) translate engine-specific behavior into these shared commands and
events. Events are delivered to one async handler, which is the player's
single mutation inbox.

Every `load` carries a generation number chosen by the caller, and every event
produced for that media is stamped with it. Events still in flight for a
replaced or released media therefore identify themselves as stale.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class BackendEvent:
    """Base type for backend-originated events."""

    generation: int = field(default=0, kw_only=True)


@dataclass(frozen=True)
class MediaReady(BackendEvent):
    """Media metadata resolved; duration is `0.0` when the engine cannot tell."""

    duration_s: float


@dataclass(frozen=True)
class PositionUpdated(BackendEvent):
    """Elapsed time reported by the engine clock while playing."""

    position_s: float


@dataclass(frozen=True)
class MediaEnded(BackendEvent):
    """Playback reached the end of the media."""

    pass


@dataclass(frozen=True)
class BackendError(BackendEvent):
    """Engine failed to open or decode the loaded media."""

    message: str


BackendEventHandler = Callable[[BackendEvent], Awaitable[None]]


class PlaybackBackend(Protocol):
    """Media primitive protocol consumed by `PlayerService`.

    `play` may raise `PlaybackBlockedError` when the platform refuses to start
    audio. Every other command is fire-and-settle; outcomes arrive as events
    stamped with the generation passed to the `load` that produced them.
    """

    def set_event_handler(self, handler: BackendEventHandler) -> None: ...

    async def start(self) -> None: ...

    async def shutdown(self) -> None: ...

    async def load(
        self, media_uri: str, start_s: float = 0.0, *, generation: int = 0
    ) -> None: ...

    async def play(self) -> None: ...

    async def pause(self) -> None: ...

    async def seek(self, position_s: float) -> None: ...

    async def set_volume(self, volume: float) -> None: ...

    async def set_muted(self, muted: bool) -> None: ...

    async def set_rate(self, rate: float) -> None: ...

    async def release(self) -> None: ...
