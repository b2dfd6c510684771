"""Service events emitted by `PlayerService` to UI subscribers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rta_player.errors import PlayerError
    from rta_player.services.player_service import PlayerState
    from rta_player.services.track import Track


@dataclass(frozen=True)
class PlayerStateChanged:
    """Emitted whenever the observable player snapshot changes."""

    state: PlayerState


@dataclass(frozen=True)
class TrackChanged:
    """Emitted when a track is loaded, or with `None` when the player closes."""

    track: Track | None


@dataclass(frozen=True)
class PlaybackErrorRaised:
    """Emitted when a playback-path error must be shown to the user."""

    error: PlayerError


@dataclass(frozen=True)
class SleepTimerFired:
    """Emitted after the sleep timer paused playback."""

    chapter_number: int
