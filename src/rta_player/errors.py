"""Error taxonomy for playback and progress persistence.

Playback-path errors (`MediaLoadError`, `PlaybackBlocked`) are surfaced to the
UI through `PlaybackErrorRaised` events. `CheckpointWriteError` never leaves the
checkpointer; it is logged and the next tick supersedes the lost write.
"""

from __future__ import annotations


class PlayerError(Exception):
    """Base class for recoverable player errors."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def user_message(self) -> str:
        """Return the multi-line message shown by the UI layer."""
        if not self.detail:
            return self.message
        return f"{self.message}\nDetails: {self.detail}"


class MediaLoadError(PlayerError):
    """Media could not be opened or decoded; the player is back to idle."""


class PlaybackBlocked(PlayerError):
    """Platform refused to start audio; a later user-initiated play resolves it."""


class CheckpointWriteError(PlayerError):
    """Progress record could not be persisted."""


class PlaybackBlockedError(RuntimeError):
    """Raised by backends when a play request is rejected by platform policy."""
