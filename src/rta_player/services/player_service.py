"""Playback orchestration between UI commands and the media backend.

`PlayerService` is the single owner of `PlayerState`. UI commands and backend
events both change state only through `_commit` while holding one lock, so
every snapshot handed to subscribers satisfies the clamp and chapter
invariants. Each load starts a new media generation; backend events stamped
with an older generation belong to replaced or released media and are dropped.
The progress checkpointer and sleep timer only read snapshots, on their own
timers, and are scoped to the lifetime of the loaded track.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable
from dataclasses import dataclass, replace
from typing import Any, Callable, Literal

from rta_player.errors import (
    MediaLoadError,
    PlaybackBlocked,
    PlaybackBlockedError,
    PlayerError,
)
from rta_player.events import (
    PlaybackErrorRaised,
    PlayerStateChanged,
    SleepTimerFired,
    TrackChanged,
)
from rta_player.runtime_config import normalize_rate, normalize_volume
from rta_player.services.playback_backend import (
    BackendError,
    BackendEvent,
    MediaEnded,
    MediaReady,
    PlaybackBackend,
    PositionUpdated,
)
from rta_player.services.progress_checkpointer import (
    DEFAULT_INTERVAL_S,
    ProgressCheckpointer,
)
from rta_player.services.progress_store import (
    Bookmark,
    BookmarkStore,
    ProgressStore,
)
from rta_player.services.sleep_timer import SleepTimer
from rta_player.services.track import Chapter, ResumePoint, Track

logger = logging.getLogger(__name__)

TRANSPORT = Literal["idle", "loading", "playing", "paused", "ended"]


def _format_user_error(
    *, what_failed: str, likely_cause: str, next_step: str
) -> str:
    return f"{what_failed}\nLikely cause: {likely_cause}\nNext step: {next_step}"


@dataclass(frozen=True)
class PlayerState:
    """Immutable snapshot of playback state exposed to the UI."""

    track: Track | None = None
    transport: TRANSPORT = "idle"
    position_s: float = 0.0
    duration_s: float = 0.0
    volume: float = 1.0
    muted: bool = False
    rate: float = 1.0
    chapter_number: int = 1
    panel_visible: bool = False
    error: str | None = None


class PlayerService:
    """Owns playback state, drives the backend and emits events to subscribers."""

    def __init__(
        self,
        *,
        emit_event: Callable[[object], Awaitable[None]],
        backend: PlaybackBackend,
        progress_store: ProgressStore | None = None,
        bookmark_store: BookmarkStore | None = None,
        user_provider: Callable[[], str | None] | None = None,
        checkpoint_interval_s: float = DEFAULT_INTERVAL_S,
        sleep_tick_s: float = 1.0,
        initial_state: PlayerState | None = None,
        on_settings_changed: Callable[[PlayerState], Awaitable[None]] | None = None,
    ) -> None:
        self._emit_event = emit_event
        self._backend = backend
        self._progress_store = progress_store
        self._bookmark_store = bookmark_store
        self._user_provider: Callable[[], str | None] = user_provider or (
            lambda: None
        )
        self._on_settings_changed = on_settings_changed
        self._state = initial_state or PlayerState()
        self._generation = 0
        self._lock = asyncio.Lock()
        self._checkpointer = ProgressCheckpointer(
            store=progress_store,
            user_provider=self._user_provider,
            snapshot_provider=lambda: self._state,
            interval_s=checkpoint_interval_s,
        )
        self._sleep_timer = SleepTimer(
            snapshot_provider=lambda: self._state,
            on_expire=self._on_sleep_expired,
            tick_s=sleep_tick_s,
        )
        self._backend.set_event_handler(self._handle_backend_event)

    @property
    def state(self) -> PlayerState:
        return self._state

    @property
    def checkpointer(self) -> ProgressCheckpointer:
        return self._checkpointer

    @property
    def sleep_timer(self) -> SleepTimer:
        return self._sleep_timer

    async def start(self) -> None:
        """Start the backend and push persisted engine settings into it."""
        await self._backend.start()
        await self._backend.set_volume(self._state.volume)
        await self._backend.set_muted(self._state.muted)
        await self._backend.set_rate(self._state.rate)

    async def shutdown(self) -> None:
        """Close any track, wait for pending checkpoints and stop the backend."""
        if self._state.track is not None:
            await self.close()
        await self._checkpointer.aclose()
        try:
            await self._backend.shutdown()
        except Exception:
            logger.warning("Backend shutdown failed", exc_info=True)

    async def resume_point_for(self, track_id: str) -> ResumePoint | None:
        """Return where the signed-in user left off, or None to start fresh."""
        if self._progress_store is None:
            return None
        user_id = self._current_user()
        if user_id is None:
            return None
        try:
            record = await self._progress_store.get_progress(user_id, track_id)
        except Exception as exc:
            logger.warning("Could not read progress for track %s: %s", track_id, exc)
            return None
        if record is None or record.completed:
            return None
        return ResumePoint(record.chapter_number, record.position_s)

    async def open_track(self, track: Track) -> None:
        """Load `track`, resuming from the saved position when there is one."""
        await self.load_track(track, await self.resume_point_for(track.id))

    async def load_track(
        self, track: Track, resume_from: ResumePoint | None = None
    ) -> None:
        """Replace the active track and ask the backend to load its media."""
        await self._end_session(flush=True)
        position = max(0.0, resume_from.position_s) if resume_from else 0.0
        chapter = max(1, resume_from.chapter_number) if resume_from else 1
        async with self._lock:
            self._generation += 1
            generation = self._generation
            self._commit(
                track=track,
                transport="loading",
                position_s=position,
                duration_s=0.0,
                chapter_number=chapter,
                panel_visible=True,
                error=None,
            )
        logger.info(
            "Loading track %s (resume chapter=%d position=%.1f)",
            track.id,
            chapter,
            position,
        )
        await self._emit_event(TrackChanged(track))
        await self._emit_state()
        self._checkpointer.start()
        try:
            await self._backend.load(track.media_uri, position, generation=generation)
        except Exception as exc:
            await self._fail_load(str(exc), generation)

    async def play(self) -> None:
        async with self._lock:
            transport = self._state.transport
            if transport not in {"paused", "ended"}:
                return
            rewind = transport == "ended"
            if rewind:
                self._commit(position_s=0.0)
            self._commit(transport="playing", error=None)
            generation = self._generation
        if rewind:
            await self._send("seek", self._backend.seek(0.0))
        await self._request_play(generation)
        await self._emit_state()

    async def pause(self) -> None:
        async with self._lock:
            if self._state.transport != "playing":
                return
            self._commit(transport="paused")
        await self._send("pause", self._backend.pause())
        await self._emit_state()

    async def toggle_play(self) -> None:
        if self._state.transport == "playing":
            await self.pause()
        else:
            await self.play()

    async def seek(self, position_s: float) -> None:
        if not math.isfinite(position_s):
            return
        async with self._lock:
            if self._state.track is None or self._state.transport == "idle":
                return
            target = self._commit(position_s=self._clamp_position(position_s))
        await self._send("seek", self._backend.seek(target.position_s))
        await self._emit_state()

    async def skip(self, delta_s: float) -> None:
        await self.seek(self._state.position_s + delta_s)

    async def go_to_chapter(self, chapter: Chapter | int) -> None:
        """Jump to a chapter start and make sure playback is running."""
        async with self._lock:
            state = self._state
            if state.track is None or state.transport == "idle":
                return
            if isinstance(chapter, int):
                found = state.track.find_chapter(chapter)
                if found is None:
                    logger.warning(
                        "Track %s has no chapter %d", state.track.id, chapter
                    )
                    return
                chapter = found
            self._commit(
                position_s=self._clamp_position(chapter.start_s),
                chapter_number=chapter.number,
            )
            start = state.transport in {"paused", "ended"}
            if start:
                self._commit(transport="playing", error=None)
            target = self._state.position_s
            generation = self._generation
        await self._send("seek", self._backend.seek(target))
        if start:
            await self._request_play(generation)
        await self._emit_state()

    async def set_volume(self, volume: float) -> None:
        async with self._lock:
            level = normalize_volume(volume, default=self._state.volume)
            self._commit(volume=level, muted=level == 0)
            muted = self._state.muted
        await self._send("set_volume", self._backend.set_volume(level))
        await self._send("set_muted", self._backend.set_muted(muted))
        await self._emit_state()
        await self._settings_changed()

    async def toggle_mute(self) -> None:
        async with self._lock:
            self._commit(muted=not self._state.muted)
            muted = self._state.muted
        await self._send("set_muted", self._backend.set_muted(muted))
        await self._emit_state()
        await self._settings_changed()

    async def set_rate(self, rate: float) -> None:
        async with self._lock:
            self._commit(rate=normalize_rate(rate, default=self._state.rate))
            rate = self._state.rate
        await self._send("set_rate", self._backend.set_rate(rate))
        await self._emit_state()
        await self._settings_changed()

    async def open_panel(self) -> None:
        await self._set_panel(True)

    async def close_panel(self) -> None:
        await self._set_panel(False)

    async def close(self) -> None:
        """Discard the active track; the final checkpoint runs in the background."""
        await self._end_session(flush=True)
        async with self._lock:
            had_track = self._state.track is not None
            self._reset_to_idle()
        await self._send("release", self._backend.release())
        if had_track:
            await self._emit_event(TrackChanged(None))
        await self._emit_state()

    async def set_sleep_timer(self, minutes: float) -> bool:
        """Pause after `minutes` of actual playback. Needs a loaded track."""
        if self._state.track is None:
            return False
        self._sleep_timer.arm(minutes)
        return True

    async def set_sleep_timer_end_of_chapter(self) -> bool:
        """Pause when playback moves past the current chapter."""
        if self._state.track is None:
            return False
        self._sleep_timer.arm_end_of_chapter()
        return True

    async def cancel_sleep_timer(self) -> None:
        await self._sleep_timer.cancel()

    async def add_bookmark(
        self, *, title: str | None = None, note: str | None = None
    ) -> Bookmark | None:
        """Bookmark the current chapter and position for the signed-in user."""
        store = self._bookmark_store
        state = self._state
        user_id = self._current_user()
        if store is None or user_id is None or state.track is None:
            return None
        try:
            bookmark = await store.add_bookmark(
                user_id,
                state.track.id,
                state.chapter_number,
                state.position_s,
                title=title,
                note=note,
            )
        except Exception as exc:
            logger.warning("Could not save bookmark for %s: %s", state.track.id, exc)
            return None
        logger.info(
            "Bookmark %d saved for track %s at %.0fs",
            bookmark.id,
            bookmark.track_id,
            bookmark.position_s,
        )
        return bookmark

    async def list_bookmarks(self, track_id: str | None = None) -> list[Bookmark]:
        """Bookmarks for `track_id` (default: the loaded track) in playback order."""
        store = self._bookmark_store
        user_id = self._current_user()
        if track_id is None and self._state.track is not None:
            track_id = self._state.track.id
        if store is None or user_id is None or track_id is None:
            return []
        try:
            return list(await store.list_bookmarks(user_id, track_id))
        except Exception as exc:
            logger.warning("Could not read bookmarks for %s: %s", track_id, exc)
            return []

    async def delete_bookmark(self, bookmark_id: int) -> bool:
        store = self._bookmark_store
        user_id = self._current_user()
        if store is None or user_id is None:
            return False
        try:
            return await store.delete_bookmark(user_id, bookmark_id)
        except Exception as exc:
            logger.warning("Could not delete bookmark %d: %s", bookmark_id, exc)
            return False

    async def go_to_bookmark(self, bookmark: Bookmark) -> None:
        """Seek to a bookmark on the loaded track; other tracks are ignored."""
        track = self._state.track
        if track is None or track.id != bookmark.track_id:
            return
        await self.seek(bookmark.position_s)

    async def _handle_backend_event(self, event: BackendEvent) -> None:
        """Fold one backend event into state.

        This is the only entry point for engine-driven changes. Events from an
        older media generation, and events that arrive while no media session
        is active, are dropped.
        """
        emit = False
        autoplay = False
        failure: str | None = None
        async with self._lock:
            state = self._state
            generation = self._generation
            if event.generation != generation:
                logger.debug(
                    "Dropping %s from media generation %d (current %d)",
                    type(event).__name__,
                    event.generation,
                    generation,
                )
                return
            if state.track is None or state.transport == "idle":
                return
            if isinstance(event, PositionUpdated):
                if state.transport != "playing":
                    return
                position = max(0.0, event.position_s)
                if position != state.position_s:
                    self._commit(position_s=position)
                    emit = True
            elif isinstance(event, MediaReady):
                duration = event.duration_s
                if duration <= 0:
                    duration = state.track.duration_s or 0.0
                autoplay = state.transport == "loading"
                self._commit(
                    duration_s=duration,
                    position_s=state.position_s,
                    transport="playing" if autoplay else state.transport,
                )
                emit = True
            elif isinstance(event, MediaEnded):
                if state.transport != "playing":
                    return
                end = state.duration_s if state.duration_s > 0 else state.position_s
                self._commit(transport="ended", position_s=end)
                logger.info("Track %s finished", state.track.id)
                emit = True
            elif isinstance(event, BackendError):
                failure = event.message
        if failure is not None:
            await self._fail_load(failure, generation)
            return
        if autoplay:
            await self._request_play(generation)
        if emit:
            await self._emit_state()

    async def _request_play(self, generation: int) -> None:
        """Ask the backend to start; state is already `playing` when called."""
        try:
            await self._backend.play()
        except PlaybackBlockedError as exc:
            # Expected before the first user gesture on some platforms.
            logger.info("Playback blocked by platform policy: %s", exc)
            error = PlaybackBlocked(
                _format_user_error(
                    what_failed="Playback did not start automatically.",
                    likely_cause="The platform needs a user action before audio plays.",
                    next_step="Press play to start listening.",
                ),
                detail=str(exc),
            )
            async with self._lock:
                if generation != self._generation:
                    return
                if self._state.transport == "playing":
                    self._commit(transport="paused", error=error.user_message())
            await self._surface(error)
        except Exception as exc:
            await self._fail_load(str(exc), generation)

    async def _fail_load(self, detail: str, generation: int) -> None:
        """Return to idle after a media failure and surface `MediaLoadError`."""
        if generation != self._generation:
            logger.debug("Ignoring failure of replaced media: %s", detail)
            return
        await self._end_session(flush=False)
        error = MediaLoadError(
            _format_user_error(
                what_failed="Failed to load the selected audio.",
                likely_cause="The media is unreachable or cannot be decoded.",
                next_step="Retry, or choose another track.",
            ),
            detail=detail,
        )
        async with self._lock:
            track = self._state.track
            self._reset_to_idle(error=error.user_message())
        logger.warning(
            "Media load failed for track %s: %s",
            track.id if track else None,
            detail,
        )
        await self._send("release", self._backend.release())
        await self._surface(error)
        if track is not None:
            await self._emit_event(TrackChanged(None))
        await self._emit_state()

    async def _end_session(self, *, flush: bool) -> None:
        """Release the timers scoped to the current track."""
        snapshot = self._state
        if flush and snapshot.track is not None:
            self._checkpointer.flush(snapshot)
        await self._checkpointer.stop()
        await self._sleep_timer.cancel()

    async def _settings_changed(self) -> None:
        if self._on_settings_changed is None:
            return
        try:
            await self._on_settings_changed(self._state)
        except Exception:
            logger.warning("Could not persist playback settings", exc_info=True)

    def _current_user(self) -> str | None:
        try:
            return self._user_provider()
        except Exception:
            logger.warning(
                "Identity provider failed; continuing signed out", exc_info=True
            )
            return None

    async def _on_sleep_expired(self) -> None:
        chapter_number = self._state.chapter_number
        await self.pause()
        await self._emit_event(SleepTimerFired(chapter_number))

    async def _set_panel(self, visible: bool) -> None:
        async with self._lock:
            if self._state.panel_visible == visible:
                return
            self._commit(panel_visible=visible)
        await self._emit_state()

    async def _send(self, command: str, call: Awaitable[None]) -> bool:
        """Await a backend command; failures are logged, never raised to callers."""
        try:
            await call
        except Exception:
            logger.exception("Backend command %s failed", command)
            return False
        return True

    async def _surface(self, error: PlayerError) -> None:
        await self._emit_event(PlaybackErrorRaised(error))

    async def _emit_state(self) -> None:
        await self._emit_event(PlayerStateChanged(self._state))

    def _commit(self, **changes: Any) -> PlayerState:
        """Apply `changes` and re-derive dependent fields. Caller holds the lock."""
        state = replace(self._state, **changes)
        if state.duration_s > 0 and state.position_s > state.duration_s:
            state = replace(state, position_s=state.duration_s)
        if "position_s" in changes and "chapter_number" not in changes:
            chapter = state.track.chapter_at(state.position_s) if state.track else 1
            state = replace(state, chapter_number=chapter)
        self._state = state
        return state

    def _clamp_position(self, position_s: float) -> float:
        upper = self._state.duration_s if self._state.duration_s > 0 else math.inf
        return max(0.0, min(position_s, upper))

    def _reset_to_idle(self, *, error: str | None = None) -> None:
        """Drop the media session. Caller holds the lock."""
        self._generation += 1
        self._state = PlayerState(
            volume=self._state.volume,
            muted=self._state.muted,
            rate=self._state.rate,
            error=error,
        )
