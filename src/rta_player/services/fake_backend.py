"""Fake playback backend for deterministic testing."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from contextlib import suppress
from dataclasses import dataclass
from typing import Literal

from rta_player.errors import PlaybackBlockedError

from .playback_backend import (
    BackendError,
    BackendEvent,
    BackendEventHandler,
    MediaEnded,
    MediaReady,
    PositionUpdated,
)

FakeStatus = Literal["empty", "loading", "ready", "playing", "paused", "ended"]


@dataclass
class _MediaState:
    status: FakeStatus = "empty"
    media_uri: str | None = None
    position_s: float = 0.0
    duration_s: float = 0.0
    volume: float = 1.0
    muted: bool = False
    rate: float = 1.0
    generation: int = 0


class FakePlaybackBackend:
    """In-memory media primitive that simulates clock-driven playback.

    `ready_delay_s=None` resolves metadata inline inside `load`, which keeps
    service tests deterministic. Set `autoplay_blocked` to make `play` raise
    `PlaybackBlockedError` until it is cleared again.
    """

    def __init__(
        self,
        *,
        tick_interval_s: float = 0.25,
        default_duration_s: float = 180.0,
        ready_delay_s: float | None = None,
        durations: dict[str, float] | None = None,
        failing_uris: Iterable[str] = (),
        autoplay_blocked: bool = False,
    ) -> None:
        self._tick_interval_s = tick_interval_s
        self._default_duration_s = default_duration_s
        self._ready_delay_s = ready_delay_s
        self._durations = dict(durations or {})
        self._failing_uris = set(failing_uris)
        self.autoplay_blocked = autoplay_blocked
        self._state = _MediaState()
        self._handler: BackendEventHandler | None = None
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._ready_task: asyncio.Task[None] | None = None
        self.commands: list[tuple[str, object]] = []

    @property
    def status(self) -> FakeStatus:
        return self._state.status

    @property
    def media_uri(self) -> str | None:
        return self._state.media_uri

    @property
    def position_s(self) -> float:
        return self._state.position_s

    @property
    def generation(self) -> int:
        return self._state.generation

    @property
    def volume(self) -> float:
        return self._state.volume

    @property
    def muted(self) -> bool:
        return self._state.muted

    @property
    def rate(self) -> float:
        return self._state.rate

    def set_event_handler(self, handler: BackendEventHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._ticker_loop())

    async def shutdown(self) -> None:
        await self._cancel_ready()
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def load(
        self, media_uri: str, start_s: float = 0.0, *, generation: int = 0
    ) -> None:
        self.commands.append(("load", media_uri))
        await self._cancel_ready()
        async with self._lock:
            self._state.status = "loading"
            self._state.media_uri = media_uri
            self._state.position_s = max(0.0, start_s)
            self._state.duration_s = 0.0
            self._state.generation = generation
        if self._ready_delay_s is None:
            await self._resolve_media(media_uri, generation)
            return
        self._ready_task = asyncio.create_task(
            self._resolve_later(media_uri, generation)
        )

    async def play(self) -> None:
        self.commands.append(("play", None))
        if self.autoplay_blocked:
            raise PlaybackBlockedError("play() requires a user gesture")
        async with self._lock:
            if self._state.status not in {"ready", "paused", "ended"}:
                return
            if self._state.status == "ended":
                self._state.position_s = 0.0
            self._state.status = "playing"

    async def pause(self) -> None:
        self.commands.append(("pause", None))
        async with self._lock:
            if self._state.status == "playing":
                self._state.status = "paused"

    async def seek(self, position_s: float) -> None:
        self.commands.append(("seek", position_s))
        async with self._lock:
            upper = self._state.duration_s or float("inf")
            self._state.position_s = _clamp(position_s, 0.0, upper)
            if self._state.status == "ended" and self._state.position_s < upper:
                self._state.status = "paused"

    async def set_volume(self, volume: float) -> None:
        self.commands.append(("volume", volume))
        async with self._lock:
            self._state.volume = _clamp(volume, 0.0, 1.0)

    async def set_muted(self, muted: bool) -> None:
        self.commands.append(("muted", muted))
        async with self._lock:
            self._state.muted = muted

    async def set_rate(self, rate: float) -> None:
        self.commands.append(("rate", rate))
        async with self._lock:
            self._state.rate = rate

    async def release(self) -> None:
        self.commands.append(("release", None))
        await self._cancel_ready()
        async with self._lock:
            self._state.status = "empty"
            self._state.media_uri = None
            self._state.position_s = 0.0
            self._state.duration_s = 0.0

    async def _resolve_later(self, media_uri: str, generation: int) -> None:
        assert self._ready_delay_s is not None
        await asyncio.sleep(self._ready_delay_s)
        await self._resolve_media(media_uri, generation)

    async def _resolve_media(self, media_uri: str, generation: int) -> None:
        if media_uri in self._failing_uris:
            async with self._lock:
                if self._state.generation == generation:
                    self._state.status = "empty"
            await self._emit(
                BackendError(
                    f"Cannot decode media at {media_uri}", generation=generation
                )
            )
            return
        duration = self._durations.get(media_uri, self._default_duration_s)
        async with self._lock:
            if self._state.generation != generation:
                return
            self._state.duration_s = duration
            self._state.position_s = _clamp(self._state.position_s, 0.0, duration)
            self._state.status = "ready"
        await self._emit(MediaReady(duration, generation=generation))

    async def _cancel_ready(self) -> None:
        task = self._ready_task
        self._ready_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _ticker_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._tick_interval_s)
                await self._tick()
        except asyncio.CancelledError:
            pass

    async def _tick(self) -> None:
        async with self._lock:
            if self._state.status != "playing":
                return
            duration = self._state.duration_s
            next_pos = self._state.position_s + self._tick_interval_s * self._state.rate
            ended = duration > 0 and next_pos >= duration
            if ended:
                next_pos = duration
                self._state.status = "ended"
            self._state.position_s = next_pos
            generation = self._state.generation
        await self._emit(PositionUpdated(next_pos, generation=generation))
        if ended:
            await self._emit(MediaEnded(generation=generation))

    async def _emit(self, event: BackendEvent) -> None:
        if self._handler is None:
            return
        await self._handler(event)


def _clamp(value: float, min_value: float, max_value: float) -> float:
    return max(min_value, min(value, max_value))
