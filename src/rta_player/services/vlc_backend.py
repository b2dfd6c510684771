"""VLC playback backend using python-vlc.

libVLC is driven from a dedicated thread; commands are queued from the event
loop and engine observations are posted back to it as backend events.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, cast

from rta_player.utils.async_utils import run_blocking

from .playback_backend import (
    BackendError,
    BackendEvent,
    BackendEventHandler,
    MediaEnded,
    MediaReady,
    PositionUpdated,
)

logger = logging.getLogger(__name__)

_PARSE_TIMEOUT_MS = 10_000


@dataclass
class _Command:
    name: str
    args: tuple[Any, ...]
    future: asyncio.Future[Any] | None


@dataclass
class _MediaSession:
    """Thread-local view of the currently loaded media."""

    media: Any = None
    start_s: float = 0.0
    ready: bool = False
    started: bool = False
    ended: bool = False
    last_pos_ms: int = -1
    generation: int = 0


class VLCPlaybackBackend:
    """Playback backend backed by a dedicated VLC thread."""

    def __init__(self, *, poll_interval_ms: int = 200) -> None:
        self._poll_interval = poll_interval_ms / 1000
        self._handler: BackendEventHandler | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: queue.Queue[_Command] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._parse_flag: Any = 0

    def set_event_handler(self, handler: BackendEventHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        if self._thread is not None:
            return
        self._loop = asyncio.get_running_loop()
        ready_future: asyncio.Future[None] = self._loop.create_future()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._thread_main,
            args=(ready_future,),
            name="VLCBackendThread",
            daemon=True,
        )
        self._thread.start()
        await ready_future

    async def shutdown(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        self._queue.put(_Command("wake", (), None))
        await run_blocking(thread.join, 2.0)
        self._thread = None
        if thread.is_alive():
            raise RuntimeError("VLC backend thread did not stop within 2.0 seconds.")

    async def load(
        self, media_uri: str, start_s: float = 0.0, *, generation: int = 0
    ) -> None:
        await self._submit("load", media_uri, start_s, generation)

    async def play(self) -> None:
        await self._submit("play")

    async def pause(self) -> None:
        await self._submit("pause")

    async def seek(self, position_s: float) -> None:
        await self._submit("seek", position_s)

    async def set_volume(self, volume: float) -> None:
        await self._submit("set_volume", volume)

    async def set_muted(self, muted: bool) -> None:
        await self._submit("set_muted", muted)

    async def set_rate(self, rate: float) -> None:
        await self._submit("set_rate", rate)

    async def release(self) -> None:
        await self._submit("release")

    async def _submit(self, name: str, *args: Any) -> Any:
        if self._loop is None or self._thread is None or not self._thread.is_alive():
            raise RuntimeError("VLC backend not started.")
        future: asyncio.Future[Any] = self._loop.create_future()
        self._queue.put(_Command(name, args, future))
        return await future

    def _thread_main(self, ready_future: asyncio.Future[None]) -> None:
        try:
            import vlc

            instance = vlc.Instance("--no-video")
            player = instance.media_player_new()
            # Network parsing also covers local files.
            self._parse_flag = vlc.MediaParseFlag.network
        except Exception as exc:  # pragma: no cover - depends on VLC install
            self._notify_future_exception(
                ready_future,
                RuntimeError(
                    "VLC backend unavailable. Ensure VLC/libVLC is installed."
                ),
            )
            logger.error("Failed to initialize libVLC: %s", exc)
            return

        self._notify_future_result(ready_future, None)
        session = _MediaSession()

        while not self._stop_event.is_set():
            try:
                cmd: _Command | None = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                cmd = None

            if cmd is not None and cmd.name != "wake":
                try:
                    result = self._handle_command(cmd, instance, player, session)
                    self._notify_future_result(cmd.future, result)
                except Exception as exc:  # pragma: no cover - backend safety net
                    self._notify_future_exception(cmd.future, exc)

            try:
                self._observe(player, session)
            except Exception as exc:  # pragma: no cover - backend safety net
                logger.exception("VLC observation failed")
                session.media = None
                self._emit_event(BackendError(str(exc), generation=session.generation))

        player.stop()

    def _handle_command(
        self, cmd: _Command, instance: Any, player: Any, session: _MediaSession
    ) -> Any:
        name = cmd.name
        if name == "load":
            media_uri, start_s, generation = cmd.args
            player.stop()
            media = instance.media_new(media_uri)
            player.set_media(media)
            media.parse_with_options(self._parse_flag, _PARSE_TIMEOUT_MS)
            _reset_session(session)
            session.media = media
            session.start_s = max(0.0, float(start_s))
            session.generation = generation
            return None
        if name == "play":
            if session.media is None:
                return None
            if session.ended:
                # An ended libVLC player must be restarted from the pending cursor.
                player.stop()
                session.ended = False
                session.started = False
                session.last_pos_ms = -1
            if player.play() == -1:
                raise RuntimeError("libVLC refused to start playback.")
            if not session.started:
                session.started = True
                if session.start_s > 0:
                    player.set_time(int(session.start_s * 1000))
            return None
        if name == "pause":
            player.set_pause(1)
            return None
        if name == "seek":
            (position_s,) = cmd.args
            position_ms = int(max(0.0, float(position_s)) * 1000)
            if session.started and not session.ended:
                player.set_time(position_ms)
            else:
                session.start_s = position_ms / 1000
            return None
        if name == "set_volume":
            (volume,) = cmd.args
            player.audio_set_volume(int(round(float(volume) * 100)))
            return None
        if name == "set_muted":
            (muted,) = cmd.args
            player.audio_set_mute(bool(muted))
            return None
        if name == "set_rate":
            (rate,) = cmd.args
            player.set_rate(float(rate))
            return None
        if name == "release":
            player.stop()
            _reset_session(session)
            return None
        raise ValueError(f"Unknown command {name}")

    def _observe(self, player: Any, session: _MediaSession) -> None:
        """Translate engine state into backend events for the active media."""
        media = session.media
        if media is None:
            return
        generation = session.generation
        if not session.ready:
            parsed = _status_name(media.get_parsed_status())
            if parsed == "done":
                session.ready = True
                duration_s = max(media.get_duration(), 0) / 1000
                self._emit_event(MediaReady(duration_s, generation=generation))
            elif parsed in {"failed", "timeout"}:
                session.media = None
                self._emit_event(
                    BackendError(
                        f"Media could not be parsed ({parsed}).", generation=generation
                    )
                )
            return
        state = _status_name(player.get_state())
        if state == "error":
            session.media = None
            self._emit_event(
                BackendError("libVLC reported a playback error.", generation=generation)
            )
            return
        if state == "ended" and not session.ended:
            session.ended = True
            session.start_s = 0.0
            length = max(player.get_length(), 0)
            if length > 0:
                self._emit_event(PositionUpdated(length / 1000, generation=generation))
            self._emit_event(MediaEnded(generation=generation))
            return
        if state == "playing":
            pos = max(player.get_time(), 0)
            if pos != session.last_pos_ms:
                session.last_pos_ms = pos
                self._emit_event(PositionUpdated(pos / 1000, generation=generation))

    def _emit_event(self, event: BackendEvent) -> None:
        if self._handler is None or self._loop is None:
            return
        coro = self._handler(event)
        asyncio.run_coroutine_threadsafe(
            cast(Coroutine[Any, Any, None], coro), self._loop
        )

    def _notify_future_result(
        self, future: asyncio.Future[Any] | None, value: Any
    ) -> None:
        if future is None or self._loop is None:
            return
        self._loop.call_soon_threadsafe(_resolve_future_result, future, value)

    def _notify_future_exception(
        self, future: asyncio.Future[Any] | None, exc: Exception
    ) -> None:
        if future is None or self._loop is None:
            return
        self._loop.call_soon_threadsafe(_resolve_future_exception, future, exc)


def _resolve_future_result(future: asyncio.Future[Any], value: Any) -> None:
    if not future.done():
        future.set_result(value)


def _resolve_future_exception(future: asyncio.Future[Any], exc: Exception) -> None:
    if not future.done():
        future.set_exception(exc)


def _reset_session(session: _MediaSession) -> None:
    session.media = None
    session.start_s = 0.0
    session.ready = False
    session.started = False
    session.ended = False
    session.last_pos_ms = -1


def _status_name(value: Any) -> str:
    name = getattr(value, "name", None)
    if isinstance(name, str):
        return name.lower()
    return str(value).rsplit(".", 1)[-1].lower()
