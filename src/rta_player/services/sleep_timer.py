"""Sleep timer that pauses playback after a duration or at a chapter boundary."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from rta_player.services.player_service import PlayerState

logger = logging.getLogger(__name__)

SleepMode = Literal["off", "countdown", "end_of_chapter"]


class SleepTimer:
    """Counts down only while playing; end-of-chapter mode watches chapter changes."""

    def __init__(
        self,
        *,
        snapshot_provider: Callable[[], PlayerState],
        on_expire: Callable[[], Awaitable[None]],
        tick_s: float = 1.0,
    ) -> None:
        self._snapshot_provider = snapshot_provider
        self._on_expire = on_expire
        self._tick_s = tick_s
        self._mode: SleepMode = "off"
        self._remaining_s = 0.0
        self._start_chapter: int | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def mode(self) -> SleepMode:
        return self._mode

    @property
    def remaining_s(self) -> float:
        return self._remaining_s

    def arm(self, minutes: float) -> None:
        if minutes <= 0:
            raise ValueError("minutes must be > 0")
        self._restart(mode="countdown")
        self._remaining_s = float(minutes) * 60.0

    def arm_end_of_chapter(self) -> None:
        self._restart(mode="end_of_chapter")
        self._start_chapter = self._snapshot_provider().chapter_number

    async def cancel(self) -> None:
        task = self._reset()
        if task is None or task is asyncio.current_task():
            return
        with suppress(asyncio.CancelledError):
            await task

    def _restart(self, *, mode: SleepMode) -> None:
        self._reset()
        self._mode = mode
        self._task = asyncio.create_task(self._run(), name="sleep-timer")

    def _reset(self) -> asyncio.Task[None] | None:
        task = self._task
        self._task = None
        self._mode = "off"
        self._remaining_s = 0.0
        self._start_chapter = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return task

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._tick_s)
                snapshot = self._snapshot_provider()
                if snapshot.transport != "playing":
                    continue
                if self._mode == "countdown":
                    self._remaining_s = max(0.0, self._remaining_s - self._tick_s)
                    if self._remaining_s > 0:
                        continue
                elif (
                    self._start_chapter is None
                    or snapshot.chapter_number <= self._start_chapter
                ):
                    continue
                break
        except asyncio.CancelledError:
            return
        logger.info("Sleep timer (%s) expired; pausing playback", self._mode)
        self._reset()
        await self._on_expire()
