"""Background checkpointing of playback position to a `ProgressStore`.

The ticker only reads player snapshots; it never mutates player state, so a
slow or failing store cannot stall playback. Each write runs as its own task,
so stopping the ticker never cancels a write that is already in flight. Failed
writes are logged and left for the next tick to supersede.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from rta_player.errors import CheckpointWriteError
from rta_player.services.progress_store import ProgressStore

if TYPE_CHECKING:
    from rta_player.services.player_service import PlayerState

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 30.0
COMPLETION_TOLERANCE_S = 10.0


def is_completed(
    position_s: float,
    duration_s: float,
    *,
    tolerance_s: float = COMPLETION_TOLERANCE_S,
) -> bool:
    """Return whether a position counts as finished for a known duration."""
    if duration_s <= 0:
        return False
    return duration_s - position_s <= tolerance_s


class ProgressCheckpointer:
    """Periodically persists `(track, chapter, position)` while playing."""

    def __init__(
        self,
        *,
        store: ProgressStore | None,
        user_provider: Callable[[], str | None],
        snapshot_provider: Callable[[], PlayerState],
        interval_s: float = DEFAULT_INTERVAL_S,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._store = store
        self._user_provider = user_provider
        self._snapshot_provider = snapshot_provider
        self._interval_s = float(interval_s)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def enabled(self) -> bool:
        return self._store is not None and self._current_user() is not None

    def start(self) -> None:
        """Start a fresh ticker, replacing any existing one."""
        self._cancel_task()
        if self._store is None:
            return
        self._task = asyncio.create_task(self._run(), name="progress-checkpointer")

    async def stop(self) -> None:
        """Cancel the ticker and wait for it to unwind."""
        task = self._cancel_task()
        if task is None or task is asyncio.current_task():
            return
        with suppress(asyncio.CancelledError):
            await task

    def flush(self, snapshot: PlayerState) -> asyncio.Task[bool] | None:
        """Schedule a final write of `snapshot` without waiting for it."""
        if not self._should_write(snapshot, require_playing=False):
            return None
        return self._schedule(snapshot, reason="close")

    async def aclose(self) -> None:
        """Stop ticking and let in-flight writes finish."""
        await self.stop()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def checkpoint(self, snapshot: PlayerState, *, reason: str = "tick") -> bool:
        """Write one checkpoint; returns False when nothing was persisted."""
        user_id = self._current_user()
        if self._store is None or user_id is None or snapshot.track is None:
            return False
        completed = is_completed(snapshot.position_s, snapshot.duration_s)
        try:
            await self._store.upsert_progress(
                user_id,
                snapshot.track.id,
                snapshot.chapter_number,
                snapshot.position_s,
                completed,
                updated_at=self._clock(),
            )
        except CheckpointWriteError as exc:
            logger.warning(
                "Checkpoint (%s) for track %s dropped: %s",
                reason,
                snapshot.track.id,
                exc.user_message(),
            )
            return False
        except Exception as exc:
            # Remote stores raise their own transport errors.
            logger.warning(
                "Checkpoint (%s) for track %s dropped: %s: %s",
                reason,
                snapshot.track.id,
                type(exc).__name__,
                exc,
            )
            return False
        logger.debug(
            "Checkpoint (%s) saved track=%s chapter=%d position=%.1f completed=%s",
            reason,
            snapshot.track.id,
            snapshot.chapter_number,
            snapshot.position_s,
            completed,
        )
        return True

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval_s)
                snapshot = self._snapshot_provider()
                if not self._should_write(snapshot, require_playing=True):
                    continue
                self._schedule(snapshot, reason="tick")
        except asyncio.CancelledError:
            return

    def _schedule(self, snapshot: PlayerState, *, reason: str) -> asyncio.Task[bool]:
        task = asyncio.create_task(self.checkpoint(snapshot, reason=reason))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _should_write(self, snapshot: PlayerState, *, require_playing: bool) -> bool:
        if self._store is None or snapshot.track is None:
            return False
        if require_playing and snapshot.transport != "playing":
            return False
        return self._current_user() is not None

    def _current_user(self) -> str | None:
        try:
            return self._user_provider()
        except Exception:
            logger.exception("Identity provider failed; skipping checkpoint")
            return None

    def _cancel_task(self) -> asyncio.Task[None] | None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        return task
