"""Progress persistence contract and the SQLite-backed implementation.

One record per (user, track). Writes are upserts; a write older than the stored
row is ignored, so checkpoints that arrive out of order still converge on the
newest position. Bookmarks live beside progress: many per (user, track), listed
in playback order.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from collections.abc import Sequence
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from rta_player.db.schema import create_schema
from rta_player.errors import CheckpointWriteError
from rta_player.services.sqlite_retry import run_with_sqlite_lock_retry
from rta_player.utils.async_utils import run_blocking
from rta_player.utils.time_format import format_seconds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressRecord:
    """Saved resume position for one user and track."""

    user_id: str
    track_id: str
    chapter_number: int
    position_s: float
    completed: bool
    updated_at: datetime


@dataclass(frozen=True)
class Bookmark:
    """Saved position a listener can jump back to."""

    id: int
    user_id: str
    track_id: str
    chapter_number: int
    position_s: float
    title: str
    note: str | None
    created_at: datetime


class ProgressStore(Protocol):
    """Persistence collaborator consumed by the player and checkpointer."""

    async def get_progress(
        self, user_id: str, track_id: str
    ) -> ProgressRecord | None: ...

    async def upsert_progress(
        self,
        user_id: str,
        track_id: str,
        chapter_number: int,
        position_s: float,
        completed: bool,
        *,
        updated_at: datetime | None = None,
    ) -> None: ...


class BookmarkStore(Protocol):
    """Optional bookmark collaborator; `SqliteProgressStore` implements both."""

    async def add_bookmark(
        self,
        user_id: str,
        track_id: str,
        chapter_number: int,
        position_s: float,
        *,
        title: str | None = None,
        note: str | None = None,
    ) -> Bookmark: ...

    async def list_bookmarks(
        self, user_id: str, track_id: str
    ) -> Sequence[Bookmark]: ...

    async def delete_bookmark(self, user_id: str, bookmark_id: int) -> bool: ...


class SqliteProgressStore:
    """Local `ProgressStore` over SQLite; DB work runs on the IO executor."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    async def initialize(self) -> None:
        await run_blocking(self._initialize_sync)

    async def get_progress(self, user_id: str, track_id: str) -> ProgressRecord | None:
        return await run_blocking(self._get_progress_sync, user_id, track_id)

    async def upsert_progress(
        self,
        user_id: str,
        track_id: str,
        chapter_number: int,
        position_s: float,
        completed: bool,
        *,
        updated_at: datetime | None = None,
    ) -> None:
        if not math.isfinite(position_s):
            raise ValueError(f"position_s must be finite, got {position_s}")
        stamp = (updated_at or datetime.now(timezone.utc)).timestamp()
        await run_blocking(
            self._upsert_progress_sync,
            user_id,
            track_id,
            max(1, int(chapter_number)),
            max(0, math.floor(position_s)),
            bool(completed),
            stamp,
        )

    async def mark_completed(self, user_id: str, track_id: str) -> bool:
        """Flag an existing record as finished; returns whether a row changed."""
        return await run_blocking(self._mark_completed_sync, user_id, track_id)

    async def add_bookmark(
        self,
        user_id: str,
        track_id: str,
        chapter_number: int,
        position_s: float,
        *,
        title: str | None = None,
        note: str | None = None,
    ) -> Bookmark:
        """Insert a bookmark; an empty title becomes "Bookmark at MM:SS"."""
        if not math.isfinite(position_s):
            raise ValueError(f"position_s must be finite, got {position_s}")
        position = max(0, math.floor(position_s))
        label = (title or "").strip() or f"Bookmark at {format_seconds(position)}"
        return await run_blocking(
            self._add_bookmark_sync,
            user_id,
            track_id,
            max(1, int(chapter_number)),
            position,
            label,
            (note or "").strip() or None,
            datetime.now(timezone.utc),
        )

    async def list_bookmarks(self, user_id: str, track_id: str) -> list[Bookmark]:
        return await run_blocking(self._list_bookmarks_sync, user_id, track_id)

    async def delete_bookmark(self, user_id: str, bookmark_id: int) -> bool:
        return await run_blocking(self._delete_bookmark_sync, user_id, bookmark_id)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _initialize_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            create_schema(conn)
        logger.info("Progress store ready at %s", self._db_path)

    def _get_progress_sync(self, user_id: str, track_id: str) -> ProgressRecord | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                """
                SELECT chapter_number, position_s, completed, updated_at
                FROM progress
                WHERE user_id = ? AND track_id = ?
                """,
                (user_id, track_id),
            ).fetchone()
        if row is None:
            return None
        return ProgressRecord(
            user_id=user_id,
            track_id=track_id,
            chapter_number=int(row["chapter_number"]),
            position_s=float(row["position_s"]),
            completed=bool(row["completed"]),
            updated_at=datetime.fromtimestamp(float(row["updated_at"]), timezone.utc),
        )

    def _upsert_progress_sync(
        self,
        user_id: str,
        track_id: str,
        chapter_number: int,
        position_s: int,
        completed: bool,
        updated_at: float,
    ) -> None:
        def _write() -> None:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    """
                    INSERT INTO progress (
                        user_id, track_id, chapter_number, position_s,
                        completed, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, track_id) DO UPDATE SET
                        chapter_number = excluded.chapter_number,
                        position_s = excluded.position_s,
                        completed = excluded.completed,
                        updated_at = excluded.updated_at
                    WHERE excluded.updated_at >= progress.updated_at
                    """,
                    (
                        user_id,
                        track_id,
                        chapter_number,
                        position_s,
                        int(completed),
                        updated_at,
                    ),
                )

        try:
            run_with_sqlite_lock_retry(_write, op_name="progress.upsert")
        except sqlite3.Error as exc:
            raise CheckpointWriteError(
                "Failed to save listening progress.", detail=str(exc)
            ) from exc

    def _mark_completed_sync(self, user_id: str, track_id: str) -> bool:
        def _write() -> int:
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    """
                    UPDATE progress SET completed = 1
                    WHERE user_id = ? AND track_id = ?
                    """,
                    (user_id, track_id),
                )
                return cursor.rowcount

        return run_with_sqlite_lock_retry(_write, op_name="progress.complete") > 0

    def _add_bookmark_sync(
        self,
        user_id: str,
        track_id: str,
        chapter_number: int,
        position_s: int,
        title: str,
        note: str | None,
        created_at: datetime,
    ) -> Bookmark:
        def _write() -> int:
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    """
                    INSERT INTO bookmarks (
                        user_id, track_id, chapter_number, position_s,
                        title, note, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        track_id,
                        chapter_number,
                        position_s,
                        title,
                        note,
                        created_at.timestamp(),
                    ),
                )
                if cursor.lastrowid is None:
                    raise RuntimeError("Failed to create bookmark row.")
                return int(cursor.lastrowid)

        bookmark_id = run_with_sqlite_lock_retry(_write, op_name="bookmarks.add")
        return Bookmark(
            id=bookmark_id,
            user_id=user_id,
            track_id=track_id,
            chapter_number=chapter_number,
            position_s=float(position_s),
            title=title,
            note=note,
            created_at=created_at,
        )

    def _list_bookmarks_sync(self, user_id: str, track_id: str) -> list[Bookmark]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT id, chapter_number, position_s, title, note, created_at
                FROM bookmarks
                WHERE user_id = ? AND track_id = ?
                ORDER BY position_s ASC, id ASC
                """,
                (user_id, track_id),
            ).fetchall()
        return [
            Bookmark(
                id=int(row["id"]),
                user_id=user_id,
                track_id=track_id,
                chapter_number=int(row["chapter_number"]),
                position_s=float(row["position_s"]),
                title=row["title"],
                note=row["note"],
                created_at=datetime.fromtimestamp(
                    float(row["created_at"]), timezone.utc
                ),
            )
            for row in rows
        ]

    def _delete_bookmark_sync(self, user_id: str, bookmark_id: int) -> bool:
        def _write() -> int:
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    "DELETE FROM bookmarks WHERE id = ? AND user_id = ?",
                    (bookmark_id, user_id),
                )
                return cursor.rowcount

        return run_with_sqlite_lock_retry(_write, op_name="bookmarks.delete") > 0
