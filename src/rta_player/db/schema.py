"""SQLite schema for the local progress store.

`PRAGMA user_version` records the applied schema version; steps run in order
and each one is idempotent.
"""

from __future__ import annotations

import sqlite3

SCHEMA_VERSION = 1

SCHEMA_V1_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS progress (
        user_id TEXT NOT NULL,
        track_id TEXT NOT NULL,
        chapter_number INTEGER NOT NULL DEFAULT 1,
        position_s INTEGER NOT NULL DEFAULT 0,
        completed INTEGER NOT NULL DEFAULT 0,
        updated_at REAL NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, track_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bookmarks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        track_id TEXT NOT NULL,
        chapter_number INTEGER NOT NULL DEFAULT 1,
        position_s INTEGER NOT NULL DEFAULT 0,
        title TEXT NOT NULL,
        note TEXT,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_progress_user_updated "
    "ON progress(user_id, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_bookmarks_user_track "
    "ON bookmarks(user_id, track_id, position_s)",
]


def create_schema(conn: sqlite3.Connection) -> None:
    """Create or migrate the progress schema to `SCHEMA_VERSION`."""
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    if version > SCHEMA_VERSION:
        raise RuntimeError(
            "Unsupported progress database schema version.\n"
            f"Likely cause: database version {version} is newer than supported "
            f"version {SCHEMA_VERSION}.\n"
            "Next step: use a matching rta-player build or point it at a new "
            "database file."
        )
    if version == 0:
        for statement in SCHEMA_V1_STATEMENTS:
            conn.execute(statement)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
