"""Command-line interface for rta-player."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import replace
from pathlib import Path

from . import __version__
from .errors import MediaLoadError
from .events import PlaybackErrorRaised, PlayerStateChanged
from .logging_utils import setup_logging
from .paths import log_dir, preferences_path, progress_db_path
from .runtime_config import BACKENDS, normalize_rate, resolve_log_level
from .services.fake_backend import FakePlaybackBackend
from .services.metadata_service import parse_chapter_spec, probe_track
from .services.playback_backend import PlaybackBackend
from .services.player_service import PlayerService, PlayerState
from .services.progress_store import SqliteProgressStore
from .services.vlc_backend import VLCPlaybackBackend
from .state_store import PlayerPreferences, load_preferences, save_preferences
from .utils.async_utils import run_blocking
from .utils.time_format import format_position

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rta-player",
        description="Play an audiobook with chapter tracking and resumable progress.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument("media", help="Path to the audio file to play")
    parser.add_argument(
        "--chapter",
        action="append",
        default=[],
        metavar="START|TITLE",
        help="Chapter marker; START is seconds or [H:]MM:SS. Repeatable.",
    )
    parser.add_argument("--track-id", help="Stable id used for saved progress")
    parser.add_argument(
        "--user", help="User id for saving progress; omit to disable saving"
    )
    parser.add_argument(
        "--no-resume",
        action="store_true",
        help="Start from the beginning even if progress was saved",
    )
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        help="Playback backend to use (fake or vlc).",
    )
    parser.add_argument("--rate", type=float, help="Playback rate (0.25-3.0)")
    parser.add_argument(
        "--interval", type=float, help="Seconds between progress checkpoints"
    )
    parser.add_argument("--db", help="Progress database path")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--quiet", action="store_true", help="Only show warnings and errors"
    )
    parser.add_argument("--log-file", help="Write logs to a file path")
    return parser


def build_backend(name: str) -> PlaybackBackend:
    if name == "fake":
        return FakePlaybackBackend()
    return VLCPlaybackBackend()


def persist_engine_settings(
    path: Path, preferences: PlayerPreferences
) -> Callable[[PlayerState], Awaitable[None]]:
    """Return a callback that saves rate, volume and mute whenever they change."""
    current = {"preferences": preferences}

    async def save(state: PlayerState) -> None:
        updated = replace(
            current["preferences"],
            rate=state.rate,
            volume=state.volume,
            muted=state.muted,
        )
        if updated == current["preferences"]:
            return
        current["preferences"] = updated
        await run_blocking(save_preferences, path, updated)

    return save


def _status_line(state: PlayerState) -> str:
    title = state.track.title if state.track else "-"
    chapter = state.track.find_chapter(state.chapter_number) if state.track else None
    chapter_label = chapter.title if chapter else f"Chapter {state.chapter_number}"
    return (
        f"[{state.transport}] {title} | {chapter_label} | "
        f"{format_position(state.position_s, state.duration_s)}"
    )


async def run_session(
    args: argparse.Namespace,
    preferences: PlayerPreferences,
    *,
    preferences_file: Path | None = None,
) -> int:
    """Play one track until it ends or fails; returns the process exit code."""
    finished = asyncio.Event()
    outcome = {"code": 0}
    last_line = {"key": None}

    async def emit_event(event: object) -> None:
        if isinstance(event, PlaybackErrorRaised):
            print(event.error.user_message(), file=sys.stderr)
            if isinstance(event.error, MediaLoadError):
                outcome["code"] = 1
                finished.set()
            return
        if not isinstance(event, PlayerStateChanged):
            return
        state = event.state
        key = (state.transport, state.chapter_number)
        if key != last_line["key"]:
            last_line["key"] = key
            print(_status_line(state))
        if state.transport == "ended":
            finished.set()

    on_settings_changed = None
    if preferences_file is not None:
        on_settings_changed = persist_engine_settings(preferences_file, preferences)
    store = None
    if args.user:
        store = SqliteProgressStore(Path(args.db) if args.db else progress_db_path())
        await store.initialize()
    service = PlayerService(
        emit_event=emit_event,
        backend=build_backend(args.backend or preferences.playback_backend),
        progress_store=store,
        bookmark_store=store,
        user_provider=lambda: args.user,
        checkpoint_interval_s=args.interval or preferences.checkpoint_interval_s,
        initial_state=PlayerState(
            volume=preferences.volume,
            muted=preferences.muted,
            rate=preferences.rate,
        ),
        on_settings_changed=on_settings_changed,
    )
    try:
        await service.start()
        track = await probe_track(
            Path(args.media),
            chapters=parse_chapter_spec(args.chapter),
            track_id=args.track_id,
        )
        if args.no_resume:
            await service.load_track(track)
        else:
            await service.open_track(track)
        await finished.wait()
    finally:
        await service.shutdown()
    return outcome["code"]


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        prefs_path = preferences_path()
        preferences = load_preferences(prefs_path)
        level = resolve_log_level(
            verbose=args.verbose, quiet=args.quiet, default=preferences.log_level
        )
        setup_logging(
            log_dir=log_dir(),
            level=level,
            log_file=Path(args.log_file) if args.log_file else None,
        )
        if args.rate is not None:
            preferences = replace(preferences, rate=normalize_rate(args.rate))
            save_preferences(prefs_path, preferences)
        logger.info("Starting rta-player for %s", args.media)
        return asyncio.run(
            run_session(args, preferences, preferences_file=prefs_path)
        )
    except KeyboardInterrupt:
        print("Stopped.")
        return 130
    except ValueError as exc:
        print(f"Invalid input: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:  # pragma: no cover - top-level safety net
        logger.exception("Unhandled error: %s", exc)
        print("Unexpected error. Re-run with --verbose for details.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
