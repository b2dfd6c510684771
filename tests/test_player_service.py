"""Tests for PlayerService against the fake backend."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone

from rta_player.errors import MediaLoadError, PlaybackBlocked
from rta_player.events import (
    PlaybackErrorRaised,
    PlayerStateChanged,
    SleepTimerFired,
    TrackChanged,
)
from rta_player.services.fake_backend import FakePlaybackBackend
from rta_player.services.playback_backend import (
    BackendError,
    MediaEnded,
    MediaReady,
    PositionUpdated,
)
from rta_player.services.player_service import PlayerService, PlayerState
from rta_player.services.progress_store import Bookmark, ProgressRecord
from rta_player.services.track import Chapter, ResumePoint, Track

CHAPTERS = (
    Chapter(1, "Morning Prayer", 0.0),
    Chapter(2, "Psalms", 1200.0),
    Chapter(3, "Evening Prayer", 2400.0),
)
BOOK = Track(
    id="book-1",
    title="Daily Office",
    media_uri="file:///audio/daily-office.mp3",
    chapters=CHAPTERS,
)
OTHER = Track(id="book-2", title="Hymns", media_uri="file:///audio/hymns.mp3")


def _run(coro):
    """Run async service scenario from sync test functions."""
    return asyncio.run(coro)


class _Recorder:
    def __init__(self) -> None:
        self.events: list[object] = []

    async def __call__(self, event: object) -> None:
        self.events.append(event)

    def states(self) -> list[PlayerState]:
        return [e.state for e in self.events if isinstance(e, PlayerStateChanged)]

    def transports(self) -> list[str]:
        return [state.transport for state in self.states()]

    def errors(self) -> list[object]:
        return [e.error for e in self.events if isinstance(e, PlaybackErrorRaised)]


class _MemoryStore:
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], ProgressRecord] = {}
        self.writes: list[ProgressRecord] = []

    async def get_progress(self, user_id: str, track_id: str):
        return self.records.get((user_id, track_id))

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
        record = ProgressRecord(
            user_id=user_id,
            track_id=track_id,
            chapter_number=chapter_number,
            position_s=float(math.floor(position_s)),
            completed=completed,
            updated_at=updated_at or datetime.now(timezone.utc),
        )
        self.records[(user_id, track_id)] = record
        self.writes.append(record)


def _backend(**kwargs) -> FakePlaybackBackend:
    kwargs.setdefault("default_duration_s", 3600.0)
    return FakePlaybackBackend(**kwargs)


def _service(recorder: _Recorder, backend=None, **kwargs) -> PlayerService:
    return PlayerService(emit_event=recorder, backend=backend or _backend(), **kwargs)


def test_load_track_autoplays_once_media_is_ready() -> None:
    async def run() -> None:
        recorder = _Recorder()
        backend = _backend()
        service = _service(recorder, backend)
        await service.load_track(BOOK)

        state = service.state
        assert state.track == BOOK
        assert state.transport == "playing"
        assert state.duration_s == 3600.0
        assert state.panel_visible is True
        assert isinstance(recorder.events[0], TrackChanged)
        assert recorder.events[0].track == BOOK
        assert recorder.transports() == ["loading", "playing"]
        assert backend.status == "playing"
        assert ("load", BOOK.media_uri) in backend.commands
        await service.shutdown()

    _run(run())


def test_seek_updates_chapter_and_repeats_are_idempotent() -> None:
    async def run() -> None:
        recorder = _Recorder()
        backend = _backend()
        service = _service(recorder, backend)
        await service.load_track(BOOK)

        await service.seek(1250)
        first = service.state
        assert first.position_s == 1250
        assert first.chapter_number == 2

        await service.seek(1250)
        assert service.state == first
        assert backend.position_s == 1250
        await service.shutdown()

    _run(run())


def test_skip_crosses_chapter_boundaries_and_clamps() -> None:
    async def run() -> None:
        service = _service(_Recorder())
        await service.load_track(BOOK)
        await service.seek(1250)

        await service.skip(-100)
        assert service.state.position_s == 1150
        assert service.state.chapter_number == 1

        await service.skip(-5000)
        assert service.state.position_s == 0

        await service.skip(10_000)
        assert service.state.position_s == 3600
        assert service.state.chapter_number == 3
        await service.shutdown()

    _run(run())


def test_seek_ignores_non_finite_targets() -> None:
    async def run() -> None:
        service = _service(_Recorder())
        await service.load_track(BOOK)
        await service.seek(300)
        await service.seek(math.nan)
        await service.seek(math.inf)
        assert service.state.position_s == 300
        await service.shutdown()

    _run(run())


def test_pause_then_play_preserves_position() -> None:
    async def run() -> None:
        backend = _backend()
        service = _service(_Recorder(), backend)
        await service.load_track(BOOK)
        await service.seek(1250)

        await service.pause()
        assert service.state.transport == "paused"
        assert service.state.position_s == 1250
        assert backend.status == "paused"

        await service.toggle_play()
        assert service.state.transport == "playing"
        assert service.state.position_s == 1250
        assert backend.status == "playing"
        await service.shutdown()

    _run(run())


def test_commands_are_ignored_without_a_track() -> None:
    async def run() -> None:
        recorder = _Recorder()
        backend = _backend()
        service = _service(recorder, backend)

        await service.play()
        await service.pause()
        await service.seek(10)
        await service.skip(15)
        await service.go_to_chapter(2)

        assert service.state == PlayerState()
        assert recorder.events == []
        assert backend.commands == []
        assert await service.set_sleep_timer(5) is False

    _run(run())


def test_go_to_chapter_from_paused_starts_playback() -> None:
    async def run() -> None:
        backend = _backend()
        service = _service(_Recorder(), backend)
        await service.load_track(BOOK)
        await service.pause()

        await service.go_to_chapter(3)
        assert service.state.position_s == 2400
        assert service.state.chapter_number == 3
        assert service.state.transport == "playing"
        assert ("seek", 2400.0) in backend.commands
        assert backend.status == "playing"

        await service.go_to_chapter(CHAPTERS[1])
        assert service.state.position_s == 1200
        assert service.state.chapter_number == 2

        await service.go_to_chapter(9)
        assert service.state.chapter_number == 2
        await service.shutdown()

    _run(run())


def test_close_and_reopen_resumes_saved_chapter_and_position() -> None:
    async def run() -> None:
        recorder = _Recorder()
        store = _MemoryStore()
        service = _service(recorder, progress_store=store, user_provider=lambda: "u1")
        await service.load_track(BOOK)
        await service.seek(1250)
        await service.skip(-100)
        assert service.state.chapter_number == 1
        await service.seek(1250)

        await service.close()
        await service.checkpointer.aclose()
        assert service.state.transport == "idle"
        assert service.state.track is None
        assert service.state.panel_visible is False
        record = store.records[("u1", "book-1")]
        assert (record.chapter_number, record.position_s) == (2, 1250)
        assert record.completed is False

        recorder.events.clear()
        await service.open_track(BOOK)
        assert recorder.transports() == ["loading", "playing"]
        loading = recorder.states()[0]
        assert loading.position_s == 1250
        assert loading.chapter_number == 2
        assert service.state.position_s == 1250
        assert service.state.chapter_number == 2
        await service.shutdown()

    _run(run())


def test_completed_record_starts_from_the_beginning() -> None:
    async def run() -> None:
        store = _MemoryStore()
        store.records[("u1", "book-1")] = ProgressRecord(
            user_id="u1",
            track_id="book-1",
            chapter_number=3,
            position_s=3595,
            completed=True,
            updated_at=datetime.now(timezone.utc),
        )
        service = _service(
            _Recorder(), progress_store=store, user_provider=lambda: "u1"
        )
        assert await service.resume_point_for("book-1") is None
        await service.open_track(BOOK)
        assert service.state.position_s == 0
        assert service.state.chapter_number == 1
        await service.shutdown()

    _run(run())


def test_resume_point_outside_duration_is_clamped() -> None:
    async def run() -> None:
        service = _service(_Recorder())
        await service.load_track(BOOK, ResumePoint(chapter_number=2, position_s=5000))
        assert service.state.position_s == 3600
        assert service.state.chapter_number == 3
        await service.shutdown()

    _run(run())


def test_blocked_autoplay_leaves_player_paused_until_user_plays() -> None:
    async def run() -> None:
        recorder = _Recorder()
        backend = _backend(autoplay_blocked=True)
        service = _service(recorder, backend)
        await service.load_track(BOOK)

        assert service.state.transport == "paused"
        assert service.state.error is not None
        assert "Press play" in service.state.error
        assert any(isinstance(error, PlaybackBlocked) for error in recorder.errors())

        backend.autoplay_blocked = False
        await service.play()
        assert service.state.transport == "playing"
        assert service.state.error is None
        assert backend.status == "playing"
        await service.shutdown()

    _run(run())


def test_media_failure_returns_to_idle_with_error() -> None:
    async def run() -> None:
        recorder = _Recorder()
        backend = _backend(failing_uris={BOOK.media_uri})
        service = _service(recorder, backend, progress_store=_MemoryStore())
        await service.load_track(BOOK)

        state = service.state
        assert state.transport == "idle"
        assert state.track is None
        assert state.error is not None
        assert "Failed to load" in state.error
        errors = recorder.errors()
        assert len(errors) == 1
        assert isinstance(errors[0], MediaLoadError)
        assert "Cannot decode" in (errors[0].detail or "")
        assert TrackChanged(None) in recorder.events
        assert ("release", None) in backend.commands
        assert service.checkpointer.running is False
        await service.shutdown()

    _run(run())


def test_track_end_then_play_rewinds_to_start() -> None:
    async def run() -> None:
        backend = _backend(tick_interval_s=0.01, durations={OTHER.media_uri: 0.05})
        service = _service(_Recorder(), backend)
        await service.start()
        await service.load_track(OTHER)

        for _ in range(100):
            if service.state.transport == "ended":
                break
            await asyncio.sleep(0.01)
        assert service.state.transport == "ended"
        assert service.state.position_s == service.state.duration_s == 0.05

        await service.seek(0.02)
        assert service.state.transport == "ended"

        await service.play()
        assert service.state.transport == "playing"
        assert service.state.position_s == 0
        assert service.state.chapter_number == 1
        assert backend.status == "playing"
        await service.shutdown()

    _run(run())


def test_playback_progress_follows_backend_ticks() -> None:
    async def run() -> None:
        backend = _backend(tick_interval_s=0.02)
        service = _service(_Recorder(), backend)
        await service.start()
        await service.load_track(BOOK)
        await asyncio.sleep(0.1)
        position = service.state.position_s
        assert position > 0

        await service.pause()
        await asyncio.sleep(0.1)
        assert service.state.position_s == position
        await service.shutdown()

    _run(run())


def test_backend_events_outside_playing_session_are_dropped() -> None:
    async def run() -> None:
        recorder = _Recorder()
        service = _service(recorder)

        await service._handle_backend_event(MediaReady(100.0))  # noqa: SLF001
        await service._handle_backend_event(MediaEnded())  # noqa: SLF001
        assert service.state == PlayerState()
        assert recorder.events == []

        await service.load_track(BOOK)
        await service.seek(500)
        await service.pause()
        await service._handle_backend_event(PositionUpdated(900.0))  # noqa: SLF001
        await service._handle_backend_event(MediaEnded())  # noqa: SLF001
        assert service.state.position_s == 500
        assert service.state.transport == "paused"
        await service.shutdown()

    _run(run())


def test_volume_zero_mutes_and_rate_is_clamped() -> None:
    async def run() -> None:
        backend = _backend()
        service = _service(_Recorder(), backend)

        await service.set_volume(0)
        assert service.state.volume == 0
        assert service.state.muted is True
        assert backend.muted is True

        await service.set_volume(0.4)
        assert service.state.muted is False

        await service.toggle_mute()
        assert service.state.muted is True
        assert backend.muted is True

        await service.set_rate(5.0)
        assert service.state.rate == 3.0
        await service.set_rate(0.1)
        assert service.state.rate == 0.25
        await service.set_rate(math.nan)
        assert service.state.rate == 0.25
        assert backend.rate == 0.25

    _run(run())


def test_close_keeps_volume_and_rate() -> None:
    async def run() -> None:
        recorder = _Recorder()
        service = _service(recorder)
        await service.set_volume(0.5)
        await service.set_rate(1.5)
        await service.load_track(BOOK)

        await service.close()
        state = service.state
        assert state.transport == "idle"
        assert (state.volume, state.rate) == (0.5, 1.5)
        assert recorder.events[-2] == TrackChanged(None)

    _run(run())


def test_panel_events_only_on_change() -> None:
    async def run() -> None:
        recorder = _Recorder()
        service = _service(recorder)
        await service.load_track(BOOK)
        assert service.state.panel_visible is True

        count = len(recorder.events)
        await service.open_panel()
        assert len(recorder.events) == count

        await service.close_panel()
        assert service.state.panel_visible is False
        assert service.state.transport == "playing"
        assert len(recorder.events) == count + 1
        await service.shutdown()

    _run(run())


def test_replacing_track_stops_checkpoints_for_previous_track() -> None:
    async def run() -> None:
        store = _MemoryStore()
        service = _service(
            _Recorder(),
            progress_store=store,
            user_provider=lambda: "u1",
            checkpoint_interval_s=0.03,
        )
        await service.load_track(BOOK)
        await service.seek(700)
        await service.load_track(OTHER)
        await asyncio.sleep(0.15)
        await service.shutdown()

        book_writes = [w for w in store.writes if w.track_id == BOOK.id]
        other_writes = [w for w in store.writes if w.track_id == OTHER.id]
        assert len(book_writes) == 1
        assert book_writes[0].position_s == 700
        assert len(other_writes) >= 2

    _run(run())


def test_shutdown_writes_final_checkpoint_marked_completed() -> None:
    async def run() -> None:
        store = _MemoryStore()
        service = _service(
            _Recorder(), progress_store=store, user_provider=lambda: "u1"
        )
        await service.load_track(BOOK)
        await service.seek(3595)
        await service.shutdown()

        record = store.records[("u1", BOOK.id)]
        assert record.completed is True
        assert record.chapter_number == 3

    _run(run())


def test_sleep_timer_pauses_playback() -> None:
    async def run() -> None:
        recorder = _Recorder()
        service = _service(recorder, sleep_tick_s=0.01)
        await service.load_track(BOOK)
        assert await service.set_sleep_timer(0.001) is True

        for _ in range(100):
            if service.state.transport == "paused":
                break
            await asyncio.sleep(0.01)
        assert service.state.transport == "paused"
        assert SleepTimerFired(1) in recorder.events
        assert service.sleep_timer.mode == "off"
        await service.shutdown()

    _run(run())


def test_events_from_replaced_media_are_ignored() -> None:
    async def run() -> None:
        recorder = _Recorder()
        backend = _backend(ready_delay_s=5)
        service = _service(recorder, backend)
        await service.load_track(BOOK)
        first = backend.generation
        await service.load_track(OTHER)
        assert backend.generation != first

        await backend._emit(MediaReady(42.0, generation=first))  # noqa: SLF001
        assert service.state.track == OTHER
        assert service.state.transport == "loading"
        assert service.state.duration_s == 0

        await backend._emit(  # noqa: SLF001
            BackendError("parse timeout", generation=first)
        )
        assert service.state.track == OTHER
        assert service.state.transport == "loading"
        assert recorder.errors() == []

        await backend._emit(  # noqa: SLF001
            MediaReady(600.0, generation=backend.generation)
        )
        assert service.state.transport == "playing"
        assert service.state.duration_s == 600
        await service.shutdown()

    _run(run())


def test_events_after_close_are_ignored() -> None:
    async def run() -> None:
        backend = _backend(ready_delay_s=5)
        service = _service(_Recorder(), backend)
        await service.load_track(BOOK)
        generation = backend.generation
        await service.close()

        await backend._emit(MediaReady(42.0, generation=generation))  # noqa: SLF001
        assert service.state == PlayerState()
        await service.shutdown()

    _run(run())


def test_identity_failure_during_open_track_starts_fresh(caplog) -> None:
    def broken_user() -> str:
        raise RuntimeError("auth backend down")

    async def run() -> None:
        store = _MemoryStore()
        store.records[("u1", BOOK.id)] = ProgressRecord(
            user_id="u1",
            track_id=BOOK.id,
            chapter_number=2,
            position_s=1250,
            completed=False,
            updated_at=datetime.now(timezone.utc),
        )
        service = _service(_Recorder(), progress_store=store, user_provider=broken_user)
        assert await service.resume_point_for(BOOK.id) is None
        await service.open_track(BOOK)
        assert service.state.transport == "playing"
        assert service.state.position_s == 0
        await service.shutdown()

    _run(run())
    assert any("Identity provider failed" in r.message for r in caplog.records)


class _MemoryBookmarks:
    def __init__(self) -> None:
        self.items: list[Bookmark] = []

    async def add_bookmark(
        self, user_id, track_id, chapter_number, position_s, *, title=None, note=None
    ) -> Bookmark:
        bookmark = Bookmark(
            id=len(self.items) + 1,
            user_id=user_id,
            track_id=track_id,
            chapter_number=chapter_number,
            position_s=float(math.floor(position_s)),
            title=title or "Bookmark",
            note=note,
            created_at=datetime.now(timezone.utc),
        )
        self.items.append(bookmark)
        return bookmark

    async def list_bookmarks(self, user_id, track_id) -> list[Bookmark]:
        found = [
            b for b in self.items if (b.user_id, b.track_id) == (user_id, track_id)
        ]
        return sorted(found, key=lambda b: b.position_s)

    async def delete_bookmark(self, user_id, bookmark_id) -> bool:
        before = len(self.items)
        self.items = [
            b
            for b in self.items
            if not (b.id == bookmark_id and b.user_id == user_id)
        ]
        return len(self.items) < before


def test_bookmarks_capture_position_and_jump_back() -> None:
    async def run() -> None:
        bookmarks = _MemoryBookmarks()
        service = _service(
            _Recorder(), bookmark_store=bookmarks, user_provider=lambda: "u1"
        )
        await service.load_track(BOOK)
        await service.seek(1250.6)
        saved = await service.add_bookmark(title="Psalm 23", note="read aloud")
        assert saved is not None
        assert (saved.chapter_number, saved.position_s) == (2, 1250)
        assert saved.track_id == BOOK.id

        await service.seek(2500)
        await service.go_to_bookmark(saved)
        assert service.state.position_s == 1250
        assert service.state.chapter_number == 2

        assert await service.list_bookmarks() == [saved]
        assert await service.delete_bookmark(saved.id) is True
        assert await service.list_bookmarks() == []
        await service.shutdown()

    _run(run())


def test_bookmarks_need_user_store_and_matching_track() -> None:
    async def run() -> None:
        bookmarks = _MemoryBookmarks()
        anonymous = _service(_Recorder(), bookmark_store=bookmarks)
        await anonymous.load_track(BOOK)
        assert await anonymous.add_bookmark() is None
        assert await anonymous.list_bookmarks() == []
        await anonymous.shutdown()

        service = _service(
            _Recorder(), bookmark_store=bookmarks, user_provider=lambda: "u1"
        )
        assert await service.add_bookmark() is None
        await service.load_track(OTHER)
        await service.seek(30)
        other = await service.add_bookmark()
        await service.load_track(BOOK)
        await service.seek(100)
        await service.go_to_bookmark(other)
        assert service.state.position_s == 100
        assert await service.list_bookmarks(OTHER.id) == [other]
        await service.shutdown()

    _run(run())
