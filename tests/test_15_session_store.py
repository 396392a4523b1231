from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from tab_recorder.recording_errors import RecordingNotFound
from tab_recorder.session_store import STATE_ACTIVE, STATE_COMPLETED, SessionStore


def test_create_allocates_session_and_backing_file(store, recordings_dir):
    session = store.create()
    try:
        assert session.state == STATE_ACTIVE
        assert session.chunk_count == 0
        assert session.total_size == 0
        assert session.filename == f"recording-{session.recording_id}.webm"
        assert session.filepath == recordings_dir / session.filename
        assert session.filepath.exists()
        assert store.get(session.recording_id) is session
    finally:
        session.writer.close()


def test_custom_prefix_and_extension(recordings_dir):
    store = SessionStore(recordings_dir, filename_prefix="tab-", file_extension="mp4")
    session = store.create(transport="websocket")
    session.writer.close()

    assert session.filename == f"tab-{session.recording_id}.mp4"
    assert session.transport == "websocket"


def test_get_and_remove_unknown_id(store):
    with pytest.raises(RecordingNotFound):
        store.get("missing")
    with pytest.raises(RecordingNotFound):
        store.remove("missing")


def test_remove_marks_session_deleted(store):
    session = store.create()
    session.writer.close()

    removed = store.remove(session.recording_id)

    assert removed is session
    assert session.deleted is True
    assert session.recording_id not in store
    with pytest.raises(RecordingNotFound):
        store.get(session.recording_id)


def test_record_chunk_updates_counters_together(store):
    session = store.create()
    session.writer.close()

    assert store.record_chunk(session, 10) == (1, 10)
    assert store.record_chunk(session, 0) == (2, 10)
    assert store.record_chunk(session, 5) == (3, 15)


def test_mark_completed_freezes_duration(store):
    session = store.create()
    session.writer.close()

    store.mark_completed(session, interrupted=True)

    assert session.state == STATE_COMPLETED
    assert session.completed is True
    assert session.interrupted is True
    assert session.duration is not None and session.duration >= 0.0
    assert session.completed_at is not None


def test_list_all_and_active_count(store):
    first = store.create()
    second = store.create()
    for session in (first, second):
        session.writer.close()
    store.record_chunk(first, 42)
    store.mark_completed(second)

    listing = {entry["recordingId"]: entry for entry in store.list_all()}

    assert set(listing) == {first.recording_id, second.recording_id}
    assert listing[first.recording_id]["totalSize"] == 42
    assert listing[first.recording_id]["completed"] is False
    assert listing[second.recording_id]["completed"] is True
    assert store.active_count() == 1
    assert len(store) == 2


def test_concurrent_creates_issue_unique_ids(store, recordings_dir):
    with ThreadPoolExecutor(max_workers=8) as pool:
        sessions = list(pool.map(lambda _: store.create(), range(32)))
    for session in sessions:
        session.writer.close()

    ids = {session.recording_id for session in sessions}
    assert len(ids) == 32
    assert len(store) == 32
    assert len(list(recordings_dir.iterdir())) == 32


def test_removed_sessions_leave_no_bookkeeping(store):
    for _ in range(50):
        session = store.create()
        session.writer.close()
        store.remove(session.recording_id)

    assert len(store) == 0
    for value in vars(store).values():
        if isinstance(value, (set, dict)):
            assert not value
