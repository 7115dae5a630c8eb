import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from pixelpress.errors import SessionNotFoundError
from pixelpress.session.models import Progress, SessionStatus, UploadedFile
from pixelpress.session.store import SessionStore, is_session_id, write_json_atomic


def test_create_session_lays_out_workspace(store):
    handle = store.create_session()
    assert is_session_id(handle.id)
    assert handle.uploads_dir.is_dir()
    assert handle.outputs_dir.is_dir()
    assert handle.outputs_dir.name == "converted"

    meta = json.loads(handle.metadata_path.read_text())
    assert meta["id"] == handle.id
    assert meta["status"] == "idle"
    assert meta["uploadedFiles"] == []
    assert "expiresAt" in meta and "createdAt" in meta

    progress = json.loads(handle.progress_path.read_text())
    assert progress["current"] == 0
    assert progress["total"] == 0
    assert progress["currentOperation"] == "Idle"


def test_no_temp_files_left_behind(store):
    handle = store.create_session()
    store.write_progress(handle.id, Progress(1, 2, "Working"))
    leftovers = [p.name for p in handle.root.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


def test_open_unknown_or_malformed_session_is_not_found(store):
    with pytest.raises(SessionNotFoundError):
        store.open("00000000-0000-4000-8000-000000000000")
    with pytest.raises(SessionNotFoundError):
        store.open("../etc")


def test_open_recreates_missing_subdirectories(store):
    handle = store.create_session()
    handle.uploads_dir.rmdir()
    store.open(handle.id)
    assert handle.uploads_dir.is_dir()


def test_update_metadata_merges_and_restamps_identity(store):
    handle = store.create_session()
    meta = store.update_metadata(handle.id, {"status": SessionStatus.PROCESSING, "jobOptions": {"output_format": "png"}})
    assert meta.status == SessionStatus.PROCESSING
    assert meta.id == handle.id

    # identity in the file is overwritten even if tampered with
    doc = json.loads(handle.metadata_path.read_text())
    doc["id"] = "someone-else"
    handle.metadata_path.write_text(json.dumps(doc))
    meta = store.update_metadata(handle.id, {"lastError": "boom"})
    assert meta.id == handle.id
    assert meta.job_options == {"output_format": "png"}
    assert meta.last_error == "boom"


def test_update_metadata_rejects_unknown_fields(store):
    handle = store.create_session()
    with pytest.raises(ValueError):
        store.update_metadata(handle.id, {"id": "x"})


def test_append_uploads_accumulates(store):
    handle = store.create_session()
    f = UploadedFile(original_name="a.png", stored_path=str(handle.uploads_dir / "x.png"), mime_type="image/png", size=500)
    store.append_uploads(handle.id, [f])
    store.append_uploads(handle.id, [f])
    assert len(store.read_metadata(handle.id).uploaded_files) == 2


def test_corrupt_progress_reads_as_zeroed_default(store):
    handle = store.create_session()
    handle.progress_path.write_text("{not json")
    progress = store.read_progress(handle.id)
    assert (progress.current, progress.total) == (0, 0)

    handle.progress_path.unlink()
    assert store.read_progress(handle.id).current == 0


def test_progress_read_clamps_current_to_total(store):
    handle = store.create_session()
    write_json_atomic(handle.progress_path, {"current": 9, "total": 3, "currentOperation": "x"})
    progress = store.read_progress(handle.id)
    assert progress.current == 3


def test_destroy_is_idempotent(store):
    handle = store.create_session()
    assert store.destroy(handle.id) is True
    assert not handle.root.exists()
    assert store.destroy(handle.id) is False
    assert store.destroy("00000000-0000-4000-8000-000000000000") is False
    assert store.destroy("not-a-session") is False


def test_sweep_removes_only_expired_sessions(store):
    expired = store.create_session(ttl=0.001)
    alive = store.create_session(ttl=3600)
    time.sleep(0.005)
    removed = store.sweep_expired()
    assert removed == [expired.id]
    assert store.exists(alive.id)
    assert not store.exists(expired.id)


def test_sweep_skips_foreign_directories(store):
    store.create_session()
    (store.root / "not-a-session").mkdir()
    assert store.sweep_expired() == []
    assert (store.root / "not-a-session").is_dir()


def test_sweep_uses_injected_clock(tmp_path):
    now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    store = SessionStore(tmp_path, clock=lambda: now[0])
    handle = store.create_session(ttl=60)
    assert store.sweep_expired() == []
    now[0] += timedelta(minutes=2)
    assert store.sweep_expired() == [handle.id]


def test_opportunistic_sweep_is_throttled(store):
    store.create_session(ttl=0.001)
    time.sleep(0.005)
    first = store.maybe_sweep_expired(min_interval=3600)
    assert first is not None and len(first) == 1

    store.create_session(ttl=0.001)
    time.sleep(0.005)
    assert store.maybe_sweep_expired(min_interval=3600) is None
    assert len(store.sweep_expired()) == 1
