import base64
import threading
import time

import pytest

from pixelpress.errors import StorageError, ValidationError
from pixelpress.session.uploads import (
    UploadIngestor,
    UploadPayload,
    decode_payload,
    filename_problems,
    sanitize_filename,
)


@pytest.fixture
def ingestor(store):
    return UploadIngestor(store)


def test_save_uploads_writes_sanitized_indexed_names(store, ingestor, png_bytes):
    handle = store.create_session()
    saved = ingestor.save_uploads(handle.id, [UploadPayload("my photo.png", png_bytes, "image/png")])
    assert len(saved) == 1
    assert saved[0].saved_path.parent == handle.uploads_dir
    assert saved[0].saved_path.name == "original-0-my_photo.png"
    assert saved[0].stored_path == "uploads/original-0-my_photo.png"
    assert saved[0].saved_path.read_bytes() == png_bytes

    meta = store.read_metadata(handle.id)
    assert [f.original_name for f in meta.uploaded_files] == ["my photo.png"]
    assert meta.uploaded_files[0].size == len(png_bytes)


def test_indices_continue_across_batches(store, ingestor, png_bytes):
    handle = store.create_session()
    ingestor.save_uploads(handle.id, [UploadPayload("a.png", png_bytes, "image/png")])
    saved = ingestor.save_uploads(handle.id, [UploadPayload("a.png", png_bytes, "image/png")])
    assert saved[0].saved_path.name == "original-1-a.png"
    assert len(store.read_metadata(handle.id).uploaded_files) == 2


def test_base64_payload_is_decoded(store, ingestor, png_bytes):
    handle = store.create_session()
    encoded = base64.b64encode(png_bytes).decode("ascii")
    saved = ingestor.save_uploads(handle.id, [UploadPayload("b.png", encoded, "image/png")])
    assert saved[0].saved_path.read_bytes() == png_bytes


def test_traversal_name_rejected_and_nothing_written(store, ingestor, png_bytes):
    handle = store.create_session()
    with pytest.raises(ValidationError) as exc:
        ingestor.save_uploads(handle.id, [UploadPayload("../../etc/passwd", png_bytes, "image/png")])
    assert any("traversal" in p for p in exc.value.problems)
    assert list(handle.uploads_dir.iterdir()) == []
    assert store.read_metadata(handle.id).uploaded_files == []


def test_one_bad_file_rejects_whole_batch_with_every_problem(store, ingestor, png_bytes):
    handle = store.create_session()
    files = [
        UploadPayload("good.png", png_bytes, "image/png"),
        UploadPayload("CON.png", png_bytes, "image/png"),
        UploadPayload("doc.pdf", png_bytes, "application/pdf"),
        UploadPayload("tiny.png", b"x" * 10, "image/png"),
        UploadPayload("broken.png", "!!!notbase64", "image/png"),
    ]
    with pytest.raises(ValidationError) as exc:
        ingestor.save_uploads(handle.id, files)
    problems = exc.value.problems
    assert len(problems) >= 4
    assert any("reserved device name" in p for p in problems)
    assert any("unsupported file type" in p for p in problems)
    assert any("suspiciously small" in p for p in problems)
    assert any("base64" in p for p in problems)
    assert list(handle.uploads_dir.iterdir()) == []


def test_extension_must_match_mime(store, ingestor, png_bytes):
    handle = store.create_session()
    with pytest.raises(ValidationError) as exc:
        ingestor.save_uploads(handle.id, [UploadPayload("photo.jpg", png_bytes, "image/png")])
    assert "does not match" in exc.value.problems[0]


def test_size_ceilings(store, ingestor, png_bytes):
    handle = store.create_session()
    with pytest.raises(ValidationError) as exc:
        ingestor.save_uploads(handle.id, [UploadPayload("a.png", png_bytes, "image/png")], max_bytes_per_file=len(png_bytes) - 1)
    assert "exceeds" in exc.value.problems[0]

    files = [UploadPayload(f"{i}.png", png_bytes, "image/png") for i in range(3)]
    with pytest.raises(ValidationError) as exc:
        ingestor.save_uploads(handle.id, files, max_total_bytes=len(png_bytes) * 2)
    assert any("Total upload size" in p for p in exc.value.problems)


def test_unknown_session_is_not_found(ingestor, png_bytes):
    from pixelpress.errors import SessionNotFoundError

    with pytest.raises(SessionNotFoundError):
        ingestor.save_uploads("00000000-0000-4000-8000-000000000000", [UploadPayload("a.png", png_bytes, "image/png")])


def test_write_failure_rolls_back_batch(store, ingestor, png_bytes, monkeypatch):
    handle = store.create_session()

    def fail(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "append_uploads", fail)
    files = [UploadPayload(f"{i}.png", png_bytes, "image/png") for i in range(3)]
    with pytest.raises(StorageError):
        ingestor.save_uploads(handle.id, files)
    assert list(handle.uploads_dir.iterdir()) == []


def test_pixel_forge_mime_set_is_narrower(store, png_bytes):
    from pixelpress import config

    ingestor = UploadIngestor(store, config.PIXEL_FORGE_MIME_TYPES)
    handle = store.create_session()
    with pytest.raises(ValidationError):
        ingestor.save_uploads(handle.id, [UploadPayload("a.gif", png_bytes, "image/gif")])


def test_filename_problems():
    assert filename_problems("photo.png") == []
    assert filename_problems("") == ["filename is empty"]
    assert filename_problems("a" * 300)
    assert filename_problems("bad\x01name.png")
    assert filename_problems("dir/LPT1.txt")


def test_sanitize_filename():
    assert sanitize_filename("my photo (1)") == "my_photo__1_"
    assert sanitize_filename("...") == "file"
    assert sanitize_filename("NUL") == "_NUL"
    assert len(sanitize_filename("x" * 500)) == 200


def test_decode_payload_rejects_truncated_base64():
    with pytest.raises(ValueError):
        decode_payload("abc")
    assert decode_payload(b"raw") == b"raw"
    assert decode_payload("aGVs bG8=") == b"hello"


def test_concurrent_batches_into_one_session_get_distinct_indices(store, ingestor, png_bytes, monkeypatch):
    handle = store.create_session()
    real_read = store.read_metadata

    def slow_read(session_id):
        meta = real_read(session_id)
        time.sleep(0.02)
        return meta

    monkeypatch.setattr(store, "read_metadata", slow_read)
    barrier = threading.Barrier(4)
    errors = []

    def upload():
        barrier.wait()
        try:
            ingestor.save_uploads(handle.id, [UploadPayload("a.png", png_bytes, "image/png")])
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=upload) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    names = sorted(p.name for p in handle.uploads_dir.iterdir())
    assert names == [f"original-{i}-a.png" for i in range(4)]
    assert len(real_read(handle.id).uploaded_files) == 4
