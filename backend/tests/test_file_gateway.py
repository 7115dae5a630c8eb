import os
import time
from email.utils import formatdate

import pytest

from pixelpress.errors import ForbiddenError, NotFoundError, SessionNotFoundError, ValidationError
from pixelpress.files import FileGateway, make_etag


@pytest.fixture
def gateway(store):
    return FileGateway(store)


@pytest.fixture
def session(store, png_bytes):
    handle = store.create_session()
    (handle.outputs_dir / "a.png").write_bytes(png_bytes)
    (handle.root / "converted-images.zip").write_bytes(b"PK\x05\x06" + b"\x00" * 18)
    return handle


def test_serves_file_with_cache_headers(gateway, session, png_bytes):
    served = gateway.serve(session.id, ["converted", "a.png"])
    assert served.status == 200
    assert served.path == session.outputs_dir / "a.png"
    assert served.media_type == "image/png"
    headers = served.headers
    assert headers["ETag"].startswith('W/"')
    assert headers["Cache-Control"].startswith("private")
    assert headers["X-Content-Type-Options"] == "nosniff"
    assert headers["Content-Length"] == str(len(png_bytes))
    assert "Content-Disposition" not in headers


def test_zip_is_served_as_attachment(gateway, session):
    served = gateway.serve(session.id, ["converted-images.zip"])
    assert served.media_type == "application/zip"
    assert served.headers["Content-Disposition"] == 'attachment; filename="converted-images.zip"'


def test_etag_derives_from_size_and_mtime():
    assert make_etag(255, 1.5) == 'W/"ff-5dc"'


def test_matching_etag_returns_not_modified(gateway, session):
    etag = gateway.serve(session.id, ["converted", "a.png"]).headers["ETag"]
    served = gateway.serve(session.id, ["converted", "a.png"], if_none_match=etag)
    assert served.status == 304
    assert "Content-Length" not in served.headers
    assert gateway.serve(session.id, ["converted", "a.png"], if_none_match='W/"other"').status == 200


def test_if_modified_since(gateway, session):
    future = formatdate(time.time() + 3600, usegmt=True)
    past = formatdate(time.time() - 3600, usegmt=True)
    assert gateway.serve(session.id, ["converted", "a.png"], if_modified_since=future).status == 304
    assert gateway.serve(session.id, ["converted", "a.png"], if_modified_since=past).status == 200
    assert gateway.serve(session.id, ["converted", "a.png"], if_modified_since="garbage").status == 200


def test_malformed_session_id_rejected_before_filesystem(gateway):
    with pytest.raises(ValidationError):
        gateway.serve("../../etc", ["passwd"])


def test_unknown_session_not_found(gateway):
    with pytest.raises(SessionNotFoundError):
        gateway.serve("00000000-0000-4000-8000-000000000000", ["a.png"])


@pytest.mark.parametrize("segments", [
    ["..", "..", "etc", "passwd"],
    ["converted", "..", "..", "x"],
    ["%2e%2e", "%2e%2e", "etc", "passwd"],
    ["..%2F..%2Fetc%2Fpasswd"],
    ["%2Fetc%2Fpasswd"],
    ["converted", "a.png%00.txt"],
])
def test_path_escapes_are_forbidden(gateway, session, segments):
    with pytest.raises(ForbiddenError):
        gateway.serve(session.id, segments)


def test_percent_decoding_happens_once_per_segment(gateway, session):
    # %252e decodes to the literal "%2e", not ".."
    with pytest.raises(NotFoundError):
        gateway.serve(session.id, ["%252e%252e", "a.png"])


def test_symlink_out_of_root_is_forbidden(gateway, session, tmp_path):
    secret = tmp_path / "secret.txt"
    secret.write_text("top secret")
    os.symlink(secret, session.outputs_dir / "link.txt")
    with pytest.raises(ForbiddenError):
        gateway.serve(session.id, ["converted", "link.txt"])


def test_directories_and_missing_files_are_not_found(gateway, session):
    with pytest.raises(NotFoundError):
        gateway.serve(session.id, ["converted"])
    with pytest.raises(NotFoundError):
        gateway.serve(session.id, ["converted", "nope.png"])
    with pytest.raises(NotFoundError):
        gateway.serve(session.id, [])
