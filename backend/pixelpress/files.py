"""Serving files out of a session workspace without letting a path escape it."""
import logging
import os
from dataclasses import dataclass, field
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import Optional, Sequence
from urllib.parse import unquote

from pixelpress.errors import ForbiddenError, NotFoundError, ValidationError
from pixelpress.session.store import SessionStore, is_session_id

logger = logging.getLogger("pixelpress.files")

CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".gif": "image/gif",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
    ".bmp": "image/bmp",
    ".ico": "image/x-icon",
    ".json": "application/json; charset=utf-8",
    ".html": "text/html; charset=utf-8",
    ".txt": "text/plain; charset=utf-8",
    ".xml": "application/xml; charset=utf-8",
    ".zip": "application/zip",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"
CACHE_CONTROL = "private, max-age=3600"


def content_type_for(path: Path) -> str:
    return CONTENT_TYPES.get(path.suffix.lower(), DEFAULT_CONTENT_TYPE)


def make_etag(size: int, mtime: float) -> str:
    """Weak validator from size and modification time (ms), both hex."""
    return f'W/"{size:x}-{int(mtime * 1000):x}"'


def _etag_matches(if_none_match: str, etag: str) -> bool:
    if if_none_match.strip() == "*":
        return True
    # Weak comparison: W/ prefix ignored on both sides
    opaque = etag[2:] if etag.startswith("W/") else etag
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == opaque:
            return True
    return False


def _not_modified_since(if_modified_since: str, mtime: float) -> bool:
    try:
        since = parsedate_to_datetime(if_modified_since)
    except (TypeError, ValueError, IndexError):
        return False
    if since is None:
        return False
    return int(mtime) <= int(since.timestamp())


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


@dataclass
class ServedFile:
    status: int  # 200 or 304
    path: Path
    media_type: str
    size: int
    headers: dict[str, str] = field(default_factory=dict)


class FileGateway:
    def __init__(self, store: SessionStore):
        self.store = store

    def resolve(self, session_id: str, segments: Sequence[str]) -> Path:
        """Gates 1-5: id shape, session existence, per-segment decode, confinement, regular file."""
        if not is_session_id(session_id):
            raise ValidationError("Invalid session id")
        handle = self.store.open(session_id)
        root = os.path.abspath(handle.root)

        decoded = [unquote(s) for s in segments if s != ""]
        if not decoded:
            raise NotFoundError("File not found")
        if any("\x00" in s for s in decoded):
            raise ForbiddenError("Forbidden")
        normalized = os.path.normpath(os.path.join(root, *decoded))
        if not _is_within(normalized, root):
            logger.warning("Blocked path escape for session %s: %r", session_id, "/".join(segments))
            raise ForbiddenError("Forbidden")
        # A symlink inside the root must not lead outside of it
        if not _is_within(os.path.realpath(normalized), os.path.realpath(root)):
            logger.warning("Blocked symlink escape for session %s: %r", session_id, "/".join(segments))
            raise ForbiddenError("Forbidden")

        path = Path(normalized)
        if not path.is_file():
            raise NotFoundError("File not found")
        return path

    def serve(
        self,
        session_id: str,
        segments: Sequence[str],
        if_none_match: Optional[str] = None,
        if_modified_since: Optional[str] = None,
    ) -> ServedFile:
        path = self.resolve(session_id, segments)
        try:
            st = path.stat()
        except OSError:
            raise NotFoundError("File not found")

        etag = make_etag(st.st_size, st.st_mtime)
        media_type = content_type_for(path)
        headers = {
            "ETag": etag,
            "Last-Modified": formatdate(st.st_mtime, usegmt=True),
            "Cache-Control": CACHE_CONTROL,
            "X-Content-Type-Options": "nosniff",
            "Content-Type": media_type,
        }
        if if_none_match:
            not_modified = _etag_matches(if_none_match, etag)
        elif if_modified_since:
            not_modified = _not_modified_since(if_modified_since, st.st_mtime)
        else:
            not_modified = False
        if not_modified:
            return ServedFile(status=304, path=path, media_type=media_type, size=st.st_size, headers=headers)

        headers["Content-Length"] = str(st.st_size)
        if media_type == "application/zip":
            headers["Content-Disposition"] = f'attachment; filename="{path.name}"'
        return ServedFile(status=200, path=path, media_type=media_type, size=st.st_size, headers=headers)
