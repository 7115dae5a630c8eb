"""Validate and persist client uploads into a session's uploads area.

A batch is validated as a whole before anything touches disk; if any file is
rejected nothing is written. Write failures after validation roll back the
files already written for the batch.
"""
import base64
import binascii
import contextlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from pixelpress import config
from pixelpress.errors import SessionNotFoundError, StorageError, ValidationError
from pixelpress.session.models import SessionHandle, UploadedFile
from pixelpress.session.store import SessionStore

logger = logging.getLogger("pixelpress.uploads")

RESERVED_NAME_RE = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE)
INVALID_NAME_CHARS_RE = re.compile(r'[<>:"|?*\x00-\x1f]')
UNSAFE_STORED_CHARS_RE = re.compile(r'[/\\<>:"|?*\x00-\x1f\s&!@#$%^()]')
BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")

_MIME_TO_EXT = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/gif": ".gif",
    "image/tiff": ".tiff",
    "image/bmp": ".bmp",
}

_MIME_EXTENSIONS = {
    "image/jpeg": (".jpg", ".jpeg"),
    "image/jpg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "image/gif": (".gif",),
    "image/webp": (".webp",),
    "image/tiff": (".tiff", ".tif"),
    "image/bmp": (".bmp",),
    "image/svg+xml": (".svg",),
}


@dataclass
class UploadPayload:
    """One client file. ``data`` is raw bytes, or a base64 string from JSON clients."""

    name: str
    data: Union[bytes, str]
    mime_type: str


@dataclass(frozen=True)
class SavedFile:
    original_name: str
    saved_path: Path
    stored_path: str  # relative to the session root
    mime_type: str
    size: int


def ext_for_mime(mime: str) -> str:
    return _MIME_TO_EXT.get(mime.lower(), "")


def filename_problems(name: str) -> list[str]:
    """Reasons a client-supplied filename is unacceptable (empty list when fine)."""
    problems = []
    if not name or not name.strip():
        problems.append("filename is empty")
        return problems
    if len(name) > config.MAX_FILENAME_LENGTH:
        problems.append(f"filename is longer than {config.MAX_FILENAME_LENGTH} characters")
    if ".." in name:
        problems.append("filename contains a path traversal sequence")
    if INVALID_NAME_CHARS_RE.search(name):
        problems.append("filename contains control or reserved characters")
    base = re.split(r"[/\\]", name)[-1]
    if RESERVED_NAME_RE.match(name) or RESERVED_NAME_RE.match(base):
        problems.append("filename is a reserved device name")
    return problems


def sanitize_filename(name: str) -> str:
    """Filesystem-safe stem derived from a client name; never empty."""
    cleaned = UNSAFE_STORED_CHARS_RE.sub("_", name).strip(".")
    if RESERVED_NAME_RE.match(cleaned):
        cleaned = f"_{cleaned}"
    return cleaned[:200] or "file"


def decode_payload(data: Union[bytes, str]) -> bytes:
    """Decode a base64 payload (whitespace tolerated). Raises ValueError if malformed."""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    compact = "".join(data.split())
    if not compact:
        return b""
    if not BASE64_RE.match(compact) or len(compact) % 4 != 0:
        raise ValueError("malformed or truncated base64 payload")
    try:
        return base64.b64decode(compact, validate=True)
    except binascii.Error as e:
        raise ValueError(f"malformed base64 payload: {e}") from e


class UploadIngestor:
    def __init__(self, store: SessionStore, allowed_mime_types: Iterable[str] = config.PICTURE_PRESS_MIME_TYPES):
        self.store = store
        self.allowed_mime_types = {m.lower() for m in allowed_mime_types}

    def is_allowed_mime(self, mime: str) -> bool:
        return (mime or "").lower() in self.allowed_mime_types

    def validate(
        self,
        files: list[UploadPayload],
        max_bytes_per_file: int,
        max_total_bytes: int,
    ) -> list[bytes]:
        """Check the whole batch; returns decoded payloads or raises with every problem found."""
        problems: list[str] = []
        decoded: list[bytes] = []
        if not files:
            raise ValidationError("At least one file is required")
        if len(files) > config.MAX_FILES_PER_UPLOAD:
            problems.append(f"Too many files ({len(files)}); maximum is {config.MAX_FILES_PER_UPLOAD}")

        total = 0
        for index, f in enumerate(files):
            prefix = f"File {index + 1} ({f.name!r})"
            for p in filename_problems(f.name):
                problems.append(f"{prefix}: {p}")
            mime = (f.mime_type or "").lower()
            if not self.is_allowed_mime(mime):
                problems.append(f"{prefix}: unsupported file type {f.mime_type!r}")
            else:
                ext = Path(f.name or "").suffix.lower()
                expected = _MIME_EXTENSIONS.get(mime)
                if ext and expected and ext not in expected:
                    problems.append(f"{prefix}: extension {ext!r} does not match type {f.mime_type!r}")
            try:
                buf = decode_payload(f.data)
            except ValueError as e:
                problems.append(f"{prefix}: {e}")
                decoded.append(b"")
                continue
            size = len(buf)
            total += size
            if size == 0:
                problems.append(f"{prefix}: file is empty")
            elif size > max_bytes_per_file:
                problems.append(f"{prefix}: {size} bytes exceeds the {max_bytes_per_file} byte limit")
            elif size < config.MIN_UPLOAD_BYTES:
                problems.append(f"{prefix}: {size} bytes is suspiciously small; the file may be truncated")
            decoded.append(buf)

        if total > max_total_bytes:
            problems.append(f"Total upload size {total} bytes exceeds the {max_total_bytes} byte limit")
        if problems:
            raise ValidationError(problems)
        return decoded

    def save_uploads(
        self,
        session_id: str,
        files: list[UploadPayload],
        max_bytes_per_file: int = config.MAX_UPLOAD_FILE_BYTES,
        max_total_bytes: int = config.MAX_UPLOAD_TOTAL_BYTES,
    ) -> list[SavedFile]:
        """Persist a validated batch and append it to the session metadata."""
        decoded = self.validate(files, max_bytes_per_file, max_total_bytes)
        handle = self.store.open(session_id)
        # Index allocation and the metadata append must not interleave with another batch
        with self.store.metadata_transaction():
            offset = len(self.store.read_metadata(session_id).uploaded_files)
            written: list[Path] = []
            saved: list[SavedFile] = []
            try:
                for i, (f, buf) in enumerate(zip(files, decoded)):
                    dest = self._destination(handle, f, offset + i)
                    with open(dest, "xb") as out:
                        written.append(dest)
                        out.write(buf)
                    saved.append(SavedFile(
                        original_name=f.name,
                        saved_path=dest,
                        stored_path=handle.relative(dest),
                        mime_type=f.mime_type.lower(),
                        size=len(buf),
                    ))
                self.store.append_uploads(session_id, [
                    UploadedFile(
                        original_name=s.original_name,
                        stored_path=str(s.saved_path),
                        mime_type=s.mime_type,
                        size=s.size,
                    )
                    for s in saved
                ])
            except (OSError, StorageError, SessionNotFoundError) as e:
                self._rollback(written)
                logger.exception("Upload failed for session %s: %s", session_id, e)
                if isinstance(e, OSError):
                    raise StorageError(f"Upload failed: {e}") from e
                raise
        logger.info("Saved %s upload(s) to session %s", len(saved), session_id)
        return saved

    @staticmethod
    def _destination(handle: SessionHandle, f: UploadPayload, index: int) -> Path:
        stem = Path(f.name.replace("\\", "/")).name
        ext = ext_for_mime(f.mime_type) or Path(stem).suffix.lower()
        stem = stem[: -len(Path(stem).suffix)] if Path(stem).suffix else stem
        return handle.uploads_dir / f"original-{index}-{sanitize_filename(stem)}{ext}"

    @staticmethod
    def _rollback(paths: list[Path]) -> None:
        for p in paths:
            with contextlib.suppress(OSError):
                p.unlink(missing_ok=True)


def saved_file_dict(saved: SavedFile, url: Optional[str] = None) -> dict:
    out = {
        "original_name": saved.original_name,
        "stored_path": saved.stored_path,
        "mime_type": saved.mime_type,
        "size": saved.size,
    }
    if url:
        out["preview_url"] = url
    return out
