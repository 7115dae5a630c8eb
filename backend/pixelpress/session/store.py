"""Filesystem-backed session workspaces.

Each session is a directory named by its UUID holding ``uploads/``, an outputs
directory, ``session.json`` (metadata) and ``progress.json``. Both documents
are written via temp file + rename so readers never see a torn file.
"""
import contextlib
import json
import logging
import os
import re
import shutil
import tempfile
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from pixelpress.errors import SessionNotFoundError, StorageError
from pixelpress.session.models import (
    METADATA_FIELDS,
    METADATA_FILENAME,
    UPLOADS_DIRNAME,
    Progress,
    SessionHandle,
    SessionMetadata,
    SessionStatus,
    UploadedFile,
)

logger = logging.getLogger("pixelpress.session")

SESSION_ID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
DEFAULT_TTL_SECONDS = 24 * 60 * 60


def is_session_id(value: str) -> bool:
    return bool(value) and SESSION_ID_RE.match(value) is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def write_text_atomic(path: Path, text: str) -> None:
    """Write to a unique temp file beside ``path`` then rename over it."""
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


def write_json_atomic(path: Path, data: Any) -> None:
    write_text_atomic(path, json.dumps(data, indent=2))


def read_json_safe(path: Path) -> Optional[Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


class SessionStore:
    """Creates, reads, updates and expires session workspaces under ``root``."""

    def __init__(
        self,
        root: Path,
        outputs_dirname: str = "converted",
        tool: str = "picture-press",
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.root = Path(root)
        self.outputs_dirname = outputs_dirname
        self.tool = tool
        self.default_ttl = default_ttl
        self._clock = clock
        self._meta_lock = threading.RLock()
        self._last_sweep_at: Optional[float] = None

    def _handle(self, session_id: str) -> SessionHandle:
        root = self.root / session_id
        return SessionHandle(
            id=session_id,
            root=root,
            uploads_dir=root / UPLOADS_DIRNAME,
            outputs_dir=root / self.outputs_dirname,
        )

    def _default_metadata(self, session_id: str) -> SessionMetadata:
        now = self._clock()
        return SessionMetadata(
            id=session_id,
            created_at=now.isoformat(),
            expires_at=(now + timedelta(seconds=self.default_ttl)).isoformat(),
        )

    def create_session(self, ttl: Optional[float] = None) -> SessionHandle:
        """Create a fresh workspace with initial metadata and progress."""
        ttl = self.default_ttl if ttl is None else ttl
        session_id = str(uuid.uuid4())
        handle = self._handle(session_id)
        now = self._clock()
        meta = SessionMetadata(
            id=session_id,
            created_at=now.isoformat(),
            expires_at=(now + timedelta(seconds=ttl)).isoformat(),
            status=SessionStatus.IDLE,
        )
        try:
            handle.uploads_dir.mkdir(parents=True, exist_ok=True)
            handle.outputs_dir.mkdir(parents=True, exist_ok=True)
            write_json_atomic(handle.metadata_path, meta.to_dict())
            write_json_atomic(handle.progress_path, Progress().to_dict())
        except OSError as e:
            logger.exception("Could not create %s session %s", self.tool, session_id)
            self.destroy(session_id)
            raise StorageError(f"Failed to create session: {e}") from e
        logger.info("Created %s session %s (ttl=%ss)", self.tool, session_id, ttl)
        return handle

    def open(self, session_id: str) -> SessionHandle:
        """Resolve an existing session. Re-creates missing subdirectories."""
        if not is_session_id(session_id):
            raise SessionNotFoundError(session_id)
        handle = self._handle(session_id)
        if not handle.root.is_dir():
            raise SessionNotFoundError(session_id)
        try:
            handle.uploads_dir.mkdir(exist_ok=True)
            handle.outputs_dir.mkdir(exist_ok=True)
        except FileNotFoundError as e:
            # Root removed between the check and mkdir
            raise SessionNotFoundError(session_id) from e
        except OSError as e:
            raise StorageError(f"Failed to open session: {e}") from e
        return handle

    def exists(self, session_id: str) -> bool:
        return is_session_id(session_id) and self._handle(session_id).root.is_dir()

    def read_metadata(self, session_id: str) -> SessionMetadata:
        handle = self.open(session_id)
        data = read_json_safe(handle.metadata_path)
        if isinstance(data, dict):
            try:
                meta = SessionMetadata.from_dict(data)
                meta.id = session_id
                return meta
            except (KeyError, TypeError, ValueError):
                logger.warning("Unreadable metadata for session %s; using defaults", session_id)
        return self._default_metadata(session_id)

    def update_metadata(self, session_id: str, patch: dict[str, Any]) -> SessionMetadata:
        """Merge ``patch`` (document keys) over the stored metadata. Identity is re-stamped."""
        unknown = set(patch) - set(METADATA_FIELDS)
        if unknown:
            raise ValueError(f"Unknown metadata fields: {sorted(unknown)}")
        with self._meta_lock:
            cur = self.read_metadata(session_id).to_dict()
            for key, value in patch.items():
                if isinstance(value, SessionStatus):
                    value = value.value
                elif key == "uploadedFiles":
                    value = [f.to_dict() if isinstance(f, UploadedFile) else f for f in value]
                cur[key] = value
            cur["id"] = session_id
            meta = SessionMetadata.from_dict(cur)
            self._write_metadata(session_id, meta)
        return meta

    @contextlib.contextmanager
    def metadata_transaction(self) -> Iterator[None]:
        """Hold the metadata lock across several reads, file writes and updates."""
        with self._meta_lock:
            yield

    def append_uploads(self, session_id: str, files: Iterable[UploadedFile]) -> SessionMetadata:
        with self._meta_lock:
            meta = self.read_metadata(session_id)
            meta.uploaded_files.extend(files)
            self._write_metadata(session_id, meta)
        return meta

    def _write_metadata(self, session_id: str, meta: SessionMetadata) -> None:
        handle = self._handle(session_id)
        try:
            write_json_atomic(handle.metadata_path, meta.to_dict())
        except FileNotFoundError as e:
            raise SessionNotFoundError(session_id) from e
        except OSError as e:
            raise StorageError(f"Failed to write session metadata: {e}") from e

    def read_progress(self, session_id: str) -> Progress:
        """Never raises on a missing or corrupt document; progress is advisory."""
        handle = self.open(session_id)
        data = read_json_safe(handle.progress_path)
        if isinstance(data, dict):
            try:
                return Progress.from_dict(data)
            except (TypeError, ValueError):
                pass
        return Progress()

    def write_progress(self, session_id: str, progress: Progress) -> None:
        handle = self._handle(session_id)
        try:
            write_json_atomic(handle.progress_path, progress.to_dict())
        except FileNotFoundError as e:
            raise SessionNotFoundError(session_id) from e
        except OSError as e:
            raise StorageError(f"Failed to write progress: {e}") from e

    def destroy(self, session_id: str) -> bool:
        """Remove the session root. Best-effort: never raises. Returns True if removed."""
        if not is_session_id(session_id):
            logger.warning("Refusing to remove %s session with malformed id %r", self.tool, session_id)
            return False
        root = self._handle(session_id).root
        if not root.exists():
            return False
        try:
            shutil.rmtree(root)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("[%s] cleanup warning for %s: %s", self.tool, session_id, e)
            return False
        logger.info("Removed %s session %s", self.tool, session_id)
        return True

    def is_expired(self, meta: SessionMetadata, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        try:
            return parse_timestamp(meta.expires_at) < now
        except ValueError:
            return False

    def sweep_expired(self) -> list[str]:
        """Destroy every session whose expiry has passed. Returns removed ids."""
        removed: list[str] = []
        if not self.root.is_dir():
            return removed
        now = self._clock()
        try:
            entries = list(os.scandir(self.root))
        except OSError as e:
            raise StorageError(f"Failed to list sessions: {e}") from e
        for entry in entries:
            if not entry.is_dir(follow_symlinks=False) or not is_session_id(entry.name):
                continue
            data = read_json_safe(Path(entry.path) / METADATA_FILENAME)
            if not isinstance(data, dict) or "expiresAt" not in data:
                continue
            try:
                expired = parse_timestamp(str(data["expiresAt"])) < now
            except ValueError:
                continue
            if expired and self.destroy(entry.name):
                removed.append(entry.name)
        if removed:
            logger.info("TTL sweep removed %s %s session(s)", len(removed), self.tool)
        return removed

    def maybe_sweep_expired(self, min_interval: float = 60 * 60) -> Optional[list[str]]:
        """Run the sweep at most once per ``min_interval`` seconds for this store.

        Returns None when throttled or when the sweep itself failed.
        """
        now = time.monotonic()
        if self._last_sweep_at is not None and now - self._last_sweep_at < min_interval:
            return None
        self._last_sweep_at = now
        try:
            return self.sweep_expired()
        except Exception as e:
            logger.warning("[%s] opportunistic TTL cleanup failed: %s", self.tool, e)
            return None
