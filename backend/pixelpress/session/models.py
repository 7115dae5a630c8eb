"""Session documents persisted as JSON inside each session root."""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class SessionStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


UPLOADS_DIRNAME = "uploads"
PROGRESS_FILENAME = "progress.json"
METADATA_FILENAME = "session.json"


@dataclass(frozen=True)
class SessionHandle:
    """Resolved paths of one session workspace."""

    id: str
    root: Path
    uploads_dir: Path
    outputs_dir: Path

    @property
    def progress_path(self) -> Path:
        return self.root / PROGRESS_FILENAME

    @property
    def metadata_path(self) -> Path:
        return self.root / METADATA_FILENAME

    def relative(self, path: Path) -> str:
        """Path relative to the session root, always with forward slashes."""
        return Path(path).relative_to(self.root).as_posix()


@dataclass(frozen=True)
class UploadedFile:
    original_name: str
    stored_path: str
    mime_type: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalName": self.original_name,
            "storedPath": self.stored_path,
            "mimeType": self.mime_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UploadedFile":
        return cls(
            original_name=str(data.get("originalName", "")),
            stored_path=str(data.get("storedPath") or data.get("tempPath") or ""),
            mime_type=str(data.get("mimeType", "")),
            size=int(data.get("size", 0)),
        )


@dataclass
class SessionMetadata:
    id: str
    created_at: str
    expires_at: str
    status: SessionStatus = SessionStatus.IDLE
    uploaded_files: list[UploadedFile] = field(default_factory=list)
    job_options: Optional[dict[str, Any]] = None
    last_results: Optional[list[dict[str, Any]]] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "status": self.status.value,
            "uploadedFiles": [f.to_dict() for f in self.uploaded_files],
        }
        if self.job_options is not None:
            out["jobOptions"] = self.job_options
        if self.last_results is not None:
            out["lastResults"] = self.last_results
        if self.last_error is not None:
            out["lastError"] = self.last_error
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionMetadata":
        try:
            status = SessionStatus(data.get("status") or SessionStatus.IDLE.value)
        except ValueError:
            status = SessionStatus.IDLE
        return cls(
            id=str(data["id"]),
            created_at=str(data["createdAt"]),
            expires_at=str(data["expiresAt"]),
            status=status,
            uploaded_files=[UploadedFile.from_dict(f) for f in data.get("uploadedFiles") or []],
            job_options=data.get("jobOptions"),
            last_results=data.get("lastResults"),
            last_error=data.get("lastError"),
        )


# camelCase document key -> attribute, for merge-patch updates
METADATA_FIELDS = {
    "status": "status",
    "uploadedFiles": "uploaded_files",
    "jobOptions": "job_options",
    "lastResults": "last_results",
    "lastError": "last_error",
    "expiresAt": "expires_at",
}


@dataclass
class Progress:
    """Advisory progress snapshot; current <= total at every observation."""

    current: int = 0
    total: int = 0
    current_operation: str = "Idle"
    current_file: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "current": self.current,
            "total": self.total,
            "currentOperation": self.current_operation,
            "filesProcessed": self.current,
            "totalFiles": self.total,
        }
        if self.current_file is not None:
            out["currentFile"] = self.current_file
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Progress":
        total = max(0, int(data.get("total", 0)))
        current = max(0, min(int(data.get("current", 0)), total))
        current_file = data.get("currentFile")
        return cls(
            current=current,
            total=total,
            current_operation=str(data.get("currentOperation", "Idle")),
            current_file=str(current_file) if current_file is not None else None,
        )
