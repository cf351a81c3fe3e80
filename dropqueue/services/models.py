"""Data model for the upload queue: files, job records and upload outcomes."""

import io
import mimetypes
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import IO, Any

from werkzeug.datastructures import FileStorage

from dropqueue.services.utils import format_file_size

IdentityKey = tuple[str, int]


class JobStatus(Enum):
    """Lifecycle status of a queued upload job."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeStatus(Enum):
    """Terminal result of one upload attempt."""

    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class FileRef:
    """Immutable handle to the bytes of one file to upload.

    Exactly one of ``path`` or ``data`` is set.
    """

    name: str
    size: int
    content_type: str = "application/octet-stream"
    path: str | None = None
    data: bytes | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if (self.path is None) == (self.data is None):
            raise ValueError("FileRef needs exactly one of path or data")

    @classmethod
    def from_path(cls, path_str: str) -> "FileRef":
        """Build a reference to a local file (raises FileNotFoundError if missing)."""
        path = Path(path_str)
        if not path.is_file():
            raise FileNotFoundError(path_str)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(
            name=path.name,
            size=path.stat().st_size,
            content_type=content_type,
            path=str(path.absolute()),
        )

    @classmethod
    def from_bytes(
        cls, name: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> "FileRef":
        """Build a reference to an in-memory payload."""
        return cls(name=name, size=len(data), content_type=content_type, data=data)

    @classmethod
    def from_upload(cls, upload: FileStorage) -> "FileRef":
        """Build a reference from a file posted to the Flask app."""
        data = upload.read()
        name = Path(upload.filename or "upload.bin").name
        return cls.from_bytes(name, data, upload.mimetype or "application/octet-stream")

    @property
    def identity_key(self) -> IdentityKey:
        """(name, size) pair used to detect duplicate upload intents."""
        return (self.name, self.size)

    def open(self) -> IO[bytes]:
        """Open a fresh binary stream over the payload."""
        if self.data is not None:
            return io.BytesIO(self.data)
        assert self.path is not None
        return open(self.path, "rb")


@dataclass(frozen=True)
class RemoteFile:
    """Descriptor of a file stored by the remote upload service."""

    url: str
    filename: str
    size: int
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, payload: dict[str, Any], file: FileRef) -> "RemoteFile":
        """Build from one element of the service's ``files`` array."""
        extra = {k: v for k, v in payload.items() if k not in ("url", "filename", "size")}
        try:
            size = int(payload.get("size") or file.size)
        except (TypeError, ValueError):
            size = file.size
        return cls(
            url=str(payload.get("url") or "#"),
            filename=str(payload.get("filename") or file.name),
            size=size,
            extra=extra,
        )

    @classmethod
    def placeholder(cls, file: FileRef) -> "RemoteFile":
        """Local stand-in used when the service omits a descriptor."""
        return cls(url="#", filename=file.name, size=file.size)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {**self.extra, "url": self.url, "filename": self.filename, "size": self.size}


@dataclass(frozen=True)
class Outcome:
    """Terminal result of one upload attempt."""

    status: OutcomeStatus
    attempt: int
    result: RemoteFile | None = None
    error: str | None = None
    error_kind: str | None = None  # transport | remote_rejection | unknown
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    @classmethod
    def completed(cls, attempt: int, result: RemoteFile) -> "Outcome":
        return cls(status=OutcomeStatus.COMPLETED, attempt=attempt, result=result)

    @classmethod
    def failure(cls, attempt: int, error: str, error_kind: str) -> "Outcome":
        return cls(status=OutcomeStatus.FAILED, attempt=attempt, error=error, error_kind=error_kind)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "attempt": self.attempt,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "error_kind": self.error_kind,
            "finished_at": self.finished_at.isoformat(),
        }


@dataclass(frozen=True)
class JobRecord:
    """Tracked state of one file's upload lifecycle.

    Records are values: every change goes through ``dataclasses.replace`` in
    the queue store, never through attribute assignment.
    """

    id: str
    file: FileRef
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    error: str | None = None
    result: RemoteFile | None = None
    attempt: int = 1
    history: tuple[Outcome, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None  # When the current attempt was admitted
    completed_at: datetime | None = None  # When the current attempt finished

    @property
    def identity_key(self) -> IdentityKey:
        return self.file.identity_key

    @property
    def filename(self) -> str:
        return self.file.name

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def upload_duration_seconds(self) -> float | None:
        """Duration of the current attempt in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "filename": self.file.name,
            "file_size": self.file.size,
            "file_size_formatted": format_file_size(self.file.size),
            "content_type": self.file.content_type,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
            "attempt": self.attempt,
            "history": [o.to_dict() for o in self.history],
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "upload_duration_seconds": self.upload_duration_seconds,
        }
