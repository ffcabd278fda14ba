from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class FailureReason(str, Enum):
    TOO_LARGE = "TooLarge"
    SERVICE_FAILURE = "ServiceFailure"
    LOCAL_IO_ERROR = "LocalIOError"


class TaskOutcome(str, Enum):
    UPLOADED = "uploaded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FileRecord:
    path: str
    absolute_path: Path
    size: int


@dataclass(frozen=True, slots=True)
class BackupJob:
    source_directory: Path
    bucket: str
    key_prefix: str = ""

    def object_key(self, relative_path: str) -> str:
        parts = [part.strip("/") for part in (self.key_prefix, relative_path)]
        return "/".join(part for part in parts if part)


@dataclass(frozen=True, slots=True)
class RemoteObjectMetadata:
    exists: bool
    etag: str | None = None


@dataclass(frozen=True, slots=True)
class ChecksumDigest:
    hex: str
    base64: str

    @property
    def quoted_etag(self) -> str:
        # S3 quotes the etag of single-request puts.
        return f'"{self.hex}"'


@dataclass(frozen=True, slots=True)
class ProgressState:
    total_bytes: int
    completed_bytes: int

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 1.0
        return self.completed_bytes / self.total_bytes


@dataclass(frozen=True, slots=True)
class FailureRecord:
    path: str
    reason: FailureReason
    message: str


@dataclass(frozen=True, slots=True)
class FailureReport:
    records: tuple[FailureRecord, ...] = ()

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)

    @property
    def paths(self) -> list[str]:
        return sorted(record.path for record in self.records)

    def by_reason(self) -> dict[FailureReason, int]:
        return dict(Counter(record.reason for record in self.records))

    def get(self, path: str) -> FailureRecord | None:
        for record in self.records:
            if record.path == path:
                return record
        return None


@dataclass(slots=True)
class TaskResult:
    path: str
    size: int
    outcome: TaskOutcome
    failure: FailureRecord | None = None


@dataclass(slots=True)
class BackupReport:
    total_files: int
    total_bytes: int
    completed_bytes: int
    uploaded_paths: list[str] = field(default_factory=list)
    skipped_paths: list[str] = field(default_factory=list)
    failures: FailureReport = field(default_factory=FailureReport)

    @property
    def ok(self) -> bool:
        return not self.failures
