from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from s3backer.change_detection import ChangeDecision, ChangeKind, detect_change
from s3backer.checksum import digest_file
from s3backer.config import resolve_worker_count
from s3backer.filters import PathFilter
from s3backer.models import BackupJob, FileRecord
from s3backer.scanner import discover_files, index_sizes
from s3backer.store import ObjectStoreClient


@dataclass(slots=True)
class StatusResult:
    new_files: list[FileRecord]
    modified_files: list[FileRecord]
    unchanged_files: list[FileRecord]
    unreachable: dict[str, str]
    unreadable: dict[str, str]

    @property
    def pending_bytes(self) -> int:
        return sum(record.size for record in [*self.new_files, *self.modified_files])

    @property
    def has_changes(self) -> bool:
        return bool(self.new_files or self.modified_files)


def _decide(job: BackupJob, record: FileRecord, store: ObjectStoreClient) -> ChangeDecision | OSError:
    try:
        digest = digest_file(record.absolute_path)
    except OSError as exc:
        return exc
    return detect_change(store, job.bucket, job.object_key(record.path), digest)


def compute_status(
    job: BackupJob,
    store: ObjectStoreClient,
    *,
    workers: int | None = None,
    path_filter: PathFilter | None = None,
) -> StatusResult:
    """Classify every local file against the bucket without uploading."""
    root = Path(job.source_directory).resolve()
    max_workers = resolve_worker_count(workers)
    result = StatusResult([], [], [], {}, {})
    paths = discover_files(
        root,
        path_filter,
        on_error=lambda path, exc: result.unreadable.setdefault(path, exc.strerror or str(exc)),
    )
    index = index_sizes(root, paths, workers=max_workers)
    records = index.ordered()

    if not records:
        return result

    with ThreadPoolExecutor(
        max_workers=min(max_workers, len(records)), thread_name_prefix="s3backer-status"
    ) as executor:
        decisions = list(executor.map(lambda r: _decide(job, r, store), records))

    for record, decision in zip(records, decisions):
        if isinstance(decision, OSError):
            result.unreadable[record.path] = decision.strerror or str(decision)
        elif decision.kind is ChangeKind.NEW:
            result.new_files.append(record)
        elif decision.kind is ChangeKind.MODIFIED:
            result.modified_files.append(record)
        elif decision.kind is ChangeKind.UNCHANGED:
            result.unchanged_files.append(record)
        else:
            result.unreachable[record.path] = decision.message
    return result
