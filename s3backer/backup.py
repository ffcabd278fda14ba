from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Iterator

from rich.filesize import decimal

from s3backer.change_detection import ChangeAction, ChangeKind, detect_change
from s3backer.checksum import digest_stream
from s3backer.config import DEFAULT_STORAGE_CLASS, BackerConfig, resolve_worker_count
from s3backer.filters import PathFilter
from s3backer.models import (
    BackupJob,
    BackupReport,
    FailureReason,
    FailureRecord,
    FileRecord,
    ProgressState,
    TaskOutcome,
    TaskResult,
)
from s3backer.progress import FailureCollector, ProgressAggregator
from s3backer.scanner import SizeIndex, discover_files, index_sizes
from s3backer.state_db import load_last_failures, record_run
from s3backer.store import ObjectStoreClient, PutOutcome


logger = logging.getLogger(__name__)

FileDoneCallback = Callable[[TaskResult], None]
IndexedCallback = Callable[[SizeIndex], None]


def _open_source(record: FileRecord) -> BinaryIO:
    return record.absolute_path.open("rb")


def _failed(record: FileRecord, reason: FailureReason, message: str) -> TaskResult:
    return TaskResult(
        path=record.path,
        size=record.size,
        outcome=TaskOutcome.FAILED,
        failure=FailureRecord(path=record.path, reason=reason, message=message),
    )


def _unreadable(record: FileRecord, exc: OSError, log: logging.Logger) -> TaskResult:
    message = exc.strerror or str(exc)
    log.error("Cannot read '%s': %s", record.path, message)
    return _failed(record, FailureReason.LOCAL_IO_ERROR, message)


def _unreachable(record: FileRecord, exc: OSError, log: logging.Logger) -> TaskResult:
    message = exc.strerror or str(exc)
    log.error("Failed to reach the bucket for '%s': %s", record.path, message)
    return _failed(record, FailureReason.SERVICE_FAILURE, message)


def backup_file(
    job: BackupJob,
    record: FileRecord,
    store: ObjectStoreClient,
    *,
    storage_class: str = DEFAULT_STORAGE_CLASS,
    log: logging.Logger = logger,
) -> TaskResult:
    """Back up one file. Never raises for per-file problems.

    OSErrors from opening or reading the file are ``LocalIOError``; OSErrors
    raised by the store (timeouts, resets) are ``ServiceFailure``.
    """
    key = job.object_key(record.path)
    try:
        fh = _open_source(record)
    except OSError as exc:
        return _unreadable(record, exc, log)

    with fh:
        try:
            digest = digest_stream(fh)
        except OSError as exc:
            return _unreadable(record, exc, log)

        decision = detect_change(store, job.bucket, key, digest)
        if decision.action is ChangeAction.UNKNOWN:
            log.error("Cannot check '%s' in the bucket: %s", record.path, decision.message)
            return _failed(record, FailureReason.SERVICE_FAILURE, decision.message)
        if not decision.should_upload:
            log.info("Object '%s' already exists and matches the local file", record.path)
            return TaskResult(record.path, record.size, TaskOutcome.SKIPPED)
        if decision.kind is ChangeKind.MODIFIED:
            log.info("Object '%s' exists but differs from the local file", record.path)

        log.info("Backing up %s (%s)", record.path, decimal(record.size))
        try:
            fh.seek(0)
        except OSError as exc:
            return _unreadable(record, exc, log)
        try:
            result = store.put_object(
                job.bucket,
                key,
                fh,
                storage_class=storage_class,
                content_md5=digest.base64,
                content_length=record.size,
            )
        except OSError as exc:
            return _unreachable(record, exc, log)

    if result.outcome is PutOutcome.SUCCESS:
        return TaskResult(record.path, record.size, TaskOutcome.UPLOADED)
    if result.outcome is PutOutcome.TOO_LARGE:
        log.error(
            "File '%s' is too large to be uploaded in a single request, skipping", record.path
        )
        return _failed(record, FailureReason.TOO_LARGE, result.message)
    log.error("Failed to upload '%s': %s", record.path, result.message)
    return _failed(record, FailureReason.SERVICE_FAILURE, result.message)


def _iter_results(
    records: list[FileRecord],
    task: Callable[[FileRecord], TaskResult],
    *,
    max_workers: int,
    log: logging.Logger,
) -> Iterator[TaskResult]:
    """Yield one result per record, in completion order."""
    if max_workers <= 1 or len(records) <= 1:
        for record in records:
            yield _settle(record, lambda r=record: task(r), log)
        return

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="s3backer-put") as executor:
        futures: dict[Future[TaskResult], FileRecord] = {
            executor.submit(task, record): record for record in records
        }
        for future in as_completed(futures):
            yield _settle(futures[future], future.result, log)


def _settle(record: FileRecord, get_result: Callable[[], TaskResult], log: logging.Logger) -> TaskResult:
    try:
        return get_result()
    except Exception as exc:
        # Keep the run going and the byte count whole even if a task breaks.
        log.exception("Unexpected error while backing up '%s'", record.path)
        return _failed(record, FailureReason.SERVICE_FAILURE, f"unexpected error: {exc}")


def run_backup(
    job: BackupJob,
    store: ObjectStoreClient,
    *,
    workers: int | None = None,
    storage_class: str = DEFAULT_STORAGE_CLASS,
    path_filter: PathFilter | None = None,
    only_paths: Iterable[str] | None = None,
    log: logging.Logger | None = None,
    on_indexed: IndexedCallback | None = None,
    on_progress: Callable[[ProgressState], None] | None = None,
    on_file_done: FileDoneCallback | None = None,
) -> BackupReport:
    """Back up ``job.source_directory`` into ``job.bucket``.

    Raises DiscoveryError or SizingError before any upload when the tree
    cannot be listed or sized. Per-file failures are returned in
    ``BackupReport.failures`` and never abort the run.
    """
    log = log or logger
    root = Path(job.source_directory).resolve()
    max_workers = resolve_worker_count(workers)
    log.info("Preparing to back up '%s' to 's3://%s/%s'", root, job.bucket, job.key_prefix)

    unreadable: dict[str, OSError] = {}
    paths = discover_files(
        root, path_filter, on_error=lambda path, exc: unreadable.setdefault(path, exc)
    )
    if only_paths is not None:
        wanted = set(only_paths)
        paths = [path for path in paths if path in wanted]
        unreadable = {path: exc for path, exc in unreadable.items() if path in wanted}
    log.info("Found %d file(s)", len(paths))

    log.info("Computing total size...")
    index = index_sizes(root, paths, workers=max_workers)
    log.info("Total size: %s", decimal(index.total_bytes))
    if on_indexed is not None:
        on_indexed(index)

    progress = ProgressAggregator(index.total_bytes)
    if on_progress is not None:
        progress.subscribe(on_progress)
    failures = FailureCollector()
    for path, exc in sorted(unreadable.items()):
        # Entries the walk could not read carry no bytes but stay visible in the report.
        failures.record(
            FailureRecord(path, FailureReason.LOCAL_IO_ERROR, exc.strerror or str(exc))
        )
    uploaded: list[str] = []
    skipped: list[str] = []

    def task(record: FileRecord) -> TaskResult:
        return backup_file(job, record, store, storage_class=storage_class, log=log)

    for result in _iter_results(index.ordered(), task, max_workers=max_workers, log=log):
        progress.complete(result.path, result.size)
        if result.failure is not None:
            failures.record(result.failure)
        elif result.outcome is TaskOutcome.UPLOADED:
            uploaded.append(result.path)
        else:
            skipped.append(result.path)
        if on_file_done is not None:
            on_file_done(result)

    report = BackupReport(
        total_files=len(index),
        total_bytes=index.total_bytes,
        completed_bytes=progress.completed_bytes,
        uploaded_paths=sorted(uploaded),
        skipped_paths=sorted(skipped),
        failures=failures.report(),
    )
    log.info(
        "Done: %d uploaded, %d unchanged, %d failed",
        len(report.uploaded_paths),
        len(report.skipped_paths),
        len(report.failures),
    )
    return report


async def backup_from_config(
    config: BackerConfig,
    store: ObjectStoreClient,
    *,
    workers: int | None = None,
    path_filter: PathFilter | None = None,
    retry_failed: bool = False,
    log: logging.Logger | None = None,
    on_indexed: IndexedCallback | None = None,
    on_progress: Callable[[ProgressState], None] | None = None,
    on_file_done: FileDoneCallback | None = None,
) -> BackupReport:
    """Run a configured backup and record it in the workspace state DB."""
    only_paths: list[str] | None = None
    if retry_failed:
        previous = await load_last_failures(config.state_db_path)
        only_paths = previous.paths
        (log or logger).info("Retrying %d file(s) that failed last run", len(only_paths))

    job = config.to_job()
    started_at = time.time()
    report = run_backup(
        job,
        store,
        workers=workers or config.workers,
        storage_class=config.storage_class,
        path_filter=path_filter,
        only_paths=only_paths,
        log=log,
        on_indexed=on_indexed,
        on_progress=on_progress,
        on_file_done=on_file_done,
    )
    await record_run(
        config.state_db_path,
        job,
        report,
        started_at=started_at,
        finished_at=time.time(),
    )
    return report
