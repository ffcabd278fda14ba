from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

import s3backer.backup as backup_module
from s3backer.backup import backup_from_config, run_backup
from s3backer.config import BackerConfig
from s3backer.errors import DiscoveryError, SizingError
from s3backer.models import BackupJob, FailureReason, ProgressState, TaskOutcome
from s3backer.state_db import load_last_failures, load_last_run

from conftest import FakeObjectStore, write_tree


def _job(root: Path, prefix: str = "backups/host") -> BackupJob:
    return BackupJob(source_directory=root, bucket="bkt", key_prefix=prefix)


def test_first_run_uploads_every_file_to_archive_tier(source_tree: Path, store) -> None:
    report = run_backup(_job(source_tree), store, workers=4)

    assert store.put_keys == [
        "backups/host/a.txt",
        "backups/host/docs/deep/nested.bin",
        "backups/host/docs/readme.md",
        "backups/host/empty.dat",
    ]
    assert {call.storage_class for call in store.puts} == {"DEEP_ARCHIVE"}
    hello = next(call for call in store.puts if call.key == "backups/host/a.txt")
    assert hello.content_md5 == "XUFAKrxLKna5cZ2REBfFkg=="
    assert hello.data == b"hello"
    assert hello.content_length == 5
    assert report.ok
    assert report.uploaded_paths == ["a.txt", "docs/deep/nested.bin", "docs/readme.md", "empty.dat"]
    assert report.completed_bytes == report.total_bytes == 5 + 9 + 1024


def test_second_run_against_unchanged_tree_puts_nothing(source_tree: Path, store) -> None:
    run_backup(_job(source_tree), store, workers=4)
    store.puts.clear()

    report = run_backup(_job(source_tree), store, workers=4)

    assert store.puts == []
    assert report.skipped_paths == ["a.txt", "docs/deep/nested.bin", "docs/readme.md", "empty.dat"]
    assert report.completed_bytes == report.total_bytes


def test_changed_file_is_uploaded_exactly_once(source_tree: Path, store) -> None:
    run_backup(_job(source_tree), store)
    store.puts.clear()
    (source_tree / "a.txt").write_bytes(b"hello world")

    report = run_backup(_job(source_tree), store, workers=3)

    assert store.put_keys == ["backups/host/a.txt"]
    assert store.puts[0].content_md5 == "XrY7u+Ae7tCTyyK7j1rNww=="
    assert report.uploaded_paths == ["a.txt"]


def test_matching_remote_etag_skips_put(source_tree: Path, store) -> None:
    store.seed("bkt", "a.txt", b"hello")

    report = run_backup(_job(source_tree, prefix=""), store, workers=2)

    assert "a.txt" not in store.put_keys
    assert "a.txt" in report.skipped_paths


def test_differing_remote_etag_is_replaced(source_tree: Path, store) -> None:
    store.seed("bkt", "a.txt", b"stale")

    run_backup(_job(source_tree, prefix=""), store, workers=2)

    calls = [call for call in store.puts if call.key == "a.txt"]
    assert len(calls) == 1
    assert calls[0].content_md5 == "XUFAKrxLKna5cZ2REBfFkg=="


def test_too_large_file_fails_alone(source_tree: Path) -> None:
    store = FakeObjectStore(max_put_bytes=600)

    report = run_backup(_job(source_tree), store, workers=4)

    assert report.failures.paths == ["docs/deep/nested.bin"]
    assert report.failures.get("docs/deep/nested.bin").reason is FailureReason.TOO_LARGE
    assert report.uploaded_paths == ["a.txt", "docs/readme.md", "empty.dat"]
    assert report.completed_bytes == report.total_bytes


def test_service_failures_are_isolated(source_tree: Path, store) -> None:
    store.failing_head_keys.add("backups/host/a.txt")
    store.failing_put_keys.add("backups/host/docs/readme.md")

    report = run_backup(_job(source_tree), store, workers=4)

    assert report.failures.by_reason() == {FailureReason.SERVICE_FAILURE: 2}
    assert report.failures.paths == ["a.txt", "docs/readme.md"]
    assert "backups/host/a.txt" not in store.put_keys
    assert report.uploaded_paths == ["docs/deep/nested.bin", "empty.dat"]
    assert report.completed_bytes == report.total_bytes


def test_unreadable_file_is_a_local_io_failure(source_tree: Path, store, monkeypatch) -> None:
    real_open = backup_module._open_source

    def flaky_open(record):
        if record.path == "docs/readme.md":
            raise PermissionError(13, "Permission denied")
        return real_open(record)

    monkeypatch.setattr(backup_module, "_open_source", flaky_open)

    report = run_backup(_job(source_tree), store, workers=4)

    record = report.failures.get("docs/readme.md")
    assert record.reason is FailureReason.LOCAL_IO_ERROR
    assert record.message == "Permission denied"
    assert len(report.uploaded_paths) == 3
    assert report.completed_bytes == report.total_bytes


def test_unexpected_task_error_still_completes_progress(source_tree: Path) -> None:
    class BrokenStore(FakeObjectStore):
        def put_object(self, bucket, key, body, **kwargs):
            if key.endswith("a.txt"):
                raise RuntimeError("boom")
            return super().put_object(bucket, key, body, **kwargs)

    report = run_backup(_job(source_tree), BrokenStore(), workers=2)

    assert report.failures.get("a.txt").reason is FailureReason.SERVICE_FAILURE
    assert "boom" in report.failures.get("a.txt").message
    assert report.completed_bytes == report.total_bytes


def test_store_timeout_on_head_is_a_service_failure(source_tree: Path, caplog) -> None:
    class TimingOutStore(FakeObjectStore):
        def head_object(self, bucket, key):
            if key.endswith("a.txt"):
                raise TimeoutError(110, "Connection timed out")
            return super().head_object(bucket, key)

    store = TimingOutStore()
    report = run_backup(_job(source_tree), store, workers=2)

    record = report.failures.get("a.txt")
    assert record.reason is FailureReason.SERVICE_FAILURE
    assert record.message == "Connection timed out"
    assert "backups/host/a.txt" not in store.put_keys
    assert report.uploaded_paths == ["docs/deep/nested.bin", "docs/readme.md", "empty.dat"]
    assert report.completed_bytes == report.total_bytes
    assert "Cannot read" not in caplog.text


def test_connection_reset_during_put_is_a_service_failure(source_tree: Path) -> None:
    class ResettingStore(FakeObjectStore):
        def put_object(self, bucket, key, body, **kwargs):
            if key.endswith("readme.md"):
                raise ConnectionResetError(104, "Connection reset by peer")
            return super().put_object(bucket, key, body, **kwargs)

    report = run_backup(_job(source_tree), ResettingStore(), workers=1)

    record = report.failures.get("docs/readme.md")
    assert record.reason is FailureReason.SERVICE_FAILURE
    assert record.message == "Connection reset by peer"
    assert len(report.uploaded_paths) == 3


def test_unlistable_subdirectory_is_reported_not_dropped(
    source_tree: Path, store, monkeypatch
) -> None:
    denied = source_tree.resolve() / "docs" / "deep"
    real_scandir = os.scandir

    def scandir(path="."):
        if Path(path) == denied:
            raise PermissionError(13, "Permission denied", os.fspath(path))
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", scandir)

    report = run_backup(_job(source_tree), store, workers=2)

    assert not report.ok
    assert report.failures.get("docs/deep").reason is FailureReason.LOCAL_IO_ERROR
    assert report.uploaded_paths == ["a.txt", "docs/readme.md", "empty.dat"]
    assert report.completed_bytes == report.total_bytes


def test_failing_progress_callback_does_not_abort_run(source_tree: Path, store) -> None:
    def broken(state: ProgressState) -> None:
        raise RuntimeError("terminal closed")

    report = run_backup(_job(source_tree), store, workers=2, on_progress=broken)

    assert report.ok
    assert len(report.uploaded_paths) == 4
    assert report.completed_bytes == report.total_bytes


@pytest.mark.parametrize("attempt", range(3))
def test_parallel_progress_is_exact(tmp_path: Path, attempt: int) -> None:
    count, size = 40, 64
    root = write_tree(
        tmp_path / "many",
        {f"dir{i % 5}/file{i}.bin": bytes([i % 256]) * size for i in range(count)},
    )
    store = FakeObjectStore(jitter_seconds=0.003)
    store.failing_put_keys.update(f"p/dir0/file{i}.bin" for i in range(0, count, 10))
    states: list[ProgressState] = []
    finished: list[str] = []

    report = run_backup(
        BackupJob(root, "bkt", "p"),
        store,
        workers=8,
        on_progress=states.append,
        on_file_done=lambda result: finished.append(result.path),
    )

    assert report.total_bytes == count * size
    assert report.completed_bytes == count * size
    assert states[-1].completed_bytes == count * size
    assert [s.completed_bytes for s in states] == sorted(s.completed_bytes for s in states)
    assert sorted(finished) == sorted(set(finished))
    assert len(finished) == count
    assert len(report.failures) == 4


def test_single_worker_runs_inline(source_tree: Path, store) -> None:
    outcomes: list[TaskOutcome] = []

    report = run_backup(
        _job(source_tree), store, workers=1, on_file_done=lambda r: outcomes.append(r.outcome)
    )

    assert outcomes == [TaskOutcome.UPLOADED] * 4
    assert report.completed_bytes == report.total_bytes


def test_missing_source_aborts_before_any_request(tmp_path: Path, store) -> None:
    with pytest.raises(DiscoveryError):
        run_backup(_job(tmp_path / "missing"), store)

    assert store.heads == []
    assert store.puts == []


def test_sizing_error_aborts_before_any_request(source_tree: Path, store, monkeypatch) -> None:
    monkeypatch.setattr(
        backup_module,
        "discover_files",
        lambda root, path_filter=None, **kwargs: ["a.txt", "ghost.txt"],
    )

    with pytest.raises(SizingError) as excinfo:
        run_backup(_job(source_tree), store)

    assert excinfo.value.path == "ghost.txt"
    assert store.heads == []
    assert store.puts == []


def test_backup_from_config_records_run_and_retries_failures(source_tree: Path, store) -> None:
    config = BackerConfig(bucket="bkt", source_dir=str(source_tree), key_prefix="p", workers=2)
    store.failing_put_keys.add("p/a.txt")

    first = asyncio.run(backup_from_config(config, store))

    assert first.failures.paths == ["a.txt"]
    recorded = asyncio.run(load_last_failures(config.state_db_path))
    assert recorded.paths == ["a.txt"]
    assert recorded.get("a.txt").reason is FailureReason.SERVICE_FAILURE

    store.failing_put_keys.clear()
    store.heads.clear()
    second = asyncio.run(backup_from_config(config, store, retry_failed=True))

    assert second.uploaded_paths == ["a.txt"]
    assert second.total_files == 1
    assert store.heads == [("bkt", "p/a.txt")]
    last = asyncio.run(load_last_run(config.state_db_path))
    assert last.total_files == 1
    assert last.failed == 0
    assert not asyncio.run(load_last_failures(config.state_db_path))
