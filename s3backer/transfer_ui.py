from __future__ import annotations

import threading

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from s3backer.models import ProgressState, TaskOutcome


def shorten_path(path: str, max_len: int = 48) -> str:
    if len(path) <= max_len:
        return path
    keep = max_len - 3
    if keep <= 0:
        return path[:max_len]
    head = keep // 2
    tail = keep - head
    return f"{path[:head]}...{path[-tail:]}"


class BackupProgressUI:
    """Single aggregate bar fed by a ProgressAggregator listener."""

    def __init__(self, console: Console | None = None, *, total_files: int = 0) -> None:
        self._lock = threading.Lock()
        self._total_files = total_files
        self._finished_files = 0
        self._failed_files = 0
        self._task_id: TaskID | None = None
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]Backing up"),
            BarColumn(),
            TaskProgressColumn(),
            DownloadColumn(binary_units=True),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            TextColumn("{task.fields[files]}"),
            TextColumn("{task.fields[path]}"),
            console=console,
            transient=False,
            expand=True,
        )

    def __enter__(self) -> "BackupProgressUI":
        self._progress.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.__exit__(exc_type, exc, tb)

    def set_total_files(self, total_files: int) -> None:
        with self._lock:
            self._total_files = total_files

    def start(self, total_bytes: int) -> None:
        with self._lock:
            self._task_id = self._progress.add_task(
                "backup",
                total=total_bytes,
                files=self._files_label(),
                path="",
            )

    def update(self, state: ProgressState) -> None:
        with self._lock:
            if self._task_id is None:
                return
            self._progress.update(self._task_id, completed=state.completed_bytes)

    def file_done(self, path: str, outcome: TaskOutcome) -> None:
        with self._lock:
            self._finished_files += 1
            if outcome is TaskOutcome.FAILED:
                self._failed_files += 1
            if self._task_id is None:
                return
            self._progress.update(
                self._task_id,
                files=self._files_label(),
                path=shorten_path(path),
            )

    def _files_label(self) -> str:
        label = f"{self._finished_files}/{self._total_files} files"
        if self._failed_files:
            label += f" [red]{self._failed_files} failed[/red]"
        return label
