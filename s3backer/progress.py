from __future__ import annotations

import logging
import threading
from typing import Callable

from s3backer.models import FailureRecord, FailureReport, ProgressState


logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressState], None]


class ProgressAggregator:
    """Byte counter shared by all upload workers.

    Each path contributes its size exactly once, whatever the task outcome.
    """

    def __init__(self, total_bytes: int) -> None:
        if total_bytes < 0:
            raise ValueError("total_bytes must be non-negative")
        self._total = total_bytes
        self._completed = 0
        self._seen: set[str] = set()
        self._lock = threading.Lock()
        self._listeners: list[ProgressListener] = []

    @property
    def total_bytes(self) -> int:
        return self._total

    @property
    def completed_bytes(self) -> int:
        with self._lock:
            return self._completed

    def subscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def snapshot(self) -> ProgressState:
        with self._lock:
            return ProgressState(total_bytes=self._total, completed_bytes=self._completed)

    def complete(self, path: str, size: int) -> ProgressState:
        with self._lock:
            if path in self._seen:
                raise ValueError(f"Progress already recorded for {path}")
            self._seen.add(path)
            self._completed += size
            state = ProgressState(total_bytes=self._total, completed_bytes=self._completed)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Progress listener failed at %s", path)
        return state


class FailureCollector:
    """Append-only, thread-safe record of per-file failures."""

    def __init__(self) -> None:
        self._records: list[FailureRecord] = []
        self._paths: set[str] = set()
        self._lock = threading.Lock()

    def record(self, failure: FailureRecord) -> None:
        with self._lock:
            if failure.path in self._paths:
                raise ValueError(f"Failure already recorded for {failure.path}")
            self._paths.add(failure.path)
            self._records.append(failure)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def report(self) -> FailureReport:
        with self._lock:
            return FailureReport(records=tuple(sorted(self._records, key=lambda r: r.path)))
