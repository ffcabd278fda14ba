from __future__ import annotations

import hashlib
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from s3backer.store import HeadResult, PutOutcome, PutResult


@dataclass
class PutCall:
    bucket: str
    key: str
    data: bytes
    storage_class: str
    content_md5: str
    content_length: int | None


@dataclass
class FakeObjectStore:
    """Thread-safe in-memory bucket that behaves like single-request S3 puts."""

    max_put_bytes: int = 5 * 1024**3
    jitter_seconds: float = 0.0
    objects: dict[tuple[str, str], bytes] = field(default_factory=dict)
    etags: dict[tuple[str, str], str] = field(default_factory=dict)
    puts: list[PutCall] = field(default_factory=list)
    heads: list[tuple[str, str]] = field(default_factory=list)
    failing_head_keys: set[str] = field(default_factory=set)
    failing_put_keys: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _jitter(self) -> None:
        if self.jitter_seconds:
            time.sleep(random.uniform(0, self.jitter_seconds))

    def seed(self, bucket: str, key: str, data: bytes, etag: str | None = None) -> None:
        self.objects[(bucket, key)] = data
        self.etags[(bucket, key)] = etag or f'"{hashlib.md5(data).hexdigest()}"'

    def head_object(self, bucket: str, key: str) -> HeadResult:
        self._jitter()
        with self._lock:
            self.heads.append((bucket, key))
            if key in self.failing_head_keys:
                return HeadResult.failure("SlowDown: please reduce your request rate")
            etag = self.etags.get((bucket, key))
        if etag is None:
            return HeadResult.not_found()
        return HeadResult.found(etag)

    def put_object(self, bucket, key, body, *, storage_class, content_md5, content_length=None):
        self._jitter()
        data = body.read()
        with self._lock:
            self.puts.append(
                PutCall(bucket, key, data, storage_class, content_md5, content_length)
            )
            if key in self.failing_put_keys:
                return PutResult(PutOutcome.SERVICE_FAILURE, "InternalError: try again")
            if len(data) > self.max_put_bytes:
                return PutResult(PutOutcome.TOO_LARGE, "EntityTooLarge")
            self.objects[(bucket, key)] = data
            self.etags[(bucket, key)] = f'"{hashlib.md5(data).hexdigest()}"'
        return PutResult(PutOutcome.SUCCESS)

    @property
    def put_keys(self) -> list[str]:
        return sorted(call.key for call in self.puts)


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


def write_tree(root: Path, files: dict[str, bytes]) -> Path:
    for relative_path, data in files.items():
        path = root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return root


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    return write_tree(
        tmp_path / "src",
        {
            "a.txt": b"hello",
            "docs/readme.md": b"# readme\n",
            "docs/deep/nested.bin": bytes(range(256)) * 4,
            "empty.dat": b"",
        },
    )


@pytest.fixture(autouse=True)
def package_logs_reach_caplog(monkeypatch) -> None:
    # The CLI tests install a RichHandler and stop propagation on the package logger.
    monkeypatch.setattr(logging.getLogger("s3backer"), "propagate", True)
