from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from s3backer.config import CONFIG_FILENAME, STATE_DB_FILENAME, resolve_worker_count
from s3backer.errors import DiscoveryError, SizingError
from s3backer.filters import PathFilter
from s3backer.models import FileRecord


logger = logging.getLogger(__name__)

EXCLUDED_ROOT_FILENAMES = {CONFIG_FILENAME, STATE_DB_FILENAME}
SQLITE_SIDECAR_SUFFIXES = ("-journal", "-wal", "-shm")

WalkErrorCallback = Callable[[str, OSError], None]


@dataclass(slots=True)
class SizeIndex:
    records: dict[str, FileRecord] = field(default_factory=dict)

    @property
    def total_bytes(self) -> int:
        return sum(record.size for record in self.records.values())

    def __len__(self) -> int:
        return len(self.records)

    def size_of(self, path: str) -> int:
        return self.records[path].size

    def ordered(self) -> list[FileRecord]:
        return [self.records[path] for path in sorted(self.records)]


def _is_tool_file(relative_path: str) -> bool:
    if relative_path in EXCLUDED_ROOT_FILENAMES:
        return True
    return any(
        relative_path == f"{STATE_DB_FILENAME}{suffix}" for suffix in SQLITE_SIDECAR_SUFFIXES
    )


def _ensure_listable(root: Path) -> None:
    if not root.exists():
        raise DiscoveryError(root, "directory does not exist")
    if not root.is_dir():
        raise DiscoveryError(root, "not a directory")
    try:
        with os.scandir(root) as entries:
            next(entries, None)
    except OSError as exc:
        raise DiscoveryError(root, exc.strerror or str(exc)) from exc


def discover_files(
    root: Path,
    path_filter: PathFilter | None = None,
    *,
    on_error: WalkErrorCallback | None = None,
) -> list[str]:
    """Return the relative POSIX paths of every regular file below ``root``.

    ``Path.is_file`` follows symlinks, so a link to a file is kept while
    links to directories and dangling links are dropped. Subdirectories and
    entries that cannot be read are logged and passed to ``on_error`` with
    their relative path; only an unreadable root is fatal.
    """
    root = Path(root).resolve()
    path_filter = path_filter or PathFilter()
    _ensure_listable(root)

    def skip(relative_path: str, exc: OSError) -> None:
        logger.warning("Skipping unreadable path '%s': %s", relative_path, exc.strerror or exc)
        if on_error is not None:
            on_error(relative_path, exc)

    def walk_error(exc: OSError) -> None:
        failed = Path(exc.filename or root)
        if failed == root:
            raise DiscoveryError(root, exc.strerror or str(exc)) from exc
        relative_dir = failed.relative_to(root).as_posix()
        if path_filter.may_match_below(relative_dir):
            skip(relative_dir, exc)

    found: list[str] = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=walk_error):
        for name in filenames:
            file_path = Path(dirpath) / name
            relative_path = file_path.relative_to(root).as_posix()
            if _is_tool_file(relative_path) or not path_filter.matches(relative_path):
                continue
            try:
                if not file_path.is_file():
                    continue
            except OSError as exc:
                skip(relative_path, exc)
                continue
            found.append(relative_path)

    found.sort()
    logger.debug("Discovered %d file(s) under %s", len(found), root)
    return found


def _stat_one(root: Path, relative_path: str) -> FileRecord:
    absolute_path = root / Path(relative_path)
    try:
        size = absolute_path.stat().st_size
    except OSError as exc:
        raise SizingError(relative_path, exc.strerror or str(exc)) from exc
    return FileRecord(path=relative_path, absolute_path=absolute_path, size=size)


def index_sizes(
    root: Path,
    relative_paths: Iterable[str],
    *,
    workers: int | None = None,
) -> SizeIndex:
    """Stat every path in a thread pool; any failure fails the whole index."""
    root = Path(root).resolve()
    paths = sorted(set(relative_paths))
    if not paths:
        return SizeIndex()

    max_workers = min(resolve_worker_count(workers), len(paths))
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="s3backer-size") as executor:
        # map() re-raises the first SizingError in submission order.
        records = list(executor.map(lambda path: _stat_one(root, path), paths))

    index = SizeIndex(records={record.path: record for record in records})
    logger.debug("Indexed %d file(s), %d byte(s)", len(index), index.total_bytes)
    return index
