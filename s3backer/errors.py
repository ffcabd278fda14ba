from __future__ import annotations


class BackupError(RuntimeError):
    """Base class for errors that abort a whole backup run."""


class DiscoveryError(BackupError):
    def __init__(self, root, reason: str) -> None:
        self.root = root
        super().__init__(f"Cannot read source directory {root}: {reason}")


class SizingError(BackupError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Cannot determine size of {path}: {reason}")
