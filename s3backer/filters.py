from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import PurePosixPath
from typing import Iterable


def _clean(pattern: str) -> str:
    cleaned = pattern.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def pattern_matches(relative_path: str, pattern: str) -> bool:
    """Match a relative path against a glob.

    ``dir/`` selects everything below ``dir``; a pattern without a slash
    matches the file name at any depth; anything else is anchored at the
    backup root.
    """
    cleaned = _clean(pattern)
    if not cleaned:
        return False
    if cleaned.endswith("/"):
        return relative_path.startswith(cleaned)
    if "/" not in cleaned:
        return fnmatchcase(PurePosixPath(relative_path).name, cleaned)
    return PurePosixPath(relative_path).match(cleaned) and fnmatchcase(relative_path, cleaned)


@dataclass(frozen=True, slots=True)
class PathFilter:
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()

    @classmethod
    def from_patterns(
        cls,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> "PathFilter":
        return cls(
            include_patterns=tuple(_clean(p) for p in include or () if p and _clean(p)),
            exclude_patterns=tuple(_clean(p) for p in exclude or () if p and _clean(p)),
        )

    @property
    def is_empty(self) -> bool:
        return not self.include_patterns and not self.exclude_patterns

    def matches(self, relative_path: str) -> bool:
        if self.include_patterns and not any(
            pattern_matches(relative_path, p) for p in self.include_patterns
        ):
            return False
        return not any(pattern_matches(relative_path, p) for p in self.exclude_patterns)

    def may_match_below(self, relative_dir: str) -> bool:
        """Whether some file under ``relative_dir`` could pass this filter."""
        prefix = f"{relative_dir.rstrip('/')}/"
        if any(p.endswith("/") and prefix.startswith(p) for p in self.exclude_patterns):
            return False
        if not self.include_patterns:
            return True
        return any(
            not p.endswith("/") or prefix.startswith(p) or p.startswith(prefix)
            for p in self.include_patterns
        )
