from __future__ import annotations

import base64
import hashlib
from pathlib import Path
from typing import BinaryIO, Callable

from s3backer.models import ChecksumDigest


CHUNK_SIZE = 1024 * 1024


def digest_stream(
    stream: BinaryIO,
    chunk_size: int = CHUNK_SIZE,
    *,
    on_chunk: Callable[[int], None] | None = None,
) -> ChecksumDigest:
    """MD5 of everything left in ``stream``, as hex and base64."""
    digest = hashlib.md5(usedforsecurity=False)
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        digest.update(chunk)
        if on_chunk is not None:
            on_chunk(len(chunk))
    raw = digest.digest()
    return ChecksumDigest(hex=raw.hex(), base64=base64.b64encode(raw).decode("ascii"))


def digest_file(path: Path, chunk_size: int = CHUNK_SIZE) -> ChecksumDigest:
    with Path(path).open("rb") as fh:
        return digest_stream(fh, chunk_size)
