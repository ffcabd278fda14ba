from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from s3backer.models import ChecksumDigest, RemoteObjectMetadata
from s3backer.store import HeadOutcome, ObjectStoreClient


class ChangeAction(str, Enum):
    SKIP = "skip"
    UPLOAD = "upload"
    UNKNOWN = "unknown"


class ChangeKind(str, Enum):
    UNCHANGED = "unchanged"
    NEW = "new"
    MODIFIED = "modified"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True, slots=True)
class ChangeDecision:
    action: ChangeAction
    kind: ChangeKind
    remote: RemoteObjectMetadata
    message: str = ""

    @property
    def should_upload(self) -> bool:
        return self.action is ChangeAction.UPLOAD


def compare_etag(remote: RemoteObjectMetadata, digest: ChecksumDigest) -> ChangeDecision:
    """Decide whether ``digest`` is already stored under ``remote``.

    Only single-request puts have an etag equal to the quoted MD5. Objects
    written by a multipart upload carry ``"<md5-of-md5s>-<parts>"`` and will
    always compare as modified, even when the content is identical.
    """
    if not remote.exists:
        return ChangeDecision(ChangeAction.UPLOAD, ChangeKind.NEW, remote)
    if (remote.etag or "").lower() == digest.quoted_etag:
        return ChangeDecision(ChangeAction.SKIP, ChangeKind.UNCHANGED, remote)
    return ChangeDecision(ChangeAction.UPLOAD, ChangeKind.MODIFIED, remote)


def detect_change(
    store: ObjectStoreClient,
    bucket: str,
    key: str,
    digest: ChecksumDigest,
) -> ChangeDecision:
    try:
        head = store.head_object(bucket, key)
    except OSError as exc:
        # Socket timeouts and resets from the transport are store faults.
        return ChangeDecision(
            ChangeAction.UNKNOWN,
            ChangeKind.UNREACHABLE,
            RemoteObjectMetadata(exists=False),
            exc.strerror or str(exc),
        )
    if head.outcome is HeadOutcome.SERVICE_FAILURE:
        return ChangeDecision(
            ChangeAction.UNKNOWN,
            ChangeKind.UNREACHABLE,
            head.metadata,
            head.message or "object metadata lookup failed",
        )
    return compare_etag(head.metadata, digest)
