from __future__ import annotations

import io

from s3backer.change_detection import ChangeAction, ChangeKind, compare_etag, detect_change
from s3backer.checksum import digest_stream
from s3backer.models import RemoteObjectMetadata


HELLO = digest_stream(io.BytesIO(b"hello"))


def test_missing_object_is_new() -> None:
    decision = compare_etag(RemoteObjectMetadata(exists=False), HELLO)

    assert decision.action is ChangeAction.UPLOAD
    assert decision.kind is ChangeKind.NEW


def test_matching_quoted_etag_is_skipped() -> None:
    remote = RemoteObjectMetadata(exists=True, etag='"5d41402abc4b2a76b9719d911017c592"')

    decision = compare_etag(remote, HELLO)

    assert decision.action is ChangeAction.SKIP
    assert not decision.should_upload


def test_etag_case_is_ignored() -> None:
    remote = RemoteObjectMetadata(exists=True, etag='"5D41402ABC4B2A76B9719D911017C592"')

    assert compare_etag(remote, HELLO).action is ChangeAction.SKIP


def test_unquoted_or_different_etag_is_modified() -> None:
    for etag in ("5d41402abc4b2a76b9719d911017c592", '"0123"', None):
        decision = compare_etag(RemoteObjectMetadata(exists=True, etag=etag), HELLO)
        assert decision.kind is ChangeKind.MODIFIED
        assert decision.should_upload


def test_multipart_etag_never_matches() -> None:
    remote = RemoteObjectMetadata(exists=True, etag=f'"{HELLO.hex}-2"')

    assert compare_etag(remote, HELLO).action is ChangeAction.UPLOAD


def test_detect_change_uses_store(store) -> None:
    store.seed("bkt", "p/hello.txt", b"hello")

    assert detect_change(store, "bkt", "p/hello.txt", HELLO).kind is ChangeKind.UNCHANGED
    assert detect_change(store, "bkt", "p/other.txt", HELLO).kind is ChangeKind.NEW
    assert store.heads == [("bkt", "p/hello.txt"), ("bkt", "p/other.txt")]


def test_detect_change_reports_unreachable_store(store) -> None:
    store.failing_head_keys.add("k")

    decision = detect_change(store, "bkt", "k", HELLO)

    assert decision.action is ChangeAction.UNKNOWN
    assert decision.kind is ChangeKind.UNREACHABLE
    assert "SlowDown" in decision.message
