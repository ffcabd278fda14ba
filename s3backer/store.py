from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from s3backer.auth import AwsCredentials
from s3backer.config import DEFAULT_MAX_PUT_BYTES
from s3backer.models import RemoteObjectMetadata


logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
TOO_LARGE_CODES = {"EntityTooLarge"}


class HeadOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    SERVICE_FAILURE = "service_failure"


class PutOutcome(str, Enum):
    SUCCESS = "success"
    TOO_LARGE = "too_large"
    SERVICE_FAILURE = "service_failure"


@dataclass(frozen=True, slots=True)
class HeadResult:
    outcome: HeadOutcome
    metadata: RemoteObjectMetadata
    message: str = ""

    @classmethod
    def found(cls, etag: str | None) -> "HeadResult":
        return cls(HeadOutcome.FOUND, RemoteObjectMetadata(exists=True, etag=etag))

    @classmethod
    def not_found(cls) -> "HeadResult":
        return cls(HeadOutcome.NOT_FOUND, RemoteObjectMetadata(exists=False))

    @classmethod
    def failure(cls, message: str) -> "HeadResult":
        return cls(HeadOutcome.SERVICE_FAILURE, RemoteObjectMetadata(exists=False), message)


@dataclass(frozen=True, slots=True)
class PutResult:
    outcome: PutOutcome
    message: str = ""


class ObjectStoreClient(Protocol):
    def head_object(self, bucket: str, key: str) -> HeadResult:
        ...

    def put_object(
        self,
        bucket: str,
        key: str,
        body: BinaryIO,
        *,
        storage_class: str,
        content_md5: str,
        content_length: int | None = None,
    ) -> PutResult:
        ...


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", "Unknown"))


def _status_code(exc: ClientError) -> int | None:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def build_s3_client(
    *,
    region: str | None = None,
    endpoint_url: str | None = None,
    credentials: AwsCredentials | None = None,
    connect_timeout: int = 10,
    read_timeout: int = 120,
    max_attempts: int = 3,
) -> Any:
    """Create a boto3 S3 client with bounded timeouts and standard retries."""
    config = BotoConfig(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"max_attempts": max_attempts, "mode": "standard"},
        max_pool_connections=64,
    )
    client_kwargs: dict[str, Any] = {"config": config}
    if endpoint_url:
        client_kwargs["endpoint_url"] = endpoint_url

    session_kwargs: dict[str, Any] = {}
    if region:
        session_kwargs["region_name"] = region
    if credentials is not None and credentials.explicit:
        session_kwargs["aws_access_key_id"] = credentials.access_key_id
        session_kwargs["aws_secret_access_key"] = credentials.secret_access_key
        if credentials.session_token:
            session_kwargs["aws_session_token"] = credentials.session_token
    elif credentials is not None and credentials.profile:
        session_kwargs["profile_name"] = credentials.profile

    session = boto3.Session(**session_kwargs)
    return session.client("s3", **client_kwargs)


class S3ObjectStore:
    """Object store backed by a boto3 S3 client.

    Every botocore failure is folded into a tagged result so callers never
    branch on exception classes.
    """

    def __init__(self, client: Any, *, max_put_bytes: int = DEFAULT_MAX_PUT_BYTES) -> None:
        self._client = client
        self.max_put_bytes = max_put_bytes

    @classmethod
    def from_config(cls, config, credentials: AwsCredentials | None = None) -> "S3ObjectStore":
        client = build_s3_client(
            region=config.region,
            endpoint_url=config.endpoint_url,
            credentials=credentials,
        )
        return cls(client, max_put_bytes=config.max_put_bytes)

    def head_object(self, bucket: str, key: str) -> HeadResult:
        try:
            response = self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            code = _error_code(exc)
            if code in NOT_FOUND_CODES or _status_code(exc) == 404:
                return HeadResult.not_found()
            logger.debug("head_object failed for %s/%s: %s", bucket, key, code)
            return HeadResult.failure(f"{code}: {exc}")
        except BotoCoreError as exc:
            return HeadResult.failure(str(exc))

        etag = response.get("ETag")
        return HeadResult.found(str(etag).lower() if etag else None)

    def put_object(
        self,
        bucket: str,
        key: str,
        body: BinaryIO,
        *,
        storage_class: str,
        content_md5: str,
        content_length: int | None = None,
    ) -> PutResult:
        if content_length is not None and content_length > self.max_put_bytes:
            return PutResult(
                PutOutcome.TOO_LARGE,
                f"{content_length} bytes exceeds the single-request limit of {self.max_put_bytes}",
            )

        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "Body": body,
            "StorageClass": storage_class,
            "ContentMD5": content_md5,
        }
        if content_length is not None:
            params["ContentLength"] = content_length

        try:
            self._client.put_object(**params)
        except ClientError as exc:
            code = _error_code(exc)
            if code in TOO_LARGE_CODES:
                return PutResult(PutOutcome.TOO_LARGE, str(exc))
            return PutResult(PutOutcome.SERVICE_FAILURE, f"{code}: {exc}")
        except BotoCoreError as exc:
            return PutResult(PutOutcome.SERVICE_FAILURE, str(exc))
        return PutResult(PutOutcome.SUCCESS)
