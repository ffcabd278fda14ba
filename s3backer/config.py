from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from urllib.parse import urlparse

from s3backer.models import BackupJob


CONFIG_FILENAME = ".s3backer.json"
STATE_DB_FILENAME = ".s3backer_state.db"
DEFAULT_STORAGE_CLASS = "DEEP_ARCHIVE"
# S3 rejects single-request puts above 5 GiB.
DEFAULT_MAX_PUT_BYTES = 5 * 1024**3


@dataclass(slots=True)
class BackerConfig:
    bucket: str
    source_dir: str
    key_prefix: str = ""
    region: str | None = None
    endpoint_url: str | None = None
    profile: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    storage_class: str = DEFAULT_STORAGE_CLASS
    workers: int | None = None
    max_put_bytes: int = DEFAULT_MAX_PUT_BYTES

    @property
    def source_path(self) -> Path:
        return Path(self.source_dir).resolve()

    @property
    def state_db_path(self) -> Path:
        return self.source_path / STATE_DB_FILENAME

    @property
    def worker_count(self) -> int:
        return resolve_worker_count(self.workers)

    def to_job(self) -> BackupJob:
        return BackupJob(
            source_directory=self.source_path,
            bucket=self.bucket,
            key_prefix=self.key_prefix,
        )


def resolve_worker_count(workers: int | None) -> int:
    if workers is not None and workers > 0:
        return workers
    return os.cpu_count() or 1


def config_path(base_dir: Path | None = None) -> Path:
    return (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME


def load_config(base_dir: Path | None = None) -> BackerConfig:
    path = config_path(base_dir)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}. Run `s3backer init s3://<bucket>/<prefix>` first."
        )

    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)

    known = {item.name for item in fields(BackerConfig)}
    values = {key: value for key, value in data.items() if key in known}
    bucket, prefix = parse_target(values.pop("bucket"))
    values["key_prefix"] = normalize_prefix(values.get("key_prefix") or prefix)
    return BackerConfig(bucket=bucket, **values)


def save_config(config: BackerConfig, base_dir: Path | None = None) -> Path:
    path = config_path(base_dir)
    payload = asdict(config)
    payload["key_prefix"] = normalize_prefix(payload["key_prefix"])
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    return path


def normalize_prefix(prefix: str | None) -> str:
    return "/".join(part for part in (prefix or "").replace("\\", "/").split("/") if part)


def parse_target(target: str) -> tuple[str, str]:
    """Split a backup target into ``(bucket, key_prefix)``.

    Accepts ``s3://bucket/prefix``, virtual-hosted and path-style
    ``https://`` S3 URLs, and bare ``bucket/prefix``.
    """
    value = (target or "").strip()
    if not value:
        raise ValueError("Backup target must name a bucket")

    if value.startswith("s3://"):
        parsed = urlparse(value)
        return _require_bucket(parsed.netloc), normalize_prefix(parsed.path)

    if "://" not in value:
        bucket, _, prefix = value.partition("/")
        return _require_bucket(bucket), normalize_prefix(prefix)

    parsed = urlparse(value)
    host = parsed.hostname or ""
    # bucket.s3.amazonaws.com / bucket.s3.<region>.amazonaws.com
    if ".s3." in host:
        return _require_bucket(host.split(".s3.", 1)[0]), normalize_prefix(parsed.path)

    # Path-style: s3.<region>.amazonaws.com/bucket/prefix or a custom endpoint.
    bucket, _, prefix = parsed.path.strip("/").partition("/")
    return _require_bucket(bucket), normalize_prefix(prefix)


def _require_bucket(bucket: str) -> str:
    bucket = bucket.strip()
    if not bucket:
        raise ValueError("Backup target must name a bucket")
    return bucket
