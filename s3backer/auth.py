from __future__ import annotations

import os
from dataclasses import dataclass

from s3backer.config import BackerConfig


@dataclass(slots=True)
class AwsCredentials:
    access_key_id: str | None = None
    secret_access_key: str | None = None
    session_token: str | None = None
    profile: str | None = None

    @property
    def explicit(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)


def resolve_aws_credentials(config: BackerConfig | None = None) -> AwsCredentials | None:
    """Resolve credentials from env, config keys, or a named profile.

    Returns None when nothing is configured so boto3 falls back to its own
    credential chain (instance roles, SSO cache, ~/.aws/credentials).
    """
    access_key = os.getenv("AWS_ACCESS_KEY_ID", "").strip()
    secret_key = os.getenv("AWS_SECRET_ACCESS_KEY", "").strip()
    if access_key and secret_key:
        return AwsCredentials(
            access_key_id=access_key,
            secret_access_key=secret_key,
            session_token=os.getenv("AWS_SESSION_TOKEN", "").strip() or None,
        )

    if config is not None and config.access_key_id and config.secret_access_key:
        return AwsCredentials(
            access_key_id=config.access_key_id.strip(),
            secret_access_key=config.secret_access_key.strip(),
        )

    profile = os.getenv("AWS_PROFILE", "").strip() or (config.profile if config else None)
    if profile:
        return AwsCredentials(profile=profile)

    return None


def describe_credentials(credentials: AwsCredentials | None) -> str:
    if credentials is None:
        return "default AWS credential chain"
    if credentials.explicit:
        return f"access key {_mask(credentials.access_key_id or '')}"
    return f"profile '{credentials.profile}'"


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "****"
    return f"{'*' * (len(value) - 4)}{value[-4:]}"
