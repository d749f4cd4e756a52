"""Shared AWS helpers for the QBusiness tools backend."""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

# Public service names accepted by the resolver, mapped to botocore names.
_SERVICE_NAMES = {
    "dynamodb": "dynamodb",
    "s3": "s3",
    "cloudwatch-logs": "logs",
    "qbusiness": "qbusiness",
    "bedrock": "bedrock",
    "secretsmanager": "secretsmanager",
}

IDENTITY_CENTER_CONTEXT_PROVIDER = "arn:aws:iam::aws:contextProvider/IdentityCenter"


class UnsupportedServiceError(RuntimeError):
    """Raised when a client is requested for a service this backend does not talk to."""


@dataclass(frozen=True)
class AwsCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    expiration: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.access_key_id) and bool(self.secret_access_key)

    def describe(self) -> str:
        """Log-safe summary; never includes the secret or token."""
        return (
            f"accessKeyId={(self.access_key_id or '')[:4]}..., "
            f"secretAccessKey={'****' if self.secret_access_key else 'None'}, "
            f"sessionToken={'Present' if self.session_token else 'None'}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessKeyId": self.access_key_id,
            "secretAccessKey": self.secret_access_key,
            "sessionToken": self.session_token,
            "expiration": self.expiration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AwsCredentials":
        return cls(
            access_key_id=data.get("accessKeyId") or "",
            secret_access_key=data.get("secretAccessKey") or "",
            session_token=data.get("sessionToken") or None,
            expiration=data.get("expiration") or None,
        )

    @classmethod
    def from_sts(cls, creds: Dict[str, Any]) -> "AwsCredentials":
        expiration = creds.get("Expiration")
        if isinstance(expiration, dt.datetime):
            expiration = to_iso(expiration)
        return cls(
            access_key_id=creds.get("AccessKeyId") or "",
            secret_access_key=creds.get("SecretAccessKey") or "",
            session_token=creds.get("SessionToken"),
            expiration=expiration,
        )


def botocore_service_name(service: str) -> str:
    try:
        return _SERVICE_NAMES[service]
    except KeyError:
        raise UnsupportedServiceError(f"Unsupported client type: {service}") from None


def build_client(service: str, region: str, credentials: AwsCredentials):
    """Create a boto3 client for *service* signed with *credentials*."""
    return boto3.client(
        botocore_service_name(service),
        region_name=region,
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
        aws_session_token=credentials.session_token,
    )


def default_client(service: str, region: str):
    """Client bound to the server's own identity (default credential chain)."""
    return boto3.client(botocore_service_name(service), region_name=region)


def assume_role(
    sts,
    role_arn: str,
    session_name: str,
    *,
    provided_contexts: Optional[List[Dict[str, str]]] = None,
) -> AwsCredentials:
    kwargs: Dict[str, Any] = {"RoleArn": role_arn, "RoleSessionName": session_name}
    if provided_contexts:
        kwargs["ProvidedContexts"] = provided_contexts
    response = sts.assume_role(**kwargs)
    creds = response.get("Credentials")
    if not creds:
        raise RuntimeError("Failed to get credentials from assume role response")
    return AwsCredentials.from_sts(creds)


async def run_blocking(func, *args, **kwargs):
    return await run_in_threadpool(func, *args, **kwargs)


async def call(client, operation: str, **kwargs) -> Dict[str, Any]:
    """Run a blocking SDK operation off the event loop."""
    return await run_blocking(getattr(client, operation), **kwargs)


def strip_metadata(response: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in (response or {}).items() if key != "ResponseMetadata"}


def to_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")
    return str(value)


def parse_iso(value: Optional[str]) -> dt.datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises ``ValueError`` for anything unparseable.
    """
    if not value or not isinstance(value, str):
        raise ValueError(f"Unsupported datetime format: {value}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed
