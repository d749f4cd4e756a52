"""Process configuration for the QBusiness tools API."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


class ConfigurationError(RuntimeError):
    """Raised when a code path needs server configuration that is not set."""


@dataclass(frozen=True)
class Settings:
    """Environment-derived settings, built once per application instance."""

    region: str = "us-east-1"
    identity_center_application_id: Optional[str] = None
    identity_center_role_arn: Optional[str] = None
    anonymous_access_role_arn: Optional[str] = None
    session_table_name: str = "UserSession"
    credential_cache_ttl_seconds: int = 30 * 60
    role_session_name: str = "OneUnifiedAppSession"
    bedrock_region: str = "us-east-1"
    bedrock_eval_role_arn: Optional[str] = None
    bedrock_evaluator_model_id: str = "anthropic.claude-3-5-sonnet-20240620-v1:0"
    cognito_config_secret_id: str = "QBusinessCognitoConfig"
    chat_stream_idle_timeout_seconds: float = 120.0
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            region=os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or "us-east-1",
            identity_center_application_id=os.getenv("IDENTITY_CENTER_APPLICATION_ID") or None,
            identity_center_role_arn=os.getenv("IDENTITY_CENTER_APPLICATION_ROLE_ARN") or None,
            anonymous_access_role_arn=os.getenv("QBUSINESS_ANONYMOUS_ACCESS_ROLE_ARN") or None,
            session_table_name=os.getenv("SESSION_TABLE_NAME", "UserSession"),
            credential_cache_ttl_seconds=_positive_int(os.getenv("CREDENTIAL_CACHE_TTL_SECONDS"), default=30 * 60),
            role_session_name=os.getenv("ROLE_SESSION_NAME", "OneUnifiedAppSession"),
            bedrock_region=os.getenv("BEDROCK_REGION", "us-east-1"),
            bedrock_eval_role_arn=os.getenv("BEDROCK_QUERY_EVAL_ROLE_ARN") or None,
            bedrock_evaluator_model_id=os.getenv(
                "BEDROCK_EVALUATOR_MODEL_ID", "anthropic.claude-3-5-sonnet-20240620-v1:0"
            ),
            cognito_config_secret_id=os.getenv("COGNITO_CONFIG_SECRET_ID", "QBusinessCognitoConfig"),
            chat_stream_idle_timeout_seconds=float(
                _positive_int(os.getenv("CHAT_STREAM_IDLE_TIMEOUT_SECONDS"), default=120)
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=_positive_int(os.getenv("PORT"), default=8000),
        )


def _positive_int(value: Optional[str], *, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer value '{value}'") from exc
    if parsed <= 0:
        raise ValueError("Value must be greater than zero")
    return parsed
