"""Identity exchange: turn an IdP token (or a fixed role) into a stored session."""
from __future__ import annotations

import base64
import binascii
import datetime as dt
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import jwt
from botocore.exceptions import BotoCoreError, ClientError

from ..settings import ConfigurationError, Settings
from ..web import RequestValidationError
from . import aws
from .aws import AwsCredentials
from .session_store import SessionStore

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
IDENTITY_CONTEXT_CLAIM = "sts:identity_context"


class CredentialExchangeError(RuntimeError):
    """Raised when any step of the token to credentials chain fails."""


def decode_jwt_claims(token: Optional[str]) -> Dict[str, Any]:
    """Return the payload of *token* without verifying its signature.

    Falls back to a manual base64url decode of the middle segment, and to an
    empty dict when neither works.
    """
    if not token:
        return {}
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
        return claims if isinstance(claims, dict) else {}
    except jwt.PyJWTError as exc:
        logger.debug("PyJWT could not decode token, trying manual decode: %s", exc)

    parts = token.split(".")
    if len(parts) != 3:
        logger.warning("Token is not a three-part JWT")
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        logger.warning("Failed to decode token payload: %s", exc)
        return {}
    return claims if isinstance(claims, dict) else {}


@dataclass
class SessionInfo:
    session_id: str
    credentials: AwsCredentials
    user_info: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    expiry: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "sessionId": self.session_id,
            "credentials": self.credentials.to_dict(),
        }
        if self.user_info is not None:
            body["userInfo"] = self.user_info
        if self.created_at is not None:
            body["createdAt"] = self.created_at
        if self.expiry is not None:
            body["expiry"] = self.expiry
        if self.additional_data:
            body["additionalData"] = self.additional_data
        return body


class CredentialExchange:
    """Federates callers into temporary AWS credentials and persists them.

    Methods are blocking (boto3); async callers push them onto a worker thread.
    """

    def __init__(self, store: SessionStore, sts, sso_oidc, settings: Settings) -> None:
        self._store = store
        self._sts = sts
        self._sso_oidc = sso_oidc
        self._settings = settings

    def exchange(self, id_token: str) -> SessionInfo:
        if not id_token:
            raise RequestValidationError("ID token is required")

        claims = decode_jwt_claims(id_token)
        user_info = {
            "sub": claims.get("sub"),
            "email": claims.get("email"),
            "name": claims.get("name"),
        }
        session_id = str(uuid.uuid4())
        logger.info("Exchanging ID token for session %s (sub=%s)", session_id, user_info["sub"])

        credentials = self._identity_center_credentials(id_token)
        self._store.put(session_id, credentials, additional_data={"userInfo": user_info})
        return SessionInfo(session_id=session_id, credentials=credentials, user_info=user_info)

    def exchange_for_anonymous_access(self, role_arn: Optional[str] = None) -> SessionInfo:
        role_arn = role_arn or self._settings.anonymous_access_role_arn
        if not role_arn:
            raise ConfigurationError(
                "Role ARN is required for anonymous access; set QBUSINESS_ANONYMOUS_ACCESS_ROLE_ARN"
            )

        session_id = str(uuid.uuid4())
        logger.info("Assuming anonymous access role for session %s", session_id)
        try:
            credentials = aws.assume_role(self._sts, role_arn, self._settings.role_session_name)
        except (ClientError, BotoCoreError) as exc:
            raise CredentialExchangeError(f"Failed to assume anonymous access role: {exc}") from exc
        except RuntimeError as exc:
            raise CredentialExchangeError(str(exc)) from exc

        self._store.put(session_id, credentials, additional_data={"anonymous": True})
        return SessionInfo(session_id=session_id, credentials=credentials)

    def get_session(self, session_id: str) -> Optional[SessionInfo]:
        session = self._store.get(session_id)
        if session is None:
            return None
        additional = session.additional_data_dict()
        return SessionInfo(
            session_id=session.session_id,
            credentials=session.credentials,
            user_info=additional.get("userInfo"),
            created_at=session.created_at,
            expiry=session.expiry,
            additional_data=additional,
        )

    def is_session_valid(self, session_id: str) -> bool:
        session = self._store.get(session_id)
        if session is None:
            return False
        if not session.expiry:
            logger.warning("Session %s has no expiry; treating as invalid", session_id)
            return False
        try:
            expiry = aws.parse_iso(session.expiry)
        except ValueError:
            logger.warning("Session %s has unparseable expiry %r", session_id, session.expiry)
            return False
        return expiry > dt.datetime.now(dt.timezone.utc)

    def get_credentials(self, session_id: str) -> Optional[AwsCredentials]:
        return self._store.get_credentials(session_id)

    def _identity_center_credentials(self, id_token: str) -> AwsCredentials:
        application_id = self._settings.identity_center_application_id
        role_arn = self._settings.identity_center_role_arn
        if not application_id or not role_arn:
            raise ConfigurationError(
                "IDENTITY_CENTER_APPLICATION_ID and IDENTITY_CENTER_APPLICATION_ROLE_ARN must be set"
            )

        try:
            token_response = self._sso_oidc.create_token_with_iam(
                clientId=application_id,
                grantType=JWT_BEARER_GRANT,
                assertion=id_token,
            )
        except (ClientError, BotoCoreError) as exc:
            raise CredentialExchangeError(f"Failed to exchange ID token with Identity Center: {exc}") from exc

        issued_token = token_response.get("idToken")
        if not issued_token:
            raise CredentialExchangeError("No ID token returned from Identity Center")

        identity_context = decode_jwt_claims(issued_token).get(IDENTITY_CONTEXT_CLAIM)
        if not identity_context:
            raise CredentialExchangeError("Identity context claim missing from Identity Center token")

        try:
            return aws.assume_role(
                self._sts,
                role_arn,
                self._settings.role_session_name,
                provided_contexts=[
                    {
                        "ProviderArn": aws.IDENTITY_CENTER_CONTEXT_PROVIDER,
                        "ContextAssertion": identity_context,
                    }
                ],
            )
        except (ClientError, BotoCoreError) as exc:
            raise CredentialExchangeError(f"Failed to assume Identity Center role: {exc}") from exc
        except RuntimeError as exc:
            raise CredentialExchangeError(str(exc)) from exc
