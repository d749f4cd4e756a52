"""DynamoDB-backed store of caller sessions and their temporary AWS credentials.

One item per session, keyed by ``sessionId``. Items are written once by the
identity exchange and only read afterwards; expiry is advisory and checked by
readers, the table itself never deletes anything.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .aws import AwsCredentials, to_iso

logger = logging.getLogger(__name__)


class SessionStoreError(RuntimeError):
    """Raised when a session cannot be durably written."""


@dataclass(frozen=True)
class StoredSession:
    session_id: str
    access_key_id: str
    secret_access_key: str
    created_at: str
    session_token: Optional[str] = None
    expiry: Optional[str] = None
    additional_data: Optional[str] = None

    @property
    def credentials(self) -> AwsCredentials:
        return AwsCredentials(
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key,
            session_token=self.session_token,
            expiration=self.expiry,
        )

    def additional_data_dict(self) -> Dict[str, Any]:
        if not self.additional_data:
            return {}
        try:
            parsed = json.loads(self.additional_data)
        except (TypeError, ValueError):
            logger.warning("Failed to parse additionalData for session ID: %s", self.session_id)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "sessionId": self.session_id,
            "accessKeyId": self.access_key_id,
            "secretAccessKey": self.secret_access_key,
            "createdAt": self.created_at,
        }
        # Unset optional attributes are left off the item.
        if self.session_token:
            item["sessionToken"] = self.session_token
        if self.expiry:
            item["expiry"] = self.expiry
        if self.additional_data:
            item["additionalData"] = self.additional_data
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "StoredSession":
        additional = item.get("additionalData")
        if additional is not None and not isinstance(additional, str):
            additional = json.dumps(additional, default=str)
        return cls(
            session_id=str(item["sessionId"]),
            access_key_id=str(item.get("accessKeyId") or ""),
            secret_access_key=str(item.get("secretAccessKey") or ""),
            created_at=str(item.get("createdAt") or ""),
            session_token=item.get("sessionToken") or None,
            expiry=item.get("expiry") or None,
            additional_data=additional,
        )


class SessionStore:
    """Single-table persistence for :class:`StoredSession` records."""

    def __init__(self, table) -> None:
        self._table = table

    @classmethod
    def from_resource(cls, dynamodb, table_name: str) -> "SessionStore":
        return cls(dynamodb.Table(table_name))

    def put(
        self,
        session_id: str,
        credentials: AwsCredentials,
        expiry: Optional[str] = None,
        created_at: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> StoredSession:
        if not session_id:
            raise SessionStoreError("Session ID is required")
        if not credentials.is_complete:
            raise SessionStoreError(f"Refusing to store incomplete credentials for session ID: {session_id}")

        session = StoredSession(
            session_id=session_id,
            access_key_id=credentials.access_key_id,
            secret_access_key=credentials.secret_access_key,
            session_token=credentials.session_token,
            expiry=expiry or credentials.expiration,
            created_at=created_at or to_iso(dt.datetime.now(dt.timezone.utc)),
            additional_data=json.dumps(additional_data) if additional_data is not None else None,
        )

        logger.info("Storing session information for session ID: %s", session_id)
        try:
            self._table.put_item(Item=session.to_item())
        except (ClientError, BotoCoreError) as exc:
            raise SessionStoreError(f"Failed to store session {session_id}: {exc}") from exc
        logger.info("Session stored successfully for session ID: %s", session_id)
        return session

    def get(self, session_id: Any) -> Optional[StoredSession]:
        if not isinstance(session_id, str) or not session_id.strip():
            logger.warning("Session ID is empty or malformed")
            return None

        try:
            response = self._table.get_item(Key={"sessionId": session_id})
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Error retrieving session %s: %s", session_id, exc)
            return None

        item = response.get("Item")
        if not item:
            logger.warning("No session found for session ID: %s", session_id)
            return None

        try:
            return StoredSession.from_item(item)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed session item for session ID %s: %s", session_id, exc)
            return None

    def get_credentials(self, session_id: Any) -> Optional[AwsCredentials]:
        session = self.get(session_id)
        if session is None:
            return None
        logger.info("Credentials retrieved for session ID: %s", session_id)
        return session.credentials
