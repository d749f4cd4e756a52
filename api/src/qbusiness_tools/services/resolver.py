"""Session-scoped credential resolution.

Given an optional caller session id, pick the AWS credentials a request should
run under and hand back a ready client. Anything short of a complete stored
credential set degrades to the server's own default client.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from . import aws
from .aws import AwsCredentials
from .session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30 * 60


class ResolutionOutcome(str, enum.Enum):
    DIRECT = "direct"
    CACHE_HIT = "cache_hit"
    STORE_HIT = "store_hit"
    NO_SESSION = "no_session"
    INVALID_SESSION_ID = "invalid_session_id"
    NOT_FOUND = "not_found"
    INCOMPLETE_CREDENTIALS = "incomplete_credentials"
    STORE_ERROR = "store_error"
    CLIENT_ERROR = "client_error"

    @property
    def uses_default_client(self) -> bool:
        return self not in (ResolutionOutcome.DIRECT, ResolutionOutcome.CACHE_HIT, ResolutionOutcome.STORE_HIT)


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    credentials: Optional[AwsCredentials] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class TTLPolicy:
    seconds: float = DEFAULT_CACHE_TTL_SECONDS

    def expires_at(self, now: float) -> float:
        return now + self.seconds


class CredentialCache:
    """Process-local session id -> credentials map with lazy expiry."""

    def __init__(self, policy: Optional[TTLPolicy] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._policy = policy or TTLPolicy()
        self._clock = clock
        self._entries: Dict[str, Tuple[AwsCredentials, float]] = {}

    def get(self, session_id: str) -> Optional[AwsCredentials]:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        credentials, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[session_id]
            return None
        return credentials

    def put(self, session_id: str, credentials: AwsCredentials) -> None:
        self._entries[session_id] = (credentials, self._policy.expires_at(self._clock()))

    def __len__(self) -> int:
        return len(self._entries)


ClientFactory = Callable[[str, str, AwsCredentials], Any]


class CredentialResolver:
    def __init__(
        self,
        store: SessionStore,
        cache: Optional[CredentialCache] = None,
        client_factory: ClientFactory = aws.build_client,
    ) -> None:
        self._store = store
        self._cache = cache if cache is not None else CredentialCache()
        self._client_factory = client_factory

    async def resolve(
        self,
        service: str,
        region: str,
        default_client,
        session_id: Any = None,
        direct_credentials: Optional[AwsCredentials] = None,
    ):
        """Return a client for *service*, scoped to the session when possible.

        An unknown *service* raises :class:`aws.UnsupportedServiceError`; every
        other failure returns *default_client* itself.
        """
        client, _ = await self.resolve_with_outcome(service, region, default_client, session_id, direct_credentials)
        return client

    async def resolve_with_outcome(
        self,
        service: str,
        region: str,
        default_client,
        session_id: Any = None,
        direct_credentials: Optional[AwsCredentials] = None,
    ) -> Tuple[Any, Resolution]:
        """Like :meth:`resolve`, also returning how the client was chosen."""
        aws.botocore_service_name(service)

        resolution = await self._lookup(session_id, direct_credentials)
        if resolution.credentials is not None:
            try:
                client = self._client_factory(service, region, resolution.credentials)
            except aws.UnsupportedServiceError:
                raise
            except Exception as exc:
                resolution = Resolution(ResolutionOutcome.CLIENT_ERROR, reason=str(exc))
            else:
                logger.debug(
                    "Resolved %s client via %s (%s)",
                    service,
                    resolution.outcome.value,
                    resolution.credentials.describe(),
                )
                return client, resolution

        if resolution.outcome is not ResolutionOutcome.NO_SESSION:
            logger.warning(
                "Falling back to default %s client for session %s: %s",
                service,
                session_id,
                resolution.reason or resolution.outcome.value,
            )
        return default_client, resolution

    async def _lookup(self, session_id: Any, direct_credentials: Optional[AwsCredentials]) -> Resolution:
        if direct_credentials is not None:
            if not direct_credentials.is_complete:
                return Resolution(ResolutionOutcome.INCOMPLETE_CREDENTIALS, reason="direct credentials are incomplete")
            return Resolution(ResolutionOutcome.DIRECT, credentials=direct_credentials)

        if session_id is None:
            return Resolution(ResolutionOutcome.NO_SESSION)
        if not isinstance(session_id, str) or not session_id.strip():
            return Resolution(ResolutionOutcome.INVALID_SESSION_ID, reason="session id is empty or not a string")

        cached = self._cache.get(session_id)
        if cached is not None:
            return Resolution(ResolutionOutcome.CACHE_HIT, credentials=cached)

        try:
            credentials = await run_in_threadpool(self._store.get_credentials, session_id)
        except Exception as exc:
            return Resolution(ResolutionOutcome.STORE_ERROR, reason=str(exc))

        if credentials is None:
            return Resolution(ResolutionOutcome.NOT_FOUND, reason="no stored credentials")
        if not credentials.is_complete:
            return Resolution(ResolutionOutcome.INCOMPLETE_CREDENTIALS, reason="stored credentials are incomplete")

        self._cache.put(session_id, credentials)
        return Resolution(ResolutionOutcome.STORE_HIT, credentials=credentials)
