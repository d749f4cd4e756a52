from __future__ import annotations

from typing import Any, Optional

from .resolver import CredentialResolver


class SessionScopedService:
    """Base for services whose calls run under the caller's session credentials."""

    service_name: str = ""

    def __init__(self, resolver: CredentialResolver, region: str, default_client) -> None:
        self._resolver = resolver
        self._region = region
        self._default_client = default_client

    @property
    def region(self) -> str:
        return self._region

    async def client(self, session_id: Optional[Any] = None):
        return await self._resolver.resolve(self.service_name, self._region, self._default_client, session_id)
