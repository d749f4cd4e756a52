"""Cognito client configuration published to the SPA via Secrets Manager."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from . import aws
from .base import SessionScopedService

logger = logging.getLogger(__name__)


class CognitoConfigService(SessionScopedService):
    service_name = "secretsmanager"

    def __init__(self, resolver, region: str, default_client, *, secret_id: str) -> None:
        super().__init__(resolver, region, default_client)
        self._secret_id = secret_id

    async def get_cognito_config(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        logger.info("Getting Cognito configuration from Secrets Manager")
        client = await self.client(session_id)
        response = await aws.call(client, "get_secret_value", SecretId=self._secret_id)
        secret = response.get("SecretString")
        if not secret:
            raise RuntimeError("Secret value does not contain SecretString")
        try:
            config = json.loads(secret)
        except ValueError as exc:
            raise RuntimeError(f"Secret {self._secret_id} is not valid JSON") from exc
        if isinstance(config, dict):
            # Placeholder key written when the secret is first provisioned.
            config.pop("dummy", None)
        return {"status": "success", "config": config}
