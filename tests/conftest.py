"""Shared fixtures for tests."""

from __future__ import annotations

import datetime
import functools
from typing import Any, Dict, List, Optional, Tuple
from unittest import mock

import boto3
import pytest
from botocore.exceptions import ClientError
from starlette.testclient import TestClient

from qbusiness_tools.app import Services, create_app
from qbusiness_tools.services.aws import AwsCredentials, botocore_service_name
from qbusiness_tools.services.bedrock import BedrockService
from qbusiness_tools.services.chat import ChatService
from qbusiness_tools.services.cloudwatch import CloudWatchService
from qbusiness_tools.services.cognito_config import CognitoConfigService
from qbusiness_tools.services.identity import CredentialExchange
from qbusiness_tools.services.qbusiness import QBusinessService
from qbusiness_tools.services.resolver import CredentialCache, CredentialResolver
from qbusiness_tools.services.s3 import S3Service
from qbusiness_tools.services.session_store import SessionStore
from qbusiness_tools.settings import Settings

REGION = "us-east-1"
ANONYMOUS_ROLE_ARN = "arn:aws:iam::123456789012:role/QBusinessAnonymous"


def client_error(code: str = "AccessDenied", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised"}}, operation)


@functools.lru_cache(maxsize=None)
def real_client(botocore_name: str):
    return boto3.client(
        botocore_name, region_name=REGION, aws_access_key_id="testing", aws_secret_access_key="testing"
    )


def aws_client_mock(botocore_name: str) -> mock.MagicMock:
    """Mock shaped like a real boto3 client, so calls to missing operations fail."""
    return mock.create_autospec(real_client(botocore_name))


class FakeTable:
    """In-memory stand-in for a DynamoDB ``Table`` resource."""

    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}
        self.get_calls = 0
        self.fail_get: Optional[Exception] = None
        self.fail_put: Optional[Exception] = None

    def put_item(self, Item: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_put is not None:
            raise self.fail_put
        self.items[Item["sessionId"]] = dict(Item)
        return {}

    def get_item(self, Key: Dict[str, Any]) -> Dict[str, Any]:
        self.get_calls += 1
        if self.fail_get is not None:
            raise self.fail_get
        item = self.items.get(Key["sessionId"])
        return {"Item": dict(item)} if item else {}


class CapturingClientFactory:
    """Client factory that records every credential-scoped client it builds."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, AwsCredentials]] = []
        self.clients: Dict[str, mock.MagicMock] = {}

    def __call__(self, service: str, region: str, credentials: AwsCredentials) -> mock.MagicMock:
        self.calls.append((service, region, credentials))
        client = self.clients.get(service)
        if client is None:
            client = self.clients[service] = aws_client_mock(botocore_service_name(service))
        return client


def sts_credentials(
    access_key_id: str = "ASIAEXAMPLEKEY",
    expires_in: datetime.timedelta = datetime.timedelta(hours=1),
) -> Dict[str, Any]:
    return {
        "Credentials": {
            "AccessKeyId": access_key_id,
            "SecretAccessKey": "secret-example",
            "SessionToken": "token-example",
            "Expiration": datetime.datetime.now(datetime.timezone.utc) + expires_in,
        }
    }


@pytest.fixture
def settings() -> Settings:
    return Settings(
        region=REGION,
        identity_center_application_id="arn:aws:sso::123456789012:application/ssoins-1/apl-1",
        identity_center_role_arn="arn:aws:iam::123456789012:role/QBusinessIdentityCenter",
        anonymous_access_role_arn=ANONYMOUS_ROLE_ARN,
        bedrock_eval_role_arn="arn:aws:iam::123456789012:role/BedrockEval",
        chat_stream_idle_timeout_seconds=5.0,
    )


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def store(table: FakeTable) -> SessionStore:
    return SessionStore(table)


@pytest.fixture
def client_factory() -> CapturingClientFactory:
    return CapturingClientFactory()


@pytest.fixture
def resolver(store: SessionStore, client_factory: CapturingClientFactory) -> CredentialResolver:
    return CredentialResolver(store, CredentialCache(), client_factory=client_factory)


@pytest.fixture
def sts() -> mock.MagicMock:
    client = aws_client_mock("sts")
    client.assume_role.return_value = sts_credentials()
    return client


@pytest.fixture
def sso_oidc() -> mock.MagicMock:
    return aws_client_mock("sso-oidc")


@pytest.fixture
def default_clients() -> Dict[str, mock.MagicMock]:
    return {
        name: aws_client_mock(botocore_service_name(name))
        for name in ("qbusiness", "cloudwatch-logs", "s3", "bedrock", "secretsmanager")
    }


@pytest.fixture
def services(
    settings: Settings,
    store: SessionStore,
    resolver: CredentialResolver,
    sts: mock.MagicMock,
    sso_oidc: mock.MagicMock,
    default_clients: Dict[str, mock.MagicMock],
) -> Services:
    return Services(
        settings=settings,
        store=store,
        resolver=resolver,
        identity=CredentialExchange(store, sts, sso_oidc, settings),
        qbusiness=QBusinessService(resolver, REGION, default_clients["qbusiness"]),
        chat=ChatService(resolver, REGION, default_clients["qbusiness"], idle_timeout=5.0),
        cloudwatch=CloudWatchService(resolver, REGION, default_clients["cloudwatch-logs"], poll_interval=0),
        s3=S3Service(resolver, REGION, default_clients["s3"]),
        bedrock=BedrockService(
            resolver,
            REGION,
            default_clients["bedrock"],
            eval_role_arn=settings.bedrock_eval_role_arn,
            evaluator_model_id=settings.bedrock_evaluator_model_id,
        ),
        cognito_config=CognitoConfigService(
            resolver, REGION, default_clients["secretsmanager"], secret_id=settings.cognito_config_secret_id
        ),
    )


@pytest.fixture
def api(services: Services) -> TestClient:
    return TestClient(create_app(services=services))
