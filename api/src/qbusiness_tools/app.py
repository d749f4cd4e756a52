"""
QBusiness tools API: Starlette app and Lambda handler.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Optional

import boto3
from mangum import Mangum
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.routing import Route

from .routes import bedrock as bedrock_routes
from .routes import chat as chat_routes
from .routes import cloudwatch as cloudwatch_routes
from .routes import config as config_routes
from .routes import credentials as credential_routes
from .routes import qbusiness as qbusiness_routes
from .routes import s3 as s3_routes
from .services import aws
from .services.bedrock import BedrockService
from .services.chat import ChatService
from .services.cloudwatch import CloudWatchService
from .services.cognito_config import CognitoConfigService
from .services.identity import CredentialExchange
from .services.qbusiness import QBusinessService
from .services.resolver import CredentialCache, CredentialResolver, TTLPolicy
from .services.s3 import S3Service
from .services.session_store import SessionStore
from .settings import Settings
from .web import json_response

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the route handlers reach through ``request.app.state.services``."""

    settings: Settings
    store: SessionStore
    resolver: CredentialResolver
    identity: CredentialExchange
    qbusiness: QBusinessService
    chat: ChatService
    cloudwatch: CloudWatchService
    s3: S3Service
    bedrock: BedrockService
    cognito_config: CognitoConfigService


def build_services(settings: Settings) -> Services:
    region = settings.region
    store = SessionStore.from_resource(boto3.resource("dynamodb", region_name=region), settings.session_table_name)
    resolver = CredentialResolver(store, CredentialCache(TTLPolicy(settings.credential_cache_ttl_seconds)))
    identity = CredentialExchange(
        store,
        sts=boto3.client("sts", region_name=region),
        sso_oidc=boto3.client("sso-oidc", region_name=region),
        settings=settings,
    )
    qbusiness_client = aws.default_client("qbusiness", region)
    return Services(
        settings=settings,
        store=store,
        resolver=resolver,
        identity=identity,
        qbusiness=QBusinessService(resolver, region, qbusiness_client),
        chat=ChatService(
            resolver, region, qbusiness_client, idle_timeout=settings.chat_stream_idle_timeout_seconds
        ),
        cloudwatch=CloudWatchService(resolver, region, aws.default_client("cloudwatch-logs", region)),
        s3=S3Service(resolver, region, aws.default_client("s3", region)),
        bedrock=BedrockService(
            resolver,
            settings.bedrock_region,
            aws.default_client("bedrock", settings.bedrock_region),
            eval_role_arn=settings.bedrock_eval_role_arn,
            evaluator_model_id=settings.bedrock_evaluator_model_id,
        ),
        cognito_config=CognitoConfigService(
            resolver,
            region,
            aws.default_client("secretsmanager", region),
            secret_id=settings.cognito_config_secret_id,
        ),
    )


async def healthcheck(request: Request):
    """Health check endpoint."""
    return json_response({"status": "healthy", "timestamp": dt.datetime.now(dt.timezone.utc).isoformat()})


routes = [
    Route("/healthz", endpoint=healthcheck, methods=["GET"]),
    *credential_routes.routes,
    *qbusiness_routes.routes,
    *chat_routes.routes,
    *cloudwatch_routes.routes,
    *s3_routes.routes,
    *bedrock_routes.routes,
    *config_routes.routes,
]


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> Starlette:
    settings = settings or (services.settings if services else Settings.from_env())
    logging.basicConfig(level=settings.log_level)
    app = Starlette(debug=False, routes=routes)
    app.state.services = services or build_services(settings)
    logger.info("QBusiness tools API configured for region %s", settings.region)
    return app


_mangum_handler: Optional[Mangum] = None


def handler(event, context):
    """Lambda entry point; the app is built on the first invocation of a container."""
    global _mangum_handler
    if _mangum_handler is None:
        _mangum_handler = Mangum(create_app(), lifespan="off")
    return _mangum_handler(event, context)
