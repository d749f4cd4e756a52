"""Tests for Bedrock evaluation jobs and the Cognito config endpoint."""

from __future__ import annotations

import asyncio
import json

import pytest
from starlette.testclient import TestClient

from qbusiness_tools.services.bedrock import EVALUATION_METRICS, RAG_SOURCE_IDENTIFIER, BedrockService
from qbusiness_tools.settings import ConfigurationError


class TestEvaluations:
    def test_start_evaluation_builds_rag_job(self, services, default_clients, settings) -> None:
        client = default_clients["bedrock"]
        client.create_evaluation_job.return_value = {"jobArn": "arn:job", "ResponseMetadata": {}}

        result = asyncio.run(services.bedrock.start_evaluation("bucket", "input/data.jsonl", "output/", "job-1"))

        assert result == {"jobArn": "arn:job"}
        kwargs = client.create_evaluation_job.call_args.kwargs
        assert kwargs["roleArn"] == settings.bedrock_eval_role_arn
        assert kwargs["applicationType"] == "RagEvaluation"
        assert kwargs["outputDataConfig"] == {"s3Uri": "s3://bucket/output/"}
        dataset = kwargs["evaluationConfig"]["automated"]["datasetMetricConfigs"][0]
        assert dataset["dataset"]["datasetLocation"] == {"s3Uri": "s3://bucket/input/data.jsonl"}
        assert dataset["metricNames"] == EVALUATION_METRICS
        rag = kwargs["inferenceConfig"]["ragConfigs"][0]
        assert rag["precomputedRagSourceConfig"]["retrieveAndGenerateSourceConfig"] == {
            "ragSourceIdentifier": RAG_SOURCE_IDENTIFIER
        }

    def test_start_evaluation_needs_role(self, resolver, default_clients) -> None:
        bedrock = BedrockService(resolver, "us-east-1", default_clients["bedrock"], evaluator_model_id="model")
        with pytest.raises(ConfigurationError):
            asyncio.run(bedrock.start_evaluation("bucket", "in", "out", "job"))
        default_clients["bedrock"].create_evaluation_job.assert_not_called()

    def test_status_requires_job_id(self, api: TestClient) -> None:
        response = api.get("/api/bedrock/evaluations/status")
        assert response.status_code == 400
        assert response.json()["message"] == "jobId is required"

    def test_list_evaluations(self, api: TestClient, default_clients) -> None:
        default_clients["bedrock"].list_evaluation_jobs.return_value = {"jobSummaries": []}
        response = api.get("/api/bedrock/evaluations", params={"maxResults": "5", "nextToken": "t"})
        assert response.json() == {"jobSummaries": []}
        default_clients["bedrock"].list_evaluation_jobs.assert_called_once_with(maxResults=5, nextToken="t")


class TestCognitoConfig:
    def test_returns_secret_without_placeholder(self, api: TestClient, default_clients) -> None:
        default_clients["secretsmanager"].get_secret_value.return_value = {
            "SecretString": json.dumps({"userPoolId": "pool", "dummy": "x"})
        }
        response = api.get("/api/config/cognito")
        assert response.json() == {"status": "success", "config": {"userPoolId": "pool"}}

    def test_missing_secret_string_is_500(self, api: TestClient, default_clients) -> None:
        default_clients["secretsmanager"].get_secret_value.return_value = {"SecretBinary": b"x"}
        response = api.get("/api/config/cognito")
        assert response.status_code == 500
        assert response.json()["error"] == "config_failed"
