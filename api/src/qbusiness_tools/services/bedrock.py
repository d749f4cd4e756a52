"""Bedrock RAG evaluation jobs over precomputed Q Business answers."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..settings import ConfigurationError
from . import aws
from .base import SessionScopedService

logger = logging.getLogger(__name__)

EVALUATION_METRICS = [
    "Builtin.Helpfulness",
    "Builtin.Correctness",
    "Builtin.LogicalCoherence",
    "Builtin.Faithfulness",
    "Builtin.Completeness",
    "Builtin.CitationPrecision",
    "Builtin.CitationCoverage",
    "Builtin.Harmfulness",
]
RAG_SOURCE_IDENTIFIER = "user_knowledge_base"


def build_evaluation_config(dataset_name: str, input_s3_uri: str, evaluator_model_id: str) -> Dict[str, Any]:
    return {
        "automated": {
            "datasetMetricConfigs": [
                {
                    "taskType": "Summarization",
                    "dataset": {"name": dataset_name, "datasetLocation": {"s3Uri": input_s3_uri}},
                    "metricNames": list(EVALUATION_METRICS),
                }
            ],
            "evaluatorModelConfig": {"bedrockEvaluatorModels": [{"modelIdentifier": evaluator_model_id}]},
        }
    }


def build_inference_config() -> Dict[str, Any]:
    return {
        "ragConfigs": [
            {
                "precomputedRagSourceConfig": {
                    "retrieveAndGenerateSourceConfig": {"ragSourceIdentifier": RAG_SOURCE_IDENTIFIER}
                }
            }
        ]
    }


class BedrockService(SessionScopedService):
    service_name = "bedrock"

    def __init__(
        self,
        resolver,
        region: str,
        default_client,
        *,
        eval_role_arn: Optional[str] = None,
        evaluator_model_id: str,
    ) -> None:
        super().__init__(resolver, region, default_client)
        self._eval_role_arn = eval_role_arn
        self._evaluator_model_id = evaluator_model_id

    async def start_evaluation(
        self,
        s3_bucket_name: str,
        input_file_key: str,
        output_folder: str,
        job_name: str,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self._eval_role_arn:
            raise ConfigurationError("BEDROCK_QUERY_EVAL_ROLE_ARN must be set to start evaluations")

        input_uri = f"s3://{s3_bucket_name}/{input_file_key}"
        output_uri = f"s3://{s3_bucket_name}/{output_folder}"
        logger.info("Starting evaluation job %s (input %s, output %s)", job_name, input_uri, output_uri)

        client = await self.client(session_id)
        response = await aws.call(
            client,
            "create_evaluation_job",
            jobName=job_name,
            roleArn=self._eval_role_arn,
            applicationType="RagEvaluation",
            evaluationConfig=build_evaluation_config(job_name, input_uri, self._evaluator_model_id),
            inferenceConfig=build_inference_config(),
            outputDataConfig={"s3Uri": output_uri},
        )
        return aws.strip_metadata(response)

    async def get_evaluation_job(self, job_id: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        client = await self.client(session_id)
        logger.info("Getting evaluation job status for %s", job_id)
        response = await aws.call(client, "get_evaluation_job", jobIdentifier=job_id)
        return aws.strip_metadata(response)

    async def list_evaluation_jobs(
        self, max_results: int = 10, next_token: Optional[str] = None, session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        params: Dict[str, Any] = {"maxResults": max_results}
        if next_token:
            params["nextToken"] = next_token
        response = await aws.call(client, "list_evaluation_jobs", **params)
        return aws.strip_metadata(response)
