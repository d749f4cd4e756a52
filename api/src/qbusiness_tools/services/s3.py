"""S3 helpers for evaluation datasets and results."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from . import aws
from .base import SessionScopedService

logger = logging.getLogger(__name__)

CORS_RULE = {
    "AllowedHeaders": ["*"],
    "AllowedMethods": ["GET", "PUT", "POST", "DELETE", "HEAD"],
    "AllowedOrigins": ["*"],
    "ExposeHeaders": ["ETag"],
    "MaxAgeSeconds": 3000,
}

_UPLOAD_HINTS = {
    "AccessDenied": " This is an access denied error. Please check your IAM permissions.",
    "NoSuchBucket": " The specified bucket does not exist.",
}


def parse_json_document(text: str) -> List[Any]:
    """A JSON array document, or JSON Lines with unparseable lines dropped."""
    stripped = text.strip()
    if stripped.startswith("[") and stripped.endswith("]"):
        return json.loads(stripped)

    results = []
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            results.append(json.loads(line))
        except ValueError as exc:
            logger.warning("Skipping unparseable JSON line %d: %s", number, exc)
    return results


def _error_code(exc: Exception) -> Optional[str]:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


class S3Service(SessionScopedService):
    service_name = "s3"

    async def upload_object(
        self,
        bucket_name: str,
        key: str,
        content: str,
        content_type: str = "application/json",
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        params = {"Bucket": bucket_name, "Key": key, "Body": content, "ContentType": content_type}
        try:
            try:
                response = await aws.call(client, "put_object", ACL="public-read", **params)
            except (ClientError, BotoCoreError) as acl_error:
                logger.warning("Upload with ACL failed: %s. Trying without ACL...", acl_error)
                response = await aws.call(client, "put_object", **params)
        except (ClientError, BotoCoreError) as exc:
            hint = _UPLOAD_HINTS.get(_error_code(exc) or "", "")
            raise RuntimeError(f"Failed to upload object to S3.{hint} {exc}") from exc

        return {
            "status": "success",
            "message": f"Successfully uploaded object to {bucket_name}/{key}",
            "response": aws.strip_metadata(response),
        }

    async def bucket_exists(self, bucket_name: str, session_id: Optional[str] = None) -> bool:
        client = await self.client(session_id)
        try:
            await aws.call(client, "head_bucket", Bucket=bucket_name)
        except (ClientError, BotoCoreError) as exc:
            logger.info("Bucket %s does not exist or is not accessible: %s", bucket_name, exc)
            return False
        return True

    async def create_bucket(
        self, bucket_name: str, region: str = "us-east-1", session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if await self.bucket_exists(bucket_name, session_id):
            logger.info("Bucket %s already exists, skipping creation", bucket_name)
            return {"status": "success", "message": f"Bucket {bucket_name} already exists"}

        client = await self.client(session_id)
        params: Dict[str, Any] = {"Bucket": bucket_name}
        if region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            response = await aws.call(client, "create_bucket", **params)
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to create bucket {bucket_name}: {exc}") from exc
        return {
            "status": "success",
            "message": f"Successfully created bucket {bucket_name}",
            "response": aws.strip_metadata(response),
        }

    async def set_bucket_cors(self, bucket_name: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        client = await self.client(session_id)
        try:
            response = await aws.call(
                client,
                "put_bucket_cors",
                Bucket=bucket_name,
                CORSConfiguration={"CORSRules": [CORS_RULE]},
            )
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to set CORS policy on bucket {bucket_name}: {exc}") from exc
        return {
            "status": "success",
            "message": f"Successfully set CORS policy on bucket {bucket_name}",
            "response": aws.strip_metadata(response),
        }

    async def ensure_bucket(
        self, bucket_name: str, region: str = "us-east-1", session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        exists = await self.bucket_exists(bucket_name, session_id)
        if not exists:
            logger.info("Bucket %s doesn't exist. Creating a new bucket...", bucket_name)
            await self.create_bucket(bucket_name, region, session_id)
        await self.set_bucket_cors(bucket_name, session_id)
        return {
            "status": "success",
            "message": f"Bucket {bucket_name} exists with proper CORS configuration",
            "bucketCreated": not exists,
        }

    async def list_objects(self, bucket_name: str, prefix: str = "", session_id: Optional[str] = None) -> Dict[str, Any]:
        client = await self.client(session_id)
        objects = []
        params: Dict[str, Any] = {"Bucket": bucket_name, "Prefix": prefix or ""}
        try:
            while True:
                response = await aws.call(client, "list_objects_v2", **params)
                for item in response.get("Contents") or []:
                    objects.append(
                        {
                            "key": item.get("Key") or "",
                            "size": item.get("Size") or 0,
                            "lastModified": aws.to_iso(item.get("LastModified")),
                            "etag": item.get("ETag"),
                            "storageClass": item.get("StorageClass"),
                        }
                    )
                if not response.get("IsTruncated"):
                    break
                params["ContinuationToken"] = response.get("NextContinuationToken")
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to list S3 objects. Please check your permissions. {exc}") from exc

        logger.info("Listed %d objects from bucket %s", len(objects), bucket_name)
        return {
            "status": "success",
            "message": f"Successfully listed objects from bucket {bucket_name}",
            "objects": objects,
        }

    async def _read_object(self, bucket_name: str, key: str, session_id: Optional[str]) -> Dict[str, Any]:
        client = await self.client(session_id)
        try:
            response = await aws.call(client, "get_object", Bucket=bucket_name, Key=key)
            body = response["Body"]
            try:
                raw = await aws.run_blocking(body.read)
            finally:
                close = getattr(body, "close", None)
                if callable(close):
                    close()
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to get S3 object. Please check your permissions. {exc}") from exc
        try:
            response["Body"] = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RuntimeError(f"Object {bucket_name}/{key} is not valid UTF-8 text: {exc}") from exc
        return response

    async def get_object(self, bucket_name: str, key: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        response = await self._read_object(bucket_name, key, session_id)
        return {
            "status": "success",
            "message": f"Successfully retrieved object from {bucket_name}/{key}",
            "content": response["Body"],
            "contentType": response.get("ContentType"),
            "lastModified": aws.to_iso(response.get("LastModified")),
            "contentLength": response.get("ContentLength"),
        }

    async def get_object_json(self, bucket_name: str, key: str, session_id: Optional[str] = None) -> List[Any]:
        response = await self._read_object(bucket_name, key, session_id)
        try:
            results = parse_json_document(response["Body"])
        except ValueError as exc:
            raise RuntimeError(f"Object {bucket_name}/{key} is not valid JSON: {exc}") from exc
        logger.info("Parsed %d JSON objects from %s", len(results), key)
        return results
