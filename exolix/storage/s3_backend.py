"""Tier primaire sur S3 ou MinIO."""

from __future__ import annotations

from typing import Any

import structlog

from .base import MODEL_CONTENT_TYPE, StorageBackend

logger = structlog.get_logger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _error_code(exc: Exception) -> str:
    return str(getattr(exc, "response", {}).get("Error", {}).get("Code", ""))


class S3StorageBackend(StorageBackend):
    """
    Backend boto3 (signature S3v4, retry adaptatif).

    Un MinIO fraîchement déployé n'a pas encore de bucket de modèles: le
    bucket est créé au premier dépôt puis mémorisé.
    """

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        *,
        client: Any | None = None,
    ) -> None:
        if client is None:
            import boto3
            from botocore.config import Config

            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url or None,
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region,
                config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "adaptive"}),
            )
        self._client = client
        self.region = region
        self._known_buckets: set[str] = set()
        logger.info("s3_backend.initialized", endpoint=endpoint_url, region=region)

    def location(self, key: str, bucket: str = "") -> str:
        return f"s3://{bucket}/{key}"

    def ensure_bucket(self, bucket: str) -> None:
        from botocore.exceptions import ClientError

        if bucket in self._known_buckets:
            return
        try:
            self._client.head_bucket(Bucket=bucket)
        except ClientError as exc:
            if _error_code(exc) not in _MISSING_CODES | {"NoSuchBucket"}:
                raise
            params: dict[str, Any] = {"Bucket": bucket}
            if self.region != "us-east-1":
                params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
            self._client.create_bucket(**params)
            logger.info("s3.bucket_created", bucket=bucket)
        self._known_buckets.add(bucket)

    def save(self, data: bytes, key: str, bucket: str = "", content_type: str = MODEL_CONTENT_TYPE) -> str:
        if not bucket:
            raise ValueError("S3 storage needs a bucket name.")
        self.ensure_bucket(bucket)
        self._client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        logger.debug("s3.saved", key=key, bucket=bucket, size=len(data))
        return self.location(key, bucket)

    def load(self, key: str, bucket: str = "") -> bytes:
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise FileNotFoundError(self.location(key, bucket)) from exc
            raise
        return response["Body"].read()

    def exists(self, key: str, bucket: str = "") -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise
        return True

    def delete(self, key: str, bucket: str = "") -> bool:
        if not self.exists(key, bucket):
            return False
        self._client.delete_object(Bucket=bucket, Key=key)
        logger.debug("s3.deleted", key=key, bucket=bucket)
        return True
