"""
Guardian — Blob Storage

Uploads emergency audio and outfit photos to the S3-compatible object store
(MinIO in local deployments) and hands back a retrievable URL.

Dependencies: boto3
"""

from __future__ import annotations

import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from guardian.common.errors import BlobUploadError
from guardian.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class BlobStorage:
    """Thin S3 client bound to one bucket."""

    def __init__(
        self,
        bucket: Optional[str] = None,
        endpoint: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ) -> None:
        self._bucket = bucket or settings.storage_bucket
        endpoint = endpoint or settings.storage_endpoint
        scheme = "https" if settings.storage_secure else "http"
        self._endpoint_url = endpoint if "://" in endpoint else f"{scheme}://{endpoint}"
        self._public_base_url = (
            public_base_url
            or settings.storage_public_base_url
            or f"{self._endpoint_url}/{self._bucket}"
        ).rstrip("/")
        self._client = client

    @property
    def client(self):
        # Created lazily so importing the app never needs a reachable store
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self._endpoint_url,
                aws_access_key_id=settings.storage_access_key,
                aws_secret_access_key=settings.storage_secret_key,
                region_name=settings.storage_region,
            )
        return self._client

    def public_url(self, key: str) -> str:
        return f"{self._public_base_url}/{key}"

    def upload(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Upload `data` under `key` and return its public URL.

        Raises:
            BlobUploadError: If the object store rejects or cannot be reached
        """
        try:
            self.client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning(f"Blob upload failed ({key}): {exc}")
            raise BlobUploadError() from exc

        logger.info(
            "Blob uploaded",
            extra={"context": {"key": key, "bytes": len(data), "content_type": content_type}},
        )
        return self.public_url(key)
