"""
Object storage for uploaded lesson files.

This module provides functionality for:
- Uploading file bytes to S3 without blocking the event loop
- Generating presigned URLs for time-limited downloads

The bucket is configured through ``storage.bucket`` (or S3_BUCKET_NAME).
When running locally without a bucket, uploads are skipped with a warning.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import UploadFailed
from .utils import sha256_hex

logger = logging.getLogger(__name__)


class ObjectStorage:
    """
    Thin wrapper around an S3 client scoped to one bucket.

    Args:
        bucket: Target bucket; empty disables uploads
        client: Preconfigured S3 client (created lazily with boto3 if omitted)
        presign_expiration: Default lifetime of presigned URLs in seconds
    """

    def __init__(self, bucket: str, client: Any = None, presign_expiration: int = 3600) -> None:
        self.bucket = bucket
        self.presign_expiration = presign_expiration
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket)

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    async def upload_bytes(self, data: bytes, key: str, content_type: Optional[str] = None) -> Optional[str]:
        """
        Upload bytes under ``key``.

        Returns:
            The object key, or None when no bucket is configured

        Raises:
            UploadFailed: If S3 rejected the upload or could not be reached
        """
        if not self.is_configured:
            logger.warning(f"Storage bucket not configured, skipping upload of {key}")
            return None

        extra = {"ContentType": content_type or "application/octet-stream", "Metadata": {"sha256": sha256_hex(data)}}
        logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{key}")
        try:
            await asyncio.to_thread(self._get_client().put_object, Bucket=self.bucket, Key=key, Body=data, **extra)
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed for {key}: {exc}")
            raise UploadFailed(f"Upload of {key} failed: {exc}") from exc

        logger.info(f"Upload successful: s3://{self.bucket}/{key}")
        return key

    def generate_presigned_url(self, key: str, expiration: Optional[int] = None) -> Optional[str]:
        """
        Presigned GET URL for ``key``, or None if it could not be generated.
        """
        if not self.is_configured:
            logger.warning("Storage bucket not configured")
            return None

        expires_in = expiration or self.presign_expiration
        try:
            url = self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"Failed to generate presigned URL for {key}: {exc}")
            return None

        logger.info(f"Generated presigned URL for {key} (expires in {expires_in}s)")
        return url
