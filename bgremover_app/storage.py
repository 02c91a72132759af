"""
Storage collaborator: puts uploaded photos into an S3-compatible bucket
(Cloudflare R2) and hands back a durable URL the prediction provider can fetch.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import uuid
from typing import Optional, Protocol
from urllib.parse import urljoin

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from . import config

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class Storage(Protocol):
    async def upload(self, data: bytes, filename: str, content_type: Optional[str] = None) -> str:
        ...


def _object_key(prefix: str, filename: str) -> str:
    _, ext = os.path.splitext(filename)
    return f"{prefix.strip('/')}/{uuid.uuid4()}{ext.lower()}"


class R2Storage:
    def __init__(self, settings: Optional[config.Settings] = None, client=None):
        self.settings = settings or config.get_settings()
        self._client = client

    def _get_s3_client(self):
        if self._client is not None:
            return self._client
        s = self.settings
        required = [s.r2_endpoint, s.r2_access_key_id, s.r2_secret_access_key, s.r2_bucket_name]
        if any(v is None for v in required):
            raise StorageError("R2 configuration is incomplete; check env vars.")
        session = boto3.session.Session()
        self._client = session.client(
            service_name="s3",
            aws_access_key_id=s.r2_access_key_id,
            aws_secret_access_key=s.r2_secret_access_key,
            endpoint_url=s.r2_endpoint,
            config=BotoConfig(signature_version="s3v4"),
        )
        return self._client

    def _build_public_url(self, key: str) -> str:
        if self.settings.r2_public_base_url:
            return urljoin(self.settings.r2_public_base_url.rstrip("/") + "/", key)
        # No public bucket domain configured; the provider gets a presigned link instead.
        return self._get_s3_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.settings.r2_bucket_name, "Key": key},
            ExpiresIn=3600,
        )

    def put(self, data: bytes, filename: str, content_type: Optional[str] = None) -> str:
        """Blocking upload; returns the durable URL of the stored object."""
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        key = _object_key(self.settings.upload_key_prefix, filename)
        try:
            client = self._get_s3_client()
            client.put_object(
                Bucket=self.settings.r2_bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
            url = self._build_public_url(key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload to storage failed: {exc}") from exc
        logger.info("Stored %s (%d bytes) as %s", filename, len(data), key)
        return url

    async def upload(self, data: bytes, filename: str, content_type: Optional[str] = None) -> str:
        return await asyncio.to_thread(self.put, data, filename, content_type)
