"""
Output persistence for transcoded images.

Two backends share the `OutputStore.save(data, key) -> location` contract:
 - `LocalOutputStore` writes under a directory (default `./output_images`),
 - `R2OutputStore` uploads to Cloudflare R2 / any S3-compatible bucket.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urljoin
import uuid

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .errors import StorageError

logger = logging.getLogger(__name__)


def new_output_key(prefix: str = "output", extension: str = "jpg") -> str:
    """Unique object name for one output, e.g. `output-<uuid4>.jpg`."""
    return f"{prefix}-{uuid.uuid4()}.{extension}"


class OutputStore:
    def save(self, data: bytes, key: str, content_type: str) -> str:
        raise NotImplementedError


class LocalOutputStore(OutputStore):
    def __init__(self, root: Path):
        self.root = Path(root)

    def save(self, data: bytes, key: str, content_type: str) -> str:
        path = self.root / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Could not write output to {path}") from exc
        logger.info("Saved image to %s", path)
        return str(path)


class R2OutputStore(OutputStore):
    def __init__(self, settings: config.Settings, client=None):
        if not settings.r2_configured:
            raise RuntimeError("R2 configuration is incomplete; check env vars.")
        self.settings = settings
        self.client = client or self._build_client(settings)

    @staticmethod
    def _build_client(settings: config.Settings):
        session = boto3.session.Session()
        return session.client(
            service_name="s3",
            aws_access_key_id=settings.r2_access_key_id,
            aws_secret_access_key=settings.r2_secret_access_key,
            endpoint_url=settings.r2_endpoint,
            config=BotoConfig(signature_version="s3v4"),
        )

    def public_url(self, key: str) -> str:
        if self.settings.r2_public_base_url:
            return urljoin(self.settings.r2_public_base_url.rstrip("/") + "/", key)
        # No public bucket domain: hand out a presigned URL instead
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.settings.r2_bucket_name, "Key": key},
            ExpiresIn=3600,
        )

    def save(self, data: bytes, key: str, content_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=self.settings.r2_bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
            url = self.public_url(key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload to storage failed for key {key}") from exc
        logger.info("Uploaded image to bucket=%s key=%s", self.settings.r2_bucket_name, key)
        return url


def build_output_store(settings: Optional[config.Settings] = None) -> OutputStore:
    """R2 when fully configured, otherwise the local output directory."""
    settings = settings or config.get_settings()
    if settings.r2_configured:
        return R2OutputStore(settings)
    return LocalOutputStore(settings.output_dir)
