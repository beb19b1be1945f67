"""Artifact storage on MinIO / S3-compatible object storage.

Screenshots, videos and traces are uploaded here. The MinIO SDK is
synchronous, so each call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
from datetime import timedelta
from pathlib import Path

from minio import Minio
from minio.error import S3Error

from tramoya.config import settings
from tramoya.runner.errors import ArtifactStoreError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".json": "application/json",
    ".txt": "text/plain",
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".webm": "video/webm",
    ".zip": "application/zip",
}


RUN_ARTIFACTS = {"video": "video.webm", "trace": "trace.zip"}


def run_artifact_name(run_id: str, kind: str) -> str:
    """Object name of a run-level artifact (``video`` or ``trace``)."""
    return f"runs/{run_id}/{RUN_ARTIFACTS[kind]}"


def get_content_type(object_name: str) -> str:
    return CONTENT_TYPES.get(Path(object_name).suffix.lower(), "application/octet-stream")


def public_read_policy(bucket: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": ["*"]},
                "Action": ["s3:GetObject"],
                "Resource": [f"arn:aws:s3:::{bucket}/*"],
            }
        ],
    })


class ArtifactStore:
    """Uploads run artifacts and hands out retrieval URLs."""

    def __init__(
        self,
        client: Minio | None = None,
        bucket: str | None = None,
        public_prefix: str | None = None,
    ):
        self.bucket = bucket or settings.minio_bucket
        self.public_prefix = (public_prefix or settings.storage_public_prefix).rstrip("/")
        self.client = client or Minio(
            f"{settings.minio_endpoint}:{settings.minio_port}",
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_use_ssl,
        )
        logger.info(f"ArtifactStore initialized for bucket: {self.bucket}")

    async def ensure_bucket(self) -> None:
        """Create the bucket with a public-read policy if it does not exist.

        Called once at service startup, not per upload.
        """
        try:
            exists = await asyncio.to_thread(self.client.bucket_exists, bucket_name=self.bucket)
            if exists:
                logger.info(f"Bucket already exists: {self.bucket}")
                return
            logger.info(f"Creating bucket: {self.bucket}")
            await asyncio.to_thread(self.client.make_bucket, bucket_name=self.bucket)
            await asyncio.to_thread(
                self.client.set_bucket_policy,
                bucket_name=self.bucket,
                policy=public_read_policy(self.bucket),
            )
            logger.info(f"Bucket created and policy set: {self.bucket}")
        except S3Error as e:
            logger.error(f"Error ensuring bucket {self.bucket}: {e}")
            raise ArtifactStoreError(f"Could not ensure bucket {self.bucket}: {e}") from e

    async def upload_file(self, source: bytes | str | Path, object_name: str) -> str:
        """Upload raw bytes or a local file under ``object_name``. Returns the object name."""
        content_type = get_content_type(object_name)
        try:
            if isinstance(source, bytes):
                await asyncio.to_thread(
                    self.client.put_object,
                    bucket_name=self.bucket,
                    object_name=object_name,
                    data=io.BytesIO(source),
                    length=len(source),
                    content_type=content_type,
                )
                size = len(source)
            else:
                path = Path(source)
                size = path.stat().st_size
                await asyncio.to_thread(
                    self.client.fput_object,
                    bucket_name=self.bucket,
                    object_name=object_name,
                    file_path=str(path),
                    content_type=content_type,
                )
        except (S3Error, OSError) as e:
            raise ArtifactStoreError(f"Upload of {object_name} failed: {e}") from e

        logger.info(f"File uploaded: {object_name} ({size} bytes)")
        return object_name

    def get_public_url(self, object_name: str) -> str:
        """Relative URL served by the frontend proxy (bucket name not included)."""
        return f"{self.public_prefix}/{object_name}"

    async def get_presigned_url(self, object_name: str, expiry_seconds: int = 86400) -> str:
        try:
            return await asyncio.to_thread(
                self.client.presigned_get_object,
                bucket_name=self.bucket,
                object_name=object_name,
                expires=timedelta(seconds=expiry_seconds),
            )
        except S3Error as e:
            raise ArtifactStoreError(f"Could not presign {object_name}: {e}") from e
