"""S3-compatible object store (AWS S3, Cloudflare R2, MinIO).

boto3 is synchronous, so every call runs in a worker thread via
asyncio.to_thread.
"""

import asyncio
from typing import Any, AsyncIterator, Protocol

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from pixelrelay.core.config import Settings
from pixelrelay.services.exceptions import ConfigurationError, StorageError

logger = structlog.get_logger()

# Multipart part size; S3 and R2 require at least 5 MiB for every part but the last
DEFAULT_PART_SIZE = 6 * 1024 * 1024

CACHE_CONTROL = "public, max-age=31536000, immutable"


class ObjectStore(Protocol):
    """Opaque blob store: put bytes at a key, get a retrievable URL."""

    async def put_bytes(self, key: str, data: bytes, content_type: str) -> str: ...

    async def put_stream(
        self, key: str, chunks: AsyncIterator[bytes], content_type: str
    ) -> str: ...

    def public_url(self, key: str) -> str: ...


class S3ObjectStore:
    """ObjectStore backed by a boto3 S3 client."""

    def __init__(self, client: Any, bucket: str, public_base_url: str, part_size: int = DEFAULT_PART_SIZE):
        """Initialize the store.

        Args:
            client: boto3 S3 client
            bucket: Destination bucket
            public_base_url: Base URL the bucket is served from
            part_size: Multipart part size (at least 5 MiB on real S3)
        """
        self.client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self.part_size = part_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ObjectStore":
        if not settings.object_store_bucket:
            raise ConfigurationError("OBJECT_STORE_BUCKET is not configured")

        client = boto3.client(
            "s3",
            endpoint_url=settings.object_store_endpoint_url or None,
            region_name=settings.object_store_region,
            aws_access_key_id=settings.object_store_access_key_id or None,
            aws_secret_access_key=settings.object_store_secret_access_key or None,
        )
        return cls(client, settings.object_store_bucket, settings.object_store_public_url)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        """Upload a fully buffered object.

        Returns:
            Public URL of the stored object

        Raises:
            StorageError: If the upload failed
        """
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=CACHE_CONTROL,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e

        logger.info("object_store.put", key=key, size=len(data))
        return self.public_url(key)

    async def put_stream(self, key: str, chunks: AsyncIterator[bytes], content_type: str) -> str:
        """Upload an object from an async byte stream.

        At most one part is held in memory. Streams shorter than one part
        end up as a single put_object; longer ones use a multipart upload
        that is aborted if anything fails before completion.

        Returns:
            Public URL of the stored object

        Raises:
            StorageError: If the upload failed
        """
        buffer = bytearray()
        upload_id: str | None = None
        parts: list[dict[str, Any]] = []
        total = 0

        try:
            async for chunk in chunks:
                buffer.extend(chunk)
                total += len(chunk)
                if len(buffer) >= self.part_size:
                    if upload_id is None:
                        upload_id = await self._create_multipart(key, content_type)
                    parts.append(await self._upload_part(key, upload_id, len(parts) + 1, bytes(buffer)))
                    buffer.clear()

            if upload_id is None:
                return await self.put_bytes(key, bytes(buffer), content_type)

            if buffer:
                parts.append(await self._upload_part(key, upload_id, len(parts) + 1, bytes(buffer)))

            await asyncio.to_thread(
                self.client.complete_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException as e:
            if upload_id is not None:
                await self._abort_multipart(key, upload_id)
            if isinstance(e, (ClientError, BotoCoreError)):
                raise StorageError(f"Streaming upload of {key} failed: {e}") from e
            raise

        logger.info("object_store.put_stream", key=key, size=total, parts=len(parts))
        return self.public_url(key)

    async def _create_multipart(self, key: str, content_type: str) -> str:
        response = await asyncio.to_thread(
            self.client.create_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type,
            CacheControl=CACHE_CONTROL,
        )
        return response["UploadId"]

    async def _upload_part(self, key: str, upload_id: str, number: int, data: bytes) -> dict[str, Any]:
        response = await asyncio.to_thread(
            self.client.upload_part,
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=number,
            Body=data,
        )
        return {"ETag": response["ETag"], "PartNumber": number}

    async def _abort_multipart(self, key: str, upload_id: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.abort_multipart_upload, Bucket=self.bucket, Key=key, UploadId=upload_id
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("object_store.abort_failed", key=key, upload_id=upload_id, error=str(e))
