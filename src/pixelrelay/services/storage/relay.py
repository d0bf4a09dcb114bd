"""Blob relay: mirror a provider-hosted result into the owned object store.

Storage keys are deterministic per task (`<owner scope>/results/<task id>.<ext>`),
so relaying the same task twice overwrites the same object.
"""

import asyncio
import os
import tempfile
from dataclasses import dataclass
from typing import Literal
from urllib.parse import urlparse
from uuid import UUID

import httpx
import structlog

from pixelrelay.services.exceptions import RelayError, StorageError
from pixelrelay.services.storage.object_store import ObjectStore

logger = structlog.get_logger()

CONTENT_TYPE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}

EXTENSION_CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
}


def get_image_extension(content_type: str | None, url: str | None = None) -> str:
    """Pick a file extension from a response content type, then the URL path.

    Falls back to `png` when neither is conclusive.
    """
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if mime in CONTENT_TYPE_EXTENSIONS:
            return CONTENT_TYPE_EXTENSIONS[mime]

    if url:
        suffix = os.path.splitext(urlparse(url).path)[1].lstrip(".").lower()
        if suffix in EXTENSION_CONTENT_TYPES:
            return "jpg" if suffix == "jpeg" else suffix

    return "png"


def result_storage_key(owner_scope: str, task_id: UUID | str, extension: str) -> str:
    return f"{owner_scope}/results/{task_id}.{extension.lstrip('.')}"


@dataclass(frozen=True)
class RelayResult:
    storage_key: str
    public_url: str
    method: Literal["stream", "local"]


class BlobRelay:
    """Downloads a result from a provider URL and re-uploads it.

    The primary path streams the response body into the object store. The
    fallback path downloads again, buffers through a local temp file and
    uploads the buffer; it is used when streaming fails and fallback is
    allowed by the caller.
    """

    def __init__(self, http_client: httpx.AsyncClient, store: ObjectStore, timeout: float = 60.0):
        self.http_client = http_client
        self.store = store
        self.timeout = timeout

    async def relay(
        self,
        source_url: str,
        owner_scope: str,
        task_id: UUID | str,
        extension: str | None = None,
        allow_fallback: bool = True,
    ) -> RelayResult:
        """Mirror `source_url` into the store under the task's result key.

        Args:
            source_url: Provider-hosted result URL
            owner_scope: Storage prefix of the task owner
            task_id: Internal task id
            extension: Forced file extension (detected from the response when None)
            allow_fallback: Whether to retry through a local temp file when streaming fails

        Returns:
            RelayResult with the storage key, public URL and the path that succeeded

        Raises:
            RelayError: If the result could not be downloaded or stored
        """
        try:
            return await self._relay_stream(source_url, owner_scope, task_id, extension)
        except (httpx.HTTPError, httpx.InvalidURL, StorageError) as e:
            if not allow_fallback:
                logger.warning(
                    "relay.stream_failed",
                    task_id=str(task_id),
                    error_type=type(e).__name__,
                    error=str(e),
                    fallback=False,
                )
                raise RelayError(f"Streaming relay failed: {e}") from e
            logger.warning(
                "relay.stream_failed",
                task_id=str(task_id),
                error_type=type(e).__name__,
                error=str(e),
                fallback=True,
            )

        try:
            return await self._relay_local(source_url, owner_scope, task_id, extension)
        except (httpx.HTTPError, httpx.InvalidURL, StorageError, OSError) as e:
            logger.error(
                "relay.fallback_failed",
                task_id=str(task_id),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise RelayError(f"Relay failed: {e}") from e

    async def _relay_stream(
        self, source_url: str, owner_scope: str, task_id: UUID | str, extension: str | None
    ) -> RelayResult:
        async with self.http_client.stream(
            "GET", source_url, timeout=self.timeout, follow_redirects=True
        ) as response:
            response.raise_for_status()
            ext = extension or get_image_extension(response.headers.get("content-type"), source_url)
            key = result_storage_key(owner_scope, task_id, ext)
            url = await self.store.put_stream(
                key, response.aiter_bytes(), EXTENSION_CONTENT_TYPES.get(ext, "application/octet-stream")
            )

        logger.info("relay.completed", task_id=str(task_id), storage_key=key, method="stream")
        return RelayResult(storage_key=key, public_url=url, method="stream")

    async def _relay_local(
        self, source_url: str, owner_scope: str, task_id: UUID | str, extension: str | None
    ) -> RelayResult:
        response = await self.http_client.get(source_url, timeout=self.timeout, follow_redirects=True)
        response.raise_for_status()
        ext = extension or get_image_extension(response.headers.get("content-type"), source_url)
        key = result_storage_key(owner_scope, task_id, ext)

        fd, path = tempfile.mkstemp(prefix=f"relay-{task_id}-", suffix=f".{ext}")
        os.close(fd)
        try:
            await asyncio.to_thread(_write_file, path, response.content)
            data = await asyncio.to_thread(_read_file, path)
            url = await self.store.put_bytes(
                key, data, EXTENSION_CONTENT_TYPES.get(ext, "application/octet-stream")
            )
        finally:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

        logger.info("relay.completed", task_id=str(task_id), storage_key=key, method="local")
        return RelayResult(storage_key=key, public_url=url, method="local")


def _write_file(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()
