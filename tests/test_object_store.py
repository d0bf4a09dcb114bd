"""S3ObjectStore tests with a recording stand-in for the boto3 client."""

from typing import Any

import pytest
from botocore.exceptions import ClientError

from pixelrelay.core.config import Settings
from pixelrelay.services.exceptions import ConfigurationError, StorageError
from pixelrelay.services.storage.object_store import CACHE_CONTROL, S3ObjectStore


class RecordingS3Client:
    def __init__(self, fail_on: str | None = None):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_on = fail_on

    def _record(self, name: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((name, kwargs))
        if self.fail_on == name:
            raise ClientError({"Error": {"Code": "InternalError", "Message": "boom"}}, name)

    def put_object(self, **kwargs):
        self._record("put_object", kwargs)
        return {}

    def create_multipart_upload(self, **kwargs):
        self._record("create_multipart_upload", kwargs)
        return {"UploadId": "upload-1"}

    def upload_part(self, **kwargs):
        self._record("upload_part", kwargs)
        return {"ETag": f'"etag-{kwargs["PartNumber"]}"'}

    def complete_multipart_upload(self, **kwargs):
        self._record("complete_multipart_upload", kwargs)
        return {}

    def abort_multipart_upload(self, **kwargs):
        self._record("abort_multipart_upload", kwargs)
        return {}

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


async def chunks(*parts: bytes):
    for part in parts:
        yield part


def make_store(client: RecordingS3Client, part_size: int = 4) -> S3ObjectStore:
    return S3ObjectStore(client, "results", "https://cdn.example.com/", part_size=part_size)


@pytest.mark.asyncio
async def test_put_bytes():
    client = RecordingS3Client()

    url = await make_store(client).put_bytes("users/u1/results/t1.png", b"png", "image/png")

    assert url == "https://cdn.example.com/users/u1/results/t1.png"
    [(name, kwargs)] = client.calls
    assert name == "put_object"
    assert kwargs["Bucket"] == "results"
    assert kwargs["ContentType"] == "image/png"
    assert kwargs["CacheControl"] == CACHE_CONTROL


@pytest.mark.asyncio
async def test_put_bytes_failure_raises_storage_error():
    client = RecordingS3Client(fail_on="put_object")

    with pytest.raises(StorageError):
        await make_store(client).put_bytes("k", b"png", "image/png")


@pytest.mark.asyncio
async def test_short_stream_is_single_put():
    client = RecordingS3Client()

    await make_store(client).put_stream("k", chunks(b"ab", b"c"), "image/png")

    assert client.names() == ["put_object"]
    assert client.calls[0][1]["Body"] == b"abc"


@pytest.mark.asyncio
async def test_long_stream_uses_multipart():
    client = RecordingS3Client()

    url = await make_store(client).put_stream("k", chunks(b"abc", b"def", b"gh", b"i"), "image/png")

    assert url == "https://cdn.example.com/k"
    assert client.names() == [
        "create_multipart_upload",
        "upload_part",
        "upload_part",
        "complete_multipart_upload",
    ]
    bodies = [kwargs["Body"] for name, kwargs in client.calls if name == "upload_part"]
    assert bodies == [b"abcdef", b"ghi"]
    completed = client.calls[-1][1]["MultipartUpload"]["Parts"]
    assert [p["PartNumber"] for p in completed] == [1, 2]


@pytest.mark.asyncio
async def test_failed_part_aborts_multipart():
    client = RecordingS3Client(fail_on="complete_multipart_upload")

    with pytest.raises(StorageError):
        await make_store(client).put_stream("k", chunks(b"abcd", b"ef"), "image/png")

    assert client.names()[-1] == "abort_multipart_upload"
    assert client.calls[-1][1]["UploadId"] == "upload-1"


@pytest.mark.asyncio
async def test_source_failure_aborts_multipart_and_propagates():
    client = RecordingS3Client()

    async def broken():
        yield b"abcdef"
        raise ConnectionResetError("source went away")

    with pytest.raises(ConnectionResetError):
        await make_store(client).put_stream("k", broken(), "image/png")

    assert client.names()[-1] == "abort_multipart_upload"


def test_from_settings_requires_bucket():
    settings = Settings(DATABASE_URL="sqlite+aiosqlite:///:memory:", OBJECT_STORE_BUCKET="")  # type: ignore[call-arg]

    with pytest.raises(ConfigurationError):
        S3ObjectStore.from_settings(settings)


def test_from_settings_builds_client():
    settings = Settings(  # type: ignore[call-arg]
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        OBJECT_STORE_BUCKET="results",
        OBJECT_STORE_ENDPOINT_URL="https://account.r2.cloudflarestorage.com",
        OBJECT_STORE_REGION="auto",
        OBJECT_STORE_ACCESS_KEY_ID="id",
        OBJECT_STORE_SECRET_ACCESS_KEY="secret",
        OBJECT_STORE_PUBLIC_URL="https://cdn.example.com",
    )

    store = S3ObjectStore.from_settings(settings)

    assert store.bucket == "results"
    assert store.public_url("a/b.png") == "https://cdn.example.com/a/b.png"
