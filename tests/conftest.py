"""pytest fixtures for pixelrelay tests.

Provides:
- session_factory: Function-scoped SQLite database (file in tmp_path) with all tables created
- uow_factory: UnitOfWork factory over that database
- redis / coordinator: In-memory Redis stand-in and the Coordinator on top of it
- store / queue / registry: Fake object store, delay queue and provider adapters
- services: Fully wired orchestration services built with build_services()
"""

import base64
import os

# Settings() is evaluated when pixelrelay.app is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ["TZ"] = "UTC"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from fakes import DummyRedis, FakeObjectStore, FakeProvider, FakeQueue  # noqa: E402
from pixelrelay import models  # noqa: E402, F401
from pixelrelay.core.config import Settings  # noqa: E402
from pixelrelay.core.database import setup_db_session  # noqa: E402
from pixelrelay.models.provider_key import ProviderKey  # noqa: E402
from pixelrelay.services.container import build_services  # noqa: E402
from pixelrelay.services.coordination import Coordinator  # noqa: E402
from pixelrelay.services.providers import ProviderRegistry  # noqa: E402
from pixelrelay.services.storage.relay import BlobRelay  # noqa: E402
from pixelrelay.uow import create_uow_factory  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PNG_B64 = base64.b64encode(PNG_BYTES).decode()
RESULT_URL = "https://provider.example.com/results/out.png"
PUBLIC_BASE_URL = "https://api.example.com"


def result_handler(request: httpx.Request) -> httpx.Response:
    """Provider-hosted result files; any path containing `missing` answers 404."""
    if "missing" in request.url.path:
        return httpx.Response(404, text="Not Found")
    return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})


@pytest.fixture
def settings() -> Settings:
    return Settings(  # type: ignore[call-arg]
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        APP_ENV="test",
        PUBLIC_BASE_URL=PUBLIC_BASE_URL,
        OBJECT_STORE_PUBLIC_URL="https://cdn.example.com",
        POLL_MAX_ATTEMPTS=3,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test, schema created from SQLModel metadata."""
    factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'pixelrelay.db'}")
    engine = factory.kw["bind"]

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def uow_factory(session_factory):
    return create_uow_factory(session_factory)


@pytest.fixture
def redis() -> DummyRedis:
    return DummyRedis()


@pytest.fixture
def coordinator(redis) -> Coordinator:
    return Coordinator(redis)  # type: ignore[arg-type]


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest_asyncio.fixture
async def result_client():
    """HTTP client serving provider result files from memory."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(result_handler)) as client:
        yield client


@pytest.fixture
def relay(result_client, store) -> BlobRelay:
    return BlobRelay(result_client, store)  # type: ignore[arg-type]


@pytest.fixture
def freepik() -> FakeProvider:
    return FakeProvider("freepik", uses_key_pool=True)


@pytest.fixture
def fal() -> FakeProvider:
    return FakeProvider("fal")


@pytest.fixture
def replicate_provider() -> FakeProvider:
    return FakeProvider("replicate")


@pytest.fixture
def registry(freepik, fal, replicate_provider) -> ProviderRegistry:
    return ProviderRegistry([freepik, fal, replicate_provider])


@pytest.fixture
def services(settings, uow_factory, coordinator, relay, store, queue, registry):
    return build_services(
        settings,
        uow_factory,
        coordinator,
        relay=relay,
        store=store,  # type: ignore[arg-type]
        queue=queue,
        registry=registry,
    )


@pytest_asyncio.fixture
async def freepik_key(uow_factory) -> ProviderKey:
    """One active Freepik key with plenty of quota."""
    async with await uow_factory() as uow:
        key = await uow.provider_keys.add(
            ProviderKey(provider="freepik", name="primary", secret="fpk-secret-1", daily_limit=100)
        )
    return key
