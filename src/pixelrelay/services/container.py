"""Wiring of the orchestration services around injected collaborators.

Built once per process (application lifespan or CLI run); nothing here is a
module-level singleton.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
import redis.asyncio as aioredis
import structlog

from pixelrelay.core.config import Settings
from pixelrelay.services.completion import CompletionHandler
from pixelrelay.services.coordination import Coordinator
from pixelrelay.services.key_pool import ProviderKeyPool
from pixelrelay.services.ledger import CreditLedger
from pixelrelay.services.providers import (
    FalAdapter,
    FreepikAdapter,
    ProviderRegistry,
    ReplicateAdapter,
)
from pixelrelay.services.queue import DelayQueue, QStashQueue
from pixelrelay.services.reconciliation import Reconciler
from pixelrelay.services.scheduler import PollScheduler
from pixelrelay.services.storage.object_store import ObjectStore, S3ObjectStore
from pixelrelay.services.storage.relay import BlobRelay
from pixelrelay.services.submission import SubmissionService
from pixelrelay.services.sweeper import TimeoutSweeper
from pixelrelay.uow import UnitOfWorkFactory

logger = structlog.get_logger()

POLL_TASK_PATH = "internal/poll-task"


@dataclass
class Services:
    ledger: CreditLedger
    key_pool: ProviderKeyPool
    coordinator: Coordinator
    registry: ProviderRegistry
    completion: CompletionHandler
    scheduler: PollScheduler
    reconciler: Reconciler
    submission: SubmissionService
    sweeper: TimeoutSweeper


def build_services(
    settings: Settings,
    uow_factory: UnitOfWorkFactory,
    coordinator: Coordinator,
    relay: BlobRelay,
    store: ObjectStore,
    queue: DelayQueue,
    registry: ProviderRegistry,
) -> Services:
    """Assemble every orchestration service from its collaborators."""
    ledger = CreditLedger(uow_factory)
    key_pool = ProviderKeyPool(uow_factory)
    completion = CompletionHandler(
        uow_factory,
        coordinator,
        relay,
        ledger,
        lock_ttl=settings.completion_lock_ttl_seconds,
        max_poll_attempts=settings.poll_max_attempts,
    )
    scheduler = PollScheduler(
        uow_factory,
        queue,
        coordinator,
        completion,
        callback_url=settings.callback_url(POLL_TASK_PATH),
        base_delay=settings.poll_base_delay_seconds,
        max_delay=settings.poll_max_delay_seconds,
        max_attempts=settings.poll_max_attempts,
    )
    reconciler = Reconciler(
        uow_factory,
        registry,
        coordinator,
        completion,
        scheduler,
        progress_ttl=settings.progress_hint_ttl_seconds,
    )
    submission = SubmissionService(
        uow_factory,
        registry,
        key_pool,
        ledger,
        store,
        completion,
        scheduler,
        public_base_url=settings.public_base_url,
    )
    sweeper = TimeoutSweeper(uow_factory, completion)

    return Services(
        ledger=ledger,
        key_pool=key_pool,
        coordinator=coordinator,
        registry=registry,
        completion=completion,
        scheduler=scheduler,
        reconciler=reconciler,
        submission=submission,
        sweeper=sweeper,
    )


def build_registry(settings: Settings, http_client: httpx.AsyncClient) -> ProviderRegistry:
    """Register every provider adapter configured for this deployment."""
    adapters: list = [
        FreepikAdapter(
            http_client,
            api_base=settings.freepik_api_base,
            submit_timeout=settings.provider_timeout_seconds,
            query_timeout=settings.provider_query_timeout_seconds,
        )
    ]
    if settings.fal_api_key:
        adapters.append(
            FalAdapter(
                http_client,
                api_key=settings.fal_api_key,
                model=settings.fal_image_edit_model,
                queue_base=settings.fal_queue_base,
                submit_timeout=settings.provider_timeout_seconds,
                query_timeout=settings.provider_query_timeout_seconds,
            )
        )
    if settings.replicate_api_token:
        adapters.append(
            ReplicateAdapter(settings.replicate_api_token, model=settings.replicate_model_version)
        )
    return ProviderRegistry(adapters)


@asynccontextmanager
async def open_services(
    settings: Settings, uow_factory: UnitOfWorkFactory
) -> AsyncIterator[Services]:
    """Create the network clients, wire the services and close the clients on exit.

    Example:
        >>> async with open_services(settings, uow_factory) as services:
        ...     await services.sweeper.sweep()
    """
    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(follow_redirects=True)

    try:
        store = S3ObjectStore.from_settings(settings)
        coordinator = Coordinator(redis_client)
        registry = build_registry(settings, http_client)
        services = build_services(
            settings,
            uow_factory,
            coordinator,
            relay=BlobRelay(http_client, store, timeout=settings.relay_timeout_seconds),
            store=store,
            queue=QStashQueue(http_client, settings.qstash_token, base_url=settings.qstash_url),
            registry=registry,
        )
        logger.info("services.ready", providers=registry.names())
        yield services
    finally:
        await http_client.aclose()
        await redis_client.aclose()
