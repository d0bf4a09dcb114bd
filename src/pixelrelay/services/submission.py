"""Task submission: validate, reserve capacity, charge, store input, submit, schedule.

Synchronous provider failures undo every side effect (key slot released,
credits refunded, task row removed). An ambiguous provider timeout keeps the
task in `processing` for the reconciliation paths and the timeout sweep.
"""

from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import IntegrityError

from pixelrelay.core.config import is_local_url
from pixelrelay.models.task import Task, TaskKind, TaskStatus
from pixelrelay.services.completion import CompletionHandler, CompletionOutcome
from pixelrelay.services.exceptions import (
    CapacityExhausted,
    ConfigurationError,
    ProviderError,
    ProviderTimeoutError,
    ServiceError,
    StorageError,
    TrialAlreadyUsed,
)
from pixelrelay.services.images import DecodedImage, decode_image
from pixelrelay.services.key_pool import LeasedKey, ProviderKeyPool
from pixelrelay.services.ledger import CreditLedger
from pixelrelay.services.policies import credits_for, estimated_seconds, provider_for
from pixelrelay.services.providers import ProviderRegistry
from pixelrelay.services.providers.base import ProviderAdapter, SourceImage, Submission
from pixelrelay.services.scheduler import PollScheduler
from pixelrelay.services.storage.object_store import ObjectStore
from pixelrelay.uow import UnitOfWorkFactory

logger = structlog.get_logger()

TRIAL_OWNER_PREFIX = "anon:"

TRIAL_UPSCALE_PARAMETERS = {
    "scale_factor": "2x",
    "optimized_for": "standard",
    "creativity": 0,
    "hdr": 0,
    "resemblance": 0,
    "fractality": 0,
}


@dataclass(frozen=True)
class SubmissionRequest:
    kind: TaskKind
    engine: str
    parameters: dict[str, Any]
    image_b64: Optional[str] = None


@dataclass(frozen=True)
class SubmissionReceipt:
    task_id: UUID
    status: TaskStatus
    estimated_seconds: int
    credits_consumed: int


def source_storage_key(owner_scope: str, task_id: UUID, extension: str) -> str:
    return f"{owner_scope}/sources/{task_id}.{extension}"


def trial_owner(fingerprint: str) -> str:
    return f"{TRIAL_OWNER_PREFIX}{fingerprint}"


class SubmissionService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        registry: ProviderRegistry,
        key_pool: ProviderKeyPool,
        ledger: CreditLedger,
        store: ObjectStore,
        completion: CompletionHandler,
        scheduler: PollScheduler,
        public_base_url: str,
    ):
        self.uow_factory = uow_factory
        self.registry = registry
        self.key_pool = key_pool
        self.ledger = ledger
        self.store = store
        self.completion = completion
        self.scheduler = scheduler
        self.public_base_url = public_base_url.rstrip("/")

    def callback_url(self, provider: str, task_id: UUID) -> str:
        return f"{self.public_base_url}/webhooks/{provider}?task={task_id}"

    def _ensure_public_callbacks(self) -> None:
        if is_local_url(self.public_base_url):
            logger.error("submission.local_callback_url", public_base_url=self.public_base_url)
            raise ConfigurationError(
                "PUBLIC_BASE_URL must be publicly reachable for provider webhooks"
            )

    async def submit(self, owner: str, request: SubmissionRequest) -> SubmissionReceipt:
        """Submit a paid task.

        Args:
            owner: Authenticated user id
            request: Kind, engine, parameters and optional base64 input image

        Returns:
            SubmissionReceipt with the internal task id

        Raises:
            ValidationFailed: Malformed input image (no side effects)
            ConfigurationError: Callback URL not publicly reachable (no side effects)
            CapacityExhausted: No provider key available (no side effects)
            InsufficientBalance: Balance does not cover the cost (key released)
            StorageError: Input image could not be stored (fully undone)
            ProviderError: Provider rejected the submission (fully undone)
        """
        image = decode_image(request.image_b64) if request.image_b64 is not None else None
        self._ensure_public_callbacks()

        provider = provider_for(request.kind, request.engine)
        adapter = self.registry.get(provider)
        credits = credits_for(request.kind, request.parameters)
        task_id = uuid4()
        log = logger.bind(task_id=str(task_id), owner=owner, kind=request.kind.value, provider=provider)

        key = await self._acquire_key(adapter)

        try:
            await self.ledger.debit(
                owner, credits, memo=f"{request.kind.value} task {task_id}", task_id=task_id
            )
        except Exception:
            if key is not None:
                await self.key_pool.release(key.id)
            raise

        task = Task(
            id=task_id,
            owner=owner,
            kind=request.kind,
            provider=provider,
            engine=request.engine,
            parameters=request.parameters,
            credits_consumed=credits,
            provider_key_id=key.id if key else None,
        )
        async with await self.uow_factory() as uow:
            await uow.tasks.create(task)

        try:
            source = await self._store_source(task, image)
            submission = await adapter.submit(
                task, key.secret if key else None, self.callback_url(provider, task.id), source
            )
        except ProviderTimeoutError as e:
            log.warning("submission.provider_timeout", error=str(e))
            return self._receipt(task, TaskStatus.PROCESSING)
        except (ProviderError, StorageError) as e:
            log.warning("submission.failed", error_type=type(e).__name__, error=str(e))
            await self._undo(task, key)
            raise

        status = await self._accept(task, submission)
        log.info("submission.accepted", provider_task_id=submission.provider_task_id, status=status.value)
        return self._receipt(task, status)

    async def submit_trial(self, fingerprint: str, image_b64: str) -> SubmissionReceipt:
        """Submit the one free 2x upscale of an anonymous browser fingerprint.

        The key is selected without counting and counted only once the
        provider call went out.

        Raises:
            TrialAlreadyUsed: If the fingerprint already used its trial
            CapacityExhausted: If no provider key is available
        """
        image = decode_image(image_b64)
        self._ensure_public_callbacks()

        kind = TaskKind.UPSCALE
        provider = provider_for(kind, "automatic")
        adapter = self.registry.get(provider)

        try:
            async with await self.uow_factory() as uow:
                await uow.trials.claim(fingerprint)
        except IntegrityError as e:
            raise TrialAlreadyUsed("Free trial already used") from e

        key = await self.key_pool.peek(provider) if adapter.uses_key_pool else None
        if adapter.uses_key_pool and key is None:
            await self._release_trial(fingerprint)
            raise CapacityExhausted("Service busy, please retry later")

        task = Task(
            owner=trial_owner(fingerprint),
            is_trial=True,
            kind=kind,
            provider=provider,
            engine="automatic",
            parameters=dict(TRIAL_UPSCALE_PARAMETERS),
            credits_consumed=0,
            provider_key_id=key.id if key else None,
        )
        async with await self.uow_factory() as uow:
            await uow.tasks.create(task)
            await uow.trials.attach_task(fingerprint, task.id)

        log = logger.bind(task_id=str(task.id), provider=provider, trial=True)
        try:
            source = await self._store_source(task, image)
            submission = await adapter.submit(
                task, key.secret if key else None, self.callback_url(provider, task.id), source
            )
        except ProviderTimeoutError as e:
            log.warning("submission.provider_timeout", error=str(e))
            if key is not None:
                await self.key_pool.increment(key.id)
            return self._receipt(task, TaskStatus.PROCESSING)
        except (ProviderError, StorageError) as e:
            log.warning("submission.failed", error_type=type(e).__name__, error=str(e))
            async with await self.uow_factory() as uow:
                await uow.tasks.delete(task.id)
            await self._release_trial(fingerprint)
            raise

        if key is not None:
            await self.key_pool.increment(key.id)
        status = await self._accept(task, submission)
        log.info("submission.accepted", provider_task_id=submission.provider_task_id, status=status.value)
        return self._receipt(task, status)

    async def trial_used(self, fingerprint: str) -> bool:
        async with await self.uow_factory() as uow:
            return await uow.trials.get(fingerprint) is not None

    async def _acquire_key(self, adapter: ProviderAdapter) -> Optional[LeasedKey]:
        if not adapter.uses_key_pool:
            return None
        key = await self.key_pool.acquire(adapter.name)
        if key is None:
            raise CapacityExhausted("Service busy, please retry later")
        return key

    async def _store_source(self, task: Task, image: Optional[DecodedImage]) -> Optional[SourceImage]:
        if image is None:
            return None
        key = source_storage_key(task.owner_scope, task.id, image.extension)
        url = await self.store.put_bytes(key, image.data, image.content_type)
        async with await self.uow_factory() as uow:
            await uow.tasks.update_status(task.id, TaskStatus.PROCESSING, source_object_ref=key)
        task.source_object_ref = key
        return SourceImage(data_b64=image.b64, content_type=image.content_type, url=url)

    async def _accept(self, task: Task, submission: Submission) -> TaskStatus:
        """Record the provider id, then finish immediately or schedule the first poll.

        The provider already owns the job at this point, so coordination
        failures are logged and the task is left to the webhook and the
        timeout sweep.
        """
        async with await self.uow_factory() as uow:
            await uow.tasks.set_provider_task_id(task.id, submission.provider_task_id)
        task.provider_task_id = submission.provider_task_id

        try:
            if submission.immediate is not None:
                await self.completion.complete(
                    task.id, CompletionOutcome.from_report(submission.immediate)
                )
                async with await self.uow_factory() as uow:
                    current = await uow.tasks.get(task.id)
                return TaskStatus(current.status) if current else TaskStatus.PROCESSING

            await self.scheduler.schedule_next_poll(task.id, 1)
        except ServiceError as e:
            logger.error(
                "submission.post_accept_failed",
                task_id=str(task.id),
                provider_task_id=submission.provider_task_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        return TaskStatus.PROCESSING

    async def _undo(self, task: Task, key: Optional[LeasedKey]) -> None:
        """Reverse a submission the provider never accepted."""
        if key is not None:
            await self.key_pool.release(key.id)
        await self.ledger.refund(task.owner, task.credits_consumed, task.id)
        async with await self.uow_factory() as uow:
            await uow.tasks.delete(task.id)
        logger.info("submission.rolled_back", task_id=str(task.id))

    async def _release_trial(self, fingerprint: str) -> None:
        async with await self.uow_factory() as uow:
            await uow.trials.release(fingerprint)

    def _receipt(self, task: Task, status: TaskStatus) -> SubmissionReceipt:
        return SubmissionReceipt(
            task_id=task.id,
            status=status,
            estimated_seconds=estimated_seconds(task.kind, task.parameters),
            credits_consumed=task.credits_consumed,
        )
