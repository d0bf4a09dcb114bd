"""Reconciliation entry points.

Three independent triggers observe provider state and funnel terminal
observations into the completion handler:

- handle_webhook: provider push
- poll_status: client status poll, with an active fallback query once the
  task passed its kind's soft timeout
- handle_scheduled_poll: queue-delivered re-check scheduled by PollScheduler

They may run concurrently, in any order and any number of times.
"""

from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import structlog

from pixelrelay.models.task import Task, TaskStatus
from pixelrelay.services.completion import CompletionHandler, CompletionOutcome
from pixelrelay.services.coordination import Coordinator, progress_key
from pixelrelay.services.exceptions import (
    ProviderError,
    ServiceError,
    TaskAccessDenied,
    TaskNotFound,
)
from pixelrelay.services.policies import policy_for
from pixelrelay.services.providers import ProviderRegistry
from pixelrelay.services.providers.base import ProviderReport
from pixelrelay.services.scheduler import PollScheduler
from pixelrelay.uow import UnitOfWorkFactory

logger = structlog.get_logger()

TIMEOUT_MESSAGE = "Task timed out, credits refunded"


@dataclass
class TaskSnapshot:
    """Task state returned to the client status endpoint."""

    task: Task
    progress: Optional[int] = None


class Reconciler:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        registry: ProviderRegistry,
        coordinator: Coordinator,
        completion: CompletionHandler,
        scheduler: PollScheduler,
        progress_ttl: int = 3600,
    ):
        self.uow_factory = uow_factory
        self.registry = registry
        self.coordinator = coordinator
        self.completion = completion
        self.scheduler = scheduler
        self.progress_ttl = progress_ttl

    async def handle_webhook(
        self, provider: str, payload: dict[str, Any], task_hint: Optional[str] = None
    ) -> dict[str, Any]:
        """Process a provider push.

        Non-terminal pushes only refresh the progress hint. Terminal pushes
        go through the completion handler. Never raises.

        Args:
            provider: Provider name from the webhook route
            payload: Parsed JSON body
            task_hint: Internal task id carried in the callback URL, used when
                the provider task id is not known yet

        Returns:
            Body for the webhook response (`status` plus optional detail)
        """
        try:
            return await self._handle_webhook(provider, payload, task_hint)
        except Exception as e:
            logger.exception(
                "webhook.handler_failed", provider=provider, error_type=type(e).__name__, error=str(e)
            )
            return {"status": "error"}

    async def _handle_webhook(
        self, provider: str, payload: dict[str, Any], task_hint: Optional[str]
    ) -> dict[str, Any]:
        if provider not in self.registry:
            return {"status": "ignored", "reason": "unknown_provider"}

        try:
            report = self.registry.get(provider).parse_webhook(payload)
        except ValueError as e:
            logger.warning("webhook.invalid_payload", provider=provider, error=str(e))
            return {"status": "ignored", "reason": "invalid_payload"}

        task = await self._find_task(report, task_hint)
        if task is None or task.provider != provider:
            logger.warning(
                "webhook.unknown_task",
                provider=provider,
                provider_task_id=report.provider_task_id,
                task_hint=task_hint,
            )
            return {"status": "ignored", "reason": "unknown_task"}

        log = logger.bind(task_id=str(task.id), provider=provider, raw_status=report.raw_status)

        if not report.state.is_terminal:
            await self._record_progress(task.id, report)
            log.info("webhook.progress")
            return {"status": "processing"}

        result = await self.completion.complete(task.id, CompletionOutcome.from_report(report))
        log.info("webhook.processed", result=result.value)
        return {"status": result.value}

    async def _find_task(self, report: ProviderReport, task_hint: Optional[str]) -> Optional[Task]:
        async with await self.uow_factory() as uow:
            if report.provider_task_id:
                task = await uow.tasks.get_by_provider_task_id(report.provider_task_id)
                if task is not None:
                    return task

            if not task_hint:
                return None
            try:
                hinted_id = UUID(task_hint)
            except ValueError:
                return None

            task = await uow.tasks.get(hinted_id)
            if task is not None and task.provider_task_id is None and report.provider_task_id:
                # Submission timed out before the provider id was known
                await uow.tasks.set_provider_task_id(task.id, report.provider_task_id)
                task.provider_task_id = report.provider_task_id
                logger.info(
                    "webhook.provider_id_adopted",
                    task_id=str(task.id),
                    provider_task_id=report.provider_task_id,
                )
            if (
                task is not None
                and report.provider_task_id
                and task.provider_task_id != report.provider_task_id
            ):
                return None
            return task

    async def poll_status(self, task_id: UUID, owner: str) -> TaskSnapshot:
        """Current task state for its owner, reconciling stale tasks first.

        Past the soft timeout a `processing` task is actively queried; the
        processing -> uploading gate keeps a concurrent scheduled poll or
        another client from querying at the same time. Past the absolute
        ceiling the task is force-failed.

        Raises:
            TaskNotFound: If no such task exists
            TaskAccessDenied: If the task belongs to someone else
        """
        task = await self._get_owned(task_id, owner)

        if not task.is_terminal:
            policy = policy_for(task.kind)
            age = task.age_seconds()
            try:
                if age > policy.absolute_ceiling_seconds:
                    await self._force_timeout(task)
                elif (
                    task.status == TaskStatus.PROCESSING
                    and task.provider_task_id
                    and age > policy.soft_timeout_seconds
                ):
                    await self._fallback_query(task)
            except ServiceError as e:
                # The stored state is still served; the sweep retries the reconcile
                logger.error(
                    "status.reconcile_failed",
                    task_id=str(task.id),
                    error_type=type(e).__name__,
                    error=str(e),
                )
            task = await self._get_owned(task_id, owner)

        progress = None
        if not task.is_terminal:
            hint = await self.coordinator.get_hint(progress_key(task.id))
            if hint and isinstance(hint.get("progress"), int):
                progress = hint["progress"]

        return TaskSnapshot(task=task, progress=progress)

    async def _get_owned(self, task_id: UUID, owner: str) -> Task:
        async with await self.uow_factory() as uow:
            task = await uow.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found")
        if task.owner != owner:
            raise TaskAccessDenied("Task belongs to another user")
        return task

    async def _fallback_query(self, task: Task) -> None:
        async with await self.uow_factory() as uow:
            gated = await uow.tasks.cas_status(task.id, TaskStatus.PROCESSING, TaskStatus.UPLOADING)
        if not gated:
            logger.info("status.fallback.gate_busy", task_id=str(task.id))
            return

        log = logger.bind(task_id=str(task.id), provider=task.provider)
        log.info("status.fallback.querying", age_seconds=int(task.age_seconds()))
        finalized = False
        try:
            report = await self._query(task)
            if report.state.is_terminal:
                result = await self.completion.complete(task.id, CompletionOutcome.from_report(report))
                log.info("status.fallback.completed", result=result.value)
                finalized = True
            else:
                await self._record_progress(task.id, report)
        except ProviderError as e:
            log.warning("status.fallback.query_failed", error_type=type(e).__name__, error=str(e))
        except Exception as e:
            log.exception("status.fallback.failed", error_type=type(e).__name__, error=str(e))
        finally:
            if not finalized:
                async with await self.uow_factory() as uow:
                    await uow.tasks.cas_status(task.id, TaskStatus.UPLOADING, TaskStatus.PROCESSING)

    async def handle_scheduled_poll(self, task_id: UUID, attempt: int) -> dict[str, Any]:
        """Process a queue-delivered poll. Never raises.

        Returns:
            Body for the queue response (`status` plus optional detail)
        """
        try:
            return await self._handle_scheduled_poll(task_id, attempt)
        except Exception as e:
            logger.exception(
                "poll.handler_failed",
                task_id=str(task_id),
                attempt=attempt,
                error_type=type(e).__name__,
                error=str(e),
            )
            return {"status": "error"}

    async def _handle_scheduled_poll(self, task_id: UUID, attempt: int) -> dict[str, Any]:
        async with await self.uow_factory() as uow:
            task = await uow.tasks.get(task_id)

        if task is None:
            logger.warning("poll.unknown_task", task_id=str(task_id), attempt=attempt)
            return {"status": "ignored", "reason": "unknown_task"}

        if task.is_terminal:
            logger.info("poll.already_terminal", task_id=str(task_id), attempt=attempt)
            return {"status": "already_terminal"}

        log = logger.bind(task_id=str(task_id), attempt=attempt, provider=task.provider)

        if task.age_seconds() > policy_for(task.kind).absolute_ceiling_seconds:
            result = await self._force_timeout(task)
            return {"status": result}

        if not task.provider_task_id:
            log.info("poll.awaiting_provider_id")
            return {"status": "waiting"}

        if task.status == TaskStatus.UPLOADING:
            # A client fallback query or a completion already owns the active query
            scheduled = await self.scheduler.schedule_next_poll(task.id, attempt + 1)
            log.info("poll.upload_in_progress", next=scheduled.value)
            return {"status": "uploading", "next": scheduled.value}

        try:
            report = await self._query(task)
        except ProviderError as e:
            log.warning("poll.query_failed", error_type=type(e).__name__, error=str(e))
            scheduled = await self.scheduler.schedule_next_poll(task.id, attempt + 1)
            return {"status": "query_failed", "next": scheduled.value}

        if report.state.is_terminal:
            result = await self.completion.complete(task.id, CompletionOutcome.from_report(report))
            log.info("poll.processed", result=result.value)
            return {"status": result.value}

        await self._record_progress(task.id, report)
        scheduled = await self.scheduler.schedule_next_poll(task.id, attempt + 1)
        log.info("poll.still_processing", next=scheduled.value)
        return {"status": "processing", "next": scheduled.value}

    async def _force_timeout(self, task: Task) -> str:
        logger.warning(
            "task.timeout.forced", task_id=str(task.id), age_seconds=int(task.age_seconds())
        )
        result = await self.completion.complete(
            task.id, CompletionOutcome.failed("timeout", TIMEOUT_MESSAGE)
        )
        return result.value

    async def _query(self, task: Task) -> ProviderReport:
        adapter = self.registry.get(task.provider)
        credential = None
        if adapter.uses_key_pool and task.provider_key_id is not None:
            async with await self.uow_factory() as uow:
                key = await uow.provider_keys.get(task.provider_key_id)
            credential = key.secret if key else None
        return await adapter.query_status(task.provider_task_id or "", credential, task)

    async def _record_progress(self, task_id: UUID, report: ProviderReport) -> None:
        await self.coordinator.set_hint(
            progress_key(task_id),
            {"status": report.raw_status, "progress": report.progress},
            self.progress_ttl,
        )
