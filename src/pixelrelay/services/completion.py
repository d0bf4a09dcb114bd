"""Idempotent completion handler.

The single critical section through which every reconciliation path
(webhook, client poll, scheduled poll, timeout sweep) moves a task to a
terminal state:

1. take the per-task completion lock (busy -> no-op)
2. re-read the task (terminal -> no-op)
3. success: gate processing -> uploading, relay the result, write completed
4. failure (or relay failure): write failed, refund credits (never raises)
5. clear transient coordination state for the task
6. release the lock
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from uuid import UUID

import structlog

from pixelrelay.models.task import InvalidStateTransition, Task, TaskStatus
from pixelrelay.services.coordination import (
    Coordinator,
    completion_lock_key,
    poll_marker_key,
    progress_key,
)
from pixelrelay.services.exceptions import RelayError
from pixelrelay.services.ledger import CreditLedger
from pixelrelay.services.providers.base import ProviderReport, ProviderState
from pixelrelay.services.storage.relay import BlobRelay
from pixelrelay.uow import UnitOfWorkFactory

logger = structlog.get_logger()


class CompletionResult(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_TERMINAL = "skipped_terminal"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class CompletionOutcome:
    """What a reconciliation path observed: a result URL or an error."""

    success: bool
    result_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def succeeded(cls, result_url: str) -> "CompletionOutcome":
        return cls(success=True, result_url=result_url)

    @classmethod
    def failed(cls, code: str, message: str) -> "CompletionOutcome":
        return cls(success=False, error_code=code, error_message=message)

    @classmethod
    def from_report(cls, report: ProviderReport) -> "CompletionOutcome":
        """Outcome for a terminal provider report."""
        if report.state == ProviderState.COMPLETED and report.result_url:
            return cls.succeeded(report.result_url)
        if report.state == ProviderState.COMPLETED:
            return cls.failed("no_result", "Provider reported success without a result")
        return cls.failed("provider_failed", report.error or "Provider reported failure")

    def error_payload(self) -> dict[str, str]:
        return {"code": self.error_code or "unknown", "message": self.error_message or ""}


class CompletionHandler:
    """Moves a task to its terminal state exactly once."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        coordinator: Coordinator,
        relay: BlobRelay,
        ledger: CreditLedger,
        lock_ttl: int = 300,
        max_poll_attempts: int = 5,
    ):
        self.uow_factory = uow_factory
        self.coordinator = coordinator
        self.relay = relay
        self.ledger = ledger
        self.lock_ttl = lock_ttl
        self.max_poll_attempts = max_poll_attempts

    async def complete(self, task_id: UUID, outcome: CompletionOutcome) -> CompletionResult:
        """Finalize a task with the observed outcome.

        Lock contention and already-terminal tasks are expected under
        concurrent reconciliation and return a SKIPPED_* result.

        Args:
            task_id: Internal task id
            outcome: Observed provider outcome

        Returns:
            CompletionResult describing what this call did

        Raises:
            CoordinatorError: If the lock backend is unreachable
        """
        lock_key = completion_lock_key(task_id)
        token = await self.coordinator.acquire(lock_key, self.lock_ttl)
        if token is None:
            logger.info("task.completion.lock_busy", task_id=str(task_id))
            return CompletionResult.SKIPPED_LOCKED

        try:
            async with await self.uow_factory() as uow:
                task = await uow.tasks.get(task_id)

            if task is None:
                logger.warning("task.completion.not_found", task_id=str(task_id))
                return CompletionResult.NOT_FOUND

            if task.is_terminal:
                logger.info(
                    "task.completion.already_terminal",
                    task_id=str(task_id),
                    status=TaskStatus(task.status).value,
                )
                return CompletionResult.SKIPPED_TERMINAL

            if outcome.success:
                result = await self._complete_success(task, outcome)
                if result is not None:
                    return result
                outcome = CompletionOutcome.failed(
                    "relay_failed", "Failed to store the result, credits refunded"
                )

            return await self._complete_failure(task, outcome)
        finally:
            await self.coordinator.release(lock_key, token)

    async def _complete_success(
        self, task: Task, outcome: CompletionOutcome
    ) -> CompletionResult | None:
        """Relay and write completed. Returns None when the relay failed."""
        async with await self.uow_factory() as uow:
            gated = await uow.tasks.cas_status(task.id, TaskStatus.PROCESSING, TaskStatus.UPLOADING)
        if not gated:
            # Already uploading: a client fallback query or an earlier attempt whose lock expired
            logger.info("task.completion.resuming_upload", task_id=str(task.id))

        try:
            relayed = await self.relay.relay(
                outcome.result_url or "", task.owner_scope, task.id, allow_fallback=True
            )
        except RelayError as e:
            logger.error(
                "task.completion.relay_failed",
                task_id=str(task.id),
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        async with await self.uow_factory() as uow:
            current = await uow.tasks.get_for_update(task.id)
            if current is None:
                return CompletionResult.NOT_FOUND
            try:
                current.mark_completed(relayed.storage_key, relayed.public_url)
            except InvalidStateTransition:
                logger.info("task.completion.already_terminal", task_id=str(task.id), phase="write")
                return CompletionResult.SKIPPED_TERMINAL
            await uow.tasks.save(current)

        await self._clear_coordination(task.id)
        logger.info(
            "task.completion.completed",
            task_id=str(task.id),
            provider=task.provider,
            storage_key=relayed.storage_key,
            method=relayed.method,
        )
        return CompletionResult.COMPLETED

    async def _complete_failure(self, task: Task, outcome: CompletionOutcome) -> CompletionResult:
        async with await self.uow_factory() as uow:
            current = await uow.tasks.get_for_update(task.id)
            if current is None:
                return CompletionResult.NOT_FOUND
            try:
                current.mark_failed(outcome.error_payload())
            except InvalidStateTransition:
                logger.info("task.completion.already_terminal", task_id=str(task.id), phase="write")
                return CompletionResult.SKIPPED_TERMINAL
            await uow.tasks.save(current)

        logger.info(
            "task.completion.failed",
            task_id=str(task.id),
            provider=task.provider,
            error_code=outcome.error_code,
        )

        await self.refund(current)
        await self._clear_coordination(task.id)
        return CompletionResult.FAILED

    async def refund(self, task: Task) -> None:
        """Refund a failed task's credits; failures are logged for follow-up, never raised."""
        if task.is_trial or task.credits_consumed <= 0:
            return

        try:
            await self.ledger.refund(task.owner, task.credits_consumed, task.id)
        except Exception as e:
            logger.error(
                "ledger.refund.failed",
                task_id=str(task.id),
                owner=task.owner,
                amount=task.credits_consumed,
                error_type=type(e).__name__,
                error=str(e),
                needs_followup=True,
            )

    async def _clear_coordination(self, task_id: UUID) -> None:
        """Drop the progress hint and poll de-duplication markers of a finished task."""
        keys = [progress_key(task_id)]
        keys.extend(poll_marker_key(task_id, n) for n in range(1, self.max_poll_attempts + 2))
        await self.coordinator.clear(*keys)
