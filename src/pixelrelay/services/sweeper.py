"""Timeout sweep: force-fail abandoned tasks and retry refunds that failed earlier."""

from dataclasses import dataclass, field
from uuid import UUID

import structlog

from pixelrelay.services.completion import CompletionHandler, CompletionOutcome, CompletionResult
from pixelrelay.services.policies import absolute_ceilings
from pixelrelay.services.reconciliation import TIMEOUT_MESSAGE
from pixelrelay.uow import UnitOfWorkFactory

logger = structlog.get_logger()


@dataclass
class SweepReport:
    timed_out: list[UUID] = field(default_factory=list)
    refunds_retried: list[UUID] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.timed_out) + len(self.refunds_retried)


class TimeoutSweeper:
    """One reconciliation pass over the task table.

    1. Tasks still processing/uploading past their kind's absolute ceiling are
       failed with `timeout` through the completion handler (refund applied).
    2. Failed paid tasks without a refund entry get their refund retried.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory, completion: CompletionHandler):
        self.uow_factory = uow_factory
        self.completion = completion

    async def sweep(self, limit: int = 50, dry_run: bool = False) -> SweepReport:
        """Run one pass.

        Args:
            limit: Maximum tasks handled per step
            dry_run: Only report what would be done

        Returns:
            SweepReport listing the affected task ids
        """
        report = SweepReport()

        async with await self.uow_factory() as uow:
            stale = await uow.tasks.find_stale_processing(absolute_ceilings(), limit=limit)

        for task in stale:
            if dry_run:
                report.timed_out.append(task.id)
                continue

            result = await self.completion.complete(
                task.id, CompletionOutcome.failed("timeout", TIMEOUT_MESSAGE)
            )
            if result == CompletionResult.FAILED:
                report.timed_out.append(task.id)
            else:
                report.skipped.append(task.id)
            logger.info("sweep.timeout", task_id=str(task.id), result=result.value)

        async with await self.uow_factory() as uow:
            unrefunded = await uow.tasks.find_failed_unrefunded(limit=limit)

        for task in unrefunded:
            report.refunds_retried.append(task.id)
            if dry_run:
                continue
            logger.info("sweep.refund_retry", task_id=str(task.id), amount=task.credits_consumed)
            await self.completion.refund(task)

        if report.total:
            logger.info(
                "sweep.completed",
                timed_out=len(report.timed_out),
                refunds_retried=len(report.refunds_retried),
                dry_run=dry_run,
            )
        return report
