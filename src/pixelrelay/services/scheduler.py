"""Dispatch/poll scheduler: delayed provider re-checks with capped exponential backoff."""

import random
from enum import Enum
from uuid import UUID

import structlog

from pixelrelay.services.completion import CompletionHandler, CompletionOutcome
from pixelrelay.services.coordination import Coordinator, poll_marker_key
from pixelrelay.services.exceptions import QueueError
from pixelrelay.services.queue import DelayQueue
from pixelrelay.uow import UnitOfWorkFactory

logger = structlog.get_logger()

JITTER_RATIO = 0.2

# Extra lifetime of a poll marker beyond the poll delay
MARKER_GRACE_SECONDS = 60


class ScheduleResult(str, Enum):
    SCHEDULED = "scheduled"
    DUPLICATE = "duplicate"
    EXHAUSTED = "exhausted"
    PUBLISH_FAILED = "publish_failed"


def compute_backoff(
    attempt: int,
    base_delay: int = 30,
    max_delay: int = 300,
    rng: random.Random | None = None,
) -> int:
    """Delay before poll `attempt` (1-based).

    base * 2^(attempt-1), capped at max_delay, with +/-20% jitter, never
    below base_delay.
    """
    rand = rng or random
    raw = min(base_delay * 2 ** (max(attempt, 1) - 1), max_delay)
    jitter = raw * JITTER_RATIO * (rand.random() * 2 - 1)
    return max(base_delay, int(round(raw + jitter)))


class PollScheduler:
    """Enqueues scheduled polls and hard-fails tasks that exhaust their attempts."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        queue: DelayQueue,
        coordinator: Coordinator,
        completion: CompletionHandler,
        callback_url: str,
        base_delay: int = 30,
        max_delay: int = 300,
        max_attempts: int = 5,
        rng: random.Random | None = None,
    ):
        self.uow_factory = uow_factory
        self.queue = queue
        self.coordinator = coordinator
        self.completion = completion
        self.callback_url = callback_url
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.rng = rng

    def compute_backoff(self, attempt: int) -> int:
        return compute_backoff(attempt, self.base_delay, self.max_delay, self.rng)

    async def schedule_next_poll(self, task_id: UUID, attempt: int) -> ScheduleResult:
        """Schedule poll number `attempt` for a task.

        Past the attempt ceiling the task is failed through the completion
        handler with `max_attempts` (credits refunded). A poll already
        scheduled for the same attempt is not enqueued again.

        Args:
            task_id: Internal task id
            attempt: 1-based attempt number of the poll to schedule

        Returns:
            ScheduleResult
        """
        if attempt > self.max_attempts:
            logger.warning("poll.max_attempts_reached", task_id=str(task_id), attempts=attempt - 1)
            await self.completion.complete(
                task_id,
                CompletionOutcome.failed(
                    "max_attempts", "Maximum polling attempts reached, credits refunded"
                ),
            )
            return ScheduleResult.EXHAUSTED

        delay = self.compute_backoff(attempt)
        marker = poll_marker_key(task_id, attempt)
        if not await self.coordinator.mark_once(marker, delay + MARKER_GRACE_SECONDS):
            logger.info("poll.already_scheduled", task_id=str(task_id), attempt=attempt)
            return ScheduleResult.DUPLICATE

        try:
            await self.queue.publish(
                self.callback_url,
                {"taskId": str(task_id), "attempt": attempt},
                delay,
                deduplication_id=f"poll-{task_id}-{attempt}",
            )
        except QueueError as e:
            await self.coordinator.clear(marker)
            logger.error(
                "poll.schedule_failed", task_id=str(task_id), attempt=attempt, error=str(e)
            )
            return ScheduleResult.PUBLISH_FAILED

        async with await self.uow_factory() as uow:
            await uow.tasks.record_poll_attempt(task_id, attempt)

        logger.info("poll.scheduled", task_id=str(task_id), attempt=attempt, delay_seconds=delay)
        return ScheduleResult.SCHEDULED
