"""Task repository.

Provides the Task Store surface: create/get, dumb status updates, the atomic
`processing -> uploading` gate used by the completion handler, and the sweep
queries that find abandoned or unrefunded tasks.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixelrelay.core.timezone import utcnow
from pixelrelay.models.credit import CreditEntryKind, CreditLogEntry
from pixelrelay.models.task import ACTIVE_STATUSES, Task, TaskKind, TaskStatus


class TaskRepository:
    """Repository for Task entities.

    The repository is a dumb record: it never refuses a terminal-to-terminal
    write. Exactly-once terminal transitions are enforced by the completion
    handler on top of `cas_status`.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(self, task_id: UUID) -> Task | None:
        """Retrieve task by internal id.

        Args:
            task_id: Internal task id

        Returns:
            Task if found, None otherwise
        """
        result = await self.session.execute(
            select(Task).where(Task.id == task_id).execution_options(populate_existing=True)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, task_id: UUID) -> Task | None:
        """Retrieve task by internal id, locking the row until the transaction ends.

        Uses SELECT ... FOR UPDATE so concurrent terminal writers serialize on the
        row and the later one observes the first one's committed status.

        Args:
            task_id: Internal task id

        Returns:
            Task if found, None otherwise
        """
        result = await self.session.execute(
            select(Task)
            .where(Task.id == task_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_task_id(self, provider_task_id: str) -> Task | None:
        """Retrieve task by the id the provider assigned to it.

        Args:
            provider_task_id: Provider-assigned task id

        Returns:
            Task if found, None otherwise
        """
        result = await self.session.execute(
            select(Task).where(Task.provider_task_id == provider_task_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def create(self, task: Task) -> Task:
        """Persist a new task.

        Args:
            task: Task entity to persist

        Returns:
            Persisted task
        """
        self.session.add(task)
        await self.session.flush()
        return task

    async def delete(self, task_id: UUID) -> None:
        """Remove a task row that the provider never accepted."""
        await self.session.execute(delete(Task).where(Task.id == task_id))  # type: ignore[arg-type]

    async def set_provider_task_id(self, task_id: UUID, provider_task_id: str) -> None:
        """Record the provider-assigned id once the provider accepted the job."""
        await self.session.execute(
            update(Task)
            .where(Task.id == task_id)  # type: ignore[arg-type]
            .values(provider_task_id=provider_task_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def update_status(self, task_id: UUID, status: TaskStatus, **fields: Any) -> None:
        """Write a status (and any extra columns) unconditionally.

        Args:
            task_id: Internal task id
            status: New status
            **fields: Additional Task columns to set
        """
        values = {"status": status, "updated_at": utcnow(), **fields}
        if status in (TaskStatus.COMPLETED, TaskStatus.FAILED) and "completed_at" not in values:
            values["completed_at"] = values["updated_at"]
        await self.session.execute(
            update(Task)
            .where(Task.id == task_id)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def save(self, task: Task) -> Task:
        """Flush in-memory changes made through Task transition methods."""
        self.session.add(task)
        await self.session.flush()
        return task

    async def cas_status(self, task_id: UUID, expected: TaskStatus, new: TaskStatus) -> bool:
        """Atomically move a task from `expected` to `new`.

        Query explanation:
        - UPDATE tasks SET status = :new WHERE id = :id AND status = :expected
        - rowcount == 1 means this caller won the transition

        Args:
            task_id: Internal task id
            expected: Status the row must currently have
            new: Status to write

        Returns:
            True if the row was transitioned by this call, False otherwise
        """
        result = await self.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.status == expected)  # type: ignore[arg-type]
            .values(status=new, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def record_poll_attempt(self, task_id: UUID, attempt: int) -> None:
        """Store the highest scheduled poll attempt observed for a task."""
        await self.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.poll_attempts < attempt)  # type: ignore[arg-type]
            .values(poll_attempts=attempt)
            .execution_options(synchronize_session=False)
        )

    async def find_stale_processing(
        self,
        ceilings: dict[TaskKind, int],
        limit: int = 50,
        now: datetime | None = None,
    ) -> list[Task]:
        """Find non-terminal tasks older than their kind's absolute ceiling.

        Args:
            ceilings: Absolute age ceiling in seconds per task kind
            limit: Maximum number of tasks to return
            now: Reference time (defaults to current UTC time)

        Returns:
            Oldest-first list of abandoned tasks
        """
        if not ceilings:
            return []

        reference = now or utcnow()
        age_guards = [
            and_(Task.kind == kind, Task.created_at < reference - timedelta(seconds=seconds))  # type: ignore[arg-type]
            for kind, seconds in ceilings.items()
        ]
        result = await self.session.execute(
            select(Task)
            .where(Task.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .where(or_(*age_guards))
            .order_by(Task.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_failed_unrefunded(self, limit: int = 50) -> list[Task]:
        """Find failed paid tasks that have no refund entry in the credit log.

        Query explanation:
        - status = failed AND credits_consumed > 0 AND NOT is_trial
        - NOT EXISTS a credit_log row of kind refund for the task

        Args:
            limit: Maximum number of tasks to return

        Returns:
            Oldest-first list of tasks whose refund still needs to be applied
        """
        refunded = exists().where(
            CreditLogEntry.task_id == Task.id,  # type: ignore[arg-type]
            CreditLogEntry.kind == CreditEntryKind.REFUND,  # type: ignore[arg-type]
        )
        result = await self.session.execute(
            select(Task)
            .where(Task.status == TaskStatus.FAILED)  # type: ignore[arg-type]
            .where(Task.credits_consumed > 0)  # type: ignore[arg-type,operator]
            .where(Task.is_trial.is_(False))  # type: ignore[attr-defined]
            .where(~refunded)
            .order_by(Task.completed_at.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())
