"""PromptGenerationJob repository.

Claiming is priority-ordered (highest first, then oldest) and, like generation
jobs, every status change is a conditional UPDATE whose row count reports
whether this caller won.
"""

from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy import update as sa_update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from aistudio.core.timezone import utc_now
from aistudio.models.prompt_job import (
    MAX_PRIORITY,
    PROMPT_TRANSITIONS,
    PromptGenerationJob,
    PromptJobStatus,
    PromptOperation,
)
from aistudio.models.generation_job import InvalidStateTransition


class PromptJobRepository:
    """Repository for PromptGenerationJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, prompt_job_id: UUID) -> PromptGenerationJob | None:
        """Retrieve prompt job by ID, reloading column values from the database.

        Args:
            prompt_job_id: Prompt job's unique identifier

        Returns:
            PromptGenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(PromptGenerationJob)
            .where(col(PromptGenerationJob.id) == prompt_job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, job: PromptGenerationJob) -> PromptGenerationJob:
        """Persist new prompt job to database."""
        self.session.add(job)
        await self.session.flush()
        return job

    async def _transition(
        self,
        prompt_job_id: UUID,
        expected: Iterable[PromptJobStatus],
        target: PromptJobStatus,
        *extra_where: Any,
        **values: Any,
    ) -> bool:
        expected = tuple(expected)
        for current in expected:
            if target not in PROMPT_TRANSITIONS[current]:
                raise InvalidStateTransition(
                    f"Cannot move prompt job from {current.value} to {target.value}."
                )

        result = await self.session.execute(
            sa_update(PromptGenerationJob)
            .where(
                col(PromptGenerationJob.id) == prompt_job_id,
                col(PromptGenerationJob.status).in_(expected),
                *extra_where,
            )
            .values(status=target, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_claimable(self, limit: int, now: datetime) -> list[PromptGenerationJob]:
        """Retrieve queued prompt jobs in claim order.

        Query explanation:
        - WHERE status = 'queued' AND (available_at IS NULL OR available_at <= now):
          skip jobs still backing off after a failed attempt
        - ORDER BY priority DESC, created_at ASC: highest priority first, FIFO within
        - FOR UPDATE SKIP LOCKED: PostgreSQL worker coordination

        Args:
            limit: Batch size
            now: Current time for the backoff check

        Returns:
            Candidate prompt jobs, to be claimed one by one with claim()
        """
        result = await self.session.execute(
            select(PromptGenerationJob)
            .where(
                col(PromptGenerationJob.status) == PromptJobStatus.QUEUED,
                or_(
                    col(PromptGenerationJob.available_at).is_(None),
                    col(PromptGenerationJob.available_at) <= now,
                ),
            )
            .order_by(
                col(PromptGenerationJob.priority).desc(),
                col(PromptGenerationJob.created_at).asc(),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def claim(self, prompt_job_id: UUID, now: datetime) -> bool:
        """queued -> processing, recording started_at."""
        return await self._transition(
            prompt_job_id,
            (PromptJobStatus.QUEUED,),
            PromptJobStatus.PROCESSING,
            started_at=now,
        )

    async def complete(self, job: PromptGenerationJob, prompt: str) -> bool:
        """processing -> completed, storing the LLM output in the operation's column."""
        values: dict[str, Any] = {"completed_at": utc_now(), "error": None}
        if job.operation == PromptOperation.ENHANCE:
            values["enhanced_prompt"] = prompt
        else:
            values["generated_prompt"] = prompt
        return await self._transition(
            job.id, (PromptJobStatus.PROCESSING,), PromptJobStatus.COMPLETED, **values
        )

    async def requeue(
        self, prompt_job_id: UUID, error: Optional[str] = None, available_at: Optional[datetime] = None
    ) -> bool:
        """processing -> queued with retry_count + 1, only while retry budget remains.

        The budget check is part of the UPDATE so retry_count never exceeds
        max_retries, whichever worker gets there first.
        """
        return await self._transition(
            prompt_job_id,
            (PromptJobStatus.PROCESSING,),
            PromptJobStatus.QUEUED,
            col(PromptGenerationJob.retry_count) < col(PromptGenerationJob.max_retries),
            retry_count=PromptGenerationJob.retry_count + 1,  # type: ignore[operator]
            started_at=None,
            available_at=available_at,
            error=error[:2000] if error else None,
        )

    async def fail(
        self, prompt_job_id: UUID, expected: Iterable[PromptJobStatus], error: str
    ) -> bool:
        """Force a prompt job to failed if still in one of the expected statuses."""
        return await self._transition(
            prompt_job_id,
            expected,
            PromptJobStatus.FAILED,
            error=error[:2000],
            completed_at=utc_now(),
        )

    async def boost_priority(self, job: PromptGenerationJob, step: int = 2) -> bool:
        """Raise priority of a queued job by step, capped at the maximum.

        Gated on the priority read by the caller so concurrent boosts apply once.
        """
        if job.priority >= MAX_PRIORITY:
            return False
        result = await self.session.execute(
            sa_update(PromptGenerationJob)
            .where(
                col(PromptGenerationJob.id) == job.id,
                col(PromptGenerationJob.status) == PromptJobStatus.QUEUED,
                col(PromptGenerationJob.priority) == job.priority,
            )
            .values(priority=min(MAX_PRIORITY, job.priority + step), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    # Reaper queries

    async def find_stuck_processing(
        self, started_before: Optional[datetime] = None
    ) -> list[PromptGenerationJob]:
        """Processing jobs started before cutoff (all processing jobs when cutoff is None)."""
        query = select(PromptGenerationJob).where(
            col(PromptGenerationJob.status) == PromptJobStatus.PROCESSING
        )
        if started_before is not None:
            query = query.where(
                or_(
                    col(PromptGenerationJob.started_at).is_(None),
                    col(PromptGenerationJob.started_at) < started_before,
                )
            )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_queued(
        self, created_before: Optional[datetime] = None
    ) -> list[PromptGenerationJob]:
        """Queued jobs created before cutoff (all queued jobs when cutoff is None)."""
        query = select(PromptGenerationJob).where(
            col(PromptGenerationJob.status) == PromptJobStatus.QUEUED
        )
        if created_before is not None:
            query = query.where(col(PromptGenerationJob.created_at) < created_before)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    # Stats

    async def queue_position(self, job: PromptGenerationJob) -> int:
        """1-based claim position of a queued job (0 if not queued).

        Jobs ahead are those with higher priority, or equal priority and older.
        """
        if job.status != PromptJobStatus.QUEUED:
            return 0
        result = await self.session.execute(
            select(func.count())
            .select_from(PromptGenerationJob)
            .where(
                col(PromptGenerationJob.status) == PromptJobStatus.QUEUED,
                or_(
                    col(PromptGenerationJob.priority) > job.priority,
                    (col(PromptGenerationJob.priority) == job.priority)
                    & (col(PromptGenerationJob.created_at) < job.created_at),
                ),
            )
        )
        return result.scalar_one() + 1

    async def count_by_status(self) -> dict[PromptJobStatus, int]:
        """Number of prompt jobs per status (missing statuses count as 0)."""
        result = await self.session.execute(
            select(PromptGenerationJob.status, func.count()).group_by(  # type: ignore[call-overload]
                PromptGenerationJob.status
            )
        )
        counts = {status: 0 for status in PromptJobStatus}
        for status, count in result.all():
            counts[PromptJobStatus(status)] = count
        return counts

    async def average_wait_seconds(self) -> float:
        """Mean seconds between creation and start over completed jobs (0 when none)."""
        started = col(PromptGenerationJob.started_at)
        created = col(PromptGenerationJob.created_at)
        if self.session.get_bind().dialect.name == "sqlite":
            wait = (func.julianday(started) - func.julianday(created)) * 86400
        else:
            wait = func.extract("epoch", started - created)

        result = await self.session.execute(
            select(func.avg(wait)).where(
                col(PromptGenerationJob.status) == PromptJobStatus.COMPLETED,
                started.is_not(None),
            )
        )
        return float(result.scalar_one() or 0.0)
