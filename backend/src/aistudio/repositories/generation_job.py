"""GenerationJob repository.

Every status change is a conditional UPDATE gated on the expected current status.
The affected row count tells the caller whether it won the race, so concurrent
dispatchers, pollers and the reaper never double-apply a transition.
"""

from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy import update as sa_update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from aistudio.core.timezone import utc_now
from aistudio.models.generation_job import (
    ACTIVE_JOB_STATUSES,
    IN_FLIGHT_JOB_STATUSES,
    WAITING_PROMPT_STATUSES,
    GenerationJob,
    GenerationJobStatus,
    PromptStatus,
    check_transition,
)
from aistudio.models.row import RowKind, RowRef


class GenerationJobRepository:
    """Repository for GenerationJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by ID, always reloading column values from the database.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(col(GenerationJob.id) == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job

        Raises:
            ValueError: If the job does not reference exactly one row
        """
        job.ensure_single_parent()
        self.session.add(job)
        await self.session.flush()
        return job

    async def transition(
        self,
        job_id: UUID,
        expected: Iterable[GenerationJobStatus],
        target: GenerationJobStatus,
        *extra_where: Any,
        **values: Any,
    ) -> bool:
        """Move a job to target status if it is still in one of the expected statuses.

        Args:
            job_id: Job to update
            expected: Statuses the job must currently be in
            target: New status
            *extra_where: Additional conditions the row must still satisfy
            **values: Extra columns to set alongside the status

        Returns:
            True if this call performed the transition, False if the job had
            already moved on (another worker won the race)

        Raises:
            InvalidStateTransition: If any expected -> target move is illegal
        """
        expected = tuple(expected)
        for current in expected:
            check_transition(current, target)

        result = await self.session.execute(
            sa_update(GenerationJob)
            .where(
                col(GenerationJob.id) == job_id,
                col(GenerationJob.status).in_(expected),
                *extra_where,
            )
            .values(status=target, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim(self, job_id: UUID) -> bool:
        """Claim a queued job for submission (queued -> submitted)."""
        return await self.transition(
            job_id, (GenerationJobStatus.QUEUED,), GenerationJobStatus.SUBMITTED
        )

    async def resume_saving(self, job_id: UUID, idle_before: datetime) -> bool:
        """Take over the save step of a job whose last touch is older than idle_before.

        Refreshes updated_at, so only one caller can resume a given stalled save.
        """
        result = await self.session.execute(
            sa_update(GenerationJob)
            .where(
                col(GenerationJob.id) == job_id,
                col(GenerationJob.status) == GenerationJobStatus.SAVING,
                col(GenerationJob.updated_at) < idle_before,
            )
            .values(updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def fail(
        self,
        job_id: UUID,
        expected: Iterable[GenerationJobStatus],
        error: str,
        prompt_status: Optional[PromptStatus] = None,
        without_request_id: bool = False,
        updated_before: Optional[datetime] = None,
    ) -> bool:
        """Force a job to failed if it is still in one of the expected statuses.

        Args:
            job_id: Job to fail
            expected: Statuses the job must currently be in
            error: Message stored in job.error
            prompt_status: Also set prompt_status (prompt failure cascade)
            without_request_id: Only fail if the provider id is still unset
            updated_before: Only fail if the job has not been touched since cutoff

        Returns:
            True if this call failed the job
        """
        conditions = []
        if without_request_id:
            conditions.append(col(GenerationJob.provider_request_id).is_(None))
        if updated_before is not None:
            conditions.append(col(GenerationJob.updated_at) < updated_before)

        values: dict[str, Any] = {"error": error[:2000]}
        if prompt_status is not None:
            values["prompt_status"] = prompt_status
        return await self.transition(
            job_id, expected, GenerationJobStatus.FAILED, *conditions, **values
        )

    async def set_provider_request_id(self, job_id: UUID, provider_request_id: str) -> bool:
        """Record the provider's request id once the submission was accepted.

        Only applies while the job is submitted or running and has no id yet.
        """
        result = await self.session.execute(
            sa_update(GenerationJob)
            .where(
                col(GenerationJob.id) == job_id,
                col(GenerationJob.status).in_(
                    (GenerationJobStatus.SUBMITTED, GenerationJobStatus.RUNNING)
                ),
                col(GenerationJob.provider_request_id).is_(None),
            )
            .values(provider_request_id=provider_request_id, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def count_in_flight(self, since: datetime) -> int:
        """Count jobs occupying a provider slot (submitted/running/saving) updated since cutoff."""
        result = await self.session.execute(
            select(func.count())
            .select_from(GenerationJob)
            .where(
                col(GenerationJob.status).in_(IN_FLIGHT_JOB_STATUSES),
                col(GenerationJob.updated_at) >= since,
            )
        )
        return result.scalar_one()

    async def list_dispatchable(
        self,
        limit: int,
        model_id: Optional[UUID] = None,
        variant_row_id: Optional[UUID] = None,
    ) -> list[GenerationJob]:
        """Retrieve queued jobs that are not waiting on an AI prompt, oldest first.

        Uses FOR UPDATE SKIP LOCKED on PostgreSQL so concurrent dispatchers see
        mostly disjoint candidates; the claim itself is still the conditional
        UPDATE in claim().

        Args:
            limit: Maximum number of jobs to return
            model_id: Restrict to jobs of one model
            variant_row_id: Restrict to jobs of one variant row

        Returns:
            Candidate jobs in FIFO order
        """
        query = select(GenerationJob).where(
            col(GenerationJob.status) == GenerationJobStatus.QUEUED,
            or_(
                col(GenerationJob.prompt_status).is_(None),
                col(GenerationJob.prompt_status).not_in(WAITING_PROMPT_STATUSES),
            ),
        )
        if model_id is not None:
            query = query.where(col(GenerationJob.model_id) == model_id)
        if variant_row_id is not None:
            query = query.where(col(GenerationJob.variant_row_id) == variant_row_id)

        result = await self.session.execute(
            query.order_by(col(GenerationJob.created_at).asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def list_in_flight_with_request_id(self, limit: int = 50) -> list[GenerationJob]:
        """Retrieve jobs the provider has accepted and that have not terminalized."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                col(GenerationJob.status).in_(IN_FLIGHT_JOB_STATUSES),
                col(GenerationJob.provider_request_id).is_not(None),
            )
            .order_by(col(GenerationJob.updated_at).asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def queue_position(self, job: GenerationJob) -> int:
        """1-based position of a queued job among all queued jobs (0 if not queued)."""
        if job.status != GenerationJobStatus.QUEUED:
            return 0
        result = await self.session.execute(
            select(func.count())
            .select_from(GenerationJob)
            .where(
                col(GenerationJob.status) == GenerationJobStatus.QUEUED,
                col(GenerationJob.created_at) < job.created_at,
            )
        )
        return result.scalar_one() + 1

    # Reaper queries

    async def find_stuck_queued(
        self, created_before: datetime, include_waiting_for_prompt: bool = False
    ) -> list[GenerationJob]:
        """Queued jobs created before cutoff.

        Jobs still waiting on their AI prompt are excluded unless requested; the
        prompt job's own timeouts govern them.
        """
        query = select(GenerationJob).where(
            col(GenerationJob.status) == GenerationJobStatus.QUEUED,
            col(GenerationJob.created_at) < created_before,
        )
        if not include_waiting_for_prompt:
            query = query.where(
                or_(
                    col(GenerationJob.prompt_status).is_(None),
                    col(GenerationJob.prompt_status).not_in(WAITING_PROMPT_STATUSES),
                )
            )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_stuck_submitted(
        self, created_before: datetime, without_request_id: bool = True
    ) -> list[GenerationJob]:
        """Submitted jobs created before cutoff (by default only those without a provider id)."""
        query = select(GenerationJob).where(
            col(GenerationJob.status) == GenerationJobStatus.SUBMITTED,
            col(GenerationJob.created_at) < created_before,
        )
        if without_request_id:
            query = query.where(col(GenerationJob.provider_request_id).is_(None))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_without_request_id(
        self,
        statuses: Iterable[GenerationJobStatus],
        updated_before: Optional[datetime] = None,
    ) -> list[GenerationJob]:
        """Jobs in the given statuses that never got a provider id.

        Args:
            statuses: Statuses to inspect (running, saving)
            updated_before: Age gate on updated_at; None matches regardless of age
        """
        query = select(GenerationJob).where(
            col(GenerationJob.status).in_(tuple(statuses)),
            col(GenerationJob.provider_request_id).is_(None),
        )
        if updated_before is not None:
            query = query.where(col(GenerationJob.updated_at) < updated_before)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_stuck_saving(self, updated_before: datetime) -> list[GenerationJob]:
        result = await self.session.execute(
            select(GenerationJob).where(
                col(GenerationJob.status) == GenerationJobStatus.SAVING,
                col(GenerationJob.updated_at) < updated_before,
            )
        )
        return list(result.scalars().all())

    async def find_stale(self, updated_before: datetime) -> list[GenerationJob]:
        """Any non-terminal job not updated since cutoff."""
        result = await self.session.execute(
            select(GenerationJob).where(
                col(GenerationJob.status).in_(ACTIVE_JOB_STATUSES),
                col(GenerationJob.updated_at) < updated_before,
            )
        )
        return list(result.scalars().all())

    # Prompt dependents

    async def list_dependents(
        self, prompt_job_id: UUID, statuses: Iterable[GenerationJobStatus]
    ) -> list[GenerationJob]:
        """Jobs waiting on a prompt job, restricted to the given statuses."""
        result = await self.session.execute(
            select(GenerationJob).where(
                col(GenerationJob.prompt_job_id) == prompt_job_id,
                col(GenerationJob.status).in_(tuple(statuses)),
            )
        )
        return list(result.scalars().all())

    async def apply_prompt(self, job: GenerationJob, prompt: str) -> bool:
        """Write a completed AI prompt into a dependent job still awaiting dispatch."""
        payload = dict(job.request_payload or {})
        payload["prompt"] = prompt
        result = await self.session.execute(
            sa_update(GenerationJob)
            .where(
                col(GenerationJob.id) == job.id,
                col(GenerationJob.status).in_(
                    (GenerationJobStatus.QUEUED, GenerationJobStatus.SUBMITTED)
                ),
            )
            .values(
                request_payload=payload,
                prompt_status=PromptStatus.COMPLETED,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def set_dependents_prompt_status(
        self, prompt_job_id: UUID, prompt_status: PromptStatus
    ) -> int:
        """Update prompt_status of every non-terminal dependent; returns rows touched."""
        result = await self.session.execute(
            sa_update(GenerationJob)
            .where(
                col(GenerationJob.prompt_job_id) == prompt_job_id,
                col(GenerationJob.status).in_(ACTIVE_JOB_STATUSES),
            )
            .values(prompt_status=prompt_status, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

    # Row aggregation input

    async def statuses_for_row(self, row: RowRef) -> list[GenerationJobStatus]:
        """Statuses of every child job of a row."""
        parent = (
            col(GenerationJob.row_id)
            if row.kind == RowKind.MODEL
            else col(GenerationJob.variant_row_id)
        )
        result = await self.session.execute(
            select(GenerationJob.status).where(parent == row.id)  # type: ignore[call-overload]
        )
        return list(result.scalars().all())
