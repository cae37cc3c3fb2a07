"""Propagate prompt job outcomes to the generation jobs waiting on them."""

from typing import Iterable

import structlog

from aistudio.models.generation_job import GenerationJobStatus, PromptStatus
from aistudio.models.prompt_job import PromptGenerationJob
from aistudio.models.row import RowRef
from aistudio.services.row_status import refresh_rows

logger = structlog.get_logger(__name__)

# Dependents that have not reached the provider yet
CASCADE_STATUSES = (GenerationJobStatus.QUEUED, GenerationJobStatus.SUBMITTED)
# Manual reset also fails dependents that claim to be running
RESET_CASCADE_STATUSES = (
    GenerationJobStatus.QUEUED,
    GenerationJobStatus.SUBMITTED,
    GenerationJobStatus.RUNNING,
)


async def fail_dependents(
    uow,
    prompt_job_id,
    error: str,
    statuses: Iterable[GenerationJobStatus] = CASCADE_STATUSES,
) -> tuple[int, set[RowRef]]:
    """Fail every dependent generation job still in one of the given statuses.

    Each dependent is failed with prompt_status=failed. Rows of the failed jobs
    are re-aggregated in the same unit of work.

    Returns:
        (number of jobs failed, rows refreshed)
    """
    statuses = tuple(statuses)
    dependents = await uow.jobs.list_dependents(prompt_job_id, statuses)

    failed = 0
    rows: set[RowRef] = set()
    for job in dependents:
        if await uow.jobs.fail(job.id, statuses, error, prompt_status=PromptStatus.FAILED):
            failed += 1
            rows.add(job.row_ref)

    await refresh_rows(uow, rows)
    if failed:
        logger.info(
            "prompt_job.dependents_failed",
            prompt_job_id=str(prompt_job_id),
            jobs_failed=failed,
            rows_refreshed=len(rows),
        )
    return failed, rows


async def complete_dependents(uow, prompt_job: PromptGenerationJob, prompt: str) -> int:
    """Hand a finished AI prompt to every dependent still awaiting dispatch.

    Returns:
        Number of generation jobs updated
    """
    dependents = await uow.jobs.list_dependents(prompt_job.id, CASCADE_STATUSES)
    updated = 0
    for job in dependents:
        if await uow.jobs.apply_prompt(job, prompt):
            updated += 1
    return updated
