"""Prompt generation queue operations exposed to the API."""

import math
from dataclasses import dataclass
from typing import Union
from uuid import UUID

import structlog

from aistudio.models.prompt_job import (
    CANCELLABLE_PROMPT_STATUSES,
    PromptGenerationJob,
    PromptJobStatus,
    PromptOperation,
)
from aistudio.models.payloads import PromptEnhanceRequest, PromptGenerateRequest
from aistudio.services.cascade import fail_dependents
from aistudio.services.exceptions import AccessDenied, NotFoundError, ValidationError
from aistudio.services.usage import STEP_PROMPT_ENHANCE, STEP_PROMPT_GENERATE, record_usage

logger = structlog.get_logger(__name__)

DEFAULT_GENERATE_PRIORITY = 5
DEFAULT_ENHANCE_PRIORITY = 8
CANCELLED_ERROR = "Cancelled by user"
CANCELLED_DEPENDENT_ERROR = "Prompt generation cancelled"


@dataclass
class QueueStats:
    total_queued: int
    total_processing: int
    total_completed: int
    total_failed: int
    average_wait_time: float
    estimated_wait_time: int


@dataclass
class PromptJobView:
    job: PromptGenerationJob
    queue_position: int


def estimate_wait_seconds(queued: int, processing: int, batch_size: int) -> int:
    """Seconds until the current backlog drains at one batch per minute."""
    if queued == 0:
        return 0
    return math.ceil((queued + processing) * 60 / max(batch_size, 1))


async def _enqueue(
    uow_factory,
    user_id: UUID,
    request: Union[PromptGenerateRequest, PromptEnhanceRequest],
    default_priority: int,
    max_retries: int,
) -> PromptGenerationJob:
    job = PromptGenerationJob(
        row_id=request.row_id,
        model_id=request.model_id,
        user_id=user_id,
        operation=PromptOperation(request.operation),
        swap_mode=request.swap_mode,
        ref_urls=list(request.ref_urls),
        target_url=request.target_url,
        priority=request.priority if request.priority is not None else default_priority,
        max_retries=max_retries,
    )
    if isinstance(request, PromptEnhanceRequest):
        job.existing_prompt = request.existing_prompt
        job.user_instructions = request.user_instructions

    async with await uow_factory() as uow:
        await uow.prompt_jobs.add(job)

    logger.info(
        "prompt_job.enqueued",
        prompt_job_id=str(job.id),
        operation=job.operation.value,
        priority=job.priority,
        user_id=str(user_id),
    )
    return job


async def enqueue_prompt(
    uow_factory, user_id: UUID, request: PromptGenerateRequest, max_retries: int = 3
) -> PromptGenerationJob:
    """Queue a prompt generation job (default priority 5).

    Raises:
        ValidationError: No target image
    """
    if not request.target_url:
        raise ValidationError("targetUrl is required")
    job = await _enqueue(uow_factory, user_id, request, DEFAULT_GENERATE_PRIORITY, max_retries)
    await record_usage(uow_factory, user_id, STEP_PROMPT_GENERATE)
    return job


async def enqueue_prompt_enhancement(
    uow_factory, user_id: UUID, request: PromptEnhanceRequest, max_retries: int = 3
) -> PromptGenerationJob:
    """Queue a prompt enhancement job (default priority 8, ahead of new prompts).

    Raises:
        ValidationError: Missing existing prompt, instructions or target image
    """
    if not request.existing_prompt.strip() or not request.user_instructions.strip():
        raise ValidationError("existingPrompt and userInstructions are required")
    if not request.target_url:
        raise ValidationError("targetUrl is required")
    job = await _enqueue(uow_factory, user_id, request, DEFAULT_ENHANCE_PRIORITY, max_retries)
    await record_usage(uow_factory, user_id, STEP_PROMPT_ENHANCE)
    return job


async def get_prompt_status(uow_factory, user_id: UUID, prompt_job_id: UUID) -> PromptJobView:
    """Return a prompt job owned by the caller, with its queue position.

    Raises:
        NotFoundError: Unknown prompt job
        AccessDenied: Prompt job belongs to another user
    """
    async with await uow_factory() as uow:
        job = await uow.prompt_jobs.get_by_id(prompt_job_id)
        if job is None:
            raise NotFoundError("Prompt job not found")
        if job.user_id != user_id:
            raise AccessDenied("Forbidden")
        position = await uow.prompt_jobs.queue_position(job)
    return PromptJobView(job=job, queue_position=position)


async def cancel_prompt_job(
    uow_factory, user_id: UUID, prompt_job_id: UUID
) -> PromptGenerationJob:
    """Cancel a queued or processing prompt job and fail its waiting dependents.

    Raises:
        NotFoundError: Unknown prompt job
        AccessDenied: Prompt job belongs to another user
        ValidationError: Job already completed or failed
    """
    async with await uow_factory() as uow:
        job = await uow.prompt_jobs.get_by_id(prompt_job_id)
        if job is None:
            raise NotFoundError("Prompt job not found")
        if job.user_id != user_id:
            raise AccessDenied("Forbidden")
        if job.status not in CANCELLABLE_PROMPT_STATUSES:
            raise ValidationError("Cannot cancel completed or failed jobs")

        cancelled = await uow.prompt_jobs.fail(
            job.id, CANCELLABLE_PROMPT_STATUSES, CANCELLED_ERROR
        )
        if not cancelled:
            raise ValidationError("Cannot cancel completed or failed jobs")

        jobs_failed, _ = await fail_dependents(uow, job.id, CANCELLED_DEPENDENT_ERROR)
        job = await uow.prompt_jobs.get_by_id(job.id)

    logger.info(
        "prompt_job.cancelled", prompt_job_id=str(prompt_job_id), dependents_failed=jobs_failed
    )
    return job  # type: ignore[return-value]


async def get_queue_stats(uow_factory, batch_size: int) -> QueueStats:
    """Aggregate counts and wait times across the prompt queue."""
    async with await uow_factory() as uow:
        counts = await uow.prompt_jobs.count_by_status()
        average = await uow.prompt_jobs.average_wait_seconds()

    queued = counts[PromptJobStatus.QUEUED]
    processing = counts[PromptJobStatus.PROCESSING]
    return QueueStats(
        total_queued=queued,
        total_processing=processing,
        total_completed=counts[PromptJobStatus.COMPLETED],
        total_failed=counts[PromptJobStatus.FAILED],
        average_wait_time=round(average, 2),
        estimated_wait_time=estimate_wait_seconds(queued, processing, batch_size),
    )
