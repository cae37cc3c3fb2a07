"""Prompt generation queue API endpoints.

- POST /api/prompt/queue - Queue an AI prompt generation
- GET /api/prompt/queue - Queue statistics
- POST /api/prompt/enhance/queue - Queue an AI prompt enhancement
- GET /api/prompt/queue/{prompt_job_id} - Status of one prompt job
- DELETE /api/prompt/queue/{prompt_job_id} - Cancel a queued or processing prompt job
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, status

from aistudio.api.dependencies import get_current_user_id, get_settings, get_uow_factory
from aistudio.api.schemas import CamelModel
from aistudio.core.config import Settings
from aistudio.models.payloads import PromptEnhanceRequest, PromptGenerateRequest
from aistudio.services import prompt_queue

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/prompt", tags=["prompts"])


class EnqueueResponse(CamelModel):
    prompt_job_id: UUID
    status: str
    estimated_wait_time: int


class QueueStatsResponse(CamelModel):
    total_queued: int
    total_processing: int
    total_completed: int
    total_failed: int
    average_wait_time: float
    estimated_wait_time: int


class PromptJobResponse(CamelModel):
    id: UUID
    status: str
    operation: str
    generated_prompt: Optional[str] = None
    enhanced_prompt: Optional[str] = None
    existing_prompt: Optional[str] = None
    user_instructions: Optional[str] = None
    error: Optional[str] = None
    retry_count: int
    max_retries: int
    priority: int
    queue_position: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CancelResponse(CamelModel):
    success: bool = True


async def _enqueued(uow_factory, settings: Settings, job) -> EnqueueResponse:
    stats = await prompt_queue.get_queue_stats(uow_factory, settings.prompt_batch_size)
    return EnqueueResponse(
        prompt_job_id=job.id,
        status=job.status.value,
        estimated_wait_time=stats.estimated_wait_time,
    )


@router.post("/queue", response_model=EnqueueResponse, status_code=status.HTTP_200_OK)
async def enqueue_prompt(
    request: PromptGenerateRequest,
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> EnqueueResponse:
    """Queue an AI prompt generation (default priority 5)."""
    job = await prompt_queue.enqueue_prompt(
        uow_factory, user_id, request, max_retries=settings.prompt_max_retries
    )
    return await _enqueued(uow_factory, settings, job)


@router.get("/queue", response_model=QueueStatsResponse, status_code=status.HTTP_200_OK)
async def get_queue_stats(
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> QueueStatsResponse:
    """Queue counts, average wait of completed jobs and estimated wait for new jobs (seconds)."""
    stats = await prompt_queue.get_queue_stats(uow_factory, settings.prompt_batch_size)
    return QueueStatsResponse(
        total_queued=stats.total_queued,
        total_processing=stats.total_processing,
        total_completed=stats.total_completed,
        total_failed=stats.total_failed,
        average_wait_time=stats.average_wait_time,
        estimated_wait_time=stats.estimated_wait_time,
    )


@router.post("/enhance/queue", response_model=EnqueueResponse, status_code=status.HTTP_200_OK)
async def enqueue_prompt_enhancement(
    request: PromptEnhanceRequest,
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> EnqueueResponse:
    """Queue an AI prompt enhancement (default priority 8)."""
    job = await prompt_queue.enqueue_prompt_enhancement(
        uow_factory, user_id, request, max_retries=settings.prompt_max_retries
    )
    return await _enqueued(uow_factory, settings, job)


@router.get(
    "/queue/{prompt_job_id}", response_model=PromptJobResponse, status_code=status.HTTP_200_OK
)
async def get_prompt_status(
    prompt_job_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
) -> PromptJobResponse:
    """Status and result of one prompt job owned by the caller.

    Raises:
        404: Prompt job not found
        403: Prompt job belongs to another user
    """
    view = await prompt_queue.get_prompt_status(uow_factory, user_id, prompt_job_id)
    job = view.job
    return PromptJobResponse(
        id=job.id,
        status=job.status.value,
        operation=job.operation.value,
        generated_prompt=job.generated_prompt,
        enhanced_prompt=job.enhanced_prompt,
        existing_prompt=job.existing_prompt,
        user_instructions=job.user_instructions,
        error=job.error,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        priority=job.priority,
        queue_position=view.queue_position,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


@router.delete(
    "/queue/{prompt_job_id}", response_model=CancelResponse, status_code=status.HTTP_200_OK
)
async def cancel_prompt_job(
    prompt_job_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
) -> CancelResponse:
    """Cancel a queued or processing prompt job; its waiting generation jobs fail.

    Raises:
        404: Prompt job not found
        403: Prompt job belongs to another user
        400: Prompt job already completed or failed
    """
    await prompt_queue.cancel_prompt_job(uow_factory, user_id, prompt_job_id)
    return CancelResponse()
