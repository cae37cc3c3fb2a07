"""Generation job API endpoints.

This module implements REST endpoints for the generation job lifecycle:
- POST /api/jobs/create - Queue a generation job for a model row
- POST /api/variants/rows/{row_id}/generate - Queue a generation job for a variant row
- POST /api/dispatch - Trigger dispatch (fire-and-forget)
- GET /api/jobs/{job_id}/poll - Advance and report one job's progress
- POST /api/jobs/cleanup - Run a scheduled reaper pass on demand

Service errors are mapped to HTTP status codes by the application-wide handler.
"""

from datetime import datetime
from typing import Annotated, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, Header, status
from pydantic import Field

from aistudio.api.dependencies import (
    get_current_user_id,
    get_dispatch_queue,
    get_dispatcher,
    get_reaper,
    get_settings,
    get_uow_factory,
    require_admin,
)
from aistudio.api.schemas import CamelModel
from aistudio.core.config import Settings
from aistudio.core.timezone import utc_now
from aistudio.models.prompt_job import SwapMode
from aistudio.services import jobs as job_service
from aistudio.services.exceptions import AccessDenied, NotFoundError
from aistudio.workers.dispatch_queue import DispatchQueue, DispatchRequest
from aistudio.workers.dispatcher import Dispatcher
from aistudio.workers.reaper import CleanupMode, Reaper

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api", tags=["jobs"])


# Request/Response Models


class GenerateOptions(CamelModel):
    use_ai_prompt: bool = Field(
        default=False, description="Generate the prompt with the LLM before dispatch"
    )
    preserve_composition: bool = Field(
        default=False, description="Ask the provider to keep the target's composition"
    )
    swap_mode: SwapMode = Field(
        default=SwapMode.FACE, description="Features the AI prompt transfers (face, face-hair)"
    )


class CreateJobRequest(GenerateOptions):
    row_id: UUID = Field(..., description="Model row to generate for")


class CreateJobResponse(CamelModel):
    job_ids: list[UUID]
    prompt_job_id: Optional[UUID] = None


class DispatchRequestBody(CamelModel):
    model_id: Optional[UUID] = None
    variant_row_id: Optional[UUID] = None


class DispatchResponse(CamelModel):
    ok: bool = True
    queued: bool = Field(..., description="False when the dispatch queue was full")


class PollResponse(CamelModel):
    job_id: UUID
    status: str
    step: str
    queue_position: int = 0
    error: Optional[str] = None
    output_paths: list[str] = Field(default_factory=list)


class CleanupResponse(CamelModel):
    success: bool = True
    cleaned_count: int
    summary: dict
    timestamp: datetime


# API Endpoints


@router.post("/jobs/create", response_model=CreateJobResponse, status_code=status.HTTP_200_OK)
async def create_job(
    request: CreateJobRequest,
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
    dispatch_queue: DispatchQueue = Depends(get_dispatch_queue),
    settings: Settings = Depends(get_settings),
) -> CreateJobResponse:
    """Queue one generation job for a model row.

    Returns:
        CreateJobResponse with the new job id and, with useAiPrompt, the prompt job id

    Raises:
        404: Row or model not found
        403: Caller neither created the row nor owns the model
        400: Missing reference/target images or empty prompt
    """
    result = await job_service.create_job(
        uow_factory,
        user_id=user_id,
        row_id=request.row_id,
        use_ai_prompt=request.use_ai_prompt,
        preserve_composition=request.preserve_composition,
        dispatch_queue=dispatch_queue,
        swap_mode=request.swap_mode,
        prompt_max_retries=settings.prompt_max_retries,
    )
    return CreateJobResponse(job_ids=result.job_ids, prompt_job_id=result.prompt_job_id)


@router.post(
    "/variants/rows/{row_id}/generate",
    response_model=CreateJobResponse,
    status_code=status.HTTP_200_OK,
)
async def create_variant_job(
    row_id: UUID,
    request: Annotated[Optional[GenerateOptions], Body()] = None,
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
    dispatch_queue: DispatchQueue = Depends(get_dispatch_queue),
    settings: Settings = Depends(get_settings),
) -> CreateJobResponse:
    """Queue one generation job for a variant row (all images but the last are references)."""
    options = request or GenerateOptions()
    result = await job_service.create_variant_job(
        uow_factory,
        user_id=user_id,
        variant_row_id=row_id,
        use_ai_prompt=options.use_ai_prompt,
        preserve_composition=options.preserve_composition,
        dispatch_queue=dispatch_queue,
        swap_mode=options.swap_mode,
        prompt_max_retries=settings.prompt_max_retries,
    )
    return CreateJobResponse(job_ids=result.job_ids, prompt_job_id=result.prompt_job_id)


@router.post("/dispatch", response_model=DispatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_dispatch(
    request: Annotated[Optional[DispatchRequestBody], Body()] = None,
    dispatch_queue: DispatchQueue = Depends(get_dispatch_queue),
) -> DispatchResponse:
    """Ask the dispatch workers to claim queued jobs.

    Never blocks on the provider; the actual dispatch runs in the worker pool.
    Does not expose job data, so it needs no caller identity.
    """
    body = request or DispatchRequestBody()
    queued = dispatch_queue.trigger(
        DispatchRequest(model_id=body.model_id, variant_row_id=body.variant_row_id)
    )
    return DispatchResponse(queued=queued)


@router.get("/jobs/{job_id}/poll", response_model=PollResponse, status_code=status.HTTP_200_OK)
async def poll_job(
    job_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> PollResponse:
    """Advance the job from the provider's state and report status, step and queue position.

    Raises:
        404: Job not found
        403: Job belongs to another user
    """
    async with await uow_factory() as uow:
        job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise NotFoundError("Not found")
        if job.user_id != user_id:
            raise AccessDenied("Forbidden")

    result = await dispatcher.poll_job(job_id)
    return PollResponse(
        job_id=result.job_id,
        status=result.status.value,
        step=result.step,
        queue_position=result.queue_position,
        error=result.error,
        output_paths=result.output_paths,
    )


@router.post("/jobs/cleanup", response_model=CleanupResponse, status_code=status.HTTP_200_OK)
async def run_cleanup(
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
    reaper: Reaper = Depends(get_reaper),
) -> CleanupResponse:
    """Run one scheduled reaper pass.

    Internal callers (cron) may call without credentials; a request carrying an
    Authorization header must carry the admin secret.
    """
    if authorization is not None:
        require_admin(authorization, settings)

    summary = await reaper.cleanup(CleanupMode.SCHEDULED)
    return CleanupResponse(
        cleaned_count=summary.cleaned_count,
        summary=summary.to_dict(),
        timestamp=utc_now(),
    )
