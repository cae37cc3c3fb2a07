"""Generation job creation for model rows and variant rows.

Creating a job writes one queued GenerationJob (plus a PromptGenerationJob when
an AI prompt is requested), marks the row queued, and triggers dispatch once the
transaction has committed.
"""

from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

import structlog

from aistudio.models.generation_job import GenerationJob, PromptStatus
from aistudio.models.payloads import GenerationOptions, GenerationRequestPayload
from aistudio.models.prompt_job import PromptGenerationJob, PromptOperation, SwapMode
from aistudio.models.row import RowKind, RowRef, RowStatus
from aistudio.services.exceptions import AccessDenied, NotFoundError, ValidationError
from aistudio.services.image_generation.prompt_validator import validate_prompt
from aistudio.services.usage import STEP_GENERATE, record_usage
from aistudio.workers.dispatch_queue import DispatchQueue, DispatchRequest

logger = structlog.get_logger(__name__)

DEFAULT_GENERATE_PRIORITY = 5


@dataclass
class CreateJobResult:
    job_ids: list[UUID] = field(default_factory=list)
    prompt_job_id: Optional[UUID] = None


def _resolve_prompt(prompt: Optional[str], use_ai_prompt: bool) -> str:
    if use_ai_prompt:
        # Filled in by the prompt processor
        return (prompt or "").strip()
    try:
        return validate_prompt(prompt or "")
    except ValueError as e:
        raise ValidationError(str(e)) from e


async def create_job(
    uow_factory,
    user_id: UUID,
    row_id: UUID,
    use_ai_prompt: bool = False,
    preserve_composition: bool = False,
    dispatch_queue: Optional[DispatchQueue] = None,
    swap_mode: SwapMode = SwapMode.FACE,
    prompt_max_retries: int = 3,
) -> CreateJobResult:
    """Create a generation job for a model row.

    Args:
        uow_factory: UnitOfWork factory
        user_id: Authenticated caller
        row_id: Model row to generate for
        use_ai_prompt: Ask the LLM for the prompt instead of the row/model prompt
        preserve_composition: Ask the provider to keep the target's composition
        dispatch_queue: Where to trigger dispatch after commit (None skips the trigger)
        swap_mode: Which features the AI prompt transfers
        prompt_max_retries: Retry budget for the prompt job

    Returns:
        CreateJobResult with the new job id and prompt job id (if any)

    Raises:
        NotFoundError: Row or its model does not exist
        AccessDenied: Caller neither created the row nor owns the model
        ValidationError: Missing reference/target images or empty prompt
    """
    async with await uow_factory() as uow:
        row = await uow.rows.get_model_row(row_id)
        if row is None:
            raise NotFoundError("Row not found")
        model = await uow.rows.get_model(row.model_id)
        if model is None:
            raise NotFoundError("Model not found")
        if user_id not in (row.created_by, model.owner_id):
            raise AccessDenied("Not allowed to generate for this row")

        ref_paths = list(row.ref_image_paths or [])
        if not ref_paths and model.default_ref_headshot_path:
            ref_paths = [model.default_ref_headshot_path]
        if not ref_paths or not row.target_image_path:
            raise ValidationError("Missing ref/target")

        prompt = _resolve_prompt(row.prompt_override or model.default_prompt, use_ai_prompt)
        payload = GenerationRequestPayload(
            ref_paths=ref_paths,
            target_path=row.target_image_path,
            prompt=prompt,
            width=model.output_width,
            height=model.output_height,
            provider_model=model.provider_model,
            options=GenerationOptions(preserve_composition=preserve_composition),
        )

        job = GenerationJob(
            row_id=row.id,
            model_id=model.id,
            team_id=model.team_id,
            user_id=user_id,
            request_payload=payload.model_dump(),
        )

        prompt_job = None
        if use_ai_prompt:
            prompt_job = PromptGenerationJob(
                row_id=row.id,
                model_id=model.id,
                user_id=user_id,
                operation=PromptOperation.GENERATE,
                swap_mode=swap_mode,
                ref_urls=ref_paths,
                target_url=row.target_image_path,
                priority=DEFAULT_GENERATE_PRIORITY,
                max_retries=prompt_max_retries,
            )
            await uow.prompt_jobs.add(prompt_job)
            job.prompt_job_id = prompt_job.id
            job.prompt_status = PromptStatus.PENDING

        await uow.jobs.add(job)
        await uow.rows.set_status(RowRef(RowKind.MODEL, row.id), RowStatus.QUEUED)
        model_id = model.id

    logger.info(
        "job.created",
        job_id=str(job.id),
        row_id=str(row_id),
        model_id=str(model_id),
        prompt_job_id=str(prompt_job.id) if prompt_job else None,
    )

    # Jobs waiting on an AI prompt are triggered by the prompt processor instead
    if dispatch_queue is not None and prompt_job is None:
        dispatch_queue.trigger(DispatchRequest(model_id=model_id))

    await record_usage(uow_factory, user_id, STEP_GENERATE)
    return CreateJobResult(job_ids=[job.id], prompt_job_id=prompt_job.id if prompt_job else None)


async def create_variant_job(
    uow_factory,
    user_id: UUID,
    variant_row_id: UUID,
    use_ai_prompt: bool = False,
    preserve_composition: bool = False,
    dispatch_queue: Optional[DispatchQueue] = None,
    swap_mode: SwapMode = SwapMode.FACE,
    prompt_max_retries: int = 3,
) -> CreateJobResult:
    """Create a generation job for a variant row.

    The row's images are ordered: all but the last are references, the last is
    the target. A single image means target-only editing.

    Raises:
        NotFoundError: Variant row does not exist
        AccessDenied: Row belongs to another user
        ValidationError: No images, or no prompt and no AI prompt requested
    """
    async with await uow_factory() as uow:
        row = await uow.rows.get_variant_row(variant_row_id)
        if row is None:
            raise NotFoundError("Variant row not found")
        if row.user_id != user_id:
            raise AccessDenied("Not allowed to generate for this variant row")

        image_paths = list(row.image_paths or [])
        if not image_paths:
            raise ValidationError("No images in this variant row")
        if not use_ai_prompt and not (row.prompt or "").strip():
            raise ValidationError("No prompt in this variant row. Generate a prompt first.")

        ref_paths, target_path = image_paths[:-1], image_paths[-1]
        payload = GenerationRequestPayload(
            ref_paths=ref_paths,
            target_path=target_path,
            prompt=_resolve_prompt(row.prompt, use_ai_prompt),
            width=row.output_width,
            height=row.output_height,
            options=GenerationOptions(preserve_composition=preserve_composition),
        )

        job = GenerationJob(
            variant_row_id=row.id,
            user_id=user_id,
            request_payload=payload.model_dump(),
        )

        prompt_job = None
        if use_ai_prompt:
            prompt_job = PromptGenerationJob(
                row_id=row.id,
                user_id=user_id,
                operation=PromptOperation.GENERATE,
                swap_mode=swap_mode,
                ref_urls=ref_paths,
                target_url=target_path,
                priority=DEFAULT_GENERATE_PRIORITY,
                max_retries=prompt_max_retries,
            )
            await uow.prompt_jobs.add(prompt_job)
            job.prompt_job_id = prompt_job.id
            job.prompt_status = PromptStatus.PENDING

        await uow.jobs.add(job)
        await uow.rows.set_status(RowRef(RowKind.VARIANT, row.id), RowStatus.QUEUED)

    logger.info(
        "job.created",
        job_id=str(job.id),
        variant_row_id=str(variant_row_id),
        prompt_job_id=str(prompt_job.id) if prompt_job else None,
    )

    if dispatch_queue is not None and prompt_job is None:
        dispatch_queue.trigger(DispatchRequest(variant_row_id=variant_row_id))

    await record_usage(uow_factory, user_id, STEP_GENERATE)
    return CreateJobResult(job_ids=[job.id], prompt_job_id=prompt_job.id if prompt_job else None)
