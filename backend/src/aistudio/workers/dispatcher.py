"""Generation job dispatcher and provider poller.

Dispatch claims queued jobs up to the free provider capacity, signs their input
images and submits them to the image provider. Polling advances submitted jobs
through running and saving to a terminal state.

Provider and storage calls are made with no database session open. Every state
change is a conditional update, so any number of dispatchers, pollers and
reaper passes may run at once: a job is claimed by at most one of them, and a
later pass observes whatever progress (or staleness) the earlier one left.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog

from aistudio.core.timezone import utc_now
from aistudio.models.generated_image import GeneratedImage
from aistudio.models.generation_job import (
    IN_FLIGHT_JOB_STATUSES,
    GenerationJob,
    GenerationJobStatus,
)
from aistudio.models.payloads import GenerationRequestPayload
from aistudio.models.prompt_job import PromptJobStatus
from aistudio.models.row import RowStatus
from aistudio.services.exceptions import (
    InternalError,
    NotFoundError,
    ProviderError,
    StorageError,
)
from aistudio.services.image_generation.prompt_validator import clamp_dimension, validate_prompt
from aistudio.services.image_generation.replicate_client import (
    ImageProvider,
    ProviderStage,
    ProviderSubmission,
)
from aistudio.services.row_status import refresh_row_status
from aistudio.services.storage import OutputSaver, UrlSigner

logger = structlog.get_logger(__name__)

STEP_LABELS = {
    GenerationJobStatus.QUEUED: "queued",
    GenerationJobStatus.SUBMITTED: "submitting",
    GenerationJobStatus.RUNNING: "generating",
    GenerationJobStatus.SAVING: "saving",
    GenerationJobStatus.SUCCEEDED: "done",
    GenerationJobStatus.FAILED: "failed",
}


@dataclass
class DispatchResult:
    claimed: int = 0
    submitted: int = 0
    failed: int = 0
    job_ids: list[UUID] = field(default_factory=list)


@dataclass
class PollResult:
    job_id: UUID
    status: GenerationJobStatus
    step: str
    queue_position: int = 0
    error: Optional[str] = None
    output_paths: list[str] = field(default_factory=list)


class Dispatcher:
    """Claims, submits and polls generation jobs.

    Capacity is checked and jobs are claimed under an in-process lock, so
    concurrent dispatch() calls on one Dispatcher never exceed max_concurrency.
    Across processes the conditional claim still guarantees each job is
    submitted at most once.
    """

    def __init__(
        self,
        uow_factory,
        provider: ImageProvider,
        signer: UrlSigner,
        saver: OutputSaver,
        max_concurrency: int = 3,
        batch_size: int = 10,
        active_window_seconds: int = 600,
        signed_url_ttl_seconds: int = 600,
        min_dimension: int = 1024,
        max_dimension: int = 4096,
        save_lease_seconds: int = 300,
    ):
        self.uow_factory = uow_factory
        self.provider = provider
        self.signer = signer
        self.saver = saver
        self.max_concurrency = max_concurrency
        self.batch_size = batch_size
        self.active_window_seconds = active_window_seconds
        self.signed_url_ttl_seconds = signed_url_ttl_seconds
        self.min_dimension = min_dimension
        self.max_dimension = max_dimension
        self.save_lease_seconds = save_lease_seconds
        self._claim_lock = asyncio.Lock()

    async def dispatch(
        self, model_id: Optional[UUID] = None, variant_row_id: Optional[UUID] = None
    ) -> DispatchResult:
        """Claim queued jobs into free provider slots and submit them.

        Best effort and idempotent: with no capacity or no eligible jobs this
        is a no-op. Jobs waiting on an unfinished AI prompt are never claimed.

        Args:
            model_id: Only dispatch jobs of this model
            variant_row_id: Only dispatch jobs of this variant row

        Returns:
            DispatchResult with claim and submission counts
        """
        claimed = await self._claim_batch(model_id, variant_row_id)
        result = DispatchResult(claimed=len(claimed), job_ids=[job.id for job in claimed])
        if not claimed:
            return result

        outcomes = await asyncio.gather(
            *(self._submit(job) for job in claimed), return_exceptions=True
        )
        for job, outcome in zip(claimed, outcomes):
            if isinstance(outcome, BaseException):
                # Left in submitted without provider id; the reaper times it out
                logger.error(
                    "job.dispatch.error",
                    job_id=str(job.id),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif outcome:
                result.submitted += 1
            else:
                result.failed += 1

        logger.info(
            "job.dispatch.completed",
            claimed=result.claimed,
            submitted=result.submitted,
            failed=result.failed,
        )
        return result

    async def _claim_batch(
        self, model_id: Optional[UUID], variant_row_id: Optional[UUID]
    ) -> list[GenerationJob]:
        async with self._claim_lock:
            async with await self.uow_factory() as uow:
                since = utc_now() - timedelta(seconds=self.active_window_seconds)
                in_flight = await uow.jobs.count_in_flight(since)
                free = self.max_concurrency - in_flight
                if free <= 0:
                    logger.debug("job.dispatch.at_capacity", in_flight=in_flight)
                    return []

                candidates = await uow.jobs.list_dispatchable(
                    min(free, self.batch_size), model_id=model_id, variant_row_id=variant_row_id
                )
                claimed = []
                for job in candidates:
                    if await uow.jobs.claim(job.id):
                        claimed.append(job)
                    else:
                        logger.debug("job.dispatch.claim_lost", job_id=str(job.id))

                for row in {job.row_ref for job in claimed}:
                    await uow.rows.set_status(row, RowStatus.RUNNING)

        if claimed:
            logger.info(
                "job.dispatch.claimed",
                count=len(claimed),
                job_ids=[str(job.id) for job in claimed],
                in_flight=in_flight,
            )
        return claimed

    async def _resolve_prompt(self, job: GenerationJob, payload: GenerationRequestPayload) -> str:
        """Pick the prompt to submit, pulling a finished AI prompt if not yet copied."""
        if payload.prompt or job.prompt_job_id is None:
            return payload.prompt
        async with await self.uow_factory() as uow:
            prompt_job = await uow.prompt_jobs.get_by_id(job.prompt_job_id)
        if prompt_job is not None and prompt_job.status == PromptJobStatus.COMPLETED:
            return prompt_job.result_prompt or ""
        return payload.prompt

    async def _submit(self, job: GenerationJob) -> bool:
        """Submit one claimed job to the provider.

        Returns:
            True if submitted, False if the job was failed

        Raises:
            InternalError: Unexpected errors (the job stays submitted for the reaper)
        """
        start_time = time.time()
        try:
            payload = GenerationRequestPayload.model_validate(job.request_payload)
            prompt = validate_prompt(await self._resolve_prompt(job, payload))

            paths = [*payload.ref_paths, payload.target_path]
            urls = await asyncio.gather(
                *(self.signer.sign(path, self.signed_url_ttl_seconds) for path in paths)
            )
            missing = [path for path, url in zip(paths, urls) if url is None]
            if missing:
                raise StorageError(f"Cannot sign URL for {missing[0]}")

            width = clamp_dimension(payload.width, self.min_dimension, self.max_dimension)
            height = clamp_dimension(payload.height, self.min_dimension, self.max_dimension)
            submission = ProviderSubmission(
                prompt=prompt,
                image_urls=list(urls),  # type: ignore[arg-type]
                width=width,
                height=height,
                model=payload.provider_model,
            )

            provider_request_id = await self.provider.submit(submission)

        except (ProviderError, StorageError, ValueError) as e:
            await self._fail(job, str(e), (GenerationJobStatus.SUBMITTED,))
            logger.warning(
                "job.dispatch.failed",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return False

        except Exception as e:
            raise InternalError(f"Unexpected error submitting job {job.id}: {e}") from e

        async with await self.uow_factory() as uow:
            recorded = await uow.jobs.set_provider_request_id(job.id, provider_request_id)

        if not recorded:
            logger.warning(
                "job.dispatch.request_id_not_recorded",
                job_id=str(job.id),
                provider_request_id=provider_request_id,
            )
            return False

        logger.info(
            "job.dispatch.submitted",
            job_id=str(job.id),
            provider_request_id=provider_request_id,
            width=width,
            height=height,
            duration_seconds=time.time() - start_time,
        )
        return True

    async def _fail(
        self, job: GenerationJob, error: str, expected: tuple[GenerationJobStatus, ...]
    ) -> bool:
        async with await self.uow_factory() as uow:
            failed = await uow.jobs.fail(job.id, expected, error)
            if failed:
                await refresh_row_status(uow, job.row_ref)
        return failed

    async def poll_job(self, job_id: UUID) -> PollResult:
        """Advance one job from the provider's current state.

        submitted -> running once the provider reports progress or completion. On
        success one poller claims the save step (running -> saving), stores the
        outputs and moves the job to succeeded; concurrent polls skip the save. A
        provider failure fails the job with the provider's error verbatim.

        Raises:
            NotFoundError: Unknown job
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None:
                raise NotFoundError("Job not found")
            position = await uow.jobs.queue_position(job)

        if job.provider_request_id is None:
            return self._poll_result(job, position)
        if job.is_terminal:
            return await self._reload(job.id)

        try:
            result = await self.provider.poll(job.provider_request_id)
        except ProviderError as e:
            logger.warning("job.poll.provider_error", job_id=str(job.id), error=str(e))
            return self._poll_result(job)

        if result.stage != ProviderStage.FAILED and job.status == GenerationJobStatus.SUBMITTED:
            async with await self.uow_factory() as uow:
                await uow.jobs.transition(
                    job.id, (GenerationJobStatus.SUBMITTED,), GenerationJobStatus.RUNNING
                )

        if result.stage == ProviderStage.FAILED:
            error = result.error or "Provider reported failure"
            if await self._fail(job, error, IN_FLIGHT_JOB_STATUSES):
                logger.warning("job.poll.failed", job_id=str(job.id), error_message=error)

        elif result.stage == ProviderStage.SUCCEEDED:
            if not result.output_urls:
                await self._fail(job, "No outputs returned by provider", IN_FLIGHT_JOB_STATUSES)
            else:
                await self._save_outputs(job, result.output_urls)

        return await self._reload(job.id)

    async def _claim_save(self, job: GenerationJob) -> bool:
        """Take the save step: running -> saving, or a saving job idle past the save lease."""
        async with await self.uow_factory() as uow:
            if job.status == GenerationJobStatus.SAVING:
                idle_before = utc_now() - timedelta(seconds=self.save_lease_seconds)
                return await uow.jobs.resume_saving(job.id, idle_before)
            return await uow.jobs.transition(
                job.id, (GenerationJobStatus.RUNNING,), GenerationJobStatus.SAVING
            )

    async def _save_outputs(self, job: GenerationJob, output_urls: list[str]) -> None:
        if not await self._claim_save(job):
            logger.debug("job.save.in_progress", job_id=str(job.id))
            return

        try:
            paths = [
                await self.saver.save_output(url, job.user_id, job.id, index)
                for index, url in enumerate(output_urls)
            ]
        except StorageError as e:
            await self._fail(job, str(e), (GenerationJobStatus.SAVING,))
            logger.error("job.save.failed", job_id=str(job.id), error_message=str(e))
            return

        async with await self.uow_factory() as uow:
            for path, url in zip(paths, output_urls):
                await uow.images.add_if_absent(
                    GeneratedImage(
                        job_id=job.id,
                        row_id=job.row_id,
                        variant_row_id=job.variant_row_id,
                        user_id=job.user_id,
                        output_path=path,
                        source_url=url,
                    )
                )
            succeeded = await uow.jobs.transition(
                job.id, (GenerationJobStatus.SAVING,), GenerationJobStatus.SUCCEEDED
            )
            if succeeded:
                await refresh_row_status(uow, job.row_ref)

        if succeeded:
            logger.info("job.succeeded", job_id=str(job.id), outputs=len(paths))

    async def _reload(self, job_id: UUID) -> PollResult:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            position = await uow.jobs.queue_position(job)  # type: ignore[arg-type]
            outputs = await uow.images.list_for_job(job_id)
        result = self._poll_result(job, position)  # type: ignore[arg-type]
        result.output_paths = [image.output_path for image in outputs]
        return result

    @staticmethod
    def _poll_result(job: GenerationJob, position: int = 0) -> PollResult:
        return PollResult(
            job_id=job.id,
            status=job.status,
            step=STEP_LABELS[job.status],
            queue_position=position,
            error=job.error,
        )

    async def poll_active(self, limit: int = 50) -> int:
        """Poll every in-flight job that has a provider request id.

        Returns:
            Number of jobs polled without error
        """
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.list_in_flight_with_request_id(limit)

        if not jobs:
            return 0

        results = await asyncio.gather(*(self.poll_job(job.id) for job in jobs), return_exceptions=True)
        polled = 0
        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.error(
                    "job.poll.error",
                    job_id=str(job.id),
                    error=str(result),
                    error_type=type(result).__name__,
                )
            else:
                polled += 1
        return polled


async def run_dispatch_worker(dispatcher: Dispatcher, poll_interval_seconds: float) -> None:
    """Main loop: poll in-flight jobs, then dispatch into freed capacity.

    Args:
        dispatcher: Dispatcher instance
        poll_interval_seconds: Delay between ticks
    """
    logger.info(
        "worker.started",
        worker="dispatch",
        poll_interval=poll_interval_seconds,
        max_concurrency=dispatcher.max_concurrency,
    )

    try:
        while True:
            try:
                await dispatcher.poll_active()
                await dispatcher.dispatch()
                await asyncio.sleep(poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="dispatch",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="dispatch")
        raise
