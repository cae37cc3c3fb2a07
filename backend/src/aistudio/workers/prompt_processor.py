"""Prompt processor worker.

Claims queued prompt jobs in priority order, asks the LLM for a prompt, and
hands the result to the generation jobs waiting on it. A failed LLM call is
requeued with exponential backoff while the job's retry budget lasts; after
that the prompt job fails and so do its waiting generation jobs.
"""

import asyncio
import time
from datetime import timedelta
from typing import Optional

import structlog

from aistudio.core.timezone import utc_now
from aistudio.models.generation_job import PromptStatus
from aistudio.models.prompt_job import PromptGenerationJob, PromptJobStatus, PromptOperation
from aistudio.services.cascade import complete_dependents, fail_dependents
from aistudio.services.exceptions import ProviderError, StorageError
from aistudio.services.prompt_generation.llm_client import PromptProvider
from aistudio.services.storage import UrlSigner
from aistudio.workers.dispatch_queue import DispatchQueue, DispatchRequest

logger = structlog.get_logger(__name__)


class PromptProcessor:
    """Runs queued prompt jobs against the LLM, one batch at a time."""

    def __init__(
        self,
        uow_factory,
        llm: PromptProvider,
        signer: UrlSigner,
        dispatch_queue: Optional[DispatchQueue] = None,
        batch_size: int = 3,
        signed_url_ttl_seconds: int = 600,
        retry_base_delay_seconds: float = 1.0,
        retry_max_delay_seconds: float = 30.0,
        retry_backoff_multiplier: float = 2.0,
    ):
        self.uow_factory = uow_factory
        self.llm = llm
        self.signer = signer
        self.dispatch_queue = dispatch_queue
        self.batch_size = batch_size
        self.signed_url_ttl_seconds = signed_url_ttl_seconds
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.retry_backoff_multiplier = retry_backoff_multiplier

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before a job that failed on attempt retry_count may run again."""
        delay = self.retry_base_delay_seconds * self.retry_backoff_multiplier**retry_count
        return min(delay, self.retry_max_delay_seconds)

    async def claim_batch(self) -> list[PromptGenerationJob]:
        """Claim up to batch_size queued jobs (highest priority, then oldest)."""
        now = utc_now()
        async with await self.uow_factory() as uow:
            candidates = await uow.prompt_jobs.list_claimable(self.batch_size, now)
            claimed = []
            for job in candidates:
                if await uow.prompt_jobs.claim(job.id, now):
                    job.status = PromptJobStatus.PROCESSING
                    job.started_at = now
                    claimed.append(job)
                    await uow.jobs.set_dependents_prompt_status(job.id, PromptStatus.GENERATING)
        return claimed

    async def process_batch(self) -> int:
        """Claim and process one batch concurrently.

        Returns:
            Number of jobs claimed
        """
        jobs = await self.claim_batch()
        if not jobs:
            return 0

        logger.info(
            "prompt_job.batch.claimed",
            count=len(jobs),
            prompt_job_ids=[str(job.id) for job in jobs],
        )

        results = await asyncio.gather(*(self.process_job(job) for job in jobs), return_exceptions=True)
        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                # Left in processing; the reaper requeues it after the timeout
                logger.error(
                    "prompt_job.error",
                    prompt_job_id=str(job.id),
                    error=str(result),
                    error_type=type(result).__name__,
                )
        return len(jobs)

    async def _sign(self, url_or_path: str) -> str:
        if url_or_path.startswith(("http://", "https://")):
            return url_or_path
        signed = await self.signer.sign(url_or_path, self.signed_url_ttl_seconds)
        if signed is None:
            raise StorageError(f"Cannot sign URL for {url_or_path}")
        return signed

    async def process_job(self, job: PromptGenerationJob) -> None:
        """Run one claimed job and record the outcome.

        Raises:
            Exception: Unexpected errors (job is left for the reaper)
        """
        start_time = time.time()
        logger.info(
            "prompt_job.started",
            prompt_job_id=str(job.id),
            operation=job.operation.value,
            priority=job.priority,
            retry_count=job.retry_count,
        )

        try:
            ref_urls = [await self._sign(url) for url in job.ref_urls]
            target_url = await self._sign(job.target_url)

            if job.operation == PromptOperation.ENHANCE:
                prompt = await self.llm.enhance(
                    job.existing_prompt or "",
                    job.user_instructions or "",
                    ref_urls,
                    target_url,
                    job.swap_mode,
                )
            else:
                prompt = await self.llm.generate(ref_urls, target_url, job.swap_mode)

        except (ProviderError, StorageError, ValueError) as e:
            await self._handle_failure(job, str(e))
            return

        async with await self.uow_factory() as uow:
            completed = await uow.prompt_jobs.complete(job, prompt)
            updated = await complete_dependents(uow, job, prompt) if completed else 0

        if not completed:
            logger.warning("prompt_job.result_discarded", prompt_job_id=str(job.id))
            return

        logger.info(
            "prompt_job.completed",
            prompt_job_id=str(job.id),
            prompt_length=len(prompt),
            dependents_updated=updated,
            duration_seconds=time.time() - start_time,
        )

        if updated and self.dispatch_queue is not None:
            self.dispatch_queue.trigger(DispatchRequest())

    async def _handle_failure(self, job: PromptGenerationJob, error: str) -> None:
        async with await self.uow_factory() as uow:
            if job.can_retry:
                delay = self.backoff_delay(job.retry_count)
                requeued = await uow.prompt_jobs.requeue(
                    job.id, error=error, available_at=utc_now() + timedelta(seconds=delay)
                )
                if requeued:
                    await uow.jobs.set_dependents_prompt_status(job.id, PromptStatus.PENDING)
                    logger.warning(
                        "prompt_job.retry",
                        prompt_job_id=str(job.id),
                        retry_count=job.retry_count + 1,
                        max_retries=job.max_retries,
                        delay_seconds=delay,
                        error_message=error,
                    )
                    return

            failed = await uow.prompt_jobs.fail(job.id, (PromptJobStatus.PROCESSING,), error)
            dependents_failed = 0
            if failed:
                dependents_failed, _ = await fail_dependents(
                    uow, job.id, f"AI prompt generation failed: {error}"
                )

        if failed:
            logger.error(
                "prompt_job.failed",
                prompt_job_id=str(job.id),
                retry_count=job.retry_count,
                error_message=error,
                dependents_failed=dependents_failed,
            )


async def run_prompt_processor(processor: PromptProcessor, poll_interval_seconds: float) -> None:
    """Main loop for the prompt processor.

    Processes batches back to back while work is available and sleeps for
    poll_interval_seconds when the queue is empty.
    """
    logger.info(
        "worker.started",
        worker="prompt_processor",
        poll_interval=poll_interval_seconds,
        batch_size=processor.batch_size,
    )

    try:
        while True:
            try:
                claimed = await processor.process_batch()
                if claimed == 0:
                    await asyncio.sleep(poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="prompt_processor",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="prompt_processor")
        raise
