"""Reaper: finds jobs stuck past their state's age threshold and repairs them.

Scheduled mode thresholds (generation jobs):
- queued > 2 min since created_at (not waiting on an AI prompt) -> failed
- submitted without provider id > 90 s since created_at -> failed
- running without provider id > 5 min since updated_at -> failed
- saving > 10 min since updated_at -> failed
- any non-terminal job > 1 h since updated_at -> failed

Prompt jobs:
- processing > 30 min since started_at -> requeued while retries remain, else failed
- queued > 24 h -> failed
- queued > 1 h -> priority raised by 2 (max 10)

Reset mode is the manual incident reset: prompt jobs are requeued regardless of
age and every queued prompt job is boosted; running/saving jobs without a
provider id fail regardless of age; queued jobs older than 1 h and submitted
jobs older than 2 h fail. Failure messages carry a "timeout: " prefix in
scheduled mode and "reset: " in reset mode.

Each item is repaired in its own transaction with conditional updates. A failure
on one item is logged and skipped; only the initial queries can raise.
"""

import asyncio
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum

import structlog

from aistudio.core.timezone import utc_now
from aistudio.models.generation_job import GenerationJob, GenerationJobStatus, PromptStatus
from aistudio.models.prompt_job import PromptGenerationJob, PromptJobStatus
from aistudio.models.row import RowRef
from aistudio.services.cascade import CASCADE_STATUSES, RESET_CASCADE_STATUSES, fail_dependents
from aistudio.services.exceptions import JobTimeoutError
from aistudio.services.row_status import refresh_row_status

logger = structlog.get_logger(__name__)

QUEUED_TIMEOUT = timedelta(minutes=2)
SUBMITTED_NO_REQUEST_ID_TIMEOUT = timedelta(seconds=90)
RUNNING_NO_REQUEST_ID_TIMEOUT = timedelta(minutes=5)
SAVING_TIMEOUT = timedelta(minutes=10)
STALE_TIMEOUT = timedelta(hours=1)

PROMPT_PROCESSING_TIMEOUT = timedelta(minutes=30)
PROMPT_BOOST_AGE = timedelta(hours=1)
PROMPT_QUEUE_MAX_AGE = timedelta(hours=24)
PROMPT_PRIORITY_BOOST = 2

RESET_QUEUED_AGE = timedelta(hours=1)
RESET_SUBMITTED_AGE = timedelta(hours=2)


class CleanupMode(str, Enum):
    SCHEDULED = "scheduled"
    RESET = "reset"


@dataclass
class CleanupSummary:
    """Counts of what one reaper pass changed."""

    mode: CleanupMode = CleanupMode.SCHEDULED
    stuck_queued: int = 0
    stuck_submitted: int = 0
    stuck_running: int = 0
    stuck_saving: int = 0
    stale: int = 0
    prompt_processing_reset: int = 0
    prompt_queued_boosted: int = 0
    prompt_failed: int = 0
    dependent_jobs_updated: int = 0
    rows_updated: int = 0
    errors: int = 0
    dry_run: bool = False
    _rows: set[RowRef] = field(default_factory=set, repr=False)

    @property
    def cleaned_count(self) -> int:
        """Generation and prompt jobs forced out of a stuck state."""
        return (
            self.stuck_queued
            + self.stuck_submitted
            + self.stuck_running
            + self.stuck_saving
            + self.stale
            + self.prompt_processing_reset
            + self.prompt_failed
        )

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}
        data["mode"] = self.mode.value
        data["cleaned_count"] = self.cleaned_count
        return data


class Reaper:
    """Single sweep over both job tables, in scheduled or reset mode."""

    def __init__(self, uow_factory):
        self.uow_factory = uow_factory

    async def cleanup(
        self, mode: CleanupMode = CleanupMode.SCHEDULED, dry_run: bool = False
    ) -> CleanupSummary:
        """Run one reaper pass.

        Prompt jobs are handled first so their failure cascades reach dependents
        before generation job thresholds are checked.

        Args:
            mode: scheduled (age-gated thresholds) or reset (manual incident reset)
            dry_run: Count what would change without writing anything

        Returns:
            CleanupSummary with per-category counts
        """
        now = utc_now()
        summary = CleanupSummary(mode=mode, dry_run=dry_run)
        prefix = "reset" if mode == CleanupMode.RESET else "timeout"

        logger.info("reaper.started", mode=mode.value, dry_run=dry_run)

        await self._reap_prompt_jobs(now, mode, prefix, summary)
        if mode == CleanupMode.RESET:
            await self._reap_generation_jobs_reset(now, summary)
        else:
            await self._reap_generation_jobs(now, summary)

        await self._reap_stale(now, prefix, summary)
        summary.rows_updated = len(summary._rows)

        logger.info("reaper.completed", **summary.to_dict())
        return summary

    # Prompt jobs

    async def _reap_prompt_jobs(
        self, now: datetime, mode: CleanupMode, prefix: str, summary: CleanupSummary
    ) -> None:
        cascade = RESET_CASCADE_STATUSES if mode == CleanupMode.RESET else CASCADE_STATUSES

        async with await self.uow_factory() as uow:
            stuck = await uow.prompt_jobs.find_stuck_processing(
                None if mode == CleanupMode.RESET else now - PROMPT_PROCESSING_TIMEOUT
            )
        for job in stuck:
            await self._guarded(
                summary, "prompt_job", job.id,
                self._reset_processing(job, f"{prefix}: stuck in processing state", cascade, summary),
            )

        async with await self.uow_factory() as uow:
            expired = await uow.prompt_jobs.find_queued(now - PROMPT_QUEUE_MAX_AGE)
        expired_ids = {job.id for job in expired}
        for job in expired:
            await self._guarded(
                summary, "prompt_job", job.id,
                self._fail_prompt_job(
                    job,
                    (PromptJobStatus.QUEUED,),
                    f"{prefix}: stuck in queue for 24+ hours",
                    cascade,
                    summary,
                ),
            )

        async with await self.uow_factory() as uow:
            waiting = await uow.prompt_jobs.find_queued(
                None if mode == CleanupMode.RESET else now - PROMPT_BOOST_AGE
            )
        for job in waiting:
            if job.id in expired_ids:
                continue
            await self._guarded(summary, "prompt_job", job.id, self._boost(job, summary))

    async def _reset_processing(
        self,
        job: PromptGenerationJob,
        error: str,
        cascade: tuple[GenerationJobStatus, ...],
        summary: CleanupSummary,
    ) -> None:
        if not job.can_retry:
            await self._fail_prompt_job(job, (PromptJobStatus.PROCESSING,), error, cascade, summary)
            return

        if summary.dry_run:
            summary.prompt_processing_reset += 1
            return

        async with await self.uow_factory() as uow:
            requeued = await uow.prompt_jobs.requeue(job.id, error=error)
            touched = 0
            if requeued:
                # Keep waiting dependents clear of the stale catch-all
                touched = await uow.jobs.set_dependents_prompt_status(job.id, PromptStatus.PENDING)

        if requeued:
            summary.prompt_processing_reset += 1
            summary.dependent_jobs_updated += touched
            logger.info(
                "reaper.prompt_job.requeued",
                prompt_job_id=str(job.id),
                retry_count=job.retry_count + 1,
                max_retries=job.max_retries,
                dependents_touched=touched,
            )
        else:
            # Budget exhausted by a concurrent retry, or the job moved on
            await self._fail_prompt_job(job, (PromptJobStatus.PROCESSING,), error, cascade, summary)

    async def _fail_prompt_job(
        self,
        job: PromptGenerationJob,
        expected: tuple[PromptJobStatus, ...],
        error: str,
        cascade: tuple[GenerationJobStatus, ...],
        summary: CleanupSummary,
    ) -> None:
        error = str(JobTimeoutError(error))
        if summary.dry_run:
            summary.prompt_failed += 1
            return

        async with await self.uow_factory() as uow:
            failed = await uow.prompt_jobs.fail(job.id, expected, error)
            dependents_failed, rows = 0, set()
            if failed:
                dependents_failed, rows = await fail_dependents(
                    uow, job.id, f"AI prompt generation failed: {error}", cascade
                )

        if failed:
            summary.prompt_failed += 1
            summary.dependent_jobs_updated += dependents_failed
            summary._rows.update(rows)
            logger.warning(
                "reaper.prompt_job.failed",
                prompt_job_id=str(job.id),
                error_message=error,
                dependents_failed=dependents_failed,
            )

    async def _boost(self, job: PromptGenerationJob, summary: CleanupSummary) -> None:
        if summary.dry_run:
            summary.prompt_queued_boosted += int(job.priority < 10)
            return
        async with await self.uow_factory() as uow:
            boosted = await uow.prompt_jobs.boost_priority(job, PROMPT_PRIORITY_BOOST)
        if boosted:
            summary.prompt_queued_boosted += 1

    # Generation jobs

    async def _reap_generation_jobs(self, now: datetime, summary: CleanupSummary) -> None:
        async with await self.uow_factory() as uow:
            queued = await uow.jobs.find_stuck_queued(now - QUEUED_TIMEOUT)
            submitted = await uow.jobs.find_stuck_submitted(now - SUBMITTED_NO_REQUEST_ID_TIMEOUT)
            running = await uow.jobs.find_without_request_id(
                (GenerationJobStatus.RUNNING,), now - RUNNING_NO_REQUEST_ID_TIMEOUT
            )
            saving = await uow.jobs.find_stuck_saving(now - SAVING_TIMEOUT)

        for job in queued:
            await self._fail_job(
                job, "timeout: stuck in queue", "stuck_queued", summary
            )
        for job in submitted:
            await self._fail_job(
                job, "timeout: no provider request id", "stuck_submitted", summary,
                without_request_id=True,
            )
        for job in running:
            await self._fail_job(
                job, "timeout: no provider request id", "stuck_running", summary,
                without_request_id=True,
            )
        for job in saving:
            await self._fail_job(
                job, "timeout: stuck in saving", "stuck_saving", summary,
                updated_before=now - SAVING_TIMEOUT,
            )

    async def _reap_generation_jobs_reset(self, now: datetime, summary: CleanupSummary) -> None:
        async with await self.uow_factory() as uow:
            no_request_id = await uow.jobs.find_without_request_id(
                (GenerationJobStatus.RUNNING, GenerationJobStatus.SAVING)
            )
            queued = await uow.jobs.find_stuck_queued(
                now - RESET_QUEUED_AGE, include_waiting_for_prompt=True
            )
            submitted = await uow.jobs.find_stuck_submitted(
                now - RESET_SUBMITTED_AGE, without_request_id=False
            )

        for job in no_request_id:
            counter = (
                "stuck_running" if job.status == GenerationJobStatus.RUNNING else "stuck_saving"
            )
            await self._fail_job(
                job, "reset: no provider request id", counter, summary, without_request_id=True
            )
        for job in queued:
            await self._fail_job(job, "reset: stuck in queue for 1+ hours", "stuck_queued", summary)
        for job in submitted:
            await self._fail_job(
                job, "reset: stuck in submitted state for 2+ hours", "stuck_submitted", summary
            )

    async def _reap_stale(self, now: datetime, prefix: str, summary: CleanupSummary) -> None:
        cutoff = now - STALE_TIMEOUT
        async with await self.uow_factory() as uow:
            stale = await uow.jobs.find_stale(cutoff)
        for job in stale:
            await self._fail_job(
                job, f"{prefix}: stale job", "stale", summary, updated_before=cutoff
            )

    async def _fail_job(
        self,
        job: GenerationJob,
        error: str,
        counter: str,
        summary: CleanupSummary,
        without_request_id: bool = False,
        updated_before: datetime | None = None,
    ) -> None:
        error = str(JobTimeoutError(error))

        async def _apply() -> None:
            if summary.dry_run:
                setattr(summary, counter, getattr(summary, counter) + 1)
                return

            async with await self.uow_factory() as uow:
                failed = await uow.jobs.fail(
                    job.id,
                    (job.status,),
                    error,
                    without_request_id=without_request_id,
                    updated_before=updated_before,
                )
                if failed:
                    await refresh_row_status(uow, job.row_ref)

            if failed:
                setattr(summary, counter, getattr(summary, counter) + 1)
                summary._rows.add(job.row_ref)
                logger.warning(
                    "reaper.job.failed",
                    job_id=str(job.id),
                    previous_status=job.status.value,
                    error_message=error,
                )

        await self._guarded(summary, "job", job.id, _apply())

    async def _guarded(self, summary: CleanupSummary, kind: str, item_id, action) -> None:
        """Await one repair; log and count failures instead of raising."""
        try:
            await action
        except asyncio.CancelledError:
            raise
        except Exception as e:
            summary.errors += 1
            logger.error(
                "reaper.item_failed",
                kind=kind,
                item_id=str(item_id),
                error=str(e),
                error_type=type(e).__name__,
            )


async def run_cleanup_worker(reaper: Reaper, interval_seconds: float) -> None:
    """Periodic scheduled reaper pass.

    Args:
        reaper: Reaper instance
        interval_seconds: Delay between passes
    """
    logger.info("worker.started", worker="reaper", interval=interval_seconds)

    try:
        while True:
            try:
                await reaper.cleanup(CleanupMode.SCHEDULED)
                await asyncio.sleep(interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="reaper",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="reaper")
        raise
