"""State transition tests for generation and prompt jobs.

Tests focus on validating the job lifecycle state machines:
- Valid transitions between states
- Invalid transitions are rejected with clear error messages
- Failed state is reachable from any non-terminal state
- Conditional updates apply only once under contention
"""

from uuid import uuid4

import pytest

from aistudio.core.timezone import utc_now
from aistudio.models.generation_job import (
    GenerationJob,
    GenerationJobStatus,
    InvalidStateTransition,
)
from aistudio.models.prompt_job import PromptJobStatus


def _job(status: GenerationJobStatus = GenerationJobStatus.QUEUED) -> GenerationJob:
    return GenerationJob(row_id=uuid4(), user_id=uuid4(), status=status)


def test_valid_state_transitions():
    """Test the happy path: queued → submitted → running → saving → succeeded."""
    job = _job()

    job.mark_submitted()
    assert job.status == GenerationJobStatus.SUBMITTED

    job.mark_running()
    assert job.status == GenerationJobStatus.RUNNING

    job.mark_saving()
    assert job.status == GenerationJobStatus.SAVING

    job.mark_succeeded()
    assert job.status == GenerationJobStatus.SUCCEEDED
    assert job.is_terminal


def test_submitted_cannot_skip_running():
    """Saving is only reachable through running."""
    job = _job(GenerationJobStatus.SUBMITTED)

    with pytest.raises(InvalidStateTransition):
        job.mark_saving()

    assert job.status == GenerationJobStatus.SUBMITTED


def test_invalid_state_transition_raises_exception():
    """Test that skipping states raises a descriptive exception."""
    job = _job()

    with pytest.raises(InvalidStateTransition) as exc_info:
        job.mark_succeeded()

    assert "queued" in str(exc_info.value)
    assert "succeeded" in str(exc_info.value)
    assert job.status == GenerationJobStatus.QUEUED


def test_no_backward_transitions():
    job = _job(GenerationJobStatus.RUNNING)

    with pytest.raises(InvalidStateTransition):
        job.mark_submitted()


@pytest.mark.parametrize(
    "status",
    [
        GenerationJobStatus.QUEUED,
        GenerationJobStatus.SUBMITTED,
        GenerationJobStatus.RUNNING,
        GenerationJobStatus.SAVING,
    ],
)
def test_failed_reachable_from_non_terminal_states(status):
    """Test that failed can be reached from every non-terminal state."""
    job = _job(status)

    job.mark_failed("provider exploded")

    assert job.status == GenerationJobStatus.FAILED
    assert job.error == "provider exploded"


@pytest.mark.parametrize("status", [GenerationJobStatus.SUCCEEDED, GenerationJobStatus.FAILED])
def test_terminal_states_are_final(status):
    job = _job(status)

    with pytest.raises(InvalidStateTransition):
        job.mark_failed("too late")


def test_failed_error_is_truncated():
    job = _job()
    job.mark_failed("x" * 5000)
    assert len(job.error) == 2000


def test_single_parent_required():
    """A job references exactly one of row_id / variant_row_id."""
    with pytest.raises(ValueError):
        GenerationJob(user_id=uuid4()).ensure_single_parent()

    with pytest.raises(ValueError):
        GenerationJob(row_id=uuid4(), variant_row_id=uuid4(), user_id=uuid4()).ensure_single_parent()

    GenerationJob(variant_row_id=uuid4(), user_id=uuid4()).ensure_single_parent()


@pytest.mark.asyncio
async def test_claim_applies_once(seed, uow_factory, load):
    """Two claims of the same queued job: only the first wins."""
    job = await seed.job()

    async with await uow_factory() as uow:
        first = await uow.jobs.claim(job.id)
    async with await uow_factory() as uow:
        second = await uow.jobs.claim(job.id)

    assert first is True
    assert second is False
    assert (await load.job(uow_factory, job.id)).status == GenerationJobStatus.SUBMITTED


@pytest.mark.asyncio
async def test_repository_rejects_illegal_transition(seed, uow_factory):
    """The repository checks the transition table before issuing the update."""
    job = await seed.job()

    async with await uow_factory() as uow:
        with pytest.raises(InvalidStateTransition):
            await uow.jobs.transition(
                job.id, (GenerationJobStatus.QUEUED,), GenerationJobStatus.SUCCEEDED
            )


@pytest.mark.asyncio
async def test_fail_does_not_touch_terminal_job(seed, uow_factory, load):
    job = await seed.job(status=GenerationJobStatus.SUCCEEDED)

    async with await uow_factory() as uow:
        failed = await uow.jobs.fail(job.id, (GenerationJobStatus.QUEUED,), "late")

    assert failed is False
    reloaded = await load.job(uow_factory, job.id)
    assert reloaded.status == GenerationJobStatus.SUCCEEDED
    assert reloaded.error is None


@pytest.mark.asyncio
async def test_prompt_job_illegal_transition_raises(seed, uow_factory):
    """Completed prompt jobs cannot be claimed again."""
    prompt_job = await seed.prompt_job(status=PromptJobStatus.COMPLETED)

    async with await uow_factory() as uow:
        with pytest.raises(InvalidStateTransition):
            await uow.prompt_jobs._transition(
                prompt_job.id, (PromptJobStatus.COMPLETED,), PromptJobStatus.PROCESSING
            )


@pytest.mark.asyncio
async def test_prompt_requeue_respects_retry_budget(seed, uow_factory, load):
    """Requeue increments retry_count only while retry_count < max_retries."""
    prompt_job = await seed.prompt_job(
        status=PromptJobStatus.PROCESSING, retry_count=3, max_retries=3
    )

    async with await uow_factory() as uow:
        requeued = await uow.prompt_jobs.requeue(prompt_job.id, error="boom")

    assert requeued is False
    reloaded = await load.prompt_job(uow_factory, prompt_job.id)
    assert reloaded.status == PromptJobStatus.PROCESSING
    assert reloaded.retry_count == 3


@pytest.mark.asyncio
async def test_prompt_claim_records_started_at(seed, uow_factory, load):
    prompt_job = await seed.prompt_job()
    now = utc_now()

    async with await uow_factory() as uow:
        assert await uow.prompt_jobs.claim(prompt_job.id, now) is True
    async with await uow_factory() as uow:
        assert await uow.prompt_jobs.claim(prompt_job.id, now) is False

    reloaded = await load.prompt_job(uow_factory, prompt_job.id)
    assert reloaded.status == PromptJobStatus.PROCESSING
    assert reloaded.started_at == now
