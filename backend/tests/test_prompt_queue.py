"""Prompt queue service tests (enqueue, status, cancel, stats)."""

from datetime import timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from aistudio.models.generation_job import GenerationJobStatus, PromptStatus
from aistudio.models.payloads import PromptEnhanceRequest, PromptGenerateRequest
from aistudio.models.prompt_job import PromptJobStatus, PromptOperation, SwapMode
from aistudio.services import prompt_queue
from aistudio.services.exceptions import AccessDenied, NotFoundError, ValidationError
from aistudio.services.usage import STEP_PROMPT_ENHANCE, STEP_PROMPT_GENERATE


def _generate_request(**fields) -> PromptGenerateRequest:
    fields.setdefault("ref_urls", ["inputs/refs/a.jpg"])
    fields.setdefault("target_url", "inputs/targets/t.jpg")
    return PromptGenerateRequest(**fields)


def test_estimate_wait_seconds():
    assert prompt_queue.estimate_wait_seconds(0, 2, 3) == 0
    assert prompt_queue.estimate_wait_seconds(1, 0, 3) == 20
    assert prompt_queue.estimate_wait_seconds(4, 2, 3) == 120
    assert prompt_queue.estimate_wait_seconds(7, 0, 3) == 140


def test_request_accepts_camel_case():
    request = PromptEnhanceRequest.model_validate(
        {
            "refUrls": ["a/b.jpg"],
            "targetUrl": "a/t.jpg",
            "swapMode": "face-hair",
            "existingPrompt": "Swap the face",
            "userInstructions": "brighter",
        }
    )

    assert request.swap_mode == SwapMode.FACE_HAIR
    assert request.existing_prompt == "Swap the face"
    assert request.operation == "enhance"


def test_request_rejects_priority_out_of_range():
    with pytest.raises(PydanticValidationError):
        _generate_request(priority=11)


@pytest.mark.asyncio
class TestEnqueue:
    async def test_generate_defaults(self, uow_factory):
        user_id = uuid4()

        job = await prompt_queue.enqueue_prompt(uow_factory, user_id, _generate_request())

        assert job.status == PromptJobStatus.QUEUED
        assert job.operation == PromptOperation.GENERATE
        assert job.priority == 5
        assert job.max_retries == 3
        assert job.retry_count == 0

        async with await uow_factory() as uow:
            assert await uow.usage.get_count(user_id, STEP_PROMPT_GENERATE) == 1

    async def test_enhance_gets_higher_priority(self, uow_factory):
        user_id = uuid4()
        request = PromptEnhanceRequest(
            ref_urls=[],
            target_url="inputs/targets/t.jpg",
            existing_prompt="Swap the face",
            user_instructions="warmer light",
        )

        job = await prompt_queue.enqueue_prompt_enhancement(uow_factory, user_id, request)

        assert job.priority == 8
        assert job.operation == PromptOperation.ENHANCE
        assert job.existing_prompt == "Swap the face"
        assert job.user_instructions == "warmer light"
        async with await uow_factory() as uow:
            assert await uow.usage.get_count(user_id, STEP_PROMPT_ENHANCE) == 1

    async def test_explicit_priority_and_retries(self, uow_factory):
        job = await prompt_queue.enqueue_prompt(
            uow_factory, uuid4(), _generate_request(priority=2), max_retries=5
        )

        assert job.priority == 2
        assert job.max_retries == 5

    async def test_blank_instructions_rejected(self, uow_factory):
        request = PromptEnhanceRequest(
            target_url="inputs/targets/t.jpg", existing_prompt="Swap", user_instructions="   "
        )

        with pytest.raises(ValidationError):
            await prompt_queue.enqueue_prompt_enhancement(uow_factory, uuid4(), request)

    async def test_missing_target_rejected(self, uow_factory):
        with pytest.raises(ValidationError):
            await prompt_queue.enqueue_prompt(uow_factory, uuid4(), _generate_request(target_url=""))


@pytest.mark.asyncio
class TestStatus:
    async def test_queue_position(self, seed, uow_factory):
        user_id = uuid4()
        await seed.prompt_job(priority=8, age=timedelta(minutes=1))
        await seed.prompt_job(priority=5, age=timedelta(minutes=10))
        mine = await seed.prompt_job(user_id=user_id, priority=5, age=timedelta(minutes=5))
        await seed.prompt_job(priority=5, age=timedelta(minutes=2))

        view = await prompt_queue.get_prompt_status(uow_factory, user_id, mine.id)

        assert view.job.id == mine.id
        assert view.queue_position == 3

    async def test_other_users_job_is_forbidden(self, seed, uow_factory):
        job = await seed.prompt_job()

        with pytest.raises(AccessDenied):
            await prompt_queue.get_prompt_status(uow_factory, uuid4(), job.id)

    async def test_unknown_job(self, uow_factory):
        with pytest.raises(NotFoundError):
            await prompt_queue.get_prompt_status(uow_factory, uuid4(), uuid4())


@pytest.mark.asyncio
class TestCancel:
    async def test_cancel_fails_job_and_dependents(self, seed, uow_factory, load):
        user_id = uuid4()
        prompt_job = await seed.prompt_job(user_id=user_id)
        dependent = await seed.dependent(prompt_job)

        cancelled = await prompt_queue.cancel_prompt_job(uow_factory, user_id, prompt_job.id)

        assert cancelled.status == PromptJobStatus.FAILED
        assert cancelled.error == "Cancelled by user"
        job = await load.job(uow_factory, dependent.id)
        assert job.status == GenerationJobStatus.FAILED
        assert job.prompt_status == PromptStatus.FAILED
        assert job.error == "Prompt generation cancelled"

    async def test_cannot_cancel_completed(self, seed, uow_factory):
        user_id = uuid4()
        prompt_job = await seed.prompt_job(user_id=user_id, status=PromptJobStatus.COMPLETED)

        with pytest.raises(ValidationError):
            await prompt_queue.cancel_prompt_job(uow_factory, user_id, prompt_job.id)

    async def test_cannot_cancel_other_users_job(self, seed, uow_factory):
        prompt_job = await seed.prompt_job()

        with pytest.raises(AccessDenied):
            await prompt_queue.cancel_prompt_job(uow_factory, uuid4(), prompt_job.id)


@pytest.mark.asyncio
async def test_queue_stats(seed, uow_factory):
    for _ in range(4):
        await seed.prompt_job()
    await seed.prompt_job(status=PromptJobStatus.PROCESSING, started_age=timedelta(seconds=5))
    await seed.prompt_job(status=PromptJobStatus.FAILED)
    await seed.prompt_job(
        status=PromptJobStatus.COMPLETED,
        age=timedelta(seconds=30),
        started_age=timedelta(seconds=20),
    )
    await seed.prompt_job(
        status=PromptJobStatus.COMPLETED,
        age=timedelta(seconds=60),
        started_age=timedelta(seconds=30),
    )

    stats = await prompt_queue.get_queue_stats(uow_factory, batch_size=3)

    assert stats.total_queued == 4
    assert stats.total_processing == 1
    assert stats.total_completed == 2
    assert stats.total_failed == 1
    assert stats.average_wait_time == pytest.approx(20.0, abs=0.1)
    assert stats.estimated_wait_time == 100


@pytest.mark.asyncio
async def test_average_wait_is_zero_without_completed_jobs(seed, uow_factory):
    await seed.prompt_job(status=PromptJobStatus.PROCESSING, started_age=timedelta(seconds=5))

    async with await uow_factory() as uow:
        assert await uow.prompt_jobs.average_wait_seconds() == 0.0
