"""Generation job creation tests (model rows and variant rows)."""

from uuid import uuid4

import pytest

from aistudio.models.generation_job import GenerationJobStatus, PromptStatus
from aistudio.models.prompt_job import PromptJobStatus, SwapMode
from aistudio.models.row import RowKind, RowRef, RowStatus
from aistudio.services import jobs as job_service
from aistudio.services.exceptions import AccessDenied, NotFoundError, ValidationError
from aistudio.services.usage import STEP_GENERATE
from aistudio.workers.dispatch_queue import DispatchQueue, DispatchRequest


@pytest.fixture
def dispatch_queue() -> DispatchQueue:
    return DispatchQueue(maxsize=10)


@pytest.mark.asyncio
class TestCreateJob:
    async def test_creates_queued_job(self, seed, uow_factory, load, dispatch_queue):
        model = await seed.model(output_width=2048, output_height=3072)
        row = await seed.model_row(model)

        result = await job_service.create_job(
            uow_factory,
            user_id=row.created_by,
            row_id=row.id,
            preserve_composition=True,
            dispatch_queue=dispatch_queue,
        )

        assert len(result.job_ids) == 1
        assert result.prompt_job_id is None

        job = await load.job(uow_factory, result.job_ids[0])
        assert job.status == GenerationJobStatus.QUEUED
        assert job.row_id == row.id
        assert job.variant_row_id is None
        assert job.model_id == model.id
        assert job.request_payload["ref_paths"] == row.ref_image_paths
        assert job.request_payload["target_path"] == row.target_image_path
        assert job.request_payload["prompt"] == model.default_prompt
        assert job.request_payload["width"] == 2048
        assert job.request_payload["height"] == 3072
        assert job.request_payload["options"] == {"preserve_composition": True}

        assert await load.row_status(uow_factory, row) == RowStatus.QUEUED
        assert await dispatch_queue.get() == DispatchRequest(model_id=model.id)

        async with await uow_factory() as uow:
            assert await uow.usage.get_count(row.created_by, STEP_GENERATE) == 1

    async def test_row_prompt_overrides_model_prompt(self, seed, uow_factory, load):
        row = await seed.model_row(prompt_override="  Row specific prompt  ")

        result = await job_service.create_job(uow_factory, row.created_by, row.id)

        job = await load.job(uow_factory, result.job_ids[0])
        assert job.request_payload["prompt"] == "Row specific prompt"

    async def test_model_owner_may_generate(self, seed, uow_factory):
        model = await seed.model()
        row = await seed.model_row(model, created_by=uuid4())

        result = await job_service.create_job(uow_factory, model.owner_id, row.id)

        assert len(result.job_ids) == 1

    async def test_falls_back_to_default_headshot(self, seed, uow_factory, load):
        row = await seed.model_row(ref_image_paths=[])

        result = await job_service.create_job(uow_factory, row.created_by, row.id)

        job = await load.job(uow_factory, result.job_ids[0])
        assert job.request_payload["ref_paths"] == ["inputs/headshots/default.jpg"]

    async def test_ai_prompt_creates_prompt_job(self, seed, uow_factory, load, dispatch_queue):
        row = await seed.model_row()

        result = await job_service.create_job(
            uow_factory,
            row.created_by,
            row.id,
            use_ai_prompt=True,
            dispatch_queue=dispatch_queue,
            swap_mode=SwapMode.FACE_HAIR,
        )

        assert result.prompt_job_id is not None
        job = await load.job(uow_factory, result.job_ids[0])
        assert job.prompt_job_id == result.prompt_job_id
        assert job.prompt_status == PromptStatus.PENDING

        prompt_job = await load.prompt_job(uow_factory, result.prompt_job_id)
        assert prompt_job.status == PromptJobStatus.QUEUED
        assert prompt_job.priority == 5
        assert prompt_job.swap_mode == SwapMode.FACE_HAIR
        assert prompt_job.ref_urls == row.ref_image_paths
        assert prompt_job.target_url == row.target_image_path

        # Dispatch waits for the prompt processor
        assert dispatch_queue.qsize() == 0

    async def test_unknown_row(self, uow_factory):
        with pytest.raises(NotFoundError, match="Row not found"):
            await job_service.create_job(uow_factory, uuid4(), uuid4())

    async def test_stranger_is_denied(self, seed, uow_factory):
        row = await seed.model_row()

        with pytest.raises(AccessDenied):
            await job_service.create_job(uow_factory, uuid4(), row.id)

    async def test_missing_images(self, seed, uow_factory):
        model = await seed.model(default_ref_headshot_path=None)
        row = await seed.model_row(model, ref_image_paths=[])

        with pytest.raises(ValidationError, match="Missing ref/target"):
            await job_service.create_job(uow_factory, row.created_by, row.id)

    async def test_empty_prompt_without_ai(self, seed, uow_factory):
        model = await seed.model(default_prompt=None)
        row = await seed.model_row(model)

        with pytest.raises(ValidationError):
            await job_service.create_job(uow_factory, row.created_by, row.id)

        async with await uow_factory() as uow:
            assert await uow.jobs.statuses_for_row(RowRef(RowKind.MODEL, row.id)) == []


@pytest.mark.asyncio
class TestCreateVariantJob:
    async def test_last_image_is_target(self, seed, uow_factory, load, dispatch_queue):
        row = await seed.variant_row(image_paths=["v/ref1.jpg", "v/ref2.jpg", "v/target.jpg"])

        result = await job_service.create_variant_job(
            uow_factory, row.user_id, row.id, dispatch_queue=dispatch_queue
        )

        job = await load.job(uow_factory, result.job_ids[0])
        assert job.variant_row_id == row.id
        assert job.row_id is None
        assert job.model_id is None
        assert job.request_payload["ref_paths"] == ["v/ref1.jpg", "v/ref2.jpg"]
        assert job.request_payload["target_path"] == "v/target.jpg"
        assert job.request_payload["prompt"] == "Make the lighting warmer"
        assert await load.row_status(uow_factory, row) == RowStatus.QUEUED
        assert await dispatch_queue.get() == DispatchRequest(variant_row_id=row.id)

    async def test_single_image_is_target_only(self, seed, uow_factory, load):
        row = await seed.variant_row(image_paths=["v/only.jpg"])

        result = await job_service.create_variant_job(uow_factory, row.user_id, row.id)

        job = await load.job(uow_factory, result.job_ids[0])
        assert job.request_payload["ref_paths"] == []
        assert job.request_payload["target_path"] == "v/only.jpg"

    async def test_no_images(self, seed, uow_factory):
        row = await seed.variant_row(image_paths=[])

        with pytest.raises(ValidationError, match="No images in this variant row"):
            await job_service.create_variant_job(uow_factory, row.user_id, row.id)

    async def test_no_prompt_requires_ai(self, seed, uow_factory):
        row = await seed.variant_row(prompt=None)

        with pytest.raises(ValidationError, match="Generate a prompt first"):
            await job_service.create_variant_job(uow_factory, row.user_id, row.id)

        result = await job_service.create_variant_job(
            uow_factory, row.user_id, row.id, use_ai_prompt=True
        )
        assert result.prompt_job_id is not None

    async def test_other_users_row(self, seed, uow_factory):
        row = await seed.variant_row()

        with pytest.raises(AccessDenied):
            await job_service.create_variant_job(uow_factory, uuid4(), row.id)

    async def test_unknown_variant_row(self, uow_factory):
        with pytest.raises(NotFoundError, match="Variant row not found"):
            await job_service.create_variant_job(uow_factory, uuid4(), uuid4())
