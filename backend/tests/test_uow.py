"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- Multiple repository operations are atomic
"""

from uuid import uuid4

import pytest

from aistudio.models.generated_image import GeneratedImage
from aistudio.models.generation_job import GenerationJob
from aistudio.models.prompt_job import PromptGenerationJob
from aistudio.models.row import ImageModel, ModelRow, VariantRow


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    """Test that UoW commits changes when exiting successfully.

    Changes made within the context should persist after the context exits.
    """
    async with await uow_factory() as uow:
        model = await uow.rows.add_model(ImageModel(name="Studio", owner_id=uuid4()))
        model_id = model.id

    async with await uow_factory() as uow:
        found = await uow.rows.get_model(model_id)
        assert found is not None
        assert found.name == "Studio"


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    """Test that UoW rolls back changes when an exception occurs.

    If an exception is raised within the context:
    1. Changes should be rolled back
    2. Exception should propagate (not be swallowed)
    """
    model_id = None

    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            model = await uow.rows.add_model(ImageModel(name="Studio", owner_id=uuid4()))
            model_id = model.id

            # Raise exception - should trigger rollback AND propagate
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.rows.get_model(model_id) is None, "Model should not exist after rollback"


@pytest.mark.asyncio
async def test_uow_provides_all_repositories(uow_factory):
    """Test that UoW provides access to all 5 repositories."""
    async with await uow_factory() as uow:
        assert uow.jobs is not None
        assert uow.prompt_jobs is not None
        assert uow.rows is not None
        assert uow.images is not None
        assert uow.usage is not None


@pytest.mark.asyncio
async def test_uow_atomic_multi_repository_operation(uow_factory):
    """Test that a prompt job and its dependent generation job commit together."""
    owner_id = uuid4()

    with pytest.raises(RuntimeError):
        async with await uow_factory() as uow:
            model = await uow.rows.add_model(ImageModel(name="Studio", owner_id=owner_id))
            row = await uow.rows.add_model_row(
                ModelRow(model_id=model.id, created_by=owner_id, target_image_path="in/t.jpg")
            )
            prompt_job = await uow.prompt_jobs.add(
                PromptGenerationJob(user_id=owner_id, target_url="in/t.jpg")
            )
            job = await uow.jobs.add(
                GenerationJob(
                    row_id=row.id,
                    model_id=model.id,
                    user_id=owner_id,
                    prompt_job_id=prompt_job.id,
                )
            )
            raise RuntimeError("crash before commit")

    async with await uow_factory() as uow:
        assert await uow.prompt_jobs.get_by_id(prompt_job.id) is None
        assert await uow.jobs.get_by_id(job.id) is None


@pytest.mark.asyncio
async def test_usage_counter_increments(uow_factory):
    user_id = uuid4()

    async with await uow_factory() as uow:
        assert await uow.usage.increment(user_id, "generate") == 1
    async with await uow_factory() as uow:
        assert await uow.usage.increment(user_id, "generate") == 2
        assert await uow.usage.get_count(user_id, "prompt_generate") == 0


@pytest.mark.asyncio
async def test_variant_row_round_trip(uow_factory):
    user_id = uuid4()

    async with await uow_factory() as uow:
        row = await uow.rows.add_variant_row(
            VariantRow(user_id=user_id, image_paths=["in/ref.jpg", "in/target.jpg"])
        )

    async with await uow_factory() as uow:
        found = await uow.rows.get_variant_row(row.id)
        assert found is not None
        assert found.user_id == user_id
        assert found.image_paths == ["in/ref.jpg", "in/target.jpg"]


@pytest.mark.asyncio
async def test_generated_image_insert_ignores_duplicates(seed, uow_factory):
    job = await seed.job()
    path = f"outputs/{job.user_id}/{job.id}-0.jpg"

    async with await uow_factory() as uow:
        assert await uow.images.add_if_absent(
            GeneratedImage(job_id=job.id, user_id=job.user_id, output_path=path)
        )
    async with await uow_factory() as uow:
        assert not await uow.images.add_if_absent(
            GeneratedImage(job_id=job.id, user_id=job.user_id, output_path=path)
        )
        assert [image.output_path for image in await uow.images.list_for_job(job.id)] == [path]
