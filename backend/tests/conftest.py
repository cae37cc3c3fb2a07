"""pytest fixtures for AI Studio backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped SQLite (aiosqlite) database with all tables created
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- seed: Helper that inserts models, rows, generation jobs and prompt jobs
- provider / llm / signer / saver: In-memory fakes for external collaborators
"""

import asyncio
import os
from datetime import timedelta
from typing import AsyncGenerator, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

import aistudio.models  # noqa: F401
from aistudio.core.database import setup_db_session
from aistudio.core.timezone import utc_now
from aistudio.models.generation_job import GenerationJob, GenerationJobStatus, PromptStatus
from aistudio.models.payloads import GenerationRequestPayload
from aistudio.models.prompt_job import PromptGenerationJob, PromptJobStatus, PromptOperation
from aistudio.models.row import ImageModel, ModelRow, RowKind, RowRef, VariantRow
from aistudio.services.exceptions import StorageUploadError
from aistudio.services.image_generation.replicate_client import (
    ProviderResult,
    ProviderStage,
    ProviderSubmission,
)
from aistudio.uow import create_uow_factory


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    """Fresh SQLite database file per test, schema created from SQLModel metadata."""
    factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    engine = factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


class Seeder:
    """Inserts test entities, each in its own committed unit of work."""

    def __init__(self, uow_factory):
        self.uow_factory = uow_factory

    async def _add(self, entity):
        async with await self.uow_factory() as uow:
            uow.session.add(entity)
            await uow.session.flush()
        return entity

    async def model(self, owner_id: Optional[UUID] = None, **fields) -> ImageModel:
        fields.setdefault("name", "Studio model")
        fields.setdefault("default_prompt", "Swap the face from the reference onto the target")
        fields.setdefault("default_ref_headshot_path", "inputs/headshots/default.jpg")
        return await self._add(ImageModel(owner_id=owner_id or uuid4(), **fields))

    async def model_row(
        self, model: Optional[ImageModel] = None, created_by: Optional[UUID] = None, **fields
    ) -> ModelRow:
        model = model or await self.model()
        fields.setdefault("ref_image_paths", ["inputs/refs/a.jpg", "inputs/refs/b.jpg"])
        fields.setdefault("target_image_path", "inputs/targets/t.jpg")
        return await self._add(
            ModelRow(model_id=model.id, created_by=created_by or model.owner_id, **fields)
        )

    async def variant_row(self, user_id: Optional[UUID] = None, **fields) -> VariantRow:
        fields.setdefault("image_paths", ["inputs/variants/ref.jpg", "inputs/variants/target.jpg"])
        fields.setdefault("prompt", "Make the lighting warmer")
        return await self._add(VariantRow(user_id=user_id or uuid4(), **fields))

    async def job(
        self,
        row=None,
        status: GenerationJobStatus = GenerationJobStatus.QUEUED,
        age: timedelta = timedelta(0),
        updated_age: Optional[timedelta] = None,
        payload: Optional[dict] = None,
        **fields,
    ) -> GenerationJob:
        """Insert a generation job for a model row (default) or a variant row.

        Args:
            row: ModelRow or VariantRow (a new model row when omitted)
            status: Initial status
            age: How long ago the job was created
            updated_age: How long ago the job was last updated (defaults to age)
            payload: request_payload override
        """
        row = row or await self.model_row()
        now = utc_now()
        if isinstance(row, VariantRow):
            fields.setdefault("variant_row_id", row.id)
            fields.setdefault("user_id", row.user_id)
        else:
            fields.setdefault("row_id", row.id)
            fields.setdefault("model_id", row.model_id)
            fields.setdefault("user_id", row.created_by)
        if payload is None:
            payload = GenerationRequestPayload(
                ref_paths=["inputs/refs/a.jpg"],
                target_path="inputs/targets/t.jpg",
                prompt="Swap the face",
            ).model_dump()
        return await self._add(
            GenerationJob(
                status=status,
                request_payload=payload,
                created_at=now - age,
                updated_at=now - (updated_age if updated_age is not None else age),
                **fields,
            )
        )

    async def prompt_job(
        self,
        status: PromptJobStatus = PromptJobStatus.QUEUED,
        age: timedelta = timedelta(0),
        started_age: Optional[timedelta] = None,
        **fields,
    ) -> PromptGenerationJob:
        now = utc_now()
        fields.setdefault("user_id", uuid4())
        fields.setdefault("operation", PromptOperation.GENERATE)
        fields.setdefault("ref_urls", ["inputs/refs/a.jpg"])
        fields.setdefault("target_url", "inputs/targets/t.jpg")
        return await self._add(
            PromptGenerationJob(
                status=status,
                created_at=now - age,
                updated_at=now - age,
                started_at=now - started_age if started_age is not None else None,
                **fields,
            )
        )

    async def dependent(
        self, prompt_job: PromptGenerationJob, row=None, **fields
    ) -> GenerationJob:
        """Generation job waiting on a prompt job."""
        fields.setdefault("prompt_status", PromptStatus.PENDING)
        payload = GenerationRequestPayload(
            ref_paths=["inputs/refs/a.jpg"], target_path="inputs/targets/t.jpg", prompt=""
        ).model_dump()
        return await self.job(row, payload=payload, prompt_job_id=prompt_job.id, **fields)


@pytest_asyncio.fixture(scope="function")
async def seed(uow_factory) -> Seeder:
    return Seeder(uow_factory)


async def get_job(uow_factory, job_id) -> GenerationJob:
    async with await uow_factory() as uow:
        return await uow.jobs.get_by_id(job_id)  # type: ignore[return-value]


async def get_prompt_job(uow_factory, prompt_job_id) -> PromptGenerationJob:
    async with await uow_factory() as uow:
        return await uow.prompt_jobs.get_by_id(prompt_job_id)  # type: ignore[return-value]


async def get_row_status(uow_factory, row):
    kind = RowKind.VARIANT if isinstance(row, VariantRow) else RowKind.MODEL
    async with await uow_factory() as uow:
        return await uow.rows.get_status(RowRef(kind, row.id))


@pytest.fixture
def load():
    """Reload helpers: load.job(uow_factory, id), load.prompt_job(...), load.row_status(...)."""

    class _Load:
        job = staticmethod(get_job)
        prompt_job = staticmethod(get_prompt_job)
        row_status = staticmethod(get_row_status)

    return _Load()


# Fakes


class FakeProvider:
    """ImageProvider that records submissions and replays scripted poll results."""

    def __init__(self):
        self.submissions: list[ProviderSubmission] = []
        self.results: dict[str, ProviderResult] = {}
        self.submit_error: Optional[Exception] = None

    async def submit(self, submission: ProviderSubmission) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append(submission)
        return f"pred-{len(self.submissions)}"

    async def poll(self, provider_request_id: str) -> ProviderResult:
        return self.results.get(provider_request_id, ProviderResult(ProviderStage.PROCESSING))


class FakeSigner:
    """UrlSigner returning deterministic URLs; paths in `missing` sign to None."""

    def __init__(self):
        self.calls: list[tuple[str, int]] = []
        self.missing: set[str] = set()

    async def sign(self, path: str, ttl_seconds: int) -> Optional[str]:
        self.calls.append((path, ttl_seconds))
        if path in self.missing:
            return None
        return f"https://storage.test/signed/{path}?ttl={ttl_seconds}"


class FakeSaver:
    def __init__(self):
        self.saved: list[tuple[str, UUID, UUID, int]] = []
        self.fail = False
        self.delay = 0.0

    async def save_output(self, remote_url: str, user_id: UUID, job_id: UUID, index: int) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise StorageUploadError("Upload to outputs failed (500): boom")
        self.saved.append((remote_url, user_id, job_id, index))
        return f"outputs/{user_id}/{job_id}-{index}.jpg"


class FakeLLM:
    """PromptProvider returning a fixed prompt; queued errors are raised first."""

    def __init__(self, prompt: str = "Put the face from the first image onto the person"):
        self.prompt = prompt
        self.errors: list[Exception] = []
        self.calls: list[dict] = []

    async def generate(self, ref_urls, target_url, mode) -> str:
        self.calls.append(
            {"operation": "generate", "ref_urls": ref_urls, "target_url": target_url, "mode": mode}
        )
        if self.errors:
            raise self.errors.pop(0)
        return self.prompt

    async def enhance(self, existing_prompt, instructions, ref_urls, target_url, mode) -> str:
        self.calls.append(
            {
                "operation": "enhance",
                "existing_prompt": existing_prompt,
                "instructions": instructions,
                "ref_urls": ref_urls,
                "target_url": target_url,
                "mode": mode,
            }
        )
        if self.errors:
            raise self.errors.pop(0)
        return f"{existing_prompt} ({instructions})"


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def saver() -> FakeSaver:
    return FakeSaver()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()
