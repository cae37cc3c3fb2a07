"""GeneratedImage repository."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from aistudio.models.generated_image import GeneratedImage


class GeneratedImageRepository:
    """Repository for GeneratedImage entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add_if_absent(self, image: GeneratedImage) -> bool:
        """Persist an output unless (job_id, output_path) is already recorded.

        Uses INSERT ... ON CONFLICT DO NOTHING on the (job_id, output_path)
        unique constraint, so a resumed or overlapping save never duplicates
        images and never fails on the constraint.

        Args:
            image: GeneratedImage entity to persist

        Returns:
            True if a new row was written
        """
        dialect = self.session.get_bind().dialect.name
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = (
            insert(GeneratedImage)
            .values(**image.model_dump())
            .on_conflict_do_nothing(index_elements=["job_id", "output_path"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_for_job(self, job_id: UUID) -> list[GeneratedImage]:
        result = await self.session.execute(
            select(GeneratedImage)
            .where(col(GeneratedImage.job_id) == job_id)
            .order_by(col(GeneratedImage.created_at).asc())
        )
        return list(result.scalars().all())
