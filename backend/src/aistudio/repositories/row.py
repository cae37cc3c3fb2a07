"""Row and model repository."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy import update as sa_update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from aistudio.core.timezone import utc_now
from aistudio.models.row import ImageModel, ModelRow, RowKind, RowRef, RowStatus, VariantRow


class RowRepository:
    """Repository for ModelRow, VariantRow and ImageModel entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_model(self, model_id: UUID) -> ImageModel | None:
        result = await self.session.execute(
            select(ImageModel).where(col(ImageModel.id) == model_id)
        )
        return result.scalar_one_or_none()

    async def get_model_row(self, row_id: UUID) -> ModelRow | None:
        result = await self.session.execute(
            select(ModelRow)
            .where(col(ModelRow.id) == row_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_variant_row(self, row_id: UUID) -> VariantRow | None:
        result = await self.session.execute(
            select(VariantRow)
            .where(col(VariantRow.id) == row_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_status(self, row: RowRef) -> RowStatus | None:
        """Current status of a model or variant row, None if the row is gone."""
        entity = ModelRow if row.kind == RowKind.MODEL else VariantRow
        result = await self.session.execute(
            select(entity.status).where(col(entity.id) == row.id)  # type: ignore[call-overload]
        )
        return result.scalar_one_or_none()

    async def add_model(self, model: ImageModel) -> ImageModel:
        self.session.add(model)
        await self.session.flush()
        return model

    async def add_model_row(self, row: ModelRow) -> ModelRow:
        self.session.add(row)
        await self.session.flush()
        return row

    async def add_variant_row(self, row: VariantRow) -> VariantRow:
        self.session.add(row)
        await self.session.flush()
        return row

    async def set_status(self, row: RowRef, status: RowStatus) -> bool:
        """Write a row's status.

        Args:
            row: Model or variant row reference
            status: New status

        Returns:
            True if the row exists and was updated
        """
        entity = ModelRow if row.kind == RowKind.MODEL else VariantRow
        result = await self.session.execute(
            sa_update(entity)
            .where(col(entity.id) == row.id)
            .values(status=status, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
