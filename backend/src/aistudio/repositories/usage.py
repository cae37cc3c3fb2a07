"""UserUsage repository."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from aistudio.core.timezone import utc_now
from aistudio.models.usage import UserUsage


class UsageRepository:
    """Repository for per-user step counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def increment(self, user_id: UUID, step: str) -> int:
        """Add one to the (user_id, step) counter, creating it on first use.

        Returns:
            The counter value after incrementing
        """
        result = await self.session.execute(
            select(UserUsage).where(
                col(UserUsage.user_id) == user_id, col(UserUsage.step) == step
            )
        )
        usage = result.scalar_one_or_none()
        if usage is None:
            usage = UserUsage(user_id=user_id, step=step, count=0)
        usage.count += 1
        usage.updated_at = utc_now()
        self.session.add(usage)
        await self.session.flush()
        return usage.count

    async def get_count(self, user_id: UUID, step: str) -> int:
        result = await self.session.execute(
            select(UserUsage.count).where(  # type: ignore[call-overload]
                col(UserUsage.user_id) == user_id, col(UserUsage.step) == step
            )
        )
        return result.scalar_one_or_none() or 0
