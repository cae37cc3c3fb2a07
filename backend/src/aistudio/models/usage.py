"""UserUsage entity - per-user counters for billable steps."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from aistudio.core.timezone import utc_now


class UserUsage(SQLModel, table=True):
    __tablename__ = "user_usage"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("user_id", "step", name="uq_user_usage_user_step"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)
    step: str = Field(max_length=50)  # "generate", "prompt_generate", "prompt_enhance"
    count: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)
