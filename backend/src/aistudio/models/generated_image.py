"""GeneratedImage entity - one persisted provider output."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from aistudio.core.timezone import utc_now


class GeneratedImage(SQLModel, table=True):
    """GeneratedImage records an output saved to storage for a generation job."""

    __tablename__ = "generated_images"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("job_id", "output_path", name="uq_generated_images_job_path"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="jobs.id", index=True, ondelete="CASCADE")
    row_id: Optional[UUID] = Field(default=None, index=True)
    variant_row_id: Optional[UUID] = Field(default=None, index=True)
    user_id: UUID = Field(index=True)
    output_path: str = Field(max_length=1000)
    source_url: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(default_factory=utc_now)
