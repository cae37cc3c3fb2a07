"""Row entities - the parents of generation jobs, plus the model they belong to."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from aistudio.core.timezone import utc_now


class RowStatus(str, Enum):
    """Derived status of a row, see services.row_status."""

    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    PARTIAL = "partial"
    DONE = "done"
    ERROR = "error"


class RowKind(str, Enum):
    MODEL = "model"
    VARIANT = "variant"


@dataclass(frozen=True)
class RowRef:
    """Reference to either a model row or a variant row."""

    kind: RowKind
    id: UUID


class ImageModel(SQLModel, table=True):
    """A persona/model that owns model rows and their default prompt."""

    __tablename__ = "models"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255)
    team_id: Optional[UUID] = Field(default=None, index=True)
    owner_id: UUID = Field(index=True)
    default_prompt: Optional[str] = Field(default=None)
    default_ref_headshot_path: Optional[str] = Field(default=None, max_length=1000)
    output_width: int = Field(default=4096)
    output_height: int = Field(default=4096)
    provider_model: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utc_now)


class ModelRow(SQLModel, table=True):
    """A row of a model: reference images plus one target image."""

    __tablename__ = "model_rows"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    model_id: UUID = Field(foreign_key="models.id", index=True, ondelete="CASCADE")
    created_by: UUID = Field(index=True)
    ref_image_paths: list[str] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    target_image_path: str = Field(max_length=1000)
    prompt_override: Optional[str] = Field(default=None)
    status: RowStatus = Field(default=RowStatus.IDLE)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class VariantRow(SQLModel, table=True):
    """A free-standing variant row.

    image_paths is ordered: every path but the last is a reference, the last is
    the target.
    """

    __tablename__ = "variant_rows"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)
    prompt: Optional[str] = Field(default=None)
    image_paths: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    output_width: int = Field(default=4096)
    output_height: int = Field(default=4096)
    status: RowStatus = Field(default=RowStatus.IDLE)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
