"""PromptGenerationJob entity - queued LLM prompt work with priority and retries."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Column
from sqlmodel import Field, SQLModel

from aistudio.core.timezone import utc_now


class PromptJobStatus(str, Enum):
    """Prompt job lifecycle status."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PromptOperation(str, Enum):
    """What the LLM is asked to do."""

    GENERATE = "generate"
    ENHANCE = "enhance"


class SwapMode(str, Enum):
    """Which features are transferred from the references onto the target."""

    FACE = "face"
    FACE_HAIR = "face-hair"


MIN_PRIORITY = 1
MAX_PRIORITY = 10

TERMINAL_PROMPT_STATUSES = frozenset({PromptJobStatus.COMPLETED, PromptJobStatus.FAILED})
CANCELLABLE_PROMPT_STATUSES = (PromptJobStatus.QUEUED, PromptJobStatus.PROCESSING)

PROMPT_TRANSITIONS: dict[PromptJobStatus, frozenset[PromptJobStatus]] = {
    PromptJobStatus.QUEUED: frozenset({PromptJobStatus.PROCESSING, PromptJobStatus.FAILED}),
    # processing -> queued is the retry path
    PromptJobStatus.PROCESSING: frozenset(
        {PromptJobStatus.QUEUED, PromptJobStatus.COMPLETED, PromptJobStatus.FAILED}
    ),
    PromptJobStatus.COMPLETED: frozenset(),
    PromptJobStatus.FAILED: frozenset(),
}


class PromptGenerationJob(SQLModel, table=True):
    """PromptGenerationJob asks the LLM for a new prompt or an improved one.

    Claimed highest priority first, oldest first within a priority. A failed
    attempt is requeued while retry_count < max_retries; available_at holds the
    backoff deadline before the job may be claimed again.
    """

    __tablename__ = "prompt_generation_jobs"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("retry_count <= max_retries", name="ck_prompt_jobs_retry_budget"),
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_prompt_jobs_priority_range"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    row_id: Optional[UUID] = Field(default=None, index=True)
    model_id: Optional[UUID] = Field(default=None, foreign_key="models.id", index=True)
    user_id: UUID = Field(index=True)
    operation: PromptOperation = Field(default=PromptOperation.GENERATE)
    swap_mode: SwapMode = Field(default=SwapMode.FACE)
    ref_urls: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    target_url: str = Field(max_length=2000)
    existing_prompt: Optional[str] = Field(default=None)
    user_instructions: Optional[str] = Field(default=None)
    status: PromptJobStatus = Field(default=PromptJobStatus.QUEUED, index=True)
    generated_prompt: Optional[str] = Field(default=None)
    enhanced_prompt: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None, max_length=2000)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    priority: int = Field(default=5, ge=MIN_PRIORITY, le=MAX_PRIORITY, index=True)
    available_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PROMPT_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    @property
    def result_prompt(self) -> Optional[str]:
        """Prompt text produced by the LLM for this job's operation."""
        if self.operation == PromptOperation.ENHANCE:
            return self.enhanced_prompt
        return self.generated_prompt
