"""GenerationJob entity - one request to the image-generation provider."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Column
from sqlmodel import Field, SQLModel

from aistudio.core.timezone import utc_now
from aistudio.models.row import RowKind, RowRef


class GenerationJobStatus(str, Enum):
    """Generation job lifecycle status."""

    QUEUED = "queued"
    SUBMITTED = "submitted"
    RUNNING = "running"
    SAVING = "saving"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PromptStatus(str, Enum):
    """Status of the AI prompt a generation job is waiting on."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({GenerationJobStatus.SUCCEEDED, GenerationJobStatus.FAILED})

# Non-terminal statuses; also the "remaining" set used for row aggregation
ACTIVE_JOB_STATUSES = (
    GenerationJobStatus.QUEUED,
    GenerationJobStatus.SUBMITTED,
    GenerationJobStatus.RUNNING,
    GenerationJobStatus.SAVING,
)

# Statuses that occupy a provider slot
IN_FLIGHT_JOB_STATUSES = (
    GenerationJobStatus.SUBMITTED,
    GenerationJobStatus.RUNNING,
    GenerationJobStatus.SAVING,
)

# Prompt states that keep a job out of dispatch
WAITING_PROMPT_STATUSES = (PromptStatus.PENDING, PromptStatus.GENERATING)

# Forward-only transition table. FAILED is reachable from every non-terminal state.
GENERATION_TRANSITIONS: dict[GenerationJobStatus, frozenset[GenerationJobStatus]] = {
    GenerationJobStatus.QUEUED: frozenset(
        {GenerationJobStatus.SUBMITTED, GenerationJobStatus.FAILED}
    ),
    GenerationJobStatus.SUBMITTED: frozenset(
        {GenerationJobStatus.RUNNING, GenerationJobStatus.FAILED}
    ),
    GenerationJobStatus.RUNNING: frozenset(
        {GenerationJobStatus.SAVING, GenerationJobStatus.FAILED}
    ),
    GenerationJobStatus.SAVING: frozenset(
        {GenerationJobStatus.SUCCEEDED, GenerationJobStatus.FAILED}
    ),
    GenerationJobStatus.SUCCEEDED: frozenset(),
    GenerationJobStatus.FAILED: frozenset(),
}


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


def check_transition(current: GenerationJobStatus, target: GenerationJobStatus) -> None:
    """Raise InvalidStateTransition unless current -> target is a legal move."""
    if target not in GENERATION_TRANSITIONS[current]:
        raise InvalidStateTransition(
            f"Cannot move generation job from {current.value} to {target.value}."
        )


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one provider request for a model row or a variant row.

    Exactly one of row_id / variant_row_id is set. Status changes are applied by
    GenerationJobRepository with status-gated UPDATEs; the mark_* methods below
    enforce the same transition table for in-memory entities.
    """

    __tablename__ = "jobs"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint(
            "(row_id IS NULL) <> (variant_row_id IS NULL)", name="ck_jobs_single_parent_row"
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    row_id: Optional[UUID] = Field(
        default=None, foreign_key="model_rows.id", index=True, ondelete="CASCADE"
    )
    variant_row_id: Optional[UUID] = Field(
        default=None, foreign_key="variant_rows.id", index=True, ondelete="CASCADE"
    )
    model_id: Optional[UUID] = Field(default=None, foreign_key="models.id", index=True)
    team_id: Optional[UUID] = Field(default=None, index=True)
    user_id: UUID = Field(index=True)
    status: GenerationJobStatus = Field(default=GenerationJobStatus.QUEUED, index=True)
    request_payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    provider_request_id: Optional[str] = Field(default=None, max_length=255)
    prompt_job_id: Optional[UUID] = Field(
        default=None, foreign_key="prompt_generation_jobs.id", index=True
    )
    prompt_status: Optional[PromptStatus] = Field(default=None)
    error: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def row_ref(self) -> RowRef:
        """The parent row this job belongs to."""
        if self.row_id is not None:
            return RowRef(RowKind.MODEL, self.row_id)
        return RowRef(RowKind.VARIANT, self.variant_row_id)  # type: ignore[arg-type]

    def ensure_single_parent(self) -> None:
        """Raise ValueError unless exactly one of row_id / variant_row_id is set."""
        if (self.row_id is None) == (self.variant_row_id is None):
            raise ValueError("Generation job needs exactly one of row_id or variant_row_id")

    def _move(self, target: GenerationJobStatus) -> None:
        check_transition(self.status, target)
        self.status = target
        self.updated_at = utc_now()

    def mark_submitted(self) -> None:
        """Transition from queued to submitted (claimed by the dispatcher)."""
        self._move(GenerationJobStatus.SUBMITTED)

    def mark_running(self) -> None:
        """Transition from submitted to running (provider reported progress)."""
        self._move(GenerationJobStatus.RUNNING)

    def mark_saving(self) -> None:
        """Transition from running to saving (provider finished, outputs being persisted)."""
        self._move(GenerationJobStatus.SAVING)

    def mark_succeeded(self) -> None:
        """Transition from saving to succeeded.

        Raises:
            InvalidStateTransition: If current status is not saving
        """
        self._move(GenerationJobStatus.SUCCEEDED)

    def mark_failed(self, error: str) -> None:
        """Transition from any non-terminal state to failed.

        Args:
            error: Error description stored on the job

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        self._move(GenerationJobStatus.FAILED)
        self.error = error[:2000]
