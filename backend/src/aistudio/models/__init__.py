"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from aistudio.models.generated_image import GeneratedImage
from aistudio.models.generation_job import (
    GenerationJob,
    GenerationJobStatus,
    InvalidStateTransition,
    PromptStatus,
)
from aistudio.models.prompt_job import (
    PromptGenerationJob,
    PromptJobStatus,
    PromptOperation,
    SwapMode,
)
from aistudio.models.row import ImageModel, ModelRow, RowKind, RowRef, RowStatus, VariantRow
from aistudio.models.usage import UserUsage

__all__ = [
    "GenerationJob",
    "GenerationJobStatus",
    "PromptStatus",
    "InvalidStateTransition",
    "PromptGenerationJob",
    "PromptJobStatus",
    "PromptOperation",
    "SwapMode",
    "ImageModel",
    "ModelRow",
    "VariantRow",
    "RowStatus",
    "RowKind",
    "RowRef",
    "GeneratedImage",
    "UserUsage",
]
