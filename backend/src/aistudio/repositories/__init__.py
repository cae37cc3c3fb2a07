"""Repository layer for the AI Studio backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from aistudio.repositories.generated_image import GeneratedImageRepository
from aistudio.repositories.generation_job import GenerationJobRepository
from aistudio.repositories.prompt_job import PromptJobRepository
from aistudio.repositories.row import RowRepository
from aistudio.repositories.usage import UsageRepository

__all__ = [
    "GenerationJobRepository",
    "PromptJobRepository",
    "RowRepository",
    "GeneratedImageRepository",
    "UsageRepository",
]
