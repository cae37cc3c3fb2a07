"""Typed request payloads.

GenerationJob.request_payload is stored as JSON; these models validate it on the
way in and out. Prompt queue requests are a discriminated union on `operation`.
"""

from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from aistudio.models.prompt_job import MAX_PRIORITY, MIN_PRIORITY, SwapMode


class GenerationOptions(BaseModel):
    preserve_composition: bool = False


class GenerationRequestPayload(BaseModel):
    """What the dispatcher submits to the image provider."""

    ref_paths: list[str] = Field(default_factory=list)
    target_path: str
    prompt: str = ""
    width: int = 4096
    height: int = 4096
    provider_model: Optional[str] = None
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class _PromptRequestBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    row_id: Optional[UUID] = None
    model_id: Optional[UUID] = None
    ref_urls: list[str] = Field(default_factory=list)
    target_url: str
    swap_mode: SwapMode = SwapMode.FACE
    priority: Optional[int] = None

    @model_validator(mode="after")
    def check_priority(self):
        if self.priority is not None and not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
        return self


class PromptGenerateRequest(_PromptRequestBase):
    operation: Literal["generate"] = "generate"


class PromptEnhanceRequest(_PromptRequestBase):
    operation: Literal["enhance"] = "enhance"
    existing_prompt: str = Field(min_length=1)
    user_instructions: str = Field(min_length=1)


PromptRequest = Annotated[
    Union[PromptGenerateRequest, PromptEnhanceRequest], Field(discriminator="operation")
]
