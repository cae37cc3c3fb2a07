"""Replicate predictions client for image generation with error classification."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from aistudio.services.exceptions import (
    ContentPolicyError,
    PermanentError,
    ProviderError,
    TransientError,
)

logger = structlog.get_logger(__name__)


class ProviderStage(str, Enum):
    """Provider-side progress of a submitted request."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ProviderSubmission:
    """One image-edit request: reference images first, target image last."""

    prompt: str
    image_urls: list[str]
    width: int
    height: int
    model: Optional[str] = None


@dataclass
class ProviderResult:
    stage: ProviderStage
    output_urls: list[str] = field(default_factory=list)
    error: Optional[str] = None


class ImageProvider(Protocol):
    """Asynchronous image-generation provider."""

    async def submit(self, submission: ProviderSubmission) -> str:
        """Submit a request and return the provider's request id."""
        ...

    async def poll(self, provider_request_id: str) -> ProviderResult:
        """Return the current stage of a previously submitted request."""
        ...


def classify_error(exception: Exception) -> ProviderError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified ProviderError subclass instance

    Classification rules:
        - Timeout errors → TransientError
        - 429 (rate limit) → TransientError
        - 503 (service unavailable) → TransientError
        - 401/403 (authentication) → PermanentError
        - Content policy violations → ContentPolicyError
        - Other HTTP errors → PermanentError
        - Connection errors → TransientError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower:
        return TransientError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return TransientError(f"Rate limit exceeded: {error_message}")

    if "503" in error_message or "service unavailable" in error_message_lower:
        return TransientError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return PermanentError(f"Authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "inappropriate" in error_message_lower
    ):
        return ContentPolicyError(f"Content policy violation: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return TransientError(f"Connection error: {error_message}")

    return PermanentError(f"Permanent error: {error_message}")


_STAGES = {
    "starting": ProviderStage.PENDING,
    "processing": ProviderStage.PROCESSING,
    "succeeded": ProviderStage.SUCCEEDED,
    "failed": ProviderStage.FAILED,
    "canceled": ProviderStage.FAILED,
}


def _output_urls(output: Any) -> list[str]:
    # Output format varies by model: a single URL or a list of URLs
    if output is None:
        return []
    if isinstance(output, (list, tuple)):
        return [str(item) for item in output if item]
    return [str(output)]


class ReplicateClient:
    """Image provider backed by the Replicate predictions API.

    The Replicate SDK is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, api_token: str, default_model: str):
        """Initialize Replicate client.

        Args:
            api_token: Replicate API token (from REPLICATE_API_TOKEN env var)
            default_model: Model used when a submission does not name one
        """
        self.api_token = api_token
        self.default_model = default_model
        self._client = replicate.Client(api_token=api_token) if api_token else None

    def _require_client(self) -> replicate.Client:
        if self._client is None:
            raise PermanentError("REPLICATE_API_TOKEN not configured")
        return self._client

    async def submit(self, submission: ProviderSubmission) -> str:
        """Create a prediction without waiting for it to finish.

        Args:
            submission: Prompt, ordered image URLs and output size

        Returns:
            Replicate prediction id

        Raises:
            TransientError: Temporary failure (network, rate limit, 503)
            ContentPolicyError: Prompt or images rejected by the provider
            PermanentError: Auth, validation or unexpected failure
        """
        client = self._require_client()
        model = submission.model or self.default_model
        model_input = {
            "prompt": submission.prompt,
            "image_input": submission.image_urls,
            "size": "custom",
            "width": submission.width,
            "height": submission.height,
        }

        try:
            prediction = await asyncio.to_thread(
                client.predictions.create, model=model, input=model_input
            )
        except ReplicateAPIError as e:
            raise classify_error(e) from e
        except (ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e
        except Exception as e:
            raise PermanentError(f"Unexpected error: {e}") from e

        if not prediction.id:
            raise PermanentError("No provider request ID returned from Replicate")

        logger.info(
            "provider.submitted",
            provider_request_id=prediction.id,
            model=model,
            images_count=len(submission.image_urls),
            width=submission.width,
            height=submission.height,
        )
        return prediction.id

    async def poll(self, provider_request_id: str) -> ProviderResult:
        """Fetch the current state of a prediction.

        Args:
            provider_request_id: Prediction id returned by submit()

        Returns:
            ProviderResult with stage, output URLs (when succeeded) and error text
            (when failed, verbatim from the provider)

        Raises:
            TransientError / PermanentError: The status request itself failed
        """
        client = self._require_client()
        try:
            prediction = await asyncio.to_thread(client.predictions.get, provider_request_id)
        except ReplicateAPIError as e:
            raise classify_error(e) from e
        except (ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e

        stage = _STAGES.get(prediction.status, ProviderStage.PROCESSING)
        if stage == ProviderStage.SUCCEEDED:
            return ProviderResult(stage=stage, output_urls=_output_urls(prediction.output))
        if stage == ProviderStage.FAILED:
            error = str(prediction.error) if prediction.error else f"prediction {prediction.status}"
            return ProviderResult(stage=stage, error=error)
        return ProviderResult(stage=stage)
