"""LLM prompt client (OpenAI-compatible chat completions with vision input).

Walks a model fallback chain: each model is tried in order and the first usable
answer wins. When every model fails the last error is raised; there is no canned
fallback prompt, so the caller's retry policy decides what happens next.
"""

from typing import Any, Optional, Protocol

import httpx
import structlog

from aistudio.models.prompt_job import SwapMode
from aistudio.services.exceptions import PermanentError, ProviderError, TransientError

logger = structlog.get_logger(__name__)


class PromptProvider(Protocol):
    async def generate(self, ref_urls: list[str], target_url: str, mode: SwapMode) -> str: ...

    async def enhance(
        self,
        existing_prompt: str,
        instructions: str,
        ref_urls: list[str],
        target_url: str,
        mode: SwapMode,
    ) -> str: ...


_FEATURES = {
    SwapMode.FACE: "face",
    SwapMode.FACE_HAIR: "face and hair",
}

SWAP_SYSTEM_PROMPT = """You write simple {features} swap instructions for an image editing model.
You will see reference images ({features} to copy) and a target image (body/scene to keep).
Write ONE sentence that tells the model to put the {features} from the reference image onto the target image.
For reference images: describe clothing or pose to identify the person.
For target image: only mention simple setting or background, avoid describing the person's appearance.
Use simple words. No technical terms. No bullet points or structured format."""

TARGET_ONLY_SYSTEM_PROMPT = """You write simple image enhancement instructions for an image editing model.
You will see a target image that needs to be enhanced or edited.
Write ONE sentence that tells the model to enhance or improve the image.
Focus on general improvements like better lighting, clarity, composition, or style.
Use simple words. No technical terms. No bullet points or structured format."""

ENHANCE_SYSTEM_PROMPT = """You improve image editing instructions.
You will get an existing instruction and a user's requested change, plus the images it applies to.
Rewrite the instruction as ONE sentence that keeps its intent ({features} swap when reference
images are present) and applies the requested change. Return only the new instruction."""


def _image_parts(ref_urls: list[str], target_url: str) -> list[dict[str, Any]]:
    # References first, target last, matching the order the image provider receives
    parts = [{"type": "image_url", "image_url": {"url": url}} for url in ref_urls]
    parts.append({"type": "image_url", "image_url": {"url": target_url}})
    return parts


class LLMPromptClient:
    """Prompt provider for an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str,
        api_base: str,
        models: list[str],
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize LLM client.

        Args:
            api_key: Bearer token (from LLM_API_KEY env var)
            api_base: API base URL, e.g. https://api.x.ai/v1
            models: Model fallback chain, most preferred first
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.models = models
        self.timeout = timeout
        self.transport = transport

    async def generate(self, ref_urls: list[str], target_url: str, mode: SwapMode) -> str:
        """Write a prompt for swapping reference features onto the target image."""
        features = _FEATURES[mode]
        if ref_urls:
            system = SWAP_SYSTEM_PROMPT.format(features=features)
            count = len(ref_urls)
            text = (
                f"Write one simple sentence for the swap. The first {count} "
                f"image{'s' if count > 1 else ''} contain{'' if count > 1 else 's'} the "
                f"{features} to copy. The last image is the target person. Mention {features} "
                "for better blending."
            )
        else:
            system = TARGET_ONLY_SYSTEM_PROMPT
            text = "Write one simple sentence for enhancing this image."

        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": [{"type": "text", "text": text}, *_image_parts(ref_urls, target_url)]},
        ]
        return await self._complete(messages, max_tokens=600, temperature=0.3)

    async def enhance(
        self,
        existing_prompt: str,
        instructions: str,
        ref_urls: list[str],
        target_url: str,
        mode: SwapMode,
    ) -> str:
        """Rewrite an existing prompt according to the user's instructions."""
        messages = [
            {"role": "system", "content": ENHANCE_SYSTEM_PROMPT.format(features=_FEATURES[mode])},
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": f"Existing instruction: {existing_prompt}\nRequested change: {instructions}",
                    },
                    *_image_parts(ref_urls, target_url),
                ],
            },
        ]
        return await self._complete(messages, max_tokens=600, temperature=0.3)

    async def _complete(self, messages: list[dict], max_tokens: int, temperature: float) -> str:
        """Try each model in the chain until one returns a non-empty answer.

        Raises:
            PermanentError: API key missing or every model rejected the request
            TransientError: Last failure was a timeout, 429 or 5xx
        """
        if not self.api_key:
            raise PermanentError("LLM_API_KEY not configured")
        if not self.models:
            raise PermanentError("No LLM models configured")

        last_index = len(self.models) - 1
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for index, model in enumerate(self.models):
                try:
                    return await self._complete_with_model(
                        client, model, messages, max_tokens, temperature
                    )
                except ProviderError as e:
                    logger.warning("llm.model_failed", model=model, error=str(e))
                    if index == last_index:
                        raise

        raise PermanentError("No LLM model returned a prompt")

    async def _complete_with_model(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: list[dict],
        max_tokens: int,
        temperature: float,
    ) -> str:
        try:
            response = await client.post(
                f"{self.api_base}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": model,
                    "messages": messages,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                },
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"LLM request timeout ({model}): {e}") from e
        except httpx.HTTPError as e:
            raise TransientError(f"LLM network error ({model}): {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(
                f"LLM API request failed ({model}): {response.status_code} {response.text}"
            )
        if response.status_code >= 400:
            raise PermanentError(
                f"LLM API request failed ({model}): {response.status_code} {response.text}"
            )

        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content or not content.strip():
            raise PermanentError(f"No prompt generated from API response ({model})")

        return content.strip()
