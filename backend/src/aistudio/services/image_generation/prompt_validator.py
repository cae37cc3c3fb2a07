"""Prompt and size validation for image generation.

Validates provider inputs before a job is submitted.
"""

MAX_PROMPT_LENGTH = 2000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Text prompt (row override, model default or AI-generated)

    Returns:
        Validated prompt with surrounding whitespace removed

    Raises:
        ValueError: If prompt is empty, None, or exceeds the maximum length
    """
    if not prompt:
        raise ValueError("Prompt cannot be empty or None")

    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise ValueError("Prompt cannot be blank")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt


def clamp_dimension(value: int | None, minimum: int, maximum: int, default: int = 4096) -> int:
    """Clamp a requested output dimension into the provider's accepted range."""
    if not value:
        value = default
    return max(minimum, min(maximum, int(value)))
