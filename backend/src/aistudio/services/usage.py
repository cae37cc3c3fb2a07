"""Per-user usage counting.

Counting is best effort: a failure is logged and never affects the request
that triggered it.
"""

from uuid import UUID

import structlog

logger = structlog.get_logger(__name__)

STEP_GENERATE = "generate"
STEP_PROMPT_GENERATE = "prompt_generate"
STEP_PROMPT_ENHANCE = "prompt_enhance"


async def record_usage(uow_factory, user_id: UUID, step: str) -> None:
    """Increment the (user_id, step) counter in its own transaction."""
    try:
        async with await uow_factory() as uow:
            count = await uow.usage.increment(user_id, step)
        logger.debug("usage.incremented", user_id=str(user_id), step=step, count=count)
    except Exception as e:
        logger.warning("usage.increment_failed", user_id=str(user_id), step=step, error=str(e))
