"""Admin API endpoints.

- POST /api/admin/reset-stuck-queue - Manual incident reset of both queues

Requires "Authorization: Bearer <ADMIN_SECRET>".
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query, status

from aistudio.api.dependencies import get_reaper, require_admin
from aistudio.api.schemas import CamelModel
from aistudio.core.timezone import utc_now
from aistudio.workers.reaper import CleanupMode, Reaper

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class ResetResponse(CamelModel):
    success: bool = True
    dry_run: bool
    cleaned_count: int
    summary: dict
    timestamp: datetime


@router.post("/reset-stuck-queue", response_model=ResetResponse, status_code=status.HTTP_200_OK)
async def reset_stuck_queue(
    dry_run: bool = Query(default=False, alias="dryRun"),
    reaper: Reaper = Depends(get_reaper),
) -> ResetResponse:
    """Force every stuck generation and prompt job out of its state.

    Prompt jobs in processing are requeued (or failed when out of retries)
    regardless of age, every queued prompt job is boosted, and generation jobs
    stuck without a provider id are failed with a "reset: " message.
    """
    logger.warning("admin.reset_stuck_queue.requested", dry_run=dry_run)
    summary = await reaper.cleanup(CleanupMode.RESET, dry_run=dry_run)
    return ResetResponse(
        dry_run=dry_run,
        cleaned_count=summary.cleaned_count,
        summary=summary.to_dict(),
        timestamp=utc_now(),
    )
