"""Row status aggregation.

A row's status is derived from its child generation jobs:
- any job still queued/submitted/running/saving -> partial
- otherwise, at least one succeeded -> done
- otherwise -> error
"""

from typing import Iterable

import structlog

from aistudio.models.generation_job import ACTIVE_JOB_STATUSES, GenerationJobStatus
from aistudio.models.row import RowRef, RowStatus

logger = structlog.get_logger(__name__)


def aggregate_row_status(statuses: Iterable[GenerationJobStatus]) -> RowStatus:
    """Derive a row's status from the statuses of its child jobs."""
    remaining = 0
    succeeded = 0
    for status in statuses:
        if status in ACTIVE_JOB_STATUSES:
            remaining += 1
        elif status == GenerationJobStatus.SUCCEEDED:
            succeeded += 1

    if remaining > 0:
        return RowStatus.PARTIAL
    if succeeded > 0:
        return RowStatus.DONE
    return RowStatus.ERROR


async def refresh_row_status(uow, row: RowRef) -> RowStatus:
    """Recompute and store one row's status inside the caller's unit of work."""
    statuses = await uow.jobs.statuses_for_row(row)
    status = aggregate_row_status(statuses)
    await uow.rows.set_status(row, status)
    logger.debug("row.status.refreshed", row_id=str(row.id), kind=row.kind.value, status=status.value)
    return status


async def refresh_rows(uow, rows: Iterable[RowRef]) -> int:
    """Recompute status for each distinct row; returns how many rows were refreshed."""
    refreshed = 0
    for row in set(rows):
        await refresh_row_status(uow, row)
        refreshed += 1
    return refreshed
