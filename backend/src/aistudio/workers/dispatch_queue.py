"""In-process dispatch trigger queue.

Request handlers call trigger() after creating jobs; a fixed pool of consumer
tasks runs Dispatcher.dispatch() for each request. trigger() never blocks: when
the queue is full the request is dropped and the periodic dispatch tick picks
the work up instead.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DispatchRequest:
    """Optional dispatch scope; an empty request dispatches across all rows."""

    model_id: Optional[UUID] = None
    variant_row_id: Optional[UUID] = None


class DispatchQueue:
    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue[DispatchRequest] = asyncio.Queue(maxsize=maxsize)

    def trigger(self, request: Optional[DispatchRequest] = None) -> bool:
        """Enqueue a dispatch request without waiting.

        Returns:
            True if enqueued, False if the queue was full and the request dropped
        """
        request = request or DispatchRequest()
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            logger.warning(
                "dispatch.trigger.dropped",
                model_id=str(request.model_id) if request.model_id else None,
                variant_row_id=str(request.variant_row_id) if request.variant_row_id else None,
            )
            return False
        return True

    def qsize(self) -> int:
        return self._queue.qsize()

    async def get(self) -> DispatchRequest:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()


async def run_dispatch_consumer(queue: DispatchQueue, dispatcher, worker_id: int = 0) -> None:
    """Consume dispatch requests until cancelled.

    Errors from a single dispatch are logged and the consumer keeps going.

    Args:
        queue: Shared dispatch queue
        dispatcher: Dispatcher instance
        worker_id: Index of this consumer (for logs)
    """
    logger.info("dispatch.consumer.started", worker_id=worker_id)
    try:
        while True:
            request = await queue.get()
            try:
                await dispatcher.dispatch(
                    model_id=request.model_id, variant_row_id=request.variant_row_id
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "dispatch.consumer.error",
                    worker_id=worker_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                queue.task_done()
    except asyncio.CancelledError:
        logger.info("dispatch.consumer.shutdown", worker_id=worker_id)
        raise
