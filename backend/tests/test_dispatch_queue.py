"""Dispatch trigger queue and consumer tests."""

import asyncio
from uuid import uuid4

import pytest

from aistudio.workers.dispatch_queue import DispatchQueue, DispatchRequest, run_dispatch_consumer


class RecordingDispatcher:
    def __init__(self, fail_first: bool = False):
        self.calls = []
        self.fail_first = fail_first

    async def dispatch(self, model_id=None, variant_row_id=None):
        self.calls.append((model_id, variant_row_id))
        if self.fail_first and len(self.calls) == 1:
            raise RuntimeError("provider down")


def test_trigger_drops_when_full():
    queue = DispatchQueue(maxsize=1)

    assert queue.trigger() is True
    assert queue.trigger(DispatchRequest(model_id=uuid4())) is False
    assert queue.qsize() == 1


@pytest.mark.asyncio
async def test_consumer_runs_requests_and_survives_errors():
    queue = DispatchQueue(maxsize=10)
    dispatcher = RecordingDispatcher(fail_first=True)
    model_id = uuid4()

    queue.trigger(DispatchRequest(model_id=model_id))
    queue.trigger()

    consumer = asyncio.create_task(run_dispatch_consumer(queue, dispatcher, worker_id=0))
    await asyncio.wait_for(queue.join(), timeout=5)

    consumer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await consumer

    assert dispatcher.calls == [(model_id, None), (None, None)]
