import asyncio

import pytest

from comfy_img2img.core.errors import QueueFull
from comfy_img2img.services.job_queue import JobQueue

from conftest import make_request


class RecordingProcessor:
    def __init__(self):
        self.log = []
        self.gates = {}

    def gate(self, text: str) -> asyncio.Event:
        return self.gates.setdefault(text, asyncio.Event())

    async def __call__(self, request):
        self.log.append(("start", request.text))
        if request.text in self.gates:
            await self.gates[request.text].wait()
        if request.text == "boom":
            raise RuntimeError("boom")
        self.log.append(("end", request.text))


def test_enqueue_returns_position_and_rejects_when_full(profile):
    queue = JobQueue(RecordingProcessor(), capacity=3)

    positions = [queue.enqueue(make_request(profile, text=str(i))) for i in range(3)]
    assert positions == [1, 2, 3]

    with pytest.raises(QueueFull) as exc_info:
        queue.enqueue(make_request(profile, text="fourth"))

    assert exc_info.value.capacity == 3
    assert "max: 3" in exc_info.value.message
    assert len(queue) == 3


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        JobQueue(RecordingProcessor(), capacity=0)


@pytest.mark.asyncio
async def test_fifo_and_one_job_at_a_time(profile):
    processor = RecordingProcessor()
    queue = JobQueue(processor, capacity=3)
    for text in ("r1", "r2", "r3"):
        queue.enqueue(make_request(profile, text=text))

    await queue.run_worker_loop()

    assert processor.log == [
        ("start", "r1"), ("end", "r1"),
        ("start", "r2"), ("end", "r2"),
        ("start", "r3"), ("end", "r3"),
    ]
    assert len(queue) == 0
    assert queue.is_busy is False


@pytest.mark.asyncio
async def test_trigger_while_busy_is_noop(profile):
    processor = RecordingProcessor()
    gate = processor.gate("r1")
    queue = JobQueue(processor, capacity=3)

    queue.enqueue(make_request(profile, text="r1"))
    task = queue.trigger()
    await asyncio.sleep(0)
    assert queue.is_busy

    # the worker is busy: new work waits, extra triggers start nothing
    queue.enqueue(make_request(profile, text="r2"))
    assert queue.trigger() is None
    await queue.run_worker_loop()
    await asyncio.sleep(0)
    assert processor.log == [("start", "r1")]
    assert len(queue) == 1

    gate.set()
    await task

    assert processor.log == [("start", "r1"), ("end", "r1"), ("start", "r2"), ("end", "r2")]
    assert queue.is_busy is False


@pytest.mark.asyncio
async def test_trigger_on_empty_queue_is_noop():
    queue = JobQueue(RecordingProcessor(), capacity=3)

    assert queue.trigger() is None
    await queue.run_worker_loop()
    assert queue.snapshot() == {"state": "IDLE", "queued": 0, "capacity": 3}


@pytest.mark.asyncio
async def test_processor_error_does_not_stop_worker(profile):
    processor = RecordingProcessor()
    queue = JobQueue(processor, capacity=3)
    queue.enqueue(make_request(profile, text="boom"))
    queue.enqueue(make_request(profile, text="after"))

    await queue.run_worker_loop()

    assert processor.log == [("start", "boom"), ("start", "after"), ("end", "after")]
    assert queue.is_busy is False


@pytest.mark.asyncio
async def test_enqueue_while_busy_and_position_counts_waiting_only(profile):
    processor = RecordingProcessor()
    gate = processor.gate("r1")
    queue = JobQueue(processor, capacity=3)

    queue.enqueue(make_request(profile, text="r1"))
    task = queue.trigger()
    await asyncio.sleep(0)

    # r1 is running and no longer counted
    assert [queue.enqueue(make_request(profile, text=t)) for t in ("r2", "r3", "r4")] == [1, 2, 3]
    with pytest.raises(QueueFull):
        queue.enqueue(make_request(profile, text="r5"))

    gate.set()
    await task
    assert [t for kind, t in processor.log if kind == "start"] == ["r1", "r2", "r3", "r4"]


@pytest.mark.asyncio
async def test_close_cancels_running_worker_and_releases_busy(profile):
    processor = RecordingProcessor()
    processor.gate("r1")
    queue = JobQueue(processor, capacity=3)
    queue.enqueue(make_request(profile, text="r1"))
    queue.trigger()
    await asyncio.sleep(0)
    assert queue.is_busy

    await queue.close()

    assert queue.is_busy is False
