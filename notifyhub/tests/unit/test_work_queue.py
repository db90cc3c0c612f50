from __future__ import annotations

import asyncio

import pytest

from notifyhub.services.delivery import InlineWorkQueue
from notifyhub.workers.delivery_worker import all_queue_names


@pytest.mark.asyncio
async def test_inline_queue_runs_each_enqueued_task() -> None:
    handled: list[str] = []

    async def handler(task_id: str) -> None:
        handled.append(task_id)

    queue = InlineWorkQueue(handler, workers_per_queue=2)
    try:
        for idx in range(5):
            assert await queue.enqueue(f"t-{idx}", queue_name="nh:email:default") is True
        await queue.drain()
    finally:
        await queue.close()

    assert sorted(handled) == [f"t-{idx}" for idx in range(5)]


@pytest.mark.asyncio
async def test_slow_queue_does_not_block_other_queues() -> None:
    gate = asyncio.Event()
    finished: list[str] = []

    async def handler(task_id: str) -> None:
        if task_id.startswith("slow"):
            await gate.wait()
        finished.append(task_id)

    queue = InlineWorkQueue(handler, workers_per_queue=1)
    try:
        await queue.enqueue("slow-1", queue_name="nh:webhook:low")
        await queue.enqueue("slow-2", queue_name="nh:webhook:low")
        await queue.enqueue("fast-1", queue_name="nh:in_app:urgent")
        for _ in range(20):
            if "fast-1" in finished:
                break
            await asyncio.sleep(0.01)
        assert finished == ["fast-1"]
        assert await queue.depth("nh:webhook:low") == 1
        assert queue.queue_names() == ["nh:in_app:urgent", "nh:webhook:low"]
        gate.set()
        await queue.drain()
    finally:
        await queue.close()

    assert finished == ["fast-1", "slow-1", "slow-2"]


@pytest.mark.asyncio
async def test_deferred_enqueue_waits_before_running() -> None:
    handled: list[str] = []

    async def handler(task_id: str) -> None:
        handled.append(task_id)

    queue = InlineWorkQueue(handler)
    try:
        await queue.enqueue("later", queue_name="nh:whatsapp:default", defer_ms=50)
        await asyncio.sleep(0)
        assert handled == []
        await queue.drain()
    finally:
        await queue.close()

    assert handled == ["later"]


@pytest.mark.asyncio
async def test_handler_errors_do_not_stop_the_pool() -> None:
    handled: list[str] = []

    async def handler(task_id: str) -> None:
        if task_id == "bad":
            raise RuntimeError("boom")
        handled.append(task_id)

    queue = InlineWorkQueue(handler, workers_per_queue=1)
    try:
        await queue.enqueue("bad", queue_name="q")
        await queue.enqueue("good", queue_name="q")
        await queue.drain()
    finally:
        await queue.close()

    assert handled == ["good"]


@pytest.mark.asyncio
async def test_closed_queue_refuses_work() -> None:
    queue = InlineWorkQueue()
    await queue.close()
    assert await queue.enqueue("t-1", queue_name="q") is False


def test_worker_queue_names_cover_every_channel_and_tier() -> None:
    names = all_queue_names("nh")
    assert len(names) == 24
    assert "nh:in_app:urgent" in names
    assert "nh:email:default" in names
    assert "nh:whatsapp:low" in names
