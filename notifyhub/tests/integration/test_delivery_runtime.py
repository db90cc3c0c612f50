from __future__ import annotations

import pytest

from notifyhub.core.config import Settings
from notifyhub.domain.delivery import Channel, TaskStatus
from notifyhub.services.delivery import InlineWorkQueue, InMemoryTaskStore
from notifyhub.services.delivery.runtime import build_runtime
from notifyhub.services.transports import InAppTransport
from notifyhub.workers.delivery_worker import execute_delivery_task
from notifyhub.tests.utils.fakes import RecordingQueue, scripted_registry


def _local_settings(**overrides) -> Settings:
    values = {
        "delivery_execution_mode": "inline",
        "task_store_backend": "memory",
        "whatsapp_reply_warmup_ms": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.mark.asyncio
async def test_local_runtime_needs_no_external_services() -> None:
    runtime = await build_runtime(_local_settings())
    try:
        assert isinstance(runtime.store, InMemoryTaskStore)
        assert isinstance(runtime.queue, InlineWorkQueue)
        in_app = runtime.transports.get(Channel.IN_APP)
        assert isinstance(in_app, InAppTransport)

        result = await runtime.intake.submit_raw(
            "organization.activity", "tenant-a", {"id": "act-1", "activity_type": "member_joined"}
        )
        await runtime.queue.drain()
        tasks = await runtime.store.list_tasks(tenant_id="tenant-a")
    finally:
        await runtime.close()

    assert result.channels == ["in_app"]
    assert [task.status for task in tasks] == [TaskStatus.SUCCEEDED]


@pytest.mark.asyncio
async def test_unknown_backends_are_rejected() -> None:
    with pytest.raises(ValueError):
        await build_runtime(_local_settings(task_store_backend="mongo"), redis=object())
    with pytest.raises(ValueError):
        await build_runtime(_local_settings(delivery_execution_mode="celery", task_store_backend="memory"), redis=object())


@pytest.mark.asyncio
async def test_worker_job_executes_one_attempt() -> None:
    queue = RecordingQueue()
    runtime = await build_runtime(_local_settings(), queue=queue, transports=scripted_registry())
    try:
        result = await runtime.intake.submit_raw(
            "notification.created",
            "tenant-a",
            {"id": "n-1", "type": "system", "title": "Hi"},
        )
        task_id = result.task_ids[0]
        ctx = {"runtime": runtime}

        first = await execute_delivery_task(ctx, task_id)
        second = await execute_delivery_task(ctx, task_id)
        missing = await execute_delivery_task(ctx, "nope")
    finally:
        await runtime.close()

    assert first == "succeeded"
    assert second == "skipped:terminal"
    assert missing == "skipped:missing"
