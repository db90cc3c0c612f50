from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

from redis.exceptions import RedisError

from notifyhub.core.clock import Clock, utc_now
from notifyhub.core.errors import TransportError
from notifyhub.domain.delivery import DeliveryTask, TransportReceipt


class Publisher(Protocol):
    async def publish(self, channel: str, message: str) -> Any: ...


def in_app_message(task: DeliveryTask, *, sent_at: str) -> dict[str, Any]:
    payload = task.payload
    return {
        "id": task.id,
        "message_id": task.message_id,
        "type": task.notification_type,
        "priority": task.priority.value,
        "title": payload.get("title"),
        "message": payload.get("message") or payload.get("body"),
        "user_id": payload.get("user_id"),
        "data": payload.get("data") if isinstance(payload.get("data"), dict) else {},
        "sent_at": sent_at,
    }


class InAppTransport:
    """Publish in-app notifications on a per-tenant Redis pub/sub channel."""

    def __init__(self, publisher: Publisher | None, *, channel_prefix: str, clock: Clock | None = None) -> None:
        self._publisher = publisher
        self._channel_prefix = channel_prefix
        self._clock = clock or utc_now

    def channel_for(self, tenant_id: str) -> str:
        return f"{self._channel_prefix}:{tenant_id}"

    async def send(self, task: DeliveryTask) -> TransportReceipt:
        if self._publisher is None:
            raise TransportError("in-app publisher unavailable", reason="publisher_unavailable")
        sent_at = self._clock().isoformat()
        body = json.dumps(in_app_message(task, sent_at=sent_at), default=str)
        try:
            receivers = await self._publisher.publish(self.channel_for(task.tenant_id), body)
        except (RedisError, OSError) as exc:
            raise TransportError(f"in-app publish failed: {exc}", reason="publish_failed") from exc
        return TransportReceipt(
            provider_message_id=task.id,
            provider_timestamp=sent_at,
            raw={"receivers": int(receivers or 0)},
        )


class InProcessPublisher:
    # Local-mode fanout: subscribers get their own asyncio.Queue per channel.
    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[str]]] = {}

    def subscribe(self, channel: str) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        self._subscribers.setdefault(channel, []).append(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[str]) -> None:
        subscribers = self._subscribers.get(channel, [])
        if queue in subscribers:
            subscribers.remove(queue)

    async def publish(self, channel: str, message: str) -> int:
        subscribers = self._subscribers.get(channel, [])
        for queue in subscribers:
            queue.put_nowait(message)
        return len(subscribers)
