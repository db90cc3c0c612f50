from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from notifyhub.core.errors import StoreUnavailable
from notifyhub.domain.delivery import Channel, DeliveryTask, TransportReceipt


class FakeClock:
    # Mutable UTC clock; call it like utc_now and move it with advance().
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event_type: str, **fields: Any) -> None:
        self.events.append((event_type, fields))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [fields for name, fields in self.events if name == event_type]


class DownLeaseStore:
    # Lease store whose backend is unreachable.
    async def acquire(self, key: str, holder: str, ttl_s: float) -> bool:
        raise StoreUnavailable("lease store unavailable: connection refused")

    async def release(self, key: str, holder: str) -> bool:
        raise StoreUnavailable("lease store unavailable: connection refused")


class ScriptedTransport:
    """Transport that replays a script of outcomes, one per call.

    Each item is either an exception instance to raise or a receipt to return;
    once the script is exhausted every call succeeds.
    """

    def __init__(self, script: Iterable[Any] = (), *, delay_s: float = 0.0) -> None:
        self._script = list(script)
        self._delay_s = delay_s
        self.calls: list[DeliveryTask] = []

    async def send(self, task: DeliveryTask) -> TransportReceipt:
        self.calls.append(task)
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        outcome = self._script.pop(0) if self._script else None
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, TransportReceipt):
            return outcome
        return TransportReceipt(provider_message_id=f"{task.channel.value}-{len(self.calls)}", provider_timestamp="ts")


class RecordingQueue:
    # Work queue that only records enqueues; tests call dispatcher.execute themselves.
    def __init__(self, *, accept: bool = True) -> None:
        self.accept = accept
        self.enqueued: list[tuple[str, str, int]] = []

    async def enqueue(self, task_id: str, *, queue_name: str, defer_ms: int = 0) -> bool:
        self.enqueued.append((task_id, queue_name, defer_ms))
        return self.accept

    async def depth(self, queue_name: str) -> int | None:
        return sum(1 for _task_id, name, _defer in self.enqueued if name == queue_name)

    async def close(self) -> None:
        return None


class RecordingPublisher:
    def __init__(self, *, receivers: int = 1, error: Exception | None = None) -> None:
        self.receivers = receivers
        self.error = error
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.error is not None:
            raise self.error
        self.published.append((channel, message))
        return self.receivers


class FakeSmtp:
    """Async SMTP stand-in with the aiosmtplib.SMTP surface the email transport uses."""

    def __init__(self, *, errors: dict[str, Any] | None = None, raise_on_send: Exception | None = None) -> None:
        self.errors = errors or {}
        self.raise_on_send = raise_on_send
        self.logins: list[tuple[str, str]] = []
        self.sent: list[Any] = []

    async def __aenter__(self) -> "FakeSmtp":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def login(self, username: str, password: str) -> None:
        self.logins.append((username, password))

    async def send_message(self, message: Any) -> tuple[dict[str, Any], str]:
        if self.raise_on_send is not None:
            raise self.raise_on_send
        self.sent.append(message)
        return self.errors, "250 OK queued"


def scripted_registry(**by_channel: ScriptedTransport):
    # Build a registry with a scripted transport per channel; unspecified channels always succeed.
    from notifyhub.services.transports import TransportRegistry

    transports = {channel: by_channel.get(channel.value) or ScriptedTransport() for channel in Channel}
    return TransportRegistry(transports)
