from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class Channel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    WEBHOOK = "webhook"
    SMS = "sms"
    PUSH = "push"
    WHATSAPP = "whatsapp"


# Routing output always follows this order.
CHANNEL_ORDER: tuple[Channel, ...] = (
    Channel.IN_APP,
    Channel.EMAIL,
    Channel.WEBHOOK,
    Channel.SMS,
    Channel.PUSH,
    Channel.WHATSAPP,
)


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# Fixed priority → queue tier table.
PRIORITY_QUEUE_TIERS: dict[Priority, str] = {
    Priority.URGENT: "urgent",
    Priority.HIGH: "high",
    Priority.NORMAL: "default",
    Priority.LOW: "low",
}


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.ABANDONED})


def queue_name_for(prefix: str, channel: Channel, priority: Priority) -> str:
    return f"{prefix}:{channel.value}:{PRIORITY_QUEUE_TIERS[priority]}"


@dataclass(frozen=True)
class DeliveryKey:
    # One (tenant, message, channel) delivery; generation moves only on explicit replay.
    tenant_id: str
    message_id: str
    channel: str
    generation: int = 0

    def render(self) -> str:
        return f"{self.tenant_id}:{self.message_id}:{self.channel}:{self.generation}"


@dataclass(frozen=True)
class NotificationEvent:
    tenant_id: str
    message_id: str
    notification_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority_hint: str | None = None
    # Explicit channel request from the producer; None defers to policy.
    channels: tuple[str, ...] | None = None
    # Per-channel dispatch delay, e.g. the WhatsApp reply warm-up.
    channel_delays_ms: dict[str, int] = field(default_factory=dict)
    # UTC send time for scheduled notifications; None sends right away.
    scheduled_at: datetime | None = None


@dataclass(frozen=True)
class ChannelDispatch:
    channel: Channel
    priority: Priority
    queue_name: str
    delay_ms: int = 0


@dataclass(frozen=True)
class DeliveryTask:
    id: str
    tenant_id: str
    message_id: str
    notification_type: str
    channel: Channel
    payload: dict[str, Any]
    priority: Priority
    queue_name: str
    retry_budget: int
    status: TaskStatus
    created_at: datetime
    next_retry_at: datetime
    attempt_count: int = 0
    generation: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    provider_message_id: str | None = None
    provider_timestamp: str | None = None
    cancel_requested: bool = False
    updated_at: datetime | None = None

    @property
    def key(self) -> DeliveryKey:
        return DeliveryKey(self.tenant_id, self.message_id, self.channel.value, self.generation)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def evolve(self, **changes: Any) -> "DeliveryTask":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "message_id": self.message_id,
            "notification_type": self.notification_type,
            "channel": self.channel.value,
            "priority": self.priority.value,
            "queue_name": self.queue_name,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "retry_budget": self.retry_budget,
            "generation": self.generation,
            "created_at": self.created_at.isoformat(),
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "next_retry_at": self.next_retry_at.isoformat(),
            "last_error": self.last_error,
            "provider_message_id": self.provider_message_id,
            "provider_timestamp": self.provider_timestamp,
            "cancel_requested": self.cancel_requested,
        }


@dataclass(frozen=True)
class DeliveryAttempt:
    task_id: str
    attempt_no: int
    started_at: datetime
    finished_at: datetime | None
    outcome: str
    error: str | None = None


@dataclass(frozen=True)
class TransportReceipt:
    provider_message_id: str | None
    provider_timestamp: str | None
    raw: dict[str, Any] = field(default_factory=dict)
