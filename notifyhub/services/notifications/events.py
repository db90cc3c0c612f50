from __future__ import annotations

from typing import Any, Callable, Mapping

from notifyhub.core.errors import UnsupportedEventError
from notifyhub.domain.delivery import Channel, NotificationEvent
from notifyhub.services.scheduling import parse_schedule_time


EVENT_MESSAGE_SENT = "message.sent"
EVENT_ORGANIZATION_ACTIVITY = "organization.activity"
EVENT_ORGANIZATION_NOTIFICATION = "organization.notification"
EVENT_NOTIFICATION_CREATED = "notification.created"

# Metadata markers left on a chat message once it has been pushed to WhatsApp.
_WHATSAPP_SENT_MARKERS = ("waha_message_id", "waha_sent_via")

# Top-level fields of an explicit notification that are copied into the payload.
_NOTIFICATION_PAYLOAD_KEYS = (
    "title",
    "message",
    "subject",
    "email",
    "send_email",
    "device_tokens",
    "phone_number",
    "webhook_url",
    "user_id",
    "template",
    "template_data",
    "language",
)

EventHandler = Callable[[str, str, Mapping[str, Any], int], NotificationEvent]


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _channels(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return None
    return tuple(str(item).strip().lower() for item in value if str(item).strip())


def _priority(value: Any) -> str | None:
    # Producers send free-form JSON; only a non-empty string is a usable hint.
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip().lower()
    return text or None


def _require_message_id(data: Mapping[str, Any], *fallbacks: Any) -> str:
    for candidate in (data.get("message_id"), data.get("id"), *fallbacks):
        if candidate is not None and str(candidate).strip():
            return str(candidate).strip()
    raise UnsupportedEventError("event carries no message id")


def handle_message_sent(
    event_type: str, tenant_id: str, data: Mapping[str, Any], whatsapp_warmup_ms: int
) -> NotificationEvent:
    # Chat message: always in-app; agent replies also go to the customer's WhatsApp chat.
    message = _as_dict(data.get("message"))
    session = _as_dict(data.get("session"))
    metadata = _as_dict(message.get("metadata"))
    sender_type = message.get("sender_type") or data.get("sender_type")
    message_id = _require_message_id(message, data.get("message_id"))
    text = message.get("content") or message.get("text") or message.get("body")
    payload: dict[str, Any] = {
        "title": data.get("title") or "New message",
        "message": text,
        "text": text,
        "sender_type": sender_type,
        "session_id": session.get("id") or data.get("session_id"),
        "session_name": session.get("session_name") or data.get("session_name"),
        "phone_number": session.get("phone_number") or session.get("customer_phone") or data.get("phone_number"),
        "reply_to": metadata.get("reply_to"),
        "user_id": data.get("user_id"),
    }
    already_sent = any(metadata.get(marker) for marker in _WHATSAPP_SENT_MARKERS)
    channels: list[str] = [Channel.IN_APP.value]
    delays: dict[str, int] = {}
    if sender_type == "agent" and not already_sent:
        channels.append(Channel.WHATSAPP.value)
        delays[Channel.WHATSAPP.value] = max(0, int(whatsapp_warmup_ms))
    return NotificationEvent(
        tenant_id=tenant_id,
        message_id=message_id,
        notification_type="message",
        payload={key: value for key, value in payload.items() if value is not None},
        priority_hint=_priority(data.get("priority")),
        channels=tuple(channels),
        channel_delays_ms=delays,
    )


def handle_organization_activity(
    event_type: str, tenant_id: str, data: Mapping[str, Any], whatsapp_warmup_ms: int
) -> NotificationEvent:
    # Activity feed entries are system notices; channels follow the tenant policy.
    activity = str(data.get("activity_type") or "activity")
    payload = _as_dict(data.get("payload")) or {
        key: value for key, value in data.items() if key not in {"id", "message_id", "activity_type"}
    }
    payload.setdefault("title", data.get("title") or activity.replace("_", " ").capitalize())
    payload.setdefault("activity_type", activity)
    return NotificationEvent(
        tenant_id=tenant_id,
        message_id=_require_message_id(data),
        notification_type=str(data.get("type") or "system"),
        payload=payload,
        priority_hint=_priority(data.get("priority")),
        channels=_channels(data.get("channels")),
        scheduled_at=parse_schedule_time(data.get("scheduled_at"), data.get("timezone")),
    )


def handle_notification(
    event_type: str, tenant_id: str, data: Mapping[str, Any], whatsapp_warmup_ms: int
) -> NotificationEvent:
    # Explicit notifications carry their own type, priority, channel request and payload flags.
    notification_type = data.get("type") or data.get("notification_type")
    if not notification_type:
        raise UnsupportedEventError(f"{event_type} event carries no notification type")
    payload = _as_dict(data.get("data"))
    for key in _NOTIFICATION_PAYLOAD_KEYS:
        if key in data and key not in payload:
            payload[key] = data[key]
    return NotificationEvent(
        tenant_id=tenant_id,
        message_id=_require_message_id(data),
        notification_type=str(notification_type).strip().lower(),
        payload=payload,
        priority_hint=_priority(data.get("priority")),
        channels=_channels(data.get("channels")),
        scheduled_at=parse_schedule_time(data.get("scheduled_at"), data.get("timezone")),
    )


EVENT_HANDLERS: dict[str, EventHandler] = {
    EVENT_MESSAGE_SENT: handle_message_sent,
    EVENT_ORGANIZATION_ACTIVITY: handle_organization_activity,
    EVENT_ORGANIZATION_NOTIFICATION: handle_notification,
    EVENT_NOTIFICATION_CREATED: handle_notification,
}


def normalize_event(
    event_type: str,
    tenant_id: str,
    data: Mapping[str, Any],
    *,
    whatsapp_warmup_ms: int = 0,
) -> NotificationEvent:
    """Turn a raw upstream event into a ``NotificationEvent`` using the handler table."""
    handler = EVENT_HANDLERS.get(event_type.strip().lower())
    if handler is None:
        raise UnsupportedEventError(f"unsupported event type: {event_type}")
    if not tenant_id or not str(tenant_id).strip():
        raise UnsupportedEventError("event carries no tenant id")
    return handler(event_type, str(tenant_id).strip(), data, whatsapp_warmup_ms)
