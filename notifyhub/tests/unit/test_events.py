from __future__ import annotations

from datetime import datetime, timezone

import pytest

from notifyhub.core.errors import ScheduleError, UnsupportedEventError
from notifyhub.services.notifications import EVENT_HANDLERS, normalize_event


def _message_sent(sender_type: str = "agent", metadata: dict | None = None) -> dict:
    return {
        "message": {
            "id": "chat-msg-9",
            "sender_type": sender_type,
            "content": "Your order has shipped",
            "metadata": metadata or {},
        },
        "session": {"id": "sess-1", "session_name": "default", "phone_number": "081234567"},
    }


def test_handler_table_covers_upstream_event_types() -> None:
    assert set(EVENT_HANDLERS) == {
        "message.sent",
        "organization.activity",
        "organization.notification",
        "notification.created",
    }


def test_agent_message_routes_to_in_app_and_delayed_whatsapp() -> None:
    event = normalize_event("message.sent", "tenant-a", _message_sent(), whatsapp_warmup_ms=3000)

    assert event.message_id == "chat-msg-9"
    assert event.notification_type == "message"
    assert event.channels == ("in_app", "whatsapp")
    assert event.channel_delays_ms == {"whatsapp": 3000}
    assert event.payload["session_name"] == "default"
    assert event.payload["phone_number"] == "081234567"
    assert event.payload["text"] == "Your order has shipped"


def test_customer_message_stays_in_app() -> None:
    event = normalize_event("message.sent", "tenant-a", _message_sent(sender_type="customer"))
    assert event.channels == ("in_app",)
    assert event.channel_delays_ms == {}


def test_message_already_sent_to_whatsapp_is_not_resent() -> None:
    event = normalize_event("message.sent", "tenant-a", _message_sent(metadata={"waha_message_id": "true_1@c.us"}))
    assert event.channels == ("in_app",)


def test_notification_created_copies_delivery_flags() -> None:
    event = normalize_event(
        "notification.created",
        "tenant-a",
        {
            "id": "n-1",
            "type": "Billing",
            "title": "Invoice ready",
            "send_email": True,
            "email": "ops@example.com",
            "priority": "high",
            "channels": "in_app,email",
        },
    )

    assert event.notification_type == "billing"
    assert event.priority_hint == "high"
    assert event.channels == ("in_app", "email")
    assert event.payload == {"title": "Invoice ready", "send_email": True, "email": "ops@example.com"}


def test_organization_activity_defaults_to_policy_channels() -> None:
    event = normalize_event(
        "organization.activity",
        "tenant-a",
        {"id": "act-1", "activity_type": "member_joined", "member": "sam"},
    )

    assert event.channels is None
    assert event.notification_type == "system"
    assert event.payload["title"] == "Member joined"
    assert event.payload["member"] == "sam"


def test_unknown_event_type_is_rejected() -> None:
    with pytest.raises(UnsupportedEventError):
        normalize_event("invoice.paid", "tenant-a", {"id": "x"})


def test_event_without_message_id_is_rejected() -> None:
    with pytest.raises(UnsupportedEventError):
        normalize_event("notification.created", "tenant-a", {"type": "system"})


def test_event_without_tenant_is_rejected() -> None:
    with pytest.raises(UnsupportedEventError):
        normalize_event("notification.created", "  ", {"id": "n-1", "type": "system"})


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(1, "1"), (" HIGH ", "high"), ("", None), (None, None), ({"level": "high"}, None), (True, None)],
)
def test_priority_hint_is_normalized_to_text(raw, expected) -> None:
    event = normalize_event(
        "notification.created",
        "tenant-a",
        {"id": "n-1", "type": "system", "priority": raw},
    )
    assert event.priority_hint == expected


def test_scheduled_notification_is_converted_to_utc() -> None:
    event = normalize_event(
        "organization.notification",
        "tenant-a",
        {"id": "n-2", "type": "reminder", "scheduled_at": "2026-03-03T09:30:00", "timezone": "Asia/Jakarta"},
    )
    assert event.scheduled_at == datetime(2026, 3, 3, 2, 30, tzinfo=timezone.utc)


def test_activity_with_bad_schedule_is_rejected() -> None:
    with pytest.raises(ScheduleError):
        normalize_event(
            "organization.activity",
            "tenant-a",
            {"id": "a-1", "activity_type": "meeting", "scheduled_at": "next tuesday"},
        )


def test_notification_copies_template_fields() -> None:
    event = normalize_event(
        "notification.created",
        "tenant-a",
        {
            "id": "n-3",
            "type": "order",
            "template": "order_shipped",
            "template_data": {"order_id": "A-1"},
            "language": "en",
        },
    )
    assert event.payload["template"] == "order_shipped"
    assert event.payload["template_data"] == {"order_id": "A-1"}
    assert event.payload["language"] == "en"
