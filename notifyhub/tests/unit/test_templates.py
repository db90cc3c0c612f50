from __future__ import annotations

import json

import pytest

from notifyhub.core.config import Settings
from notifyhub.core.errors import TemplateError
from notifyhub.domain.delivery import NotificationEvent
from notifyhub.services.notifications.templates import NotificationTemplate, TemplateRegistry


def _registry() -> TemplateRegistry:
    return TemplateRegistry(
        [
            NotificationTemplate(
                name="payment_due",
                language="id",
                title="Tagihan {{ invoice }}",
                body="Tagihan {{ invoice }} jatuh tempo {{ due_date }}",
                subject="Pengingat tagihan {{ invoice }}",
                required_variables=("invoice", "due_date"),
            ),
            NotificationTemplate(
                name="payment_due",
                language="en",
                title="Invoice {{ invoice }}",
                body="Invoice {{ invoice }} is due on {{ due_date }}",
                required_variables=("invoice", "due_date"),
            ),
            NotificationTemplate(name="greeting", language="id", title="Halo", body="Halo {{ name }}"),
        ]
    )


def test_render_uses_requested_language() -> None:
    rendered = _registry().render("payment_due", {"invoice": "INV-7", "due_date": "5 Mar"}, language="en")
    assert rendered == {"title": "Invoice INV-7", "message": "Invoice INV-7 is due on 5 Mar"}


def test_render_falls_back_to_default_language() -> None:
    rendered = _registry().render("payment_due", {"invoice": "INV-7", "due_date": "5 Mar"}, language="fr")
    assert rendered["title"] == "Tagihan INV-7"
    assert rendered["subject"] == "Pengingat tagihan INV-7"


def test_missing_required_variables_are_listed() -> None:
    with pytest.raises(TemplateError) as excinfo:
        _registry().render("payment_due", {"invoice": "INV-7", "due_date": ""})
    assert excinfo.value.missing == ["due_date"]
    assert excinfo.value.template == "payment_due"


def test_undefined_placeholder_fails_instead_of_rendering_blank() -> None:
    with pytest.raises(TemplateError, match="greeting"):
        _registry().render("greeting", {})


def test_unknown_template_is_rejected() -> None:
    with pytest.raises(TemplateError, match="not found"):
        _registry().render("welcome", {})


def test_sandbox_blocks_attribute_escapes() -> None:
    registry = TemplateRegistry(
        [NotificationTemplate(name="sneaky", language="id", title="x", body="{{ name.__class__ }}")]
    )
    with pytest.raises(TemplateError):
        registry.render("sneaky", {"name": "a"})


def test_apply_merges_payload_and_template_data() -> None:
    event = NotificationEvent(
        tenant_id="tenant-a",
        message_id="msg-1",
        notification_type="billing",
        payload={"template": "Payment_Due", "invoice": "INV-9", "template_data": {"due_date": "6 Mar"}},
    )

    rendered = _registry().apply(event)

    assert rendered.payload["message"] == "Tagihan INV-9 jatuh tempo 6 Mar"
    assert rendered.payload["template"] == "payment_due"
    assert rendered.payload["invoice"] == "INV-9"
    assert event.payload.get("message") is None


def test_apply_without_template_passes_event_through() -> None:
    event = NotificationEvent(tenant_id="t", message_id="m", notification_type="system", payload={"title": "Hi"})
    assert _registry().apply(event) is event


def test_apply_rejects_non_mapping_template_data() -> None:
    event = NotificationEvent(
        tenant_id="t",
        message_id="m",
        notification_type="system",
        payload={"template": "greeting", "template_data": ["Ana"]},
    )
    with pytest.raises(TemplateError):
        _registry().apply(event)


def test_from_settings_reads_language_keys() -> None:
    settings = Settings(
        default_template_language="en",
        notification_templates_json=json.dumps(
            {
                "welcome": {"title": "Welcome", "body": "Hi {{ name }}", "required_variables": "name"},
                "welcome:id": {"title": "Selamat datang", "body": "Halo {{ name }}"},
            }
        ),
    )
    registry = TemplateRegistry.from_settings(settings)

    assert registry.render("welcome", {"name": "Ana"})["message"] == "Hi Ana"
    assert registry.render("welcome", {"name": "Ana"}, language="id")["message"] == "Halo Ana"
    with pytest.raises(TemplateError):
        registry.render("welcome", {})


@pytest.mark.parametrize("raw", ["{not json", "[]", json.dumps({"broken": {"title": "only title"}})])
def test_from_settings_rejects_bad_configuration(raw: str) -> None:
    with pytest.raises(TemplateError):
        TemplateRegistry.from_settings(Settings(notification_templates_json=raw))
