from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone

import aiosmtplib
import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from notifyhub.core.errors import TransportError, TransportPermanentError
from notifyhub.domain.delivery import Channel, DeliveryTask, Priority, TaskStatus
from notifyhub.services.transports import (
    EmailTransport,
    InAppTransport,
    InProcessPublisher,
    PushTransport,
    SmsTransport,
    WebhookTransport,
    WhatsAppTransport,
)
from notifyhub.services.transports.base import raise_for_provider_status
from notifyhub.services.transports.sms import format_phone_number, format_sms_text
from notifyhub.services.transports.webhook import (
    HEADER_ATTEMPT,
    HEADER_DELIVERY_ID,
    HEADER_PAYLOAD_SHA256,
    HEADER_SIGNATURE,
    compute_signature,
)
from notifyhub.services.transports.whatsapp import chat_id_for, extract_message_id, normalize_phone_number
from notifyhub.tests.utils.fakes import FakeClock, FakeSmtp, RecordingPublisher


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _task(channel: Channel, payload: dict, **overrides) -> DeliveryTask:
    values = {
        "id": "task-1",
        "tenant_id": "tenant-a",
        "message_id": "msg-1",
        "notification_type": "system",
        "channel": channel,
        "payload": payload,
        "priority": Priority.NORMAL,
        "queue_name": f"nh:{channel.value}:default",
        "retry_budget": 3,
        "status": TaskStatus.IN_FLIGHT,
        "created_at": NOW,
        "next_retry_at": NOW,
        "attempt_count": 1,
    }
    values.update(overrides)
    return DeliveryTask(**values)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_provider_status_mapping() -> None:
    request = httpx.Request("POST", "https://example.com")
    with pytest.raises(TransportPermanentError) as permanent:
        raise_for_provider_status(httpx.Response(404, request=request), provider="x")
    assert permanent.value.reason == "http_404"
    for status_code in (408, 429, 500, 503):
        with pytest.raises(TransportError):
            raise_for_provider_status(httpx.Response(status_code, request=request), provider="x")
    raise_for_provider_status(httpx.Response(202, request=request), provider="x")


@pytest.mark.asyncio
async def test_webhook_posts_signed_envelope() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "remote-7"})

    async with _client(handler) as client:
        transport = WebhookTransport(signing_secret="s3cret", client=client, clock=FakeClock(NOW))
        receipt = await transport.send(
            _task(Channel.WEBHOOK, {"webhook_url": "https://hooks.example.com/in", "title": "Hi"})
        )

    assert receipt.provider_message_id == "remote-7"
    request = seen[0]
    body = request.content
    assert str(request.url) == "https://hooks.example.com/in"
    assert request.headers[HEADER_DELIVERY_ID] == "task-1"
    assert request.headers[HEADER_ATTEMPT] == "1"
    assert request.headers[HEADER_PAYLOAD_SHA256] == hashlib.sha256(body).hexdigest()
    assert request.headers[HEADER_SIGNATURE] == compute_signature(body, "s3cret")
    envelope = json.loads(body)
    assert envelope["data"] == {"title": "Hi"}
    assert envelope["tenant_id"] == "tenant-a"


@pytest.mark.asyncio
async def test_webhook_without_destination_is_permanent() -> None:
    transport = WebhookTransport()
    with pytest.raises(TransportPermanentError):
        await transport.send(_task(Channel.WEBHOOK, {}))
    with pytest.raises(TransportPermanentError):
        await transport.send(_task(Channel.WEBHOOK, {"webhook_url": "ftp://nope"}))


@pytest.mark.asyncio
async def test_webhook_server_error_is_transient() -> None:
    async with _client(lambda request: httpx.Response(502)) as client:
        transport = WebhookTransport(default_url="https://hooks.example.com", client=client)
        with pytest.raises(TransportError) as exc_info:
            await transport.send(_task(Channel.WEBHOOK, {}))
    assert exc_info.value.reason == "http_502"


@pytest.mark.asyncio
async def test_webhook_network_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        transport = WebhookTransport(default_url="https://hooks.example.com", client=client)
        with pytest.raises(TransportError) as exc_info:
            await transport.send(_task(Channel.WEBHOOK, {}))
    assert exc_info.value.reason == "network_error"


def test_whatsapp_phone_helpers() -> None:
    assert normalize_phone_number("0812-3456") == "628123456"
    assert normalize_phone_number("+44 20 7946") == "44207946"
    assert chat_id_for("081234") == "6281234@c.us"
    assert chat_id_for("123@g.us") == "123@g.us"
    assert extract_message_id({"id": {"_serialized": "true_1@c.us_ABC"}}) == "true_1@c.us_ABC"
    assert extract_message_id({"_data": {"id": {"_serialized": "x"}}}) == "x"
    assert extract_message_id({}) is None


@pytest.mark.asyncio
async def test_whatsapp_sends_text_to_session() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": {"_serialized": "true_6281@c.us_XYZ"}, "timestamp": 1772452800})

    payload = {"session_name": "default", "phone_number": "0812345", "text": "Hello", "reply_to": "wamid-1"}
    async with _client(handler) as client:
        transport = WhatsAppTransport(base_url="http://waha:3000/", api_key="k", client=client)
        receipt = await transport.send(_task(Channel.WHATSAPP, payload))

    assert receipt.provider_message_id == "true_6281@c.us_XYZ"
    assert receipt.provider_timestamp == "1772452800"
    assert str(seen[0].url) == "http://waha:3000/api/sendText"
    assert seen[0].headers["X-Api-Key"] == "k"
    assert json.loads(seen[0].content) == {
        "chatId": "62812345@c.us",
        "text": "Hello",
        "session": "default",
        "linkPreview": True,
        "reply_to": "wamid-1",
    }


@pytest.mark.asyncio
async def test_whatsapp_falls_back_to_session_route_on_404() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/api/sendText":
            return httpx.Response(404)
        return httpx.Response(200, json={"id": "plain-id"})

    async with _client(handler) as client:
        transport = WhatsAppTransport(base_url="http://waha:3000", client=client)
        receipt = await transport.send(
            _task(Channel.WHATSAPP, {"session_name": "s1", "phone_number": "+6281", "message": "Hi"})
        )

    assert paths == ["/api/sendText", "/api/sessions/s1/sendText"]
    assert receipt.provider_message_id == "plain-id"


@pytest.mark.asyncio
async def test_whatsapp_missing_recipient_is_permanent() -> None:
    transport = WhatsAppTransport(base_url="http://waha:3000")
    with pytest.raises(TransportPermanentError):
        await transport.send(_task(Channel.WHATSAPP, {"phone_number": "0812", "text": "x"}))


def test_sms_formatting() -> None:
    assert format_phone_number("(555) 010-2030") == "+15550102030"
    assert format_phone_number("+62 812 345") == "+62812345"
    text = format_sms_text(_task(Channel.SMS, {"title": "T", "message": "x" * 300}), max_length=20)
    assert len(text) == 20
    assert text.endswith("...")


@pytest.mark.asyncio
async def test_sms_twilio_posts_form_with_basic_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM123"})

    async with _client(handler) as client:
        transport = SmsTransport(
            provider="twilio",
            twilio_account_sid="AC1",
            twilio_auth_token="tok",
            twilio_from_number="+15550000",
            client=client,
        )
        receipt = await transport.send(_task(Channel.SMS, {"phone_number": "5550102030", "title": "Hi"}))

    assert receipt.provider_message_id == "SM123"
    assert seen[0].url.path == "/2010-04-01/Accounts/AC1/Messages.json"
    assert seen[0].headers["Authorization"].startswith("Basic ")
    assert b"To=%2B15550102030" in seen[0].content


@pytest.mark.asyncio
async def test_sms_nexmo_status_failure_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"messages": [{"status": "1", "error-text": "Throttled"}]})

    async with _client(handler) as client:
        transport = SmsTransport(provider="nexmo", nexmo_api_key="k", nexmo_api_secret="s", client=client)
        with pytest.raises(TransportError) as exc_info:
            await transport.send(_task(Channel.SMS, {"phone_number": "+6281"}))
    assert exc_info.value.reason == "nexmo_status_1"


@pytest.mark.asyncio
async def test_sms_missing_credentials_is_permanent() -> None:
    transport = SmsTransport(provider="twilio")
    with pytest.raises(TransportPermanentError) as exc_info:
        await transport.send(_task(Channel.SMS, {"phone_number": "+6281"}))
    assert exc_info.value.reason == "misconfiguration"


def test_unknown_providers_are_rejected_at_construction() -> None:
    with pytest.raises(ValueError):
        SmsTransport(provider="pigeon")
    with pytest.raises(ValueError):
        PushTransport(provider="pigeon")


@pytest.mark.asyncio
async def test_push_fcm_requires_a_successful_device() -> None:
    responses = iter(
        [
            httpx.Response(200, json={"multicast_id": 99, "success": 1, "failure": 1}),
            httpx.Response(200, json={"multicast_id": 100, "success": 0, "failure": 2}),
        ]
    )
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return next(responses)

    task = _task(Channel.PUSH, {"device_tokens": ["a", "b"], "title": "Hi"})
    async with _client(handler) as client:
        transport = PushTransport(provider="fcm", fcm_server_key="srv", client=client)
        receipt = await transport.send(task)
        with pytest.raises(TransportError):
            await transport.send(task)

    assert receipt.provider_message_id == "99"
    assert seen[0].headers["Authorization"] == "key=srv"
    assert json.loads(seen[0].content)["registration_ids"] == ["a", "b"]


@pytest.mark.asyncio
async def test_push_onesignal_targets_player_ids() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "os-1", "recipients": 1})

    async with _client(handler) as client:
        transport = PushTransport(provider="onesignal", onesignal_app_id="app", onesignal_api_key="key", client=client)
        receipt = await transport.send(_task(Channel.PUSH, {"device_tokens": ["p1"]}))

    assert receipt.provider_message_id == "os-1"
    assert json.loads(seen[0].content)["include_player_ids"] == ["p1"]


@pytest.mark.asyncio
async def test_push_without_tokens_is_permanent() -> None:
    with pytest.raises(TransportPermanentError):
        await PushTransport().send(_task(Channel.PUSH, {"device_tokens": []}))


@pytest.mark.asyncio
async def test_email_sends_message_and_returns_message_id() -> None:
    smtp = FakeSmtp()
    transport = EmailTransport(
        host="smtp.example.com",
        port=587,
        mail_from="noreply@example.com",
        username="user",
        password="pass",
        smtp_factory=lambda: smtp,
    )

    receipt = await transport.send(
        _task(Channel.EMAIL, {"email": "user@example.com", "title": "Invoice", "message": "Ready"}, priority=Priority.HIGH)
    )

    assert smtp.logins == [("user", "pass")]
    message = smtp.sent[0]
    assert message["To"] == "user@example.com"
    assert message["Subject"] == "Invoice"
    assert message["X-Priority"] == "1"
    assert receipt.provider_message_id == message["Message-ID"]
    assert "example.com" in receipt.provider_message_id


@pytest.mark.asyncio
async def test_email_invalid_address_is_permanent() -> None:
    transport = EmailTransport(host="h", port=25, mail_from="a@b.co", smtp_factory=FakeSmtp)
    with pytest.raises(TransportPermanentError) as exc_info:
        await transport.send(_task(Channel.EMAIL, {"email": "not-an-address"}))
    assert exc_info.value.reason == "invalid_recipient"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (aiosmtplib.SMTPRecipientsRefused([]), TransportPermanentError),
        (aiosmtplib.SMTPResponseException(550, "mailbox unavailable"), TransportPermanentError),
        (aiosmtplib.SMTPResponseException(451, "try again later"), TransportError),
        (aiosmtplib.SMTPServerDisconnected("gone"), TransportError),
        (ConnectionRefusedError("refused"), TransportError),
    ],
)
async def test_email_smtp_errors_are_classified(error: Exception, expected: type[Exception]) -> None:
    transport = EmailTransport(
        host="h", port=25, mail_from="a@b.co", smtp_factory=lambda: FakeSmtp(raise_on_send=error)
    )
    with pytest.raises(expected):
        await transport.send(_task(Channel.EMAIL, {"email": "user@example.com"}))


@pytest.mark.asyncio
async def test_email_partial_refusal_is_permanent() -> None:
    smtp = FakeSmtp(errors={"user@example.com": (550, "no such user")})
    transport = EmailTransport(host="h", port=25, mail_from="a@b.co", smtp_factory=lambda: smtp)
    with pytest.raises(TransportPermanentError):
        await transport.send(_task(Channel.EMAIL, {"email": "user@example.com"}))


@pytest.mark.asyncio
async def test_in_app_publishes_on_tenant_channel() -> None:
    publisher = RecordingPublisher(receivers=2)
    transport = InAppTransport(publisher, channel_prefix="nh:inapp", clock=FakeClock(NOW))

    receipt = await transport.send(_task(Channel.IN_APP, {"title": "Hi", "message": "there", "user_id": "u-1"}))

    channel, raw = publisher.published[0]
    assert channel == "nh:inapp:tenant-a"
    body = json.loads(raw)
    assert body["title"] == "Hi"
    assert body["user_id"] == "u-1"
    assert body["sent_at"] == NOW.isoformat()
    assert receipt.raw == {"receivers": 2}


@pytest.mark.asyncio
async def test_in_app_publish_failure_is_transient() -> None:
    with pytest.raises(TransportError):
        await InAppTransport(None, channel_prefix="p").send(_task(Channel.IN_APP, {}))
    broken = RecordingPublisher(error=RedisConnectionError("down"))
    with pytest.raises(TransportError):
        await InAppTransport(broken, channel_prefix="p").send(_task(Channel.IN_APP, {}))


@pytest.mark.asyncio
async def test_in_process_publisher_fans_out_to_subscribers() -> None:
    publisher = InProcessPublisher()
    inbox = publisher.subscribe("nh:inapp:tenant-a")

    receipt = await InAppTransport(publisher, channel_prefix="nh:inapp").send(_task(Channel.IN_APP, {"title": "Hi"}))

    assert receipt.raw == {"receivers": 1}
    assert json.loads(inbox.get_nowait())["title"] == "Hi"
    publisher.unsubscribe("nh:inapp:tenant-a", inbox)
    assert await publisher.publish("nh:inapp:tenant-a", "x") == 0
