from __future__ import annotations

import re
from uuid import uuid4

import httpx

from notifyhub.core.clock import Clock, utc_now
from notifyhub.core.errors import TransportError, TransportPermanentError
from notifyhub.domain.delivery import DeliveryTask, TransportReceipt
from notifyhub.services.transports.base import HttpTransport, response_json


TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
NEXMO_URL = "https://rest.nexmo.com/sms/json"
SMS_PROVIDERS = ("twilio", "nexmo", "mock")


def format_phone_number(phone_number: str) -> str:
    # E.164-ish: digits only, North American numbers get the leading 1.
    cleaned = re.sub(r"[^0-9]", "", phone_number)
    if not cleaned:
        raise TransportPermanentError("phone_number has no digits", reason="invalid_recipient")
    if len(cleaned) == 10 and not cleaned.startswith("1"):
        cleaned = f"1{cleaned}"
    return f"+{cleaned}"


def format_sms_text(task: DeliveryTask, *, max_length: int = 160) -> str:
    payload = task.payload
    text = str(payload.get("title") or "")
    body = payload.get("message") or payload.get("body")
    if body:
        text = f"{text}\n\n{body}" if text else str(body)
    if len(text) > max_length:
        text = text[: max_length - 3] + "..."
    return text


class SmsTransport(HttpTransport):
    """Send SMS through Twilio, Nexmo or a local mock provider."""

    def __init__(
        self,
        *,
        provider: str = "mock",
        sender: str = "notifyhub",
        max_length: int = 160,
        twilio_account_sid: str | None = None,
        twilio_auth_token: str | None = None,
        twilio_from_number: str | None = None,
        nexmo_api_key: str | None = None,
        nexmo_api_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 10.0,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(client=client, timeout_s=timeout_s)
        self._provider = provider.strip().lower()
        if self._provider not in SMS_PROVIDERS:
            raise ValueError(f"unsupported sms provider: {provider}")
        self._sender = sender
        self._max_length = max(4, int(max_length))
        self._twilio_account_sid = twilio_account_sid
        self._twilio_auth_token = twilio_auth_token
        self._twilio_from_number = twilio_from_number
        self._nexmo_api_key = nexmo_api_key
        self._nexmo_api_secret = nexmo_api_secret
        self._clock = clock or utc_now

    @property
    def provider(self) -> str:
        return self._provider

    async def send(self, task: DeliveryTask) -> TransportReceipt:
        phone_number = task.payload.get("phone_number")
        if not isinstance(phone_number, str) or not phone_number.strip():
            raise TransportPermanentError("phone_number is missing", reason="invalid_recipient")
        to = format_phone_number(phone_number)
        text = format_sms_text(task, max_length=self._max_length)
        if self._provider == "twilio":
            provider_id = await self._send_twilio(to, text)
        elif self._provider == "nexmo":
            provider_id = await self._send_nexmo(to, text)
        else:
            provider_id = f"mock-{uuid4().hex[:12]}"
        return TransportReceipt(
            provider_message_id=provider_id,
            provider_timestamp=self._clock().isoformat(),
            raw={"provider": self._provider, "to": to},
        )

    async def _send_twilio(self, to: str, text: str) -> str | None:
        if not (self._twilio_account_sid and self._twilio_auth_token and self._twilio_from_number):
            raise TransportPermanentError("twilio credentials missing", reason="misconfiguration")
        response = await self._post(
            TWILIO_URL.format(account_sid=self._twilio_account_sid),
            provider="twilio",
            data={"From": self._twilio_from_number, "To": to, "Body": text},
            auth=(self._twilio_account_sid, self._twilio_auth_token),
        )
        return response_json(response).get("sid")

    async def _send_nexmo(self, to: str, text: str) -> str | None:
        if not (self._nexmo_api_key and self._nexmo_api_secret):
            raise TransportPermanentError("nexmo credentials missing", reason="misconfiguration")
        response = await self._post(
            NEXMO_URL,
            provider="nexmo",
            json={
                "api_key": self._nexmo_api_key,
                "api_secret": self._nexmo_api_secret,
                "from": self._sender,
                "to": to,
                "text": text,
            },
        )
        messages = response_json(response).get("messages") or []
        first = messages[0] if messages and isinstance(messages[0], dict) else {}
        if str(first.get("status")) != "0":
            # Nexmo reports per-message failures inside a 200 response.
            raise TransportError(
                f"nexmo rejected message: {first.get('error-text') or 'unknown error'}",
                reason=f"nexmo_status_{first.get('status')}",
            )
        return first.get("message-id")
