from __future__ import annotations

import re
from typing import Any

import httpx

from notifyhub.core.clock import Clock, utc_now
from notifyhub.core.errors import TransportError, TransportPermanentError
from notifyhub.domain.delivery import DeliveryTask, TransportReceipt
from notifyhub.services.transports.base import post_json, response_json


SEND_TEXT_PATH = "/api/sendText"
SEND_TEXT_SESSION_PATH = "/api/sessions/{session}/sendText"


def normalize_phone_number(phone_number: str, *, default_country_code: str = "62") -> str:
    # Digits with country code; a leading trunk 0 is replaced by the default country code.
    digits = re.sub(r"[^0-9]", "", phone_number)
    if not digits:
        raise TransportPermanentError("phone_number has no digits", reason="invalid_recipient")
    if phone_number.strip().startswith("+") or digits.startswith(default_country_code):
        return digits
    return f"{default_country_code}{digits.lstrip('0')}"


def chat_id_for(phone_number: str, *, default_country_code: str = "62") -> str:
    if phone_number.endswith(("@c.us", "@g.us")):
        return phone_number
    return f"{normalize_phone_number(phone_number, default_country_code=default_country_code)}@c.us"


def extract_message_id(payload: dict[str, Any]) -> str | None:
    # WAHA nests the serialized id differently across engines.
    candidates = (
        (payload.get("id") or {}).get("_serialized") if isinstance(payload.get("id"), dict) else None,
        ((payload.get("_data") or {}).get("id") or {}).get("_serialized")
        if isinstance(payload.get("_data"), dict) and isinstance(payload["_data"].get("id"), dict)
        else None,
        payload.get("id") if isinstance(payload.get("id"), str) else None,
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


class WhatsAppTransport:
    """Send WhatsApp text messages through a WAHA HTTP API server."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        default_country_code: str = "62",
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 10.0,
        clock: Clock | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._default_country_code = default_country_code
        self._client = client
        self._timeout_s = timeout_s
        self._clock = clock or utc_now

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["X-Api-Key"] = self._api_key
        return headers

    def build_payload(self, task: DeliveryTask) -> dict[str, Any]:
        payload = task.payload
        session = payload.get("session_name")
        phone_number = payload.get("phone_number")
        if not isinstance(session, str) or not session.strip():
            raise TransportPermanentError("session_name is missing", reason="invalid_recipient")
        if not isinstance(phone_number, str) or not phone_number.strip():
            raise TransportPermanentError("phone_number is missing", reason="invalid_recipient")
        text = payload.get("text") or payload.get("message") or payload.get("body")
        if not isinstance(text, str) or not text.strip():
            raise TransportPermanentError("message text is empty", reason="empty_message")
        body: dict[str, Any] = {
            "chatId": chat_id_for(phone_number.strip(), default_country_code=self._default_country_code),
            "text": text,
            "session": session.strip(),
            "linkPreview": bool(payload.get("link_preview", True)),
        }
        if payload.get("reply_to"):
            body["reply_to"] = payload["reply_to"]
        return body

    async def _send(self, client: httpx.AsyncClient, body: dict[str, Any]) -> httpx.Response:
        try:
            return await post_json(
                client, f"{self._base_url}{SEND_TEXT_PATH}", provider="waha", json=body, headers=self._headers()
            )
        except TransportPermanentError as exc:
            if exc.reason != "http_404":
                raise
        # Older WAHA builds only expose the session-scoped route.
        fallback = SEND_TEXT_SESSION_PATH.format(session=body["session"])
        return await post_json(client, f"{self._base_url}{fallback}", provider="waha", json=body, headers=self._headers())

    async def send(self, task: DeliveryTask) -> TransportReceipt:
        body = self.build_payload(task)
        if self._client is not None:
            response = await self._send(self._client, body)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await self._send(client, body)
        data = response_json(response)
        message_id = extract_message_id(data)
        if message_id is None:
            raise TransportError("waha response carried no message id", reason="missing_message_id")
        timestamp = data.get("timestamp")
        return TransportReceipt(
            provider_message_id=message_id,
            provider_timestamp=str(timestamp) if timestamp is not None else self._clock().isoformat(),
            raw={"chat_id": body["chatId"], "session": body["session"]},
        )
