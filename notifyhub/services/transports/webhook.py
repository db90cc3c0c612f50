from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import httpx

from notifyhub.core.clock import Clock, utc_now
from notifyhub.core.errors import TransportPermanentError
from notifyhub.domain.delivery import DeliveryTask, TransportReceipt
from notifyhub.services.transports.base import HttpTransport, response_json


HEADER_DELIVERY_ID = "X-Notification-Id"
HEADER_ATTEMPT = "X-Notification-Attempt"
HEADER_EVENT_TYPE = "X-Notification-Event-Type"
HEADER_TENANT_ID = "X-Notification-Tenant-Id"
HEADER_SIGNATURE = "X-Notification-Signature"
HEADER_PAYLOAD_SHA256 = "X-Notification-Payload-Sha256"


def serialize_payload(payload: dict[str, Any]) -> bytes:
    # Deterministic bytes so the signature is stable across retries.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode(
        "utf-8"
    )


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_webhook_body(task: DeliveryTask) -> dict[str, Any]:
    data = {key: value for key, value in task.payload.items() if key != "webhook_url"}
    return {
        "id": task.id,
        "type": task.notification_type,
        "tenant_id": task.tenant_id,
        "message_id": task.message_id,
        "priority": task.priority.value,
        "data": data,
    }


class WebhookTransport(HttpTransport):
    """POST a signed JSON envelope to the tenant's webhook URL."""

    def __init__(
        self,
        *,
        default_url: str | None = None,
        signing_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 10.0,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(client=client, timeout_s=timeout_s)
        self._default_url = default_url
        self._signing_secret = signing_secret
        self._clock = clock or utc_now

    def _resolve_url(self, task: DeliveryTask) -> str:
        url = task.payload.get("webhook_url") or self._default_url
        if not isinstance(url, str) or not url.strip():
            raise TransportPermanentError("webhook_url is missing", reason="missing_destination")
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            raise TransportPermanentError("webhook_url must start with http:// or https://", reason="invalid_destination")
        return url

    async def send(self, task: DeliveryTask) -> TransportReceipt:
        url = self._resolve_url(task)
        body = serialize_payload(build_webhook_body(task))
        headers = {
            "Content-Type": "application/json",
            HEADER_DELIVERY_ID: task.id,
            HEADER_ATTEMPT: str(task.attempt_count),
            HEADER_EVENT_TYPE: task.notification_type,
            HEADER_TENANT_ID: task.tenant_id,
            HEADER_PAYLOAD_SHA256: hashlib.sha256(body).hexdigest(),
        }
        if self._signing_secret:
            headers[HEADER_SIGNATURE] = compute_signature(body, self._signing_secret)
        response = await self._post(url, provider="webhook", content=body, headers=headers)
        data = response_json(response)
        provider_id = data.get("id") if isinstance(data.get("id"), str) else None
        return TransportReceipt(
            provider_message_id=provider_id or task.id,
            provider_timestamp=response.headers.get("date") or self._clock().isoformat(),
            raw={"status_code": int(response.status_code), "body_preview": response.text[:512]},
        )
