from __future__ import annotations

from typing import Any
from uuid import uuid4

import httpx

from notifyhub.core.clock import Clock, utc_now
from notifyhub.core.errors import TransportError, TransportPermanentError
from notifyhub.domain.delivery import DeliveryTask, TransportReceipt
from notifyhub.services.transports.base import HttpTransport, response_json


FCM_URL = "https://fcm.googleapis.com/fcm/send"
ONESIGNAL_URL = "https://onesignal.com/api/v1/notifications"
PUSH_PROVIDERS = ("fcm", "onesignal", "mock")


def _push_data(task: DeliveryTask) -> dict[str, Any]:
    data = task.payload.get("data")
    merged = dict(data) if isinstance(data, dict) else {}
    merged.update(
        {
            "tenant_id": task.tenant_id,
            "notification_id": task.message_id,
            "type": task.notification_type,
        }
    )
    return merged


class PushTransport(HttpTransport):
    """Send push notifications through FCM, OneSignal or a local mock provider."""

    def __init__(
        self,
        *,
        provider: str = "mock",
        fcm_server_key: str | None = None,
        onesignal_app_id: str | None = None,
        onesignal_api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 10.0,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(client=client, timeout_s=timeout_s)
        self._provider = provider.strip().lower()
        if self._provider not in PUSH_PROVIDERS:
            raise ValueError(f"unsupported push provider: {provider}")
        self._fcm_server_key = fcm_server_key
        self._onesignal_app_id = onesignal_app_id
        self._onesignal_api_key = onesignal_api_key
        self._clock = clock or utc_now

    async def send(self, task: DeliveryTask) -> TransportReceipt:
        tokens = [str(token) for token in task.payload.get("device_tokens") or [] if token]
        if not tokens:
            raise TransportPermanentError("device_tokens is empty", reason="invalid_recipient")
        title = str(task.payload.get("title") or task.notification_type)
        body = str(task.payload.get("message") or task.payload.get("body") or "")
        if self._provider == "fcm":
            provider_id, raw = await self._send_fcm(tokens, title, body, _push_data(task))
        elif self._provider == "onesignal":
            provider_id, raw = await self._send_onesignal(tokens, title, body, _push_data(task))
        else:
            provider_id = f"mock-{uuid4().hex[:12]}"
            raw = {"success_count": len(tokens), "failure_count": 0}
        return TransportReceipt(
            provider_message_id=provider_id,
            provider_timestamp=self._clock().isoformat(),
            raw={"provider": self._provider, **raw},
        )

    async def _send_fcm(
        self, tokens: list[str], title: str, body: str, data: dict[str, Any]
    ) -> tuple[str | None, dict[str, Any]]:
        if not self._fcm_server_key:
            raise TransportPermanentError("fcm server key missing", reason="misconfiguration")
        response = await self._post(
            FCM_URL,
            provider="fcm",
            json={
                "registration_ids": tokens,
                "notification": {"title": title, "body": body, "sound": "default"},
                "data": data,
                "android": {"priority": "high"},
            },
            headers={"Authorization": f"key={self._fcm_server_key}"},
        )
        payload = response_json(response)
        success_count = int(payload.get("success") or 0)
        failure_count = int(payload.get("failure") or 0)
        if success_count <= 0:
            # Every token failed; FCM still answers 200.
            raise TransportError(f"fcm delivered to no devices (failure={failure_count})", reason="fcm_no_success")
        multicast_id = payload.get("multicast_id")
        return (
            str(multicast_id) if multicast_id is not None else None,
            {"success_count": success_count, "failure_count": failure_count},
        )

    async def _send_onesignal(
        self, tokens: list[str], title: str, body: str, data: dict[str, Any]
    ) -> tuple[str | None, dict[str, Any]]:
        if not (self._onesignal_app_id and self._onesignal_api_key):
            raise TransportPermanentError("onesignal credentials missing", reason="misconfiguration")
        response = await self._post(
            ONESIGNAL_URL,
            provider="onesignal",
            json={
                "app_id": self._onesignal_app_id,
                "include_player_ids": tokens,
                "headings": {"en": title},
                "contents": {"en": body},
                "data": data,
            },
            headers={"Authorization": f"Basic {self._onesignal_api_key}"},
        )
        payload = response_json(response)
        recipients = int(payload.get("recipients") or 0)
        return payload.get("id"), {"success_count": recipients, "failure_count": max(0, len(tokens) - recipients)}
