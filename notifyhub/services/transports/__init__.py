from __future__ import annotations

from typing import Mapping

from redis.asyncio import Redis

from notifyhub.core.config import Settings
from notifyhub.domain.delivery import Channel
from notifyhub.services.transports.base import Transport
from notifyhub.services.transports.email import EmailTransport
from notifyhub.services.transports.in_app import InAppTransport, InProcessPublisher
from notifyhub.services.transports.push import PushTransport
from notifyhub.services.transports.sms import SmsTransport
from notifyhub.services.transports.webhook import WebhookTransport
from notifyhub.services.transports.whatsapp import WhatsAppTransport


class TransportRegistry:
    def __init__(self, transports: Mapping[Channel, Transport]) -> None:
        self._transports = dict(transports)

    def get(self, channel: Channel) -> Transport:
        transport = self._transports.get(channel)
        if transport is None:
            raise KeyError(f"no transport registered for channel {channel.value}")
        return transport

    def channels(self) -> list[Channel]:
        return list(self._transports)


def build_transports(settings: Settings, *, redis: Redis | None) -> TransportRegistry:
    # Wire every channel transport from settings; in-app uses Redis pub/sub, or in-process fanout without Redis.
    timeout_s = max(0.2, settings.transport_timeout_ms / 1000.0)
    return TransportRegistry(
        {
            Channel.IN_APP: InAppTransport(
                redis if redis is not None else InProcessPublisher(),
                channel_prefix=settings.in_app_channel_prefix,
            ),
            Channel.EMAIL: EmailTransport(
                host=settings.smtp_host,
                port=settings.smtp_port,
                mail_from=settings.mail_from,
                username=settings.smtp_username,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
                start_tls=settings.smtp_start_tls,
                timeout_s=timeout_s,
            ),
            Channel.WEBHOOK: WebhookTransport(
                default_url=settings.webhook_default_url,
                signing_secret=settings.webhook_signing_secret,
                timeout_s=timeout_s,
            ),
            Channel.SMS: SmsTransport(
                provider=settings.sms_provider,
                sender=settings.sms_from,
                max_length=settings.sms_max_length,
                twilio_account_sid=settings.twilio_account_sid,
                twilio_auth_token=settings.twilio_auth_token,
                twilio_from_number=settings.twilio_from_number,
                nexmo_api_key=settings.nexmo_api_key,
                nexmo_api_secret=settings.nexmo_api_secret,
                timeout_s=timeout_s,
            ),
            Channel.PUSH: PushTransport(
                provider=settings.push_provider,
                fcm_server_key=settings.fcm_server_key,
                onesignal_app_id=settings.onesignal_app_id,
                onesignal_api_key=settings.onesignal_api_key,
                timeout_s=timeout_s,
            ),
            Channel.WHATSAPP: WhatsAppTransport(
                base_url=settings.waha_base_url,
                api_key=settings.waha_api_key,
                default_country_code=settings.waha_default_country_code,
                timeout_s=timeout_s,
            ),
        }
    )


__all__ = [
    "Transport",
    "TransportRegistry",
    "build_transports",
    "EmailTransport",
    "InAppTransport",
    "InProcessPublisher",
    "PushTransport",
    "SmsTransport",
    "WebhookTransport",
    "WhatsAppTransport",
]
