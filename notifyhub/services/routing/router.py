from __future__ import annotations

from typing import Any, Mapping

from notifyhub.domain.delivery import (
    CHANNEL_ORDER,
    Channel,
    ChannelDispatch,
    NotificationEvent,
    Priority,
    queue_name_for,
)
from notifyhub.services.routing.policy import ChannelPolicy, validate_policy


_TRUE_STRINGS = {"1", "true", "yes", "on"}


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _has_text(payload: Mapping[str, Any], key: str) -> bool:
    value = payload.get(key)
    return isinstance(value, str) and bool(value.strip())


def _parse_priority(value: Any) -> Priority | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return Priority(value.strip().lower())
    except ValueError:
        return None


def channel_gate_open(channel: Channel, payload: Mapping[str, Any], policy: ChannelPolicy) -> bool:
    # Payload flags decide whether a channel can be delivered at all.
    if channel == Channel.IN_APP:
        return True
    if channel == Channel.EMAIL:
        return _truthy(payload.get("send_email")) and _has_text(payload, "email")
    if channel == Channel.PUSH:
        tokens = payload.get("device_tokens")
        return isinstance(tokens, (list, tuple)) and any(tokens)
    if channel == Channel.SMS:
        return _has_text(payload, "phone_number")
    if channel == Channel.WHATSAPP:
        if not (_has_text(payload, "session_name") and _has_text(payload, "phone_number")):
            return False
        # Chat replies go out only when an agent wrote them.
        sender_type = payload.get("sender_type")
        return sender_type is None or sender_type == "agent"
    if channel == Channel.WEBHOOK:
        return _has_text(payload, "webhook_url") or bool(policy.webhook_url)
    return False


def _type_allowed(channel: Channel, notification_type: str, policy: ChannelPolicy) -> bool:
    if channel == Channel.IN_APP:
        return True
    allowed = policy.allowed_types.get(channel.value)
    if not allowed:
        return True
    return notification_type.strip().lower() in allowed


def route(event: NotificationEvent, policy: ChannelPolicy, *, queue_prefix: str) -> list[ChannelDispatch]:
    """Compute the ordered channel dispatches for one event under one policy.

    Pure: the same inputs always produce the same list, and nothing is read or
    written outside the arguments. ``in_app`` is always first. Raises
    ``PolicyError`` when the policy is misconfigured.
    """
    validate_policy(policy)
    enabled = set(policy.enabled_channels)
    if event.channels is not None:
        requested = {channel.strip().lower() for channel in event.channels}
    else:
        requested = set(enabled)
    hint = _parse_priority(event.priority_hint)
    dispatches: list[ChannelDispatch] = []
    for channel in CHANNEL_ORDER:
        if channel != Channel.IN_APP:
            if channel.value not in requested or channel.value not in enabled:
                continue
            if not _type_allowed(channel, event.notification_type, policy):
                continue
            if not channel_gate_open(channel, event.payload, policy):
                continue
        if hint is not None:
            priority = hint
        elif channel.value in policy.channel_priorities:
            priority = Priority(policy.channel_priorities[channel.value])
        else:
            priority = Priority(policy.priority)
        dispatches.append(
            ChannelDispatch(
                channel=channel,
                priority=priority,
                queue_name=queue_name_for(queue_prefix, channel, priority),
                delay_ms=max(0, int(event.channel_delays_ms.get(channel.value, 0))),
            )
        )
    return dispatches
