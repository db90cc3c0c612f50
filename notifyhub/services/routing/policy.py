from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
import json
from typing import Any, Mapping, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notifyhub.core.config import Settings
from notifyhub.core.errors import PolicyError
from notifyhub.domain.delivery import Channel, Priority


_BACKOFF_STRATEGIES = {"exponential", "fixed"}


@dataclass(frozen=True)
class QuietHours:
    start: time
    end: time
    timezone: str = "UTC"

    def window_end(self, now: datetime) -> datetime | None:
        # Return when the current quiet window closes, or None outside quiet hours.
        try:
            zone = ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError as exc:
            raise PolicyError(f"quiet_hours.timezone is unknown: {self.timezone}") from exc
        local = now.astimezone(zone)
        current = local.time()
        if self.start == self.end:
            return None
        if self.start < self.end:
            if not (self.start <= current < self.end):
                return None
            end_date = local.date()
        else:
            # Window wraps midnight, e.g. 22:00-08:00.
            if self.end <= current < self.start:
                return None
            end_date = local.date() if current < self.end else local.date() + timedelta(days=1)
        end_local = datetime.combine(end_date, self.end, tzinfo=zone)
        return end_local.astimezone(now.tzinfo)


@dataclass(frozen=True)
class ChannelPolicy:
    enabled_channels: tuple[str, ...] = (Channel.IN_APP.value,)
    priority: str = Priority.NORMAL.value
    retry_budget: int = 3
    # Max deliveries per tenant per channel per hour; absent means unlimited.
    rate_limits: Mapping[str, int] = field(default_factory=dict)
    # Notification types allowed per channel; absent or empty allows all.
    allowed_types: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    channel_priorities: Mapping[str, str] = field(default_factory=dict)
    quiet_hours: QuietHours | None = None
    backoff_strategy: str = "exponential"
    backoff_ms: int = 1000
    webhook_url: str | None = None
    # Template rendered for events that do not name one.
    template: str | None = None


def validate_policy(policy: ChannelPolicy) -> None:
    # Reject misconfigured policies before anything is enqueued.
    known_channels = {channel.value for channel in Channel}
    known_priorities = {priority.value for priority in Priority}
    for channel in policy.enabled_channels:
        if channel not in known_channels:
            raise PolicyError(f"enabled_channels contains unknown channel: {channel}")
    if policy.priority not in known_priorities:
        raise PolicyError(f"priority is unknown: {policy.priority}")
    if int(policy.retry_budget) < 1:
        raise PolicyError("retry_budget must be at least 1")
    for channel, limit in policy.rate_limits.items():
        if channel not in known_channels:
            raise PolicyError(f"rate_limits contains unknown channel: {channel}")
        if int(limit) < 0:
            raise PolicyError(f"rate_limits.{channel} must not be negative")
    for channel in policy.allowed_types:
        if channel not in known_channels:
            raise PolicyError(f"allowed_types contains unknown channel: {channel}")
    for channel, priority in policy.channel_priorities.items():
        if channel not in known_channels:
            raise PolicyError(f"channel_priorities contains unknown channel: {channel}")
        if priority not in known_priorities:
            raise PolicyError(f"channel_priorities.{channel} is unknown: {priority}")
    if policy.backoff_strategy not in _BACKOFF_STRATEGIES:
        raise PolicyError(f"backoff_strategy is unknown: {policy.backoff_strategy}")
    if int(policy.backoff_ms) < 0:
        raise PolicyError("backoff_ms must not be negative")
    if policy.template is not None and not (isinstance(policy.template, str) and policy.template.strip()):
        raise PolicyError("template must be a non-empty name")


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())


def _parse_time(value: Any, field_name: str) -> time:
    if not isinstance(value, str):
        raise PolicyError(f"quiet_hours.{field_name} must be HH:MM")
    try:
        return time.fromisoformat(value.strip())
    except ValueError as exc:
        raise PolicyError(f"quiet_hours.{field_name} must be HH:MM") from exc


def _parse_quiet_hours(raw: Any) -> QuietHours | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise PolicyError("quiet_hours must be an object")
    if not raw.get("enabled", True):
        return None
    return QuietHours(
        start=_parse_time(raw.get("start", "22:00"), "start"),
        end=_parse_time(raw.get("end", "08:00"), "end"),
        timezone=str(raw.get("timezone") or "UTC"),
    )


def policy_from_dict(raw: Mapping[str, Any], *, defaults: ChannelPolicy) -> ChannelPolicy:
    # Structural parsing only; value checks happen in validate_policy at routing time.
    if not isinstance(raw, Mapping):
        raise PolicyError("channel policy must be an object")
    channels = raw.get("enabled_channels", defaults.enabled_channels)
    if isinstance(channels, str):
        channels = _split_csv(channels)
    if not isinstance(channels, (list, tuple)):
        raise PolicyError("enabled_channels must be a list")
    allowed_types_raw = raw.get("allowed_types", defaults.allowed_types)
    if not isinstance(allowed_types_raw, Mapping):
        raise PolicyError("allowed_types must be an object")
    allowed_types = {
        str(channel).strip().lower(): tuple(str(item).strip().lower() for item in (types or []))
        for channel, types in allowed_types_raw.items()
    }
    rate_limits_raw = raw.get("rate_limits", defaults.rate_limits)
    if not isinstance(rate_limits_raw, Mapping):
        raise PolicyError("rate_limits must be an object")
    channel_priorities_raw = raw.get("channel_priorities", defaults.channel_priorities)
    if not isinstance(channel_priorities_raw, Mapping):
        raise PolicyError("channel_priorities must be an object")
    try:
        rate_limits = {str(channel).strip().lower(): int(limit) for channel, limit in rate_limits_raw.items()}
        retry_budget = int(raw.get("retry_budget", defaults.retry_budget))
        backoff_ms = int(raw.get("backoff_ms", defaults.backoff_ms))
    except (TypeError, ValueError) as exc:
        raise PolicyError(f"channel policy has a non-integer field: {exc}") from exc
    quiet_hours = _parse_quiet_hours(raw["quiet_hours"]) if "quiet_hours" in raw else defaults.quiet_hours
    return ChannelPolicy(
        enabled_channels=tuple(str(channel).strip().lower() for channel in channels),
        priority=str(raw.get("priority", defaults.priority)).strip().lower(),
        retry_budget=retry_budget,
        rate_limits=rate_limits,
        allowed_types=allowed_types,
        channel_priorities={
            str(channel).strip().lower(): str(priority).strip().lower()
            for channel, priority in channel_priorities_raw.items()
        },
        quiet_hours=quiet_hours,
        backoff_strategy=str(raw.get("backoff_strategy", defaults.backoff_strategy)).strip().lower(),
        backoff_ms=backoff_ms,
        webhook_url=raw.get("webhook_url", defaults.webhook_url),
        template=raw.get("template", defaults.template),
    )


def default_policy(settings: Settings) -> ChannelPolicy:
    return ChannelPolicy(
        enabled_channels=_split_csv(settings.default_enabled_channels) or (Channel.IN_APP.value,),
        priority=settings.default_priority.strip().lower(),
        retry_budget=settings.delivery_retry_budget,
        backoff_strategy=settings.delivery_backoff_strategy.strip().lower(),
        backoff_ms=settings.delivery_backoff_ms,
        webhook_url=settings.webhook_default_url,
    )


class PolicyProvider(Protocol):
    def get_policy(self, tenant_id: str, notification_type: str) -> ChannelPolicy: ...


class StaticPolicyProvider:
    """Policies from configuration, resolved most-specific first.

    Lookup order: ``tenant:type``, ``tenant:*``, ``*:type``, ``*:*``, then the default.
    """

    def __init__(self, policies: Mapping[str, ChannelPolicy], *, default: ChannelPolicy) -> None:
        self._policies = dict(policies)
        self._default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> "StaticPolicyProvider":
        defaults = default_policy(settings)
        try:
            raw = json.loads(settings.channel_policies_json or "{}")
        except json.JSONDecodeError as exc:
            raise PolicyError("channel_policies_json is not valid JSON") from exc
        if not isinstance(raw, dict):
            raise PolicyError("channel_policies_json must be an object")
        policies: dict[str, ChannelPolicy] = {}
        # The "*:*" entry is the base every narrower scope inherits unset fields from.
        if "*:*" in raw:
            defaults = policy_from_dict(raw["*:*"], defaults=defaults)
        for scope, value in raw.items():
            scope_key = str(scope).strip().lower()
            policies[scope_key] = defaults if scope_key == "*:*" else policy_from_dict(value, defaults=defaults)
        return cls(policies, default=defaults)

    def get_policy(self, tenant_id: str, notification_type: str) -> ChannelPolicy:
        tenant = tenant_id.strip().lower()
        ntype = notification_type.strip().lower()
        for scope in (f"{tenant}:{ntype}", f"{tenant}:*", f"*:{ntype}", "*:*"):
            policy = self._policies.get(scope)
            if policy is not None:
                return policy
        return self._default
