from __future__ import annotations

import logging
from typing import Any, Protocol

from notifyhub.core.logging import format_fields
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger("notifyhub.delivery")

EVENT_STATE_CHANGED = "delivery.state_changed"
EVENT_ADMISSION_REJECTED = "delivery.admission_rejected"
EVENT_ABANDONED = "delivery.abandoned"
EVENT_ENQUEUE_DEGRADED = "delivery.enqueue_degraded"
EVENT_RATE_LIMITED = "delivery.rate_limited"
EVENT_STORE_DEGRADED = "dedup.store_degraded"
EVENT_STORE_UNAVAILABLE = "dedup.store_unavailable"
EVENT_POLICY_REJECTED = "routing.policy_rejected"
EVENT_TEMPLATE_REJECTED = "intake.template_rejected"
EVENT_DUPLICATE_EVENT = "intake.duplicate"

_WARNING_EVENTS = {
    EVENT_ADMISSION_REJECTED,
    EVENT_ENQUEUE_DEGRADED,
    EVENT_RATE_LIMITED,
    EVENT_STORE_DEGRADED,
    EVENT_DUPLICATE_EVENT,
    EVENT_TEMPLATE_REJECTED,
}
_ERROR_EVENTS = {EVENT_ABANDONED, EVENT_STORE_UNAVAILABLE, EVENT_POLICY_REJECTED}


class ObservabilitySink(Protocol):
    def emit(self, event_type: str, **fields: Any) -> None: ...


class LoggingSink:
    # Emit one structured log line and one counter bump per event.
    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def emit(self, event_type: str, **fields: Any) -> None:
        increment_counter(event_type)
        channel = fields.get("channel")
        if channel:
            increment_counter(f"{event_type}.{channel}")
        status = fields.get("to_status")
        if event_type == EVENT_STATE_CHANGED and status:
            increment_counter(f"delivery.status.{status}")
        if event_type in _ERROR_EVENTS:
            level = logging.ERROR
        elif event_type in _WARNING_EVENTS:
            level = logging.WARNING
        else:
            level = logging.INFO
        self._log.log(level, "%s %s", event_type, format_fields(fields))
