from __future__ import annotations


class NotifyHubError(Exception):
    """Base error for notifyhub."""


class AdmissionRejected(NotifyHubError):
    """Delivery key is already leased; the caller treats the work as a duplicate."""

    def __init__(self, key: str) -> None:
        super().__init__(f"delivery key already leased: {key}")
        self.key = key


class DeliveryError(NotifyHubError):
    """Base error for a failed transport call."""


class TransportError(DeliveryError):
    """Transient transport failure; eligible for retry."""

    def __init__(self, message: str, *, reason: str = "transport_error") -> None:
        super().__init__(message)
        self.reason = reason


class TransportPermanentError(DeliveryError):
    """Permanent transport failure such as an invalid recipient; never retried."""

    def __init__(self, message: str, *, reason: str = "permanent") -> None:
        super().__init__(message)
        self.reason = reason


class PolicyError(NotifyHubError):
    """Channel policy is misconfigured; the event is rejected before enqueue."""


class StoreUnavailable(NotifyHubError):
    """Lock store or work queue is unreachable."""


class TaskNotFoundError(NotifyHubError):
    """Delivery task does not exist."""


class InvalidTaskStateError(NotifyHubError):
    """Requested operation is not valid for the task's current status."""


class UnsupportedEventError(NotifyHubError):
    """Upstream event type has no registered handler."""


class ScheduleError(NotifyHubError):
    """Scheduled send time is malformed or already in the past."""


class TemplateError(NotifyHubError):
    """Notification template is unknown, misconfigured or missing required variables."""

    def __init__(self, message: str, *, template: str | None = None, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.template = template
        self.missing = list(missing or [])
