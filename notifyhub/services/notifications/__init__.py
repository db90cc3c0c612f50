from notifyhub.services.notifications.events import EVENT_HANDLERS, normalize_event
from notifyhub.services.notifications.intake import IntakeResult, IntakeService

__all__ = ["EVENT_HANDLERS", "normalize_event", "IntakeResult", "IntakeService"]
