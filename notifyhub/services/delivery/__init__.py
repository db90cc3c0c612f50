from notifyhub.services.delivery.dispatcher import DeliveryDispatcher, DeliveryOutcome, retry_backoff_ms
from notifyhub.services.delivery.queue import ArqWorkQueue, InlineWorkQueue, WorkQueue
from notifyhub.services.delivery.store import InMemoryTaskStore, TaskStore

__all__ = [
    "DeliveryDispatcher",
    "DeliveryOutcome",
    "retry_backoff_ms",
    "ArqWorkQueue",
    "InlineWorkQueue",
    "WorkQueue",
    "InMemoryTaskStore",
    "TaskStore",
]
