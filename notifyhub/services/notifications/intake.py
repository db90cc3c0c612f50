from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Mapping

from notifyhub.core.clock import Clock, utc_now
from notifyhub.core.config import Settings
from notifyhub.core.errors import PolicyError, TemplateError
from notifyhub.domain.delivery import DeliveryKey, NotificationEvent
from notifyhub.services.dedup import Admission, DedupGuard
from notifyhub.services.delivery.dispatcher import DeliveryDispatcher
from notifyhub.services.notifications.events import normalize_event
from notifyhub.services.notifications.templates import TemplateRegistry
from notifyhub.services.observability import (
    EVENT_DUPLICATE_EVENT,
    EVENT_POLICY_REJECTED,
    EVENT_TEMPLATE_REJECTED,
    ObservabilitySink,
)
from notifyhub.services.routing import PolicyProvider, route
from notifyhub.services.scheduling import require_future


logger = logging.getLogger(__name__)

INTAKE_CHANNEL = "intake"

STATUS_ACCEPTED = "accepted"
STATUS_DUPLICATE = "duplicate"
STATUS_REJECTED = "rejected"

REJECTED_POLICY = "POLICY_INVALID"
REJECTED_TEMPLATE = "TEMPLATE_INVALID"


@dataclass(frozen=True)
class IntakeResult:
    status: str
    tenant_id: str
    message_id: str
    task_ids: list[str] = field(default_factory=list)
    channels: list[str] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "tenant_id": self.tenant_id,
            "message_id": self.message_id,
            "task_ids": list(self.task_ids),
            "channels": list(self.channels),
            "error": self.error,
            "error_code": self.error_code,
        }


class IntakeService:
    """Entry point for upstream events: dedup, render, route, then one task per channel.

    The intake lease is kept for its TTL rather than released, so an upstream
    retry of the same event inside that window is dropped as a duplicate. Past
    the window, task creation is still idempotent on the delivery key. Any
    failure before the tasks exist releases the lease so a corrected retry
    goes through.
    """

    def __init__(
        self,
        *,
        guard: DedupGuard,
        policies: PolicyProvider,
        dispatcher: DeliveryDispatcher,
        settings: Settings,
        sink: ObservabilitySink,
        templates: TemplateRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._guard = guard
        self._policies = policies
        self._dispatcher = dispatcher
        self._settings = settings
        self._sink = sink
        self._templates = templates
        self._clock = clock or utc_now

    async def submit(self, event: NotificationEvent) -> IntakeResult:
        if event.scheduled_at is not None:
            # Raises ScheduleError before anything is leased or enqueued.
            require_future(event.scheduled_at, self._clock())
        key = DeliveryKey(event.tenant_id, event.message_id, INTAKE_CHANNEL)
        # Raises StoreUnavailable only when "intake" is configured as a fail-closed channel.
        admission = await self._guard.admit(key, float(self._settings.intake_lease_ttl_s))
        if not admission.admitted:
            self._sink.emit(
                EVENT_DUPLICATE_EVENT,
                key=key.render(),
                tenant_id=event.tenant_id,
                message_id=event.message_id,
            )
            return IntakeResult(status=STATUS_DUPLICATE, tenant_id=event.tenant_id, message_id=event.message_id)

        try:
            policy = self._policies.get_policy(event.tenant_id, event.notification_type)
            if self._templates is not None:
                event = self._templates.apply(event, default_template=policy.template)
            dispatches = route(event, policy, queue_prefix=self._settings.queue_prefix)
        except (PolicyError, TemplateError) as exc:
            self._sink.emit(
                EVENT_TEMPLATE_REJECTED if isinstance(exc, TemplateError) else EVENT_POLICY_REJECTED,
                tenant_id=event.tenant_id,
                message_id=event.message_id,
                notification_type=event.notification_type,
                error=str(exc),
            )
            # A corrected policy or template should be able to accept the same event again.
            await self._release(admission)
            return IntakeResult(
                status=STATUS_REJECTED,
                tenant_id=event.tenant_id,
                message_id=event.message_id,
                error=str(exc),
                error_code=REJECTED_TEMPLATE if isinstance(exc, TemplateError) else REJECTED_POLICY,
            )
        except BaseException:
            await self._release(admission)
            raise

        task_ids: list[str] = []
        try:
            for dispatch in dispatches:
                task_ids.append(await self._dispatcher.enqueue(dispatch, event, policy=policy))
        except BaseException:
            # Let the upstream retry through; tasks already created are deduplicated by key.
            await self._release(admission)
            raise
        logger.info(
            "event_accepted tenant_id=%s message_id=%s type=%s channels=%s scheduled_at=%s",
            event.tenant_id,
            event.message_id,
            event.notification_type,
            ",".join(dispatch.channel.value for dispatch in dispatches),
            event.scheduled_at.isoformat() if event.scheduled_at else None,
        )
        return IntakeResult(
            status=STATUS_ACCEPTED,
            tenant_id=event.tenant_id,
            message_id=event.message_id,
            task_ids=task_ids,
            channels=[dispatch.channel.value for dispatch in dispatches],
        )

    async def _release(self, admission: Admission) -> None:
        if admission.lease is not None:
            await self._guard.release(admission.lease)

    async def submit_raw(self, event_type: str, tenant_id: str, data: Mapping[str, Any]) -> IntakeResult:
        # Normalize through the event-type handler table, then submit.
        event = normalize_event(
            event_type,
            tenant_id,
            data,
            whatsapp_warmup_ms=self._settings.whatsapp_reply_warmup_ms,
        )
        return await self.submit(event)
