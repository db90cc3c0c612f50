from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import AsyncIterator, Iterable
from uuid import uuid4

from notifyhub.core.clock import Clock, utc_now
from notifyhub.core.errors import StoreUnavailable
from notifyhub.domain.delivery import DeliveryKey
from notifyhub.services.dedup.stores import LeaseStore
from notifyhub.services.observability import (
    EVENT_ADMISSION_REJECTED,
    EVENT_STORE_DEGRADED,
    EVENT_STORE_UNAVAILABLE,
    ObservabilitySink,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    key: str
    holder: str
    expires_at: datetime


@dataclass(frozen=True)
class Admission:
    admitted: bool
    lease: Lease | None = None
    # Admitted without a lease because the store was down on a fail-open channel.
    degraded: bool = False


def parse_channel_set(raw: str | Iterable[str]) -> frozenset[str]:
    if isinstance(raw, str):
        values = raw.split(",")
    else:
        values = list(raw)
    return frozenset(value.strip().lower() for value in values if value and value.strip())


class DedupGuard:
    """Exactly-once admission for delivery keys.

    ``admit`` claims a lease with set-if-absent-with-TTL. A second admission for the
    same key inside the TTL is rejected; the caller treats it as a duplicate. When
    the lease store is unreachable the guard fails closed for channels listed in
    ``fail_closed_channels`` (raising ``StoreUnavailable``) and fails open for the
    rest, admitting without a lease and reporting ``degraded=True``.
    """

    def __init__(
        self,
        store: LeaseStore,
        *,
        fail_closed_channels: Iterable[str] | str = (),
        default_ttl_s: float = 60.0,
        clock: Clock | None = None,
        sink: ObservabilitySink | None = None,
    ) -> None:
        self._store = store
        self._fail_closed = parse_channel_set(fail_closed_channels)
        self._default_ttl_s = float(default_ttl_s)
        self._clock = clock or utc_now
        self._sink = sink

    def is_fail_closed(self, channel: str) -> bool:
        return channel.lower() in self._fail_closed

    def _emit(self, event_type: str, **fields) -> None:
        if self._sink is not None:
            self._sink.emit(event_type, **fields)

    async def admit(self, key: DeliveryKey, ttl_s: float | None = None) -> Admission:
        ttl = float(ttl_s if ttl_s is not None else self._default_ttl_s)
        rendered = key.render()
        holder = uuid4().hex
        try:
            acquired = await self._store.acquire(rendered, holder, ttl)
        except StoreUnavailable as exc:
            if self.is_fail_closed(key.channel):
                self._emit(
                    EVENT_STORE_UNAVAILABLE,
                    key=rendered,
                    channel=key.channel,
                    tenant_id=key.tenant_id,
                    error=str(exc),
                )
                raise
            self._emit(
                EVENT_STORE_DEGRADED,
                key=rendered,
                channel=key.channel,
                tenant_id=key.tenant_id,
                error=str(exc),
            )
            return Admission(admitted=True, lease=None, degraded=True)
        if not acquired:
            self._emit(
                EVENT_ADMISSION_REJECTED,
                key=rendered,
                channel=key.channel,
                tenant_id=key.tenant_id,
            )
            return Admission(admitted=False)
        expires_at = self._clock() + timedelta(seconds=ttl)
        return Admission(admitted=True, lease=Lease(key=rendered, holder=holder, expires_at=expires_at))

    async def release(self, lease: Lease) -> None:
        # A failed release is left to TTL expiry.
        try:
            released = await self._store.release(lease.key, lease.holder)
        except StoreUnavailable as exc:
            logger.warning("lease_release_failed key=%s error=%s", lease.key, exc)
            return
        if not released:
            logger.warning("lease_release_not_owner key=%s holder=%s", lease.key, lease.holder)

    @asynccontextmanager
    async def lease(self, key: DeliveryKey, ttl_s: float | None = None) -> AsyncIterator[Admission]:
        # Release on every exit path, including exceptions, timeouts and cancellation.
        admission = await self.admit(key, ttl_s)
        try:
            yield admission
        finally:
            if admission.lease is not None:
                await self.release(admission.lease)
