from __future__ import annotations

from typing import Any, Protocol

import httpx

from notifyhub.core.errors import TransportError, TransportPermanentError
from notifyhub.domain.delivery import DeliveryTask, TransportReceipt


_NON_TERMINAL_HTTP_4XX = {408, 429}


class Transport(Protocol):
    # One side-effecting call per attempt; the dispatcher owns deadlines and retries.
    async def send(self, task: DeliveryTask) -> TransportReceipt: ...


def _response_error_reason(response: httpx.Response) -> str:
    # Prefer an explicit provider reason over the bare status code.
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if isinstance(payload, dict):
        for field_name in ("reason", "error", "message"):
            reason = payload.get(field_name)
            if isinstance(reason, str) and reason.strip():
                return reason.strip()[:200]
    return f"http_{int(response.status_code)}"


def raise_for_provider_status(response: httpx.Response, *, provider: str) -> None:
    # Map provider HTTP failures onto the transport error taxonomy: 4xx except 408/429 is permanent.
    status_code = int(response.status_code)
    if status_code < 400:
        return
    reason = _response_error_reason(response)
    message = f"{provider} rejected delivery ({status_code}): {reason}"
    if 400 <= status_code < 500 and status_code not in _NON_TERMINAL_HTTP_4XX:
        raise TransportPermanentError(message, reason=f"http_{status_code}")
    raise TransportError(message, reason=f"http_{status_code}")


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    provider: str,
    **kwargs: Any,
) -> httpx.Response:
    # Network-level failures are always transient.
    try:
        response = await client.post(url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransportError(f"{provider} request timed out", reason="timeout") from exc
    except httpx.HTTPError as exc:
        raise TransportError(f"{provider} request failed: {exc}", reason="network_error") from exc
    raise_for_provider_status(response, provider=provider)
    return response


def response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class HttpTransport:
    # Share one optional client; tests inject an httpx.AsyncClient over MockTransport.
    def __init__(self, *, client: httpx.AsyncClient | None = None, timeout_s: float = 10.0) -> None:
        self._client = client
        self._timeout_s = timeout_s

    async def _post(self, url: str, *, provider: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await post_json(self._client, url, provider=provider, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            return await post_json(client, url, provider=provider, **kwargs)
