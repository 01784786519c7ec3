from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from unionnotify.core.config import get_settings
from unionnotify.core.errors import TransportError
from unionnotify.providers.push.base import PushMessage, PushResult
from unionnotify.services.resilience import CircuitBreaker, get_resilience_redis
from unionnotify.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "push.expo"


def _error_from_body(body: Any) -> str:
    # Expo reports failures either in `errors` or as a ticket with status "error".
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict) and first.get("message"):
                return str(first["message"])
        data = body.get("data")
        if isinstance(data, list) and data:
            data = data[0]
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
    return "Push service returned an error"


class ExpoPushProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._owns_client = client is None
        self._breaker: CircuitBreaker | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def aclose(self) -> None:
        # Only close clients this provider opened; injected clients belong to the caller.
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        self._breaker = CircuitBreaker(_INTEGRATION, redis=await get_resilience_redis())
        return self._breaker

    async def send(self, message: PushMessage) -> PushResult:
        payload = {
            "to": message.token,
            "title": message.title,
            "body": message.body,
            "data": message.data,
            "sound": message.sound,
            "priority": message.priority,
            "channelId": message.channel_id,
        }
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._settings.expo_access_token:
            headers["Authorization"] = f"Bearer {self._settings.expo_access_token}"
        client = self._get_client()
        breaker = await self._get_breaker()
        await breaker.before_call()
        start = time.monotonic()
        try:
            response = await client.post(self._settings.expo_push_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise TransportError(f"Expo push request failed: {exc}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 500:
            await breaker.record_failure()
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            return PushResult(success=False, error=f"Expo push error: {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            body = None
        data = body.get("data") if isinstance(body, dict) else None
        if isinstance(data, list) and data:
            data = data[0]
        if response.status_code < 400 and isinstance(data, dict) and data.get("status") == "ok":
            await breaker.record_success()
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=True)
            return PushResult(success=True, transport_id=str(data.get("id") or "") or None)

        # Token and payload rejections are recipient problems, not an outage.
        await breaker.record_success()
        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
        error = _error_from_body(body)
        logger.warning("expo_push_rejected status=%s error=%s", response.status_code, error)
        return PushResult(success=False, error=error)
