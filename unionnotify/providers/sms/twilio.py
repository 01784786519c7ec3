from __future__ import annotations

import base64
from decimal import Decimal, InvalidOperation
import hashlib
import hmac
import logging
import time
from typing import Mapping

import httpx

from unionnotify.core.config import get_settings
from unionnotify.core.errors import ProviderConfigError, TransportError
from unionnotify.providers.sms.base import SmsMessage, SmsResult
from unionnotify.services.resilience import CircuitBreaker, get_resilience_redis
from unionnotify.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "sms.twilio"


def parse_price(raw: object) -> Decimal:
    # Twilio reports charges as negative strings and often null until billed.
    if raw in (None, ""):
        return Decimal("0")
    try:
        return -Decimal(str(raw))
    except InvalidOperation:
        return Decimal("0")


def compute_webhook_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """Twilio request signature: base64 HMAC-SHA1 of the URL plus sorted form pairs."""
    material = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), material.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(url: str, params: Mapping[str, str], signature: str | None, auth_token: str) -> bool:
    if not signature or not auth_token:
        return False
    expected = compute_webhook_signature(url, params, auth_token)
    return hmac.compare_digest(expected, signature)


class TwilioSmsProvider:
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

    async def send(self, message: SmsMessage) -> SmsResult:
        settings = self._settings
        if not (
            settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_messaging_service_sid
        ):
            raise ProviderConfigError(
                "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_MESSAGING_SERVICE_SID are required"
            )
        url = f"{settings.twilio_api_base_url}/Accounts/{settings.twilio_account_sid}/Messages.json"
        form = {
            "To": message.to,
            "MessagingServiceSid": settings.twilio_messaging_service_sid,
            "Body": message.body,
        }
        client = self._get_client()
        breaker = await self._get_breaker()
        await breaker.before_call()
        start = time.monotonic()
        try:
            response = await client.post(
                url,
                data=form,
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
            )
        except httpx.HTTPError as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise TransportError(f"Twilio request failed: {exc}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            if response.status_code >= 500:
                await breaker.record_failure()
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            detail = ""
            try:
                body = response.json()
                detail = str(body.get("message") or "") if isinstance(body, dict) else ""
            except ValueError:
                detail = response.text[:200]
            logger.warning("twilio_send_failed status=%s detail=%s", response.status_code, detail)
            return SmsResult(success=False, error=f"Failed to send SMS via Twilio: {detail or response.status_code}")

        await breaker.record_success()
        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=True)
        body = response.json()
        return SmsResult(
            success=True,
            transport_id=str(body.get("sid") or "") or None,
            cost=parse_price(body.get("price")),
        )
