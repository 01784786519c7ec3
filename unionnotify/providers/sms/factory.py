from __future__ import annotations

from unionnotify.core.config import get_settings
from unionnotify.core.errors import ProviderConfigError
from unionnotify.providers.sms.fake import FakeSmsProvider
from unionnotify.providers.sms.twilio import TwilioSmsProvider


def get_sms_provider():
    settings = get_settings()
    provider = (settings.sms_provider or "fake").lower()
    if provider == "fake":
        return FakeSmsProvider()
    if provider == "twilio":
        return TwilioSmsProvider()
    raise ProviderConfigError(f"Unsupported SMS provider: {provider}")
