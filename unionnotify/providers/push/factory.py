from __future__ import annotations

from unionnotify.core.config import get_settings
from unionnotify.core.errors import ProviderConfigError
from unionnotify.providers.push.expo import ExpoPushProvider
from unionnotify.providers.push.fake import FakePushProvider


def get_push_provider():
    settings = get_settings()
    provider = (settings.push_provider or "fake").lower()
    if provider == "fake":
        return FakePushProvider()
    if provider == "expo":
        return ExpoPushProvider()
    raise ProviderConfigError(f"Unsupported push provider: {provider}")
