from __future__ import annotations

from dataclasses import dataclass
import re

from unionnotify.core.config import get_settings
from unionnotify.core.errors import InvalidPhoneError


_NON_DIGITS = re.compile(r"\D")


def _us_e164(raw: str) -> str | None:
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return None


def normalize_phone(raw: str) -> str:
    """Normalize a phone number to E.164 for the SMS transport.

    Ten-digit US numbers gain a ``+1`` prefix and eleven-digit numbers with a
    leading ``1`` gain ``+``. Anything else is passed through unchanged so
    already-international numbers still reach the transport.
    """
    return _us_e164(raw) or (raw or "").strip()


def require_us_phone(raw: str) -> str:
    # OTP flows only accept numbers that normalize to a US E.164 value.
    normalized = _us_e164(raw)
    if normalized is None:
        raise InvalidPhoneError("Invalid phone number format")
    return normalized


@dataclass(frozen=True)
class ShapedSms:
    sms_content: str
    full_content: str
    was_truncated: bool


def shape_sms_content(content: str) -> ShapedSms:
    # Cut oversized bodies and point the reader at the in-app copy.
    settings = get_settings()
    text = content or ""
    if len(text) <= settings.sms_max_length:
        return ShapedSms(sms_content=text, full_content=text, was_truncated=False)
    truncated = text[: settings.sms_truncate_at] + settings.sms_truncation_suffix
    return ShapedSms(sms_content=truncated, full_content=text, was_truncated=True)
