from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class SmsMessage:
    to: str
    body: str


@dataclass(frozen=True)
class SmsResult:
    success: bool
    transport_id: str | None = None
    cost: Decimal | None = None
    error: str | None = None


class SmsProvider(Protocol):
    async def send(self, message: SmsMessage) -> SmsResult:
        ...

    async def aclose(self) -> None:
        ...
