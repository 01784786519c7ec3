from __future__ import annotations

from decimal import Decimal

from unionnotify.providers.sms.base import SmsMessage, SmsResult


class FakeSmsProvider:
    def __init__(self, *, cost: Decimal = Decimal("0.0079"), fail_with: str | None = None) -> None:
        self.sent: list[SmsMessage] = []
        self.cost = cost
        self.fail_with = fail_with
        self.closed = False

    async def send(self, message: SmsMessage) -> SmsResult:
        self.sent.append(message)
        if self.fail_with is not None:
            return SmsResult(success=False, error=self.fail_with)
        return SmsResult(success=True, transport_id=f"SMfake{len(self.sent):06d}", cost=self.cost)

    async def aclose(self) -> None:
        self.closed = True
