from __future__ import annotations

from unionnotify.providers.push.base import PushMessage, PushResult


class FakePushProvider:
    def __init__(self, *, fail_with: str | None = None) -> None:
        # Every message is kept so tests can assert on what would have been sent.
        self.sent: list[PushMessage] = []
        self.fail_with = fail_with
        self.closed = False

    async def send(self, message: PushMessage) -> PushResult:
        self.sent.append(message)
        if self.fail_with is not None:
            return PushResult(success=False, error=self.fail_with)
        if message.token.startswith("ExponentPushToken[invalid"):
            return PushResult(success=False, error="DeviceNotRegistered")
        return PushResult(success=True, transport_id=f"fake-push-{len(self.sent)}")

    async def aclose(self) -> None:
        self.closed = True
