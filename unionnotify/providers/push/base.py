from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class PushMessage:
    token: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    sound: str = "default"
    priority: str = "default"
    channel_id: str = "default"


@dataclass(frozen=True)
class PushResult:
    success: bool
    error: str | None = None
    transport_id: str | None = None


class PushProvider(Protocol):
    async def send(self, message: PushMessage) -> PushResult:
        ...

    async def aclose(self) -> None:
        ...


def build_push_message(*, token: str, title: str, body: str, data: dict[str, Any] | None) -> PushMessage:
    # High-importance payloads ride the urgent Android channel.
    payload = dict(data or {})
    urgent = str(payload.get("importance") or "").lower() == "high"
    return PushMessage(
        token=token,
        title=title,
        body=body,
        data=payload,
        priority="high" if urgent else "default",
        channel_id="urgent" if urgent else "default",
    )
