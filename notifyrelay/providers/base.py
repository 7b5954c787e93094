from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    # Rendered, ready-to-send view of a notification handed to senders.
    notification_id: str
    channel: str
    recipient: str
    subject: str | None
    body: str | None
    attempt_no: int
    payload: dict[str, Any] = field(default_factory=dict)


class ChannelSender(Protocol):
    async def send(self, message: OutboundMessage) -> bool:
        ...
