from __future__ import annotations

import logging

from notifyrelay.providers.base import OutboundMessage


logger = logging.getLogger(__name__)


class LoggingSender:
    """Stand-in gateway that records the delivery in the log and reports success."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    async def send(self, message: OutboundMessage) -> bool:
        logger.info(
            "notification_sent_via_log channel=%s notification_id=%s recipient=%s attempt=%s subject=%r",
            self.channel,
            message.notification_id,
            message.recipient,
            message.attempt_no,
            message.subject,
        )
        return True
