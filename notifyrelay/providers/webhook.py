from __future__ import annotations

import logging
from typing import Any

import httpx

from notifyrelay.core.errors import TransientDeliveryError
from notifyrelay.providers.base import OutboundMessage


logger = logging.getLogger(__name__)


class WebhookSender:
    """POST each message as JSON to a fixed push gateway URL.

    Any 2xx is a success. Other statuses return False so the worker retries.
    Transport errors surface as ``TransientDeliveryError``.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_s = max(0.2, float(timeout_s))
        self._transport = transport

    def _body(self, message: OutboundMessage) -> dict[str, Any]:
        return {
            "notification_id": message.notification_id,
            "channel": message.channel,
            "recipient": message.recipient,
            "subject": message.subject,
            "body": message.body,
            "payload": message.payload,
        }

    async def send(self, message: OutboundMessage) -> bool:
        headers = {
            "X-Notification-Id": message.notification_id,
            "X-Notification-Attempt": str(message.attempt_no),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                response = await client.post(self.url, json=self._body(message), headers=headers)
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"push webhook unreachable: {exc}") from exc
        if response.is_success:
            return True
        logger.warning(
            "webhook_delivery_rejected notification_id=%s status_code=%s",
            message.notification_id,
            response.status_code,
        )
        return False
