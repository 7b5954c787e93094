from __future__ import annotations

from notifyrelay.core.config import CHANNELS, Settings, get_settings
from notifyrelay.core.errors import ConfigurationError
from notifyrelay.providers.base import ChannelSender
from notifyrelay.providers.logging_sender import LoggingSender
from notifyrelay.providers.webhook import WebhookSender


class ProviderRegistry:
    def __init__(self, senders: dict[str, ChannelSender] | None = None) -> None:
        self._senders: dict[str, ChannelSender] = {}
        for channel, sender in (senders or {}).items():
            self.register(channel, sender)

    def register(self, channel: str, sender: ChannelSender) -> None:
        self._senders[channel.strip().lower()] = sender

    def get(self, channel: str) -> ChannelSender | None:
        return self._senders.get((channel or "").strip().lower())

    def channels(self) -> list[str]:
        return sorted(self._senders)


def build_provider_registry(settings: Settings | None = None) -> ProviderRegistry:
    settings = settings or get_settings()
    enabled = settings.enabled_channel_set()
    unknown = enabled - set(CHANNELS)
    if unknown:
        raise ConfigurationError(f"Unsupported channels in ENABLED_CHANNELS: {', '.join(sorted(unknown))}")

    registry = ProviderRegistry()
    for channel in CHANNELS:
        if channel not in enabled:
            continue
        if channel == "push" and settings.push_webhook_url:
            registry.register(
                channel,
                WebhookSender(settings.push_webhook_url, timeout_s=settings.ext_call_timeout_ms / 1000.0),
            )
            continue
        registry.register(channel, LoggingSender(channel))
    return registry
