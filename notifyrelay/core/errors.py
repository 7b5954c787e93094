from __future__ import annotations


class NotifyRelayError(Exception):
    """Base error for notifyrelay."""


class ValidationError(NotifyRelayError):
    """Malformed intake or query input; nothing was written."""


class TransientDeliveryError(NotifyRelayError):
    """Delivery failed in a way that a later attempt may fix."""


class ConfigurationError(NotifyRelayError):
    """Operator configuration prevents the operation; retrying will not help."""


class ProviderNotConfiguredError(ConfigurationError):
    """No sender is registered for the notification channel."""


class TemplateRenderError(NotifyRelayError):
    """Template text or payload could not be rendered."""


class DatabaseError(NotifyRelayError):
    """Database layer failure."""


class ConcurrencyFallbackWarning(RuntimeWarning):
    """Job claims are running without locked/skip-locked reads."""
