"""
Errors raised by the dispatch engine.

Fatal errors (unknown type, bad catalog, bad event context) abort an
attempt before any ledger write and reach the caller. Provider errors are
caught per candidate and recorded as `failed` send log rows.
"""
from typing import Any, Dict, Optional


class NotificationError(Exception):
    """Base exception for the notification engine."""
    pass


class UnknownNotificationType(NotificationError):
    """Raised when a caller names a key that is not in the catalog."""

    def __init__(self, notification_key: str):
        super().__init__(f"Unknown notification type: {notification_key}")
        self.notification_key = notification_key


class CatalogLoadError(NotificationError):
    """Raised when the catalog file is missing or fails validation."""
    pass


class EventTemplateError(NotificationError):
    """Raised when an event_id_format placeholder has no value in the event params."""

    def __init__(self, notification_key: str, template: str, missing):
        self.notification_key = notification_key
        self.template = template
        self.missing = sorted(missing)
        super().__init__(
            f"Cannot render event id for {notification_key}: "
            f"template {template!r} missing params {self.missing}"
        )


class InvalidEventContext(NotificationError):
    """Raised when an audience strategy lacks a parameter it needs."""
    pass


class ProviderError(NotificationError):
    """Push provider rejected or failed a request. `detail` is stored verbatim in the send log."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.detail = detail or {'message': message}


class ProviderTimeout(ProviderError):
    """Provider call exceeded its bounded timeout."""
    pass


class RateLimitError(ProviderError):
    """Provider returned a rate limit response. Recorded, never retried here."""

    def __init__(self, message: str, retry_after: Optional[int] = None, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail)
        self.retry_after = retry_after
        self.detail.setdefault('retry_after', retry_after)


class ProviderNotConfigured(ProviderError):
    """Provider credentials are missing."""
    pass
