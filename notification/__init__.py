"""
Notification Module

Catalog-driven push notification dispatch with an append-only, replay-safe
send log and device reconciliation against the push provider.

Usage:
    from notification import NotificationDispatcher, NotificationEvent

    dispatcher = NotificationDispatcher.from_config(config)
    report = dispatcher.dispatch(NotificationEvent(
        notification_key='chat-message',
        params={'league_id': 'L1', 'message_id': 'm42', 'league_code': 'ABC12'},
        occurred_at=sent_at,
        actor_user_id='user-a',
        title='Sam in Sunday League',
        body='who fancies Spurs tonight?',
    ))
    print(report.summary())
"""

from notification.catalog import (
    NotificationCatalog,
    NotificationType,
    load_catalog,
)

from notification.dto import (
    SendResult,
    DedupeScope,
    AudienceStrategy,
    NotificationEvent,
    GroupingMetadata,
    PushPayload,
    DispatchReport,
)

from notification.exceptions import (
    NotificationError,
    UnknownNotificationType,
    CatalogLoadError,
    EventTemplateError,
    InvalidEventContext,
    ProviderError,
    ProviderTimeout,
    RateLimitError,
    ProviderNotConfigured,
)

from notification.provider import (
    PushProvider,
    OneSignalProvider,
    DryRunProvider,
    build_provider,
)

from notification.dispatcher import NotificationDispatcher
from notification.devices import DeviceRegistry
from notification.reconciliation import DeviceReconciliationJob

__all__ = [
    # Catalog
    'NotificationCatalog',
    'NotificationType',
    'load_catalog',
    # Types
    'SendResult',
    'DedupeScope',
    'AudienceStrategy',
    'NotificationEvent',
    'GroupingMetadata',
    'PushPayload',
    'DispatchReport',
    # Errors
    'NotificationError',
    'UnknownNotificationType',
    'CatalogLoadError',
    'EventTemplateError',
    'InvalidEventContext',
    'ProviderError',
    'ProviderTimeout',
    'RateLimitError',
    'ProviderNotConfigured',
    # Providers
    'PushProvider',
    'OneSignalProvider',
    'DryRunProvider',
    'build_provider',
    # Engine
    'NotificationDispatcher',
    'DeviceRegistry',
    'DeviceReconciliationJob',
]
