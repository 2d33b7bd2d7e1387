"""
Push Providers

Thin clients for the external push service. The engine only depends on the
PushProvider interface, so tests and dry runs swap in a different provider
without touching dispatch code.

Every HTTP call carries a bounded timeout and is attempted exactly once;
retries are a human decision, never this module's.

Usage:
    from notification.provider import build_provider

    provider = build_provider(config.notifications.provider)
    response = provider.send(device_ids, payload, grouping)
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging
import uuid

import requests

from core.config_loader import ProviderConfig
from core.utils import compact, mask_identifier
from database.models import SubscriptionState
from notification.dto import GroupingMetadata, PushPayload
from notification.exceptions import ProviderError, ProviderNotConfigured, ProviderTimeout, RateLimitError

logger = logging.getLogger(__name__)

# Provider cap on identifiers per notification request
MAX_TARGETS_PER_REQUEST = 2000

_NOT_SUBSCRIBED_ERROR = "All included players are not subscribed"


@dataclass
class DeviceState:
    """Provider's view of one device, as read by reconciliation."""
    device_id: str
    subscription: SubscriptionState
    invalid: bool = False
    external_user_id: Optional[str] = None
    last_active_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def subscribed(self) -> Optional[bool]:
        if self.subscription == SubscriptionState.PENDING:
            return None
        return self.subscription == SubscriptionState.SUBSCRIBED


@dataclass
class SendResponse:
    notification_id: Optional[str]
    recipients: int = 0
    invalid_device_ids: List[str] = field(default_factory=list)


def subscription_state_from_player(player: Dict[str, Any]) -> SubscriptionState:
    """
    Map a provider player record to the local tri-state.

    notification_types > 0 is an explicit subscribe, <= 0 an explicit
    unsubscribe. A record with a token but no signal yet is pending.
    """
    if player.get('invalid_identifier'):
        return SubscriptionState.UNSUBSCRIBED
    notification_types = player.get('notification_types')
    if notification_types is None:
        if player.get('identifier'):
            return SubscriptionState.PENDING
        return SubscriptionState.UNSUBSCRIBED
    return SubscriptionState.SUBSCRIBED if notification_types > 0 else SubscriptionState.UNSUBSCRIBED


class PushProvider(ABC):
    """
    Abstract base class for push providers.

    Implementations raise ProviderError (or a subclass) on any failure so
    the caller can record it; they never retry.
    """

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """Return the provider type identifier."""
        pass

    @abstractmethod
    def send(self, device_ids: List[str], payload: PushPayload, grouping: GroupingMetadata) -> SendResponse:
        """
        Send one notification to a set of devices.

        Args:
            device_ids: Provider device ids, at most MAX_TARGETS_PER_REQUEST
            payload: Title, body, data and deep link
            grouping: Collapse/thread/group identifiers

        Returns:
            SendResponse with the provider notification id

        Raises:
            ProviderError: The provider rejected the request or was unreachable
        """
        pass

    @abstractmethod
    def get_device_state(self, device_id: str) -> DeviceState:
        pass

    @abstractmethod
    def register_device(self, device_id: str, external_user_id: str) -> None:
        pass

    def validate_config(self) -> bool:
        return True


class OneSignalProvider(PushProvider):
    """OneSignal REST API client."""

    def __init__(
        self,
        app_id: Optional[str],
        api_key: Optional[str],
        base_url: str = "https://onesignal.com/api/v1",
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.app_id = app_id
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout_seconds = timeout_seconds
        self.http = session or requests.Session()

    @property
    def provider_type(self) -> str:
        return 'onesignal'

    def validate_config(self) -> bool:
        return bool(self.app_id and self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.validate_config():
            raise ProviderNotConfigured("ONESIGNAL_APP_ID / ONESIGNAL_REST_API_KEY not configured")
        return {
            'Content-Type': 'application/json',
            'Authorization': f'Basic {self.api_key}',
        }

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        headers = self._headers()
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, headers=headers, timeout=self.timeout_seconds, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ProviderTimeout(
                f"OneSignal {method} {path} timed out after {self.timeout_seconds}s",
                {'message': 'timeout', 'timeout_seconds': self.timeout_seconds},
            ) from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"OneSignal {method} {path} failed: {e}", {'message': str(e)}) from e

        if response.status_code == 429:
            retry_after = response.headers.get('Retry-After')
            raise RateLimitError(
                "OneSignal rate limit exceeded",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                detail={'status': 429, 'body': _json_or_text(response)},
            )
        return response

    def build_payload(self, device_ids: List[str], payload: PushPayload, grouping: GroupingMetadata) -> Dict[str, Any]:
        body = {
            'app_id': self.app_id,
            'include_player_ids': list(device_ids),
            'headings': {'en': payload.title},
            'contents': {'en': payload.body},
        }
        body.update(compact({
            'collapse_id': grouping.collapse_id,
            'thread_id': grouping.thread_id,
            'android_group': grouping.platform_group,
            'data': payload.data or None,
            'url': payload.url,
        }))
        return body

    def send(self, device_ids: List[str], payload: PushPayload, grouping: GroupingMetadata) -> SendResponse:
        if len(device_ids) > MAX_TARGETS_PER_REQUEST:
            raise ValueError(f"At most {MAX_TARGETS_PER_REQUEST} device ids per request, got {len(device_ids)}")

        response = self._request('POST', '/notifications', json=self.build_payload(device_ids, payload, grouping))
        body = _json_or_text(response)

        if not response.ok:
            raise ProviderError(
                f"OneSignal returned HTTP {response.status_code}",
                {'status': response.status_code, 'body': body},
            )

        errors = body.get('errors') if isinstance(body, dict) else None
        invalid_ids: List[str] = []
        if isinstance(errors, dict):
            # Partial success: some targets were rejected
            invalid_ids = list(errors.get('invalid_player_ids') or [])
        elif errors:
            message = _NOT_SUBSCRIBED_ERROR if _NOT_SUBSCRIBED_ERROR in errors else "OneSignal rejected notification"
            raise ProviderError(message, {'errors': errors})

        notification_id = body.get('id') if isinstance(body, dict) else None
        if not notification_id:
            raise ProviderError("OneSignal accepted no recipients", {'errors': errors, 'body': body})

        logger.info(f"OneSignal accepted {notification_id} for {len(device_ids)} device(s)")
        return SendResponse(
            notification_id=notification_id,
            recipients=body.get('recipients') or 0,
            invalid_device_ids=invalid_ids,
        )

    def get_device_state(self, device_id: str) -> DeviceState:
        response = self._request('GET', f'/players/{device_id}', params={'app_id': self.app_id})
        if response.status_code == 404:
            # Provider no longer knows the device
            return DeviceState(device_id=device_id, subscription=SubscriptionState.UNSUBSCRIBED, invalid=True)
        if not response.ok:
            raise ProviderError(
                f"OneSignal player lookup returned HTTP {response.status_code}",
                {'status': response.status_code, 'device_id': mask_identifier(device_id)},
            )

        try:
            player = response.json()
            if not isinstance(player, dict):
                raise ValueError(f"expected a JSON object, got {type(player).__name__}")
            last_active = player.get('last_active')
            return DeviceState(
                device_id=device_id,
                subscription=subscription_state_from_player(player),
                invalid=bool(player.get('invalid_identifier')),
                external_user_id=player.get('external_user_id'),
                last_active_at=datetime.fromtimestamp(last_active, tz=timezone.utc) if last_active else None,
                raw=compact({
                    'notification_types': player.get('notification_types'),
                    'invalid_identifier': player.get('invalid_identifier'),
                    'session_count': player.get('session_count'),
                    'device_type': player.get('device_type'),
                    'last_active': last_active,
                }),
            )
        except (ValueError, TypeError, OverflowError, OSError) as e:
            raise ProviderError(
                "OneSignal player lookup returned an unreadable body",
                {'device_id': mask_identifier(device_id), 'reason': str(e)},
            ) from e

    def register_device(self, device_id: str, external_user_id: str) -> None:
        response = self._request(
            'PUT', f'/players/{device_id}',
            json={'app_id': self.app_id, 'external_user_id': external_user_id},
        )
        if not response.ok:
            raise ProviderError(
                f"OneSignal device registration returned HTTP {response.status_code}",
                {'status': response.status_code, 'body': _json_or_text(response)},
            )
        logger.info(f"Linked device {mask_identifier(device_id)} to external user id")


class DryRunProvider(PushProvider):
    """Logs instead of sending. Every device looks pending and healthy."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    @property
    def provider_type(self) -> str:
        return 'dry_run'

    def send(self, device_ids: List[str], payload: PushPayload, grouping: GroupingMetadata) -> SendResponse:
        notification_id = f"dry-run-{uuid.uuid4()}"
        self.sent.append({'device_ids': list(device_ids), 'payload': payload, 'grouping': grouping})
        logger.info(f"[DRY RUN] Push '{payload.title}' to {len(device_ids)} device(s), collapse_id={grouping.collapse_id}")
        return SendResponse(notification_id=notification_id, recipients=len(device_ids))

    def get_device_state(self, device_id: str) -> DeviceState:
        return DeviceState(device_id=device_id, subscription=SubscriptionState.PENDING)

    def register_device(self, device_id: str, external_user_id: str) -> None:
        logger.info(f"[DRY RUN] Register device {mask_identifier(device_id)}")


def _json_or_text(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {'text': response.text[:500]}


_PROVIDERS = {
    'onesignal': OneSignalProvider,
    'dry_run': DryRunProvider,
}


def build_provider(config: ProviderConfig) -> PushProvider:
    """Instantiate the provider named in configuration."""
    provider_class = _PROVIDERS.get(config.type)
    if provider_class is None:
        raise ValueError(f"Unknown provider type: {config.type}. Available: {', '.join(_PROVIDERS)}")
    if provider_class is DryRunProvider:
        return DryRunProvider()
    provider = OneSignalProvider(
        app_id=config.app_id,
        api_key=config.api_key,
        base_url=config.base_url,
        timeout_seconds=config.timeout_seconds,
    )
    if not provider.validate_config():
        logger.warning("OneSignal credentials missing; sends will fail until configured")
    return provider
