"""Delivery adapter: one candidate's eligible devices -> provider send -> outcome."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.utils import compact
from database.models import DeviceRegistration
from notification.dto import GroupingMetadata, PushPayload, SendResult
from notification.exceptions import ProviderError
from notification.provider import MAX_TARGETS_PER_REQUEST, PushProvider

logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    result: SendResult
    provider_notification_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    target_type: str = "player_ids"
    targeting_summary: Dict[str, Any] = field(default_factory=dict)
    payload_summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.result == SendResult.ACCEPTED


def payload_summary(payload: PushPayload, grouping: GroupingMetadata, device_count: int) -> Dict[str, Any]:
    """What the send log keeps of a payload. Never the full data blob."""
    summary = {
        'title': payload.title,
        'body': payload.body[:100],
        'device_count': device_count,
        'has_data': bool(payload.data),
        'has_url': bool(payload.url),
    }
    summary.update(compact({
        'collapse_id': grouping.collapse_id,
        'thread_id': grouping.thread_id,
        'platform_group': grouping.platform_group,
    }))
    return summary


class DeliveryAdapter:
    def __init__(self, provider: PushProvider, max_targets: int = MAX_TARGETS_PER_REQUEST):
        self.provider = provider
        self.max_targets = max_targets

    def deliver(
        self,
        user_id: str,
        notification_key: str,
        payload: PushPayload,
        grouping: GroupingMetadata,
        devices: Sequence[DeviceRegistration],
    ) -> DeliveryOutcome:
        """
        Send to all of a user's eligible devices, chunked to the provider limit.

        The outcome is accepted when at least one chunk was accepted. Provider
        errors are captured in the outcome rather than raised.
        """
        device_ids = [d.device_id for d in devices]
        summary = payload_summary(payload, grouping, len(device_ids))
        targeting = {'user_id': user_id, 'device_count': len(device_ids)}

        notification_ids: List[str] = []
        errors: List[Dict[str, Any]] = []
        invalid_ids: List[str] = []
        for start in range(0, len(device_ids), self.max_targets):
            chunk = device_ids[start:start + self.max_targets]
            try:
                response = self.provider.send(chunk, payload, grouping)
            except ProviderError as e:
                logger.warning(f"Provider rejected {notification_key} for user {user_id}: {e}")
                errors.append(dict(e.detail, type=type(e).__name__))
                continue
            if response.notification_id:
                notification_ids.append(response.notification_id)
            invalid_ids.extend(response.invalid_device_ids)

        if invalid_ids:
            targeting['invalid_device_count'] = len(invalid_ids)

        if notification_ids:
            return DeliveryOutcome(
                result=SendResult.ACCEPTED,
                provider_notification_id=notification_ids[0],
                error={'partial_errors': errors} if errors else None,
                targeting_summary=targeting,
                payload_summary=summary,
            )

        return DeliveryOutcome(
            result=SendResult.FAILED,
            error=errors[0] if len(errors) == 1 else {'errors': errors},
            targeting_summary=targeting,
            payload_summary=summary,
        )
