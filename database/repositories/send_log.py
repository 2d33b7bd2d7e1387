import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func

from database.models import SendLogEntry
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class SendLogRepository(BaseRepository):
    """Append-only access to notification_send_log. There is no update path."""

    def append(
        self,
        environment: str,
        notification_key: str,
        event_id: str,
        user_id: Optional[str],
        result: str,
        created_at: datetime,
        error: Optional[Dict[str, Any]] = None,
        provider_notification_id: Optional[str] = None,
        target_type: Optional[str] = None,
        targeting_summary: Optional[Dict[str, Any]] = None,
        payload_summary: Optional[Dict[str, Any]] = None,
    ) -> SendLogEntry:
        entry = SendLogEntry(
            environment=environment,
            notification_key=notification_key,
            event_id=event_id,
            user_id=user_id,
            result=result,
            error=error,
            provider_notification_id=provider_notification_id,
            target_type=target_type,
            targeting_summary=targeting_summary or {},
            payload_summary=payload_summary or {},
            created_at=created_at,
        )
        self.db.add(entry)
        self.flush()
        return entry

    def has_recent_accepted(
        self,
        environment: str,
        user_id: str,
        notification_key: str,
        since: datetime,
    ) -> bool:
        """Any accepted send of this key to this user at or after `since`."""
        stmt = select(SendLogEntry.id).where(
            SendLogEntry.environment == environment,
            SendLogEntry.user_id == user_id,
            SendLogEntry.notification_key == notification_key,
            SendLogEntry.result == 'accepted',
            SendLogEntry.created_at >= since,
        ).limit(1)
        return self.db.execute(stmt).first() is not None

    def list_for_event(self, notification_key: str, event_id: str) -> List[SendLogEntry]:
        stmt = select(SendLogEntry).where(
            SendLogEntry.notification_key == notification_key,
            SendLogEntry.event_id == event_id,
        ).order_by(SendLogEntry.created_at)
        return list(self.db.execute(stmt).scalars().all())

    def count_by_result(self, notification_key: str, event_id: Optional[str] = None) -> Dict[str, int]:
        stmt = select(SendLogEntry.result, func.count(SendLogEntry.id)).where(
            SendLogEntry.notification_key == notification_key
        )
        if event_id is not None:
            stmt = stmt.where(SendLogEntry.event_id == event_id)
        stmt = stmt.group_by(SendLogEntry.result)
        return {result: count for result, count in self.db.execute(stmt).all()}

    def has_accepted_matching(
        self,
        environment: str,
        user_id: str,
        notification_key: str,
        event_id_pattern: str,
    ) -> bool:
        """Any accepted send of this key to this user whose event id matches a LIKE pattern."""
        stmt = select(SendLogEntry.id).where(
            SendLogEntry.environment == environment,
            SendLogEntry.user_id == user_id,
            SendLogEntry.notification_key == notification_key,
            SendLogEntry.result == 'accepted',
            SendLogEntry.event_id.like(event_id_pattern, escape='\\'),
        ).limit(1)
        return self.db.execute(stmt).first() is not None
