"""
Dedup / idempotency ledger.

Acquisition claims a dedup slot with one atomic insert against the unique
dedup key. Once claimed, a slot stays consumed whatever the delivery outcome;
only an explicit re-trigger under a new event id sends again.

Usage:
    from notification.ledger import DedupLedger, AcquireResult

    ledger = DedupLedger(environment="prod")
    if ledger.try_acquire(session, notification_type, event_id, user_id, now) is AcquireResult.ACQUIRED:
        ...  # deliver, then ledger.record(...)
    else:
        ledger.record(session, ..., result=SendResult.SUPPRESSED_DUPLICATE, ...)
"""
import enum
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.utils import ensure_utc, stable_hash
from database.repositories import DedupLockRepository, SendLogRepository
from notification.catalog import NotificationType
from notification.dto import DedupeScope, SendResult

logger = logging.getLogger(__name__)


class AcquireResult(enum.Enum):
    ACQUIRED = "acquired"
    ALREADY_EXISTS = "already_exists"


class DedupLedger:
    """Dedup lock acquisition plus the append-only send log, scoped to one environment."""

    def __init__(self, environment: str = "prod"):
        self.environment = environment

    def dedup_key(self, notification_type: NotificationType, event_id: str, user_id: Optional[str]) -> str:
        """
        Deterministic dedup key.

        Global scope ignores the user so the whole event shares one slot.
        """
        if notification_type.dedupe.scope == DedupeScope.GLOBAL:
            user_id = None
        return stable_hash(self.environment, notification_type.notification_key, event_id, user_id, length=64)

    def try_acquire(
        self,
        session: Session,
        notification_type: NotificationType,
        event_id: str,
        user_id: Optional[str],
        now: datetime,
    ) -> AcquireResult:
        """
        Claim the dedup slot for (event_id) or (user_id, event_id).

        Commits immediately so the claim is durable before any provider
        call: a crash after this point suppresses rather than duplicates.

        Args:
            session: Session used for the insert; committed on return
            notification_type: Catalog entry; its dedupe scope picks the key shape
            event_id: Rendered event id
            user_id: Candidate user, ignored for global scope
            now: Acquisition time

        Returns:
            ACQUIRED for exactly one concurrent caller, ALREADY_EXISTS for the rest
        """
        scope = notification_type.dedupe.scope
        key = self.dedup_key(notification_type, event_id, user_id)
        locks = DedupLockRepository(session)
        inserted = locks.try_insert(
            dedup_key=key,
            environment=self.environment,
            scope=scope.value,
            notification_key=notification_type.notification_key,
            event_id=event_id,
            user_id=None if scope == DedupeScope.GLOBAL else user_id,
            acquired_at=now,
        )
        locks.commit()

        if inserted:
            return AcquireResult.ACQUIRED
        logger.debug(f"Dedup slot taken: {notification_type.notification_key}/{event_id} user={user_id}")
        return AcquireResult.ALREADY_EXISTS

    @staticmethod
    def is_stale(notification_type: NotificationType, occurred_at: datetime, now: datetime) -> bool:
        """True when the event is older than the type's TTL. A TTL of 0 never expires."""
        ttl = notification_type.dedupe.ttl_seconds
        if ttl <= 0:
            return False
        return ensure_utc(now) - ensure_utc(occurred_at) > timedelta(seconds=ttl)

    def has_equivalent_delivery(
        self,
        session: Session,
        notification_type: NotificationType,
        user_id: str,
        event_id_pattern: Optional[str],
    ) -> bool:
        """
        Whether the user already got an accepted send for an equivalent event.

        Covers re-attributed goals: a scorer correction renders a new event id
        for the same match minute, which must not notify twice.
        """
        if not event_id_pattern:
            return False
        return SendLogRepository(session).has_accepted_matching(
            environment=self.environment,
            user_id=user_id,
            notification_key=notification_type.notification_key,
            event_id_pattern=event_id_pattern,
        )

    def record(
        self,
        session: Session,
        notification_type: NotificationType,
        event_id: str,
        user_id: Optional[str],
        result: SendResult,
        now: datetime,
        error: Optional[Dict[str, Any]] = None,
        provider_notification_id: Optional[str] = None,
        target_type: Optional[str] = None,
        targeting_summary: Optional[Dict[str, Any]] = None,
        payload_summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append one send log row with its final result and commit."""
        log = SendLogRepository(session)
        log.append(
            environment=self.environment,
            notification_key=notification_type.notification_key,
            event_id=event_id,
            user_id=user_id,
            result=SendResult(result).value,
            created_at=now,
            error=error,
            provider_notification_id=provider_notification_id,
            target_type=target_type,
            targeting_summary=targeting_summary,
            payload_summary=payload_summary,
        )
        log.commit()
