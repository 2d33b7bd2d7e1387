"""
Notification Dispatcher

Turns one domain event into per-user send decisions:

    event -> catalog lookup -> audience -> rollout -> staleness
          -> dedup acquire -> equivalent event -> preference -> devices -> cooldown
          -> quiet hours -> provider send -> send log row

Every candidate that passes the rollout gate ends with exactly one send log
row. The dedup slot is committed before any provider call, so a crash
between acquire and send suppresses rather than duplicates.

Usage:
    from notification.dispatcher import NotificationDispatcher

    dispatcher = NotificationDispatcher.from_config(config)
    report = dispatcher.dispatch(NotificationEvent(
        notification_key="goal-scored",
        params={"api_match_id": 1234, "scorer": "Bukayo Saka", "minute": 52},
        occurred_at=goal_time,
    ))
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from core.config_loader import AppConfig
from core.utils import utcnow
from database.database import build_session_factory
from notification.audience import get_resolver
from notification.catalog import NotificationCatalog, NotificationType, load_catalog
from notification.delivery import DeliveryAdapter
from notification.dto import (
    DedupeScope,
    DispatchReport,
    GroupingMetadata,
    NotificationEvent,
    PushPayload,
    SendResult,
    UserDispatchResult,
)
from notification.ledger import AcquireResult, DedupLedger
from notification.policy import SuppressionFilter
from notification.provider import PushProvider, build_provider

logger = logging.getLogger(__name__)

DEFAULT_BODY = "You have a new notification"


class NotificationDispatcher:
    """
    Dispatch engine for catalog-defined push notifications.

    Holds no per-event state; concurrent dispatches only meet at the dedup
    lock table.
    """

    def __init__(
        self,
        catalog: NotificationCatalog,
        session_factory: sessionmaker,
        provider: PushProvider,
        environment: str = "prod",
        timezone: str = "Europe/London",
        max_workers: int = 8,
        event_workers: int = 4,
        clock: Callable[[], datetime] = utcnow,
        enabled: bool = True,
    ):
        self.catalog = catalog
        self.enabled = enabled
        self.session_factory = session_factory
        self.environment = environment
        self.max_workers = max_workers
        self.event_workers = event_workers
        self.clock = clock

        self.ledger = DedupLedger(environment)
        self.policy = SuppressionFilter(environment, timezone)
        self.delivery = DeliveryAdapter(provider)

    @classmethod
    def from_config(cls, config: AppConfig, provider: Optional[PushProvider] = None) -> "NotificationDispatcher":
        settings = config.notifications
        return cls(
            catalog=load_catalog(settings.catalog_path),
            session_factory=build_session_factory(config.database.url),
            provider=provider or build_provider(settings.provider),
            environment=settings.environment,
            timezone=settings.timezone,
            max_workers=settings.max_workers,
            event_workers=settings.event_workers,
            enabled=settings.enabled,
        )

    def build_payload(self, notification_type: NotificationType, event: NotificationEvent) -> PushPayload:
        url = event.url or self.catalog.format_deep_link(notification_type.notification_key, event.params)
        return PushPayload(
            title=event.title or notification_type.default_title,
            body=event.body or DEFAULT_BODY,
            data=dict(event.data),
            url=url,
        )

    def build_grouping(self, notification_type: NotificationType, event: NotificationEvent) -> GroupingMetadata:
        params = dict(event.params)
        params.update(event.grouping_params)
        return self.catalog.format_grouping(notification_type.notification_key, params)

    def dispatch(self, event: NotificationEvent) -> DispatchReport:
        """
        Dispatch one event to its audience.

        Raises:
            UnknownNotificationType: key not in the catalog
            EventTemplateError: event params cannot render the event id
            InvalidEventContext: audience strategy is missing a parameter
        """
        notification_type = self.catalog.lookup(event.notification_key)
        event_id = self.catalog.format_event_id(event.notification_key, event.params)
        report = DispatchReport(notification_key=notification_type.notification_key, event_id=event_id)

        if not self.enabled:
            logger.info(f"Notifications are switched off; skipping {notification_type.notification_key}/{event_id}")
            report.skipped_reason = "disabled"
            return report

        if not notification_type.is_active:
            logger.info(f"{notification_type.notification_key} is disabled; skipping {event_id}")
            report.skipped_reason = "disabled"
            return report

        now = self.clock()

        session = self.session_factory()
        try:
            candidates = get_resolver(notification_type.audience).resolve(session, notification_type, event)
        finally:
            session.close()

        report.total_candidates = len(candidates)
        selected = [u for u in candidates if self.policy.in_rollout(notification_type, u)]
        report.selected_candidates = len(selected)

        if not selected:
            logger.info(f"No candidates for {report.summary()}")
            return report

        if self.ledger.is_stale(notification_type, event.occurred_at, now):
            logger.info(f"{notification_type.notification_key}/{event_id} is stale; suppressing {len(selected)} candidate(s)")
            self._record_all(notification_type, event_id, selected, SendResult.SUPPRESSED_STALE, now, report)
            self._log_summary(report)
            return report

        if notification_type.dedupe.scope == DedupeScope.GLOBAL and not self._acquire_global(
            notification_type, event_id, selected, now, report
        ):
            self._log_summary(report)
            return report

        payload = self.build_payload(notification_type, event)
        grouping = self.build_grouping(notification_type, event)
        equivalent = self.catalog.format_equivalent_pattern(notification_type.notification_key, event.params)

        workers = max(1, min(self.max_workers, len(selected)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(
                    self._dispatch_candidate, notification_type, event, event_id, user_id, payload, grouping, now, equivalent
                )
                for user_id in selected
            ]
            for future in futures:
                report.add(future.result())

        self._log_summary(report)
        return report

    def dispatch_many(self, events: List[NotificationEvent]) -> List[DispatchReport]:
        """
        Dispatch independent events concurrently. Reports come back in input order.

        A fatal error for one event is raised once all events have finished.
        """
        if not events:
            return []
        workers = max(1, min(self.event_workers, len(events)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self.dispatch, event) for event in events]
            return [future.result() for future in futures]

    def _acquire_global(
        self,
        notification_type: NotificationType,
        event_id: str,
        selected: List[str],
        now: datetime,
        report: DispatchReport,
    ) -> bool:
        """Take the event-wide lock. The loser logs one NULL-user row and suppresses its whole fan-out."""
        session = self.session_factory()
        try:
            acquired = self.ledger.try_acquire(session, notification_type, event_id, None, now)
            if acquired is AcquireResult.ACQUIRED:
                return True
            self.ledger.record(
                session, notification_type, event_id, None, SendResult.SUPPRESSED_DUPLICATE, now,
                targeting_summary={'candidate_count': len(selected)},
            )
        finally:
            session.close()

        for user_id in selected:
            report.add(UserDispatchResult(user_id=user_id, result=SendResult.SUPPRESSED_DUPLICATE, reason="event lock held"))
        return False

    def _record_all(
        self,
        notification_type: NotificationType,
        event_id: str,
        user_ids: List[str],
        result: SendResult,
        now: datetime,
        report: DispatchReport,
    ) -> None:
        session = self.session_factory()
        try:
            for user_id in user_ids:
                self.ledger.record(session, notification_type, event_id, user_id, result, now)
                report.add(UserDispatchResult(user_id=user_id, result=result))
        finally:
            session.close()

    def _dispatch_candidate(
        self,
        notification_type: NotificationType,
        event: NotificationEvent,
        event_id: str,
        user_id: str,
        payload: PushPayload,
        grouping: GroupingMetadata,
        now: datetime,
        equivalent: Optional[str] = None,
    ) -> UserDispatchResult:
        session = self.session_factory()
        try:
            return self._run_pipeline(
                session, notification_type, event, event_id, user_id, payload, grouping, now, equivalent
            )
        except Exception as e:
            # One candidate's failure never aborts the others
            logger.exception(f"Unexpected error dispatching {notification_type.notification_key}/{event_id} to {user_id}")
            session.rollback()
            error = {'type': type(e).__name__, 'message': str(e)}
            self.ledger.record(session, notification_type, event_id, user_id, SendResult.FAILED, now, error=error)
            return UserDispatchResult(user_id=user_id, result=SendResult.FAILED, error=error)
        finally:
            session.close()

    def _run_pipeline(
        self, session, notification_type, event, event_id, user_id, payload, grouping, now, equivalent=None
    ) -> UserDispatchResult:
        if notification_type.dedupe.scope == DedupeScope.PER_USER_PER_EVENT:
            acquired = self.ledger.try_acquire(session, notification_type, event_id, user_id, now)
            if acquired is AcquireResult.ALREADY_EXISTS:
                self.ledger.record(session, notification_type, event_id, user_id, SendResult.SUPPRESSED_DUPLICATE, now)
                return UserDispatchResult(user_id=user_id, result=SendResult.SUPPRESSED_DUPLICATE)

        if self.ledger.has_equivalent_delivery(session, notification_type, user_id, equivalent):
            self.ledger.record(session, notification_type, event_id, user_id, SendResult.SUPPRESSED_DUPLICATE, now)
            return UserDispatchResult(
                user_id=user_id, result=SendResult.SUPPRESSED_DUPLICATE, reason="equivalent event already delivered"
            )

        suppressed, devices = self.policy.evaluate(session, notification_type, event, user_id, now)
        if suppressed:
            self.ledger.record(session, notification_type, event_id, user_id, suppressed, now)
            return UserDispatchResult(user_id=user_id, result=suppressed)

        outcome = self.delivery.deliver(user_id, notification_type.notification_key, payload, grouping, devices)
        self.ledger.record(
            session, notification_type, event_id, user_id, outcome.result, now,
            error=outcome.error,
            provider_notification_id=outcome.provider_notification_id,
            target_type=outcome.target_type,
            targeting_summary=outcome.targeting_summary,
            payload_summary=outcome.payload_summary,
        )
        return UserDispatchResult(
            user_id=user_id,
            result=outcome.result,
            provider_notification_id=outcome.provider_notification_id,
            error=None if outcome.accepted else outcome.error,
        )

    def _log_summary(self, report: DispatchReport) -> None:
        logger.info(
            f"Dispatch {report.summary()} "
            f"(candidates={report.total_candidates}, selected={report.selected_candidates})"
        )
