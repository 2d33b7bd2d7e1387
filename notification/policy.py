"""
Suppression policy: the per-candidate gates run after the dedup slot is held.

Each check returns the SendResult to record, or None to let the candidate
through. Order matters and mirrors the dispatch pipeline: preference,
device eligibility, cooldown, quiet hours.
"""
import logging
from datetime import datetime, time, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from core.utils import ensure_utc, rollout_bucket
from database.models import DeviceRegistration
from database.repositories import DeviceRepository, LeagueRepository, PreferenceRepository, SendLogRepository
from notification.catalog import NotificationType, QuietHoursConfig
from notification.dto import NotificationEvent, SendResult

logger = logging.getLogger(__name__)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def in_quiet_window(quiet_hours: QuietHoursConfig, local_time: time) -> bool:
    """
    Whether a local wall-clock time falls in the window [start, end).

    A window whose start is after its end spans midnight (23:00-07:00).
    """
    if not quiet_hours.enabled:
        return False
    start = _parse_hhmm(quiet_hours.start)
    end = _parse_hhmm(quiet_hours.end)
    if start < end:
        return start <= local_time < end
    return local_time >= start or local_time < end


class SuppressionFilter:
    def __init__(self, environment: str = "prod", timezone: str = "Europe/London"):
        self.environment = environment
        self.tz = ZoneInfo(timezone)

    @staticmethod
    def in_rollout(notification_type: NotificationType, user_id: str) -> bool:
        """Deterministic per-user bucket against the type's rollout percentage."""
        rollout = notification_type.rollout
        if not rollout.enabled:
            return False
        if rollout.percentage >= 100:
            return True
        return rollout_bucket(user_id) < rollout.percentage

    def check_preference(
        self,
        session: Session,
        notification_type: NotificationType,
        event: NotificationEvent,
        user_id: str,
    ) -> Optional[SendResult]:
        """
        League mute first, then the type's preference key.

        Fail closed: an unset preference counts as opted out. A muted league
        silences every type whose event names that league.
        """
        if event.skip_preference_check:
            return None

        league_id = event.params.get('league_id')
        if league_id is not None and LeagueRepository(session).is_muted(user_id, str(league_id)):
            return SendResult.SUPPRESSED_PREFERENCE

        preference_key = notification_type.preferences.preference_key
        if preference_key is None:
            return None
        prefs = PreferenceRepository(session).get(user_id)
        if prefs.get(preference_key) is True:
            return None
        return SendResult.SUPPRESSED_PREFERENCE

    @staticmethod
    def eligible_devices(session: Session, user_id: str) -> List[DeviceRegistration]:
        return [d for d in DeviceRepository(session).list_for_user(user_id) if d.is_eligible]

    def check_devices(self, session: Session, user_id: str) -> Tuple[Optional[SendResult], List[DeviceRegistration]]:
        devices = self.eligible_devices(session, user_id)
        if not devices:
            return SendResult.SUPPRESSED_UNSUBSCRIBED, []
        return None, devices

    def check_cooldown(
        self,
        session: Session,
        notification_type: NotificationType,
        event: NotificationEvent,
        user_id: str,
        now: datetime,
    ) -> Optional[SendResult]:
        seconds = notification_type.cooldown.per_user_seconds
        if seconds <= 0 or event.skip_cooldown_check:
            return None
        since = ensure_utc(now) - timedelta(seconds=seconds)
        recent = SendLogRepository(session).has_recent_accepted(
            environment=self.environment,
            user_id=user_id,
            notification_key=notification_type.notification_key,
            since=since,
        )
        return SendResult.SUPPRESSED_COOLDOWN if recent else None

    def check_quiet_hours(self, notification_type: NotificationType, now: datetime) -> Optional[SendResult]:
        local_time = ensure_utc(now).astimezone(self.tz).time()
        if in_quiet_window(notification_type.quiet_hours, local_time):
            return SendResult.SUPPRESSED_QUIET_HOURS
        return None

    def evaluate(
        self,
        session: Session,
        notification_type: NotificationType,
        event: NotificationEvent,
        user_id: str,
        now: datetime,
    ) -> Tuple[Optional[SendResult], List[DeviceRegistration]]:
        """
        Run every post-acquire gate in order.

        Returns the first suppression hit (or None) and the user's eligible
        devices when the device gate was reached.
        """
        result = self.check_preference(session, notification_type, event, user_id)
        if result:
            return result, []

        result, devices = self.check_devices(session, user_id)
        if result:
            return result, []

        result = self.check_cooldown(session, notification_type, event, user_id, now)
        if result:
            return result, devices

        return self.check_quiet_hours(notification_type, now), devices
