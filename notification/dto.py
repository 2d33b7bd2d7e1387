"""Value types shared across the engine."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SendResult(str, Enum):
    """Exactly one of these is recorded per send log row."""
    ACCEPTED = "accepted"
    FAILED = "failed"
    SUPPRESSED_DUPLICATE = "suppressed_duplicate"
    SUPPRESSED_STALE = "suppressed_stale"
    SUPPRESSED_PREFERENCE = "suppressed_preference"
    SUPPRESSED_UNSUBSCRIBED = "suppressed_unsubscribed"
    SUPPRESSED_COOLDOWN = "suppressed_cooldown"
    SUPPRESSED_QUIET_HOURS = "suppressed_quiet_hours"


class DedupeScope(str, Enum):
    GLOBAL = "global"
    PER_USER_PER_EVENT = "per_user_per_event"


class AudienceStrategy(str, Enum):
    USERS_WITH_PICKS_FOR_FIXTURE = "users_with_picks_for_fixture"
    USERS_WITH_PICKS_IN_GAMEWEEK = "users_with_picks_in_gameweek"
    LEAGUE_MEMBERS_EXCEPT_SENDER = "league_members_except_sender"
    LEAGUE_MEMBERS_EXCEPT_JOINER = "league_members_except_joiner"
    ALL_LEAGUE_MEMBERS = "all_league_members"
    ALL_SUBSCRIBED_USERS = "all_subscribed_users"


@dataclass
class NotificationEvent:
    """
    A domain event handed to the dispatcher by a trigger.

    `params` feed the catalog templates (event id, grouping, deep link) and
    the audience strategy. `occurred_at` is the event's natural time and
    drives the staleness cutoff.
    """
    notification_key: str
    params: Dict[str, Any]
    occurred_at: datetime
    actor_user_id: Optional[str] = None  # sender/joiner; excluded by some audiences
    title: Optional[str] = None
    body: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None
    grouping_params: Dict[str, Any] = field(default_factory=dict)
    skip_preference_check: bool = False
    skip_cooldown_check: bool = False


@dataclass(frozen=True)
class GroupingMetadata:
    collapse_id: Optional[str] = None
    thread_id: Optional[str] = None
    platform_group: Optional[str] = None


@dataclass(frozen=True)
class PushPayload:
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None


@dataclass
class UserDispatchResult:
    user_id: Optional[str]
    result: SendResult
    reason: Optional[str] = None
    provider_notification_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


@dataclass
class DispatchReport:
    """Outcome of one event's dispatch across its candidates."""
    notification_key: str
    event_id: str
    total_candidates: int = 0
    selected_candidates: int = 0
    counts: Dict[str, int] = field(default_factory=lambda: {r.value: 0 for r in SendResult})
    user_results: List[UserDispatchResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    def add(self, user_result: UserDispatchResult) -> None:
        self.counts[user_result.result.value] += 1
        self.user_results.append(user_result)
        if user_result.result == SendResult.FAILED:
            self.errors.append({'user_id': user_result.user_id, 'error': user_result.error})

    def result_for(self, user_id: str) -> Optional[SendResult]:
        for r in self.user_results:
            if r.user_id == user_id:
                return r.result
        return None

    @property
    def accepted(self) -> int:
        return self.counts[SendResult.ACCEPTED.value]

    def summary(self) -> str:
        parts = [f"{k}={v}" for k, v in self.counts.items() if v]
        return f"{self.notification_key}/{self.event_id}: " + (", ".join(parts) or "no candidates")
