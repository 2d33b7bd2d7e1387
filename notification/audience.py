"""
Audience resolution: catalog audience strategy + event params -> candidate user ids.

Resolvers only read. Given the same params and the same table contents they
return the same sorted, de-duplicated list, so a replay of an event sees the
audience the original dispatch saw.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Type

from sqlalchemy.orm import Session

from database.repositories import DeviceRepository, LeagueRepository, PreferenceRepository
from notification.catalog import NotificationType
from notification.dto import AudienceStrategy, NotificationEvent
from notification.exceptions import InvalidEventContext

logger = logging.getLogger(__name__)


class AudienceResolver(ABC):
    """Abstract base class for audience strategies."""

    # Event params this strategy cannot run without
    required_params: tuple = ()

    def resolve(self, session: Session, notification_type: NotificationType, event: NotificationEvent) -> List[str]:
        missing = [p for p in self.required_params if event.params.get(p) is None]
        if missing:
            raise InvalidEventContext(
                f"{notification_type.notification_key}: audience "
                f"{notification_type.audience.value} needs params {missing}"
            )
        user_ids = self._candidates(session, notification_type, event)
        return sorted({u for u in user_ids if u})

    @abstractmethod
    def _candidates(self, session: Session, notification_type: NotificationType, event: NotificationEvent) -> List[str]:
        pass


class UsersWithPicksForFixture(AudienceResolver):
    required_params = ('api_match_id',)

    def _candidates(self, session, notification_type, event):
        return LeagueRepository(session).users_with_picks_for_match(int(event.params['api_match_id']))


class UsersWithPicksInGameweek(AudienceResolver):
    required_params = ('gw',)

    def _candidates(self, session, notification_type, event):
        return LeagueRepository(session).users_with_picks_in_gameweek(int(event.params['gw']))


class AllLeagueMembers(AudienceResolver):
    required_params = ('league_id',)

    def _candidates(self, session, notification_type, event):
        return LeagueRepository(session).member_ids(str(event.params['league_id']))


class LeagueMembersExceptSender(AllLeagueMembers):
    def _candidates(self, session, notification_type, event):
        sender = event.actor_user_id or event.params.get('sender_id')
        if not sender:
            raise InvalidEventContext(f"{notification_type.notification_key}: sender user id is required")
        return [u for u in super()._candidates(session, notification_type, event) if u != sender]


class LeagueMembersExceptJoiner(AllLeagueMembers):
    def _candidates(self, session, notification_type, event):
        joiner = event.actor_user_id or event.params.get('user_id')
        if not joiner:
            raise InvalidEventContext(f"{notification_type.notification_key}: joining user id is required")
        return [u for u in super()._candidates(session, notification_type, event) if u != joiner]


class AllSubscribedUsers(AudienceResolver):
    """Broadcast: users who opted in to the type's preference, else anyone with a usable device."""

    def _candidates(self, session, notification_type, event):
        preference_key = notification_type.preferences.preference_key
        if preference_key:
            return PreferenceRepository(session).users_with_preference(preference_key)
        return DeviceRepository(session).users_with_eligible_devices()


_RESOLVERS: Dict[AudienceStrategy, AudienceResolver] = {
    AudienceStrategy.USERS_WITH_PICKS_FOR_FIXTURE: UsersWithPicksForFixture(),
    AudienceStrategy.USERS_WITH_PICKS_IN_GAMEWEEK: UsersWithPicksInGameweek(),
    AudienceStrategy.LEAGUE_MEMBERS_EXCEPT_SENDER: LeagueMembersExceptSender(),
    AudienceStrategy.LEAGUE_MEMBERS_EXCEPT_JOINER: LeagueMembersExceptJoiner(),
    AudienceStrategy.ALL_LEAGUE_MEMBERS: AllLeagueMembers(),
    AudienceStrategy.ALL_SUBSCRIBED_USERS: AllSubscribedUsers(),
}


def get_resolver(strategy: AudienceStrategy) -> AudienceResolver:
    try:
        return _RESOLVERS[AudienceStrategy(strategy)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown audience strategy: {strategy}")


def register_resolver(strategy: AudienceStrategy, resolver_class: Type[AudienceResolver], **kwargs: Any) -> None:
    """Replace or add the resolver used for a strategy."""
    _RESOLVERS[AudienceStrategy(strategy)] = resolver_class(**kwargs)
