import pytest

from notification.audience import AudienceResolver, get_resolver, register_resolver
from notification.dto import AudienceStrategy, NotificationEvent
from notification.exceptions import InvalidEventContext
from tests.mocks.notification_mocks import add_device, add_league, add_pick, opt_in


def resolve(catalog, session_factory, key, params, actor=None, clock=None):
    entry = catalog.lookup(key)
    event = NotificationEvent(notification_key=key, params=params, occurred_at=clock(), actor_user_id=actor)
    session = session_factory()
    try:
        return get_resolver(entry.audience).resolve(session, entry, event)
    finally:
        session.close()


@pytest.fixture
def seeded(session_factory):
    session = session_factory()
    add_league(session, "L1", "alice", "bob", "cara")
    add_league(session, "L2", "bob", "dan")
    # bob picked match 500 in two fixtures slots of different gameweeks
    add_pick(session, "bob", gw=3, fixture_index=0, api_match_id=500)
    add_pick(session, "bob", gw=4, fixture_index=2, api_match_id=500)
    add_pick(session, "cara", gw=3, fixture_index=0, api_match_id=500)
    add_pick(session, "dan", gw=3, fixture_index=1, api_match_id=501)
    session.commit()
    session.close()


class TestAudienceStrategies:
    def test_picks_for_fixture_deduplicates(self, catalog, session_factory, clock, seeded):
        users = resolve(catalog, session_factory, "goal-scored", {'api_match_id': 500}, clock=clock)
        assert users == ["bob", "cara"]

    def test_picks_in_gameweek(self, catalog, session_factory, clock, seeded):
        users = resolve(catalog, session_factory, "gameweek-complete", {'gw': 3}, clock=clock)
        assert users == ["bob", "cara", "dan"]

    def test_league_members_except_sender(self, catalog, session_factory, clock, seeded):
        users = resolve(catalog, session_factory, "chat-message", {'league_id': 'L1'}, actor="alice", clock=clock)
        assert users == ["bob", "cara"]

    def test_league_members_except_joiner_falls_back_to_param(self, catalog, session_factory, clock, seeded):
        users = resolve(catalog, session_factory, "member-join", {'league_id': 'L1', 'user_id': 'cara'}, clock=clock)
        assert users == ["alice", "bob"]

    def test_all_league_members(self, catalog, session_factory, clock, seeded):
        users = resolve(catalog, session_factory, "final-submission", {'league_id': 'L2', 'gw': 3}, clock=clock)
        assert users == ["bob", "dan"]

    def test_broadcast_uses_preference(self, catalog, session_factory, clock):
        session = session_factory()
        opt_in(session, "alice", "new-gameweek")
        opt_in(session, "bob", "score-updates")
        session.commit()
        session.close()

        users = resolve(catalog, session_factory, "new-gameweek", {'gw': 9}, clock=clock)
        assert users == ["alice"]

    def test_resolution_is_reproducible(self, catalog, session_factory, clock, seeded):
        first = resolve(catalog, session_factory, "gameweek-complete", {'gw': 3}, clock=clock)
        second = resolve(catalog, session_factory, "gameweek-complete", {'gw': 3}, clock=clock)
        assert first == second

    def test_missing_fixture_param(self, catalog, session_factory, clock):
        with pytest.raises(InvalidEventContext):
            resolve(catalog, session_factory, "final-whistle", {}, clock=clock)

    def test_missing_sender(self, catalog, session_factory, clock, seeded):
        with pytest.raises(InvalidEventContext):
            resolve(catalog, session_factory, "chat-message", {'league_id': 'L1'}, clock=clock)


class TestResolverRegistry:
    def test_register_replaces_strategy(self, catalog, session_factory, clock):
        class Everyone(AudienceResolver):
            def _candidates(self, session, notification_type, event):
                return ["z", "a", "a"]

        original = get_resolver(AudienceStrategy.ALL_SUBSCRIBED_USERS)
        try:
            register_resolver(AudienceStrategy.ALL_SUBSCRIBED_USERS, Everyone)
            assert resolve(catalog, session_factory, "new-gameweek", {'gw': 1}, clock=clock) == ["a", "z"]
        finally:
            register_resolver(AudienceStrategy.ALL_SUBSCRIBED_USERS, type(original))

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            get_resolver("users_who_like_spurs")


class TestEligibleDeviceFallback:
    def test_broadcast_without_preference_key_uses_devices(self, catalog, session_factory, clock):
        session = session_factory()
        add_device(session, "alice")
        add_device(session, "bob", subscribed=None)
        add_device(session, "cara", subscribed=False)
        session.commit()
        session.close()

        entry = catalog.lookup("new-gameweek")
        entry = entry.model_copy(update={'preferences': entry.preferences.model_copy(update={'preference_key': None})})
        event = NotificationEvent(notification_key="new-gameweek", params={'gw': 1}, occurred_at=clock())
        session = session_factory()
        users = get_resolver(entry.audience).resolve(session, entry, event)
        session.close()
        assert users == ["alice", "bob"]
