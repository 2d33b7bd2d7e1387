from typing import List

from sqlalchemy import select

from database.models import LeagueMember, LeagueNotificationSetting, Pick
from database.repositories.base import BaseRepository


class LeagueRepository(BaseRepository):
    """Read-only queries over the application's league and pick tables."""

    def member_ids(self, league_id: str) -> List[str]:
        stmt = select(LeagueMember.user_id).where(LeagueMember.league_id == league_id)
        return list(self.db.execute(stmt).scalars().all())

    def users_with_picks_for_match(self, api_match_id: int) -> List[str]:
        stmt = select(Pick.user_id).where(Pick.api_match_id == api_match_id).distinct()
        return list(self.db.execute(stmt).scalars().all())

    def users_with_picks_in_gameweek(self, gw: int) -> List[str]:
        stmt = select(Pick.user_id).where(Pick.gw == gw).distinct()
        return list(self.db.execute(stmt).scalars().all())

    def is_muted(self, user_id: str, league_id: str) -> bool:
        stmt = select(LeagueNotificationSetting.muted).where(
            LeagueNotificationSetting.user_id == user_id,
            LeagueNotificationSetting.league_id == league_id,
        )
        return bool(self.db.execute(stmt).scalar_one_or_none())
