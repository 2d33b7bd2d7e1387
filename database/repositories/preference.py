from datetime import datetime
from typing import Dict, Iterable, List, Mapping

from sqlalchemy import select

from database.models import UserPreference
from database.repositories.base import BaseRepository


class PreferenceRepository(BaseRepository):
    def get(self, user_id: str) -> Dict[str, bool]:
        row = self.db.get(UserPreference, user_id)
        return dict(row.preferences or {}) if row else {}

    def get_for_users(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, bool]]:
        ids = list(user_ids)
        if not ids:
            return {}
        stmt = select(UserPreference).where(UserPreference.user_id.in_(ids))
        return {row.user_id: dict(row.preferences or {}) for row in self.db.execute(stmt).scalars().all()}

    def set_preferences(self, user_id: str, updates: Mapping[str, bool], now: datetime) -> UserPreference:
        row = self.db.get(UserPreference, user_id)
        if row is None:
            row = UserPreference(user_id=user_id, preferences={}, updated_at=now)
            self.db.add(row)
        merged = dict(row.preferences or {})
        merged.update({k: bool(v) for k, v in updates.items()})
        # Reassign so the JSON column is marked dirty
        row.preferences = merged
        row.updated_at = now
        self.flush()
        return row

    def seed_defaults(self, user_id: str, defaults: Mapping[str, bool], now: datetime) -> UserPreference:
        """Fill in keys the user has never set; explicit choices are kept."""
        existing = self.get(user_id)
        missing = {k: v for k, v in defaults.items() if k not in existing}
        return self.set_preferences(user_id, missing, now)

    def users_with_preference(self, preference_key: str) -> List[str]:
        """Users who explicitly enabled `preference_key`."""
        # JSON operators differ between dialects; filter in Python
        stmt = select(UserPreference.user_id, UserPreference.preferences)
        return sorted(
            user_id for user_id, prefs in self.db.execute(stmt).all()
            if (prefs or {}).get(preference_key) is True
        )
