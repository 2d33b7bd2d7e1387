from sqlalchemy import Column, Text, TIMESTAMP

from .base import Base, JsonType


class UserPreference(Base):
    """Per-user opt-in flags keyed by catalog preference_key."""
    __tablename__ = 'user_notification_preferences'

    user_id = Column(Text, primary_key=True)
    preferences = Column(JsonType, nullable=False, default=dict)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)

    def is_enabled(self, preference_key: str) -> bool:
        # Missing key means opted out
        return (self.preferences or {}).get(preference_key) is True
