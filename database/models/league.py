"""
Read-only views of league and pick tables owned by the main application.

The engine never writes these; audience strategies only select from them.
"""
from sqlalchemy import Boolean, Column, Integer, Text, PrimaryKeyConstraint, Index

from .base import Base


class LeagueMember(Base):
    __tablename__ = 'league_members'

    league_id = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint('league_id', 'user_id', name='pk_league_members'),
        Index('idx_league_members_user', 'user_id'),
    )


class Pick(Base):
    __tablename__ = 'picks'

    user_id = Column(Text, nullable=False)
    gw = Column(Integer, nullable=False)
    fixture_index = Column(Integer, nullable=False)
    api_match_id = Column(Integer, nullable=True)
    pick = Column(Text, nullable=False)  # H | D | A

    __table_args__ = (
        PrimaryKeyConstraint('user_id', 'gw', 'fixture_index', name='pk_picks'),
        Index('idx_picks_match', 'api_match_id'),
        Index('idx_picks_gw', 'gw'),
    )


class LeagueNotificationSetting(Base):
    """Per-user league mute switch, set from the league screen."""
    __tablename__ = 'league_notification_settings'

    user_id = Column(Text, nullable=False)
    league_id = Column(Text, nullable=False)
    muted = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        PrimaryKeyConstraint('user_id', 'league_id', name='pk_league_notification_settings'),
    )
