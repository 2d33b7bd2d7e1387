import uuid

from sqlalchemy import Column, Text, TIMESTAMP, UniqueConstraint, Index, Uuid, CheckConstraint

from .base import Base, JsonType

SEND_RESULTS = (
    'accepted',
    'failed',
    'suppressed_duplicate',
    'suppressed_stale',
    'suppressed_preference',
    'suppressed_unsubscribed',
    'suppressed_cooldown',
    'suppressed_quiet_hours',
)


class SendLogEntry(Base):
    """
    Append-only audit row, one per dispatch attempt.

    Rows are inserted once with their final result and never updated.
    Global-scope attempts that lose the event lock are logged once with
    a NULL user_id before any per-user fan-out.
    """
    __tablename__ = 'notification_send_log'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    environment = Column(Text, nullable=False, default='prod')

    user_id = Column(Text, nullable=True)
    notification_key = Column(Text, nullable=False)
    event_id = Column(Text, nullable=False)

    result = Column(Text, nullable=False)
    error = Column(JsonType, nullable=True)

    provider_notification_id = Column(Text, nullable=True)
    target_type = Column(Text, nullable=True)  # player_ids | none
    targeting_summary = Column(JsonType, nullable=False, default=dict)
    payload_summary = Column(JsonType, nullable=False, default=dict)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "result IN (%s)" % ", ".join(f"'{r}'" for r in SEND_RESULTS),
            name='ck_send_log_result',
        ),
        # Cooldown lookups: recent accepted sends of a key to one user
        Index('idx_send_log_cooldown', 'environment', 'user_id', 'notification_key', 'created_at'),
        Index('idx_send_log_event', 'environment', 'notification_key', 'event_id'),
        Index('idx_send_log_created_at', 'created_at'),
    )


class DedupLock(Base):
    """
    Dedup slot consumed by the first dispatch attempt of an event.

    The unique dedup_key is the concurrency primitive: acquisition is a
    single INSERT ... ON CONFLICT DO NOTHING. Per-user scope keys include
    the user id; global scope keys use '*' and leave user_id NULL.
    """
    __tablename__ = 'notification_dedup_lock'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    dedup_key = Column(Text, nullable=False)

    environment = Column(Text, nullable=False, default='prod')
    scope = Column(Text, nullable=False)  # global | per_user_per_event
    notification_key = Column(Text, nullable=False)
    event_id = Column(Text, nullable=False)
    user_id = Column(Text, nullable=True)

    acquired_at = Column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('dedup_key', name='uq_notification_dedup_key'),
        Index('idx_dedup_lock_event', 'notification_key', 'event_id'),
    )
