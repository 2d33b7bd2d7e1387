import uuid
import enum

from sqlalchemy import Column, Text, Boolean, TIMESTAMP, UniqueConstraint, Index, Uuid

from .base import Base, JsonType


class SubscriptionState(str, enum.Enum):
    """Provider subscription state as mirrored locally."""
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    PENDING = "pending"  # valid token, no explicit subscribe/unsubscribe signal yet


class DeviceRegistration(Base):
    """
    Local mirror of a user's push-capable device.

    Written on registration and by the reconciliation job only.
    `subscribed` is tri-state: True, False, or NULL while the provider has
    not yet confirmed the subscription.
    """
    __tablename__ = 'push_devices'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    device_id = Column(Text, nullable=False)  # provider player/subscription id
    platform = Column(Text)

    is_active = Column(Boolean, nullable=False, default=True)
    subscribed = Column(Boolean, nullable=True)
    invalid = Column(Boolean, nullable=False, default=False)

    # Provider reported a different external user id; flagged for a human
    external_user_id_mismatch = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text)

    last_checked_at = Column(TIMESTAMP(timezone=True))
    last_active_at = Column(TIMESTAMP(timezone=True))
    provider_state = Column(JsonType, nullable=False, default=dict)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('device_id', name='uq_push_devices_device_id'),
        Index('idx_push_devices_user_active', 'user_id', 'is_active'),
    )

    @property
    def subscription_state(self) -> SubscriptionState:
        if self.subscribed is None:
            return SubscriptionState.PENDING
        return SubscriptionState.SUBSCRIBED if self.subscribed else SubscriptionState.UNSUBSCRIBED

    @property
    def is_eligible(self) -> bool:
        """
        Active, valid, subscribed or pending, and owned by the user the provider reports.

        A flagged owner mismatch stays ineligible until re-registration or the
        next reconciliation clears it.
        """
        if not self.is_active or self.invalid or self.external_user_id_mismatch:
            return False
        return self.subscription_state in (SubscriptionState.SUBSCRIBED, SubscriptionState.PENDING)
