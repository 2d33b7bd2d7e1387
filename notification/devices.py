import logging
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from core.utils import mask_identifier, utcnow
from database.database import db_session_scope
from database.repositories import DeviceRepository
from notification.provider import PushProvider

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Device registration entry point used by the app's register endpoint."""

    def __init__(self, session_factory: sessionmaker, provider: PushProvider, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.provider = provider
        self.clock = clock

    def register(self, user_id: str, device_id: str, platform: Optional[str] = None) -> None:
        """
        Store the device in the pending state and link it to the user at the provider.

        The local row is committed first so a provider failure leaves a
        pending device that reconciliation will settle later. The provider
        error still propagates to the caller.
        """
        with db_session_scope(self.session_factory) as session:
            DeviceRepository(session).register(user_id, device_id, platform, self.clock())
        logger.info(f"Registered device {mask_identifier(device_id)} for user {user_id}")
        self.provider.register_device(device_id, user_id)
