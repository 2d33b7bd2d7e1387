import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, or_

from database.models import DeviceRegistration
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class DeviceRepository(BaseRepository):
    def get_by_device_id(self, device_id: str) -> Optional[DeviceRegistration]:
        stmt = select(DeviceRegistration).where(DeviceRegistration.device_id == device_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_device_ids(self, device_ids: Iterable[str]) -> Dict[str, DeviceRegistration]:
        ids = list(device_ids)
        if not ids:
            return {}
        stmt = select(DeviceRegistration).where(DeviceRegistration.device_id.in_(ids))
        return {d.device_id: d for d in self.db.execute(stmt).scalars().all()}

    def list_for_user(self, user_id: str) -> List[DeviceRegistration]:
        stmt = select(DeviceRegistration).where(
            DeviceRegistration.user_id == user_id
        ).order_by(DeviceRegistration.last_active_at.desc().nullslast(), DeviceRegistration.updated_at.desc())
        return list(self.db.execute(stmt).scalars().all())

    def list_all_device_ids(self) -> List[str]:
        stmt = select(DeviceRegistration.device_id).order_by(DeviceRegistration.created_at)
        return list(self.db.execute(stmt).scalars().all())

    def register(
        self,
        user_id: str,
        device_id: str,
        platform: Optional[str],
        now: datetime,
    ) -> DeviceRegistration:
        """
        Create or re-activate a device row in the pending state.

        Re-registration of a device id that belonged to another user moves it;
        a device belongs to exactly one user.
        """
        device = self.get_by_device_id(device_id)
        if device is None:
            device = DeviceRegistration(
                user_id=user_id,
                device_id=device_id,
                platform=platform,
                created_at=now,
            )
            self.db.add(device)
        elif device.user_id != user_id:
            logger.warning(f"Device re-registered from user {device.user_id} to {user_id}")

        device.user_id = user_id
        device.platform = platform or device.platform
        device.is_active = True
        device.subscribed = None
        device.invalid = False
        device.external_user_id_mismatch = False
        device.last_error = None
        device.updated_at = now
        self.flush()
        return device

    def apply_provider_state(
        self,
        device: DeviceRegistration,
        subscribed: Optional[bool],
        invalid: bool,
        external_user_id_mismatch: bool,
        last_active_at: Optional[datetime],
        provider_state: Dict[str, Any],
        now: datetime,
    ) -> None:
        device.subscribed = subscribed
        device.invalid = invalid
        device.is_active = not invalid
        device.external_user_id_mismatch = external_user_id_mismatch
        device.last_error = None
        if last_active_at is not None:
            device.last_active_at = last_active_at
        device.provider_state = provider_state
        device.last_checked_at = now
        device.updated_at = now

    def record_check_error(self, device: DeviceRegistration, error: str, now: datetime) -> None:
        device.last_error = error[:500]
        device.last_checked_at = now
        device.updated_at = now

    def users_with_eligible_devices(self) -> List[str]:
        stmt = select(DeviceRegistration.user_id).where(
            DeviceRegistration.is_active.is_(True),
            DeviceRegistration.invalid.is_(False),
            DeviceRegistration.external_user_id_mismatch.is_(False),
            or_(DeviceRegistration.subscribed.is_(None), DeviceRegistration.subscribed.is_(True)),
        ).distinct()
        return sorted(self.db.execute(stmt).scalars().all())
