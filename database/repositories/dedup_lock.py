import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.dialects import postgresql, sqlite

from database.models import DedupLock
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


class DedupLockRepository(BaseRepository):
    def _insert(self):
        dialect = self.dialect_name
        try:
            return _DIALECT_INSERTS[dialect]
        except KeyError:
            raise RuntimeError(f"Dedup locks need INSERT ... ON CONFLICT support; got dialect {dialect}")

    def try_insert(
        self,
        dedup_key: str,
        environment: str,
        scope: str,
        notification_key: str,
        event_id: str,
        user_id: Optional[str],
        acquired_at: datetime,
    ) -> bool:
        """
        Atomically claim a dedup slot.

        A single INSERT ... ON CONFLICT DO NOTHING RETURNING id: a row comes
        back only for the writer that created it. Safe across threads and
        processes because the unique constraint does the arbitration.
        """
        stmt = self._insert()(DedupLock).values(
            dedup_key=dedup_key,
            environment=environment,
            scope=scope,
            notification_key=notification_key,
            event_id=event_id,
            user_id=user_id,
            acquired_at=acquired_at,
        ).on_conflict_do_nothing(
            index_elements=['dedup_key']
        ).returning(DedupLock.id)

        inserted_id = self.db.execute(stmt).scalar_one_or_none()
        return inserted_id is not None

    def count_for_event(self, notification_key: str, event_id: str) -> int:
        stmt = select(func.count(DedupLock.id)).where(
            DedupLock.notification_key == notification_key,
            DedupLock.event_id == event_id,
        )
        return self.db.execute(stmt).scalar_one()
