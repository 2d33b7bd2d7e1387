from database.repositories.base import BaseRepository
from database.repositories.send_log import SendLogRepository
from database.repositories.dedup_lock import DedupLockRepository
from database.repositories.device import DeviceRepository
from database.repositories.preference import PreferenceRepository
from database.repositories.league import LeagueRepository

__all__ = [
    'BaseRepository',
    'SendLogRepository',
    'DedupLockRepository',
    'DeviceRepository',
    'PreferenceRepository',
    'LeagueRepository',
]
