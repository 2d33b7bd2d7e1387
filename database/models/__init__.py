from .base import Base, JsonType
from .notification import SendLogEntry, DedupLock, SEND_RESULTS
from .device import DeviceRegistration, SubscriptionState
from .preference import UserPreference
from .league import LeagueMember, LeagueNotificationSetting, Pick

__all__ = [
    'Base',
    'JsonType',
    'SendLogEntry',
    'DedupLock',
    'SEND_RESULTS',
    'DeviceRegistration',
    'SubscriptionState',
    'UserPreference',
    'LeagueMember',
    'LeagueNotificationSetting',
    'Pick',
]
