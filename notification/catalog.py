"""
Notification catalog.

The catalog is the single source of truth for what the engine may send:
one validated entry per business event, loaded from YAML at process start
and treated as read-only afterwards. Adding a notification type means adding
an entry here, not writing code.
"""
import logging
import os
import re
import threading
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.utils import like_pattern, render_template, template_fields
from notification.dto import AudienceStrategy, DedupeScope, GroupingMetadata
from notification.exceptions import CatalogLoadError, EventTemplateError, UnknownNotificationType

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "catalog.yaml")

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_scorer(scorer: str) -> str:
    """Lowercase, non-alphanumerics to underscores, at most 30 chars."""
    return _NON_ALNUM.sub("_", scorer.strip().lower())[:30]


# Derived params: name -> (raw param it falls back to, normalizer)
_DERIVED_PARAMS = {
    "scorer_normalized": ("scorer", normalize_scorer),
}


def event_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Copy of `params` with derived values filled in and normalized.

    Callers may pass the raw `scorer`; an explicit `scorer_normalized` is
    normalized again so case and punctuation variants render the same id.
    """
    resolved = dict(params)
    for name, (source, normalize) in _DERIVED_PARAMS.items():
        raw = resolved.get(name)
        if raw is None:
            raw = resolved.get(source)
        if raw is not None:
            resolved[name] = normalize(str(raw))
    return resolved


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TriggerConfig(_Frozen):
    name: str
    event_id_format: str


class DedupeConfig(_Frozen):
    scope: DedupeScope
    ttl_seconds: int = Field(default=0, ge=0)  # 0 = no staleness cutoff
    # Event ids matching this (`*` wildcard) already delivered to a user count as this event
    equivalent_event_id_format: Optional[str] = None


class CooldownConfig(_Frozen):
    per_user_seconds: int = Field(default=0, ge=0)


class QuietHoursConfig(_Frozen):
    """Local wall-clock window, end exclusive. start > end wraps past midnight."""
    start: Optional[str] = None
    end: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def _check_hhmm(cls, v):
        if v is not None and not _HHMM.match(v):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return v

    @model_validator(mode="after")
    def _both_or_neither(self):
        if (self.start is None) != (self.end is None):
            raise ValueError("quiet_hours needs both start and end, or neither")
        return self

    @property
    def enabled(self) -> bool:
        return self.start is not None and self.start != self.end


class PreferenceConfig(_Frozen):
    preference_key: Optional[str] = None
    default: bool = True


class GroupingConfig(_Frozen):
    collapse_id_format: Optional[str] = None
    thread_id_format: Optional[str] = None
    platform_group_format: Optional[str] = None


class DeepLinkConfig(_Frozen):
    url_format: Optional[str] = None


class RolloutConfig(_Frozen):
    enabled: bool = True
    percentage: int = Field(default=100, ge=0, le=100)


class NotificationType(_Frozen):
    """One catalog entry."""
    notification_key: str
    owner: str
    status: str = "active"
    channels: List[str] = Field(default_factory=lambda: ["push"])
    audience: AudienceStrategy
    source: str
    trigger: TriggerConfig
    dedupe: DedupeConfig
    cooldown: CooldownConfig = Field(default_factory=CooldownConfig)
    quiet_hours: QuietHoursConfig = Field(default_factory=QuietHoursConfig)
    preferences: PreferenceConfig = Field(default_factory=PreferenceConfig)
    grouping: GroupingConfig = Field(default_factory=GroupingConfig)
    deep_links: DeepLinkConfig = Field(default_factory=DeepLinkConfig)
    rollout: RolloutConfig = Field(default_factory=RolloutConfig)

    @property
    def is_active(self) -> bool:
        return self.status == "active" and self.rollout.enabled

    @property
    def default_title(self) -> str:
        return self.notification_key.replace("-", " ").title()


class NotificationCatalog:
    """Immutable lookup over validated catalog entries."""

    def __init__(self, entries: List[NotificationType]):
        by_key: Dict[str, NotificationType] = {}
        for entry in entries:
            if entry.notification_key in by_key:
                raise CatalogLoadError(f"Duplicate notification_key in catalog: {entry.notification_key}")
            by_key[entry.notification_key] = entry
        self._entries = by_key

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NotificationCatalog":
        raw = (data or {}).get("notifications")
        if not isinstance(raw, list):
            raise CatalogLoadError("Catalog must contain a 'notifications' list")
        try:
            entries = [NotificationType.model_validate(item) for item in raw]
        except ValidationError as e:
            raise CatalogLoadError(f"Invalid catalog entry: {e}") from e
        return cls(entries)

    @classmethod
    def from_file(cls, path: str) -> "NotificationCatalog":
        if not os.path.exists(path):
            raise CatalogLoadError(f"Catalog file not found: {path}")
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise CatalogLoadError(f"Catalog file {path} is not valid YAML: {e}") from e
        catalog = cls.from_dict(data)
        logger.info(f"Loaded {len(catalog)} notification types from {path}")
        return catalog

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, notification_key: str) -> bool:
        return notification_key in self._entries

    def lookup(self, notification_key: str) -> NotificationType:
        try:
            return self._entries[notification_key]
        except KeyError:
            raise UnknownNotificationType(notification_key)

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def entries(self) -> List[NotificationType]:
        return [self._entries[k] for k in self.keys()]

    def is_enabled(self, notification_key: str) -> bool:
        return self.lookup(notification_key).is_active

    def preference_defaults(self) -> Dict[str, bool]:
        """preference_key -> default, for seeding a new user's preferences."""
        defaults = {}
        for entry in self.entries():
            key = entry.preferences.preference_key
            if key:
                defaults[key] = entry.preferences.default
        return defaults

    def format_event_id(self, notification_key: str, params: Mapping[str, Any]) -> str:
        """
        Render the entry's event_id_format from event params.

        A missing placeholder is fatal: an event id that silently dropped a
        component would collide with unrelated events in the ledger.
        """
        entry = self.lookup(notification_key)
        template = entry.trigger.event_id_format
        params = event_params(params)
        missing = template_fields(template) - {k for k, v in params.items() if v is not None}
        if missing:
            raise EventTemplateError(notification_key, template, missing)
        return render_template(template, params)

    def format_grouping(self, notification_key: str, params: Mapping[str, Any]) -> GroupingMetadata:
        """Grouping fields whose params are missing come back as None."""
        grouping = self.lookup(notification_key).grouping
        params = event_params(params)
        return GroupingMetadata(
            collapse_id=render_template(grouping.collapse_id_format, params),
            thread_id=render_template(grouping.thread_id_format, params),
            platform_group=render_template(grouping.platform_group_format, params),
        )

    def format_deep_link(self, notification_key: str, params: Mapping[str, Any]) -> Optional[str]:
        return render_template(self.lookup(notification_key).deep_links.url_format, event_params(params))

    def format_equivalent_pattern(self, notification_key: str, params: Mapping[str, Any]) -> Optional[str]:
        """LIKE pattern for event ids that count as this event, or None if the type has none."""
        template = self.lookup(notification_key).dedupe.equivalent_event_id_format
        rendered = render_template(template, event_params(params))
        return like_pattern(rendered) if rendered else None


_default_catalog: Optional[NotificationCatalog] = None
_default_lock = threading.Lock()


def load_catalog(path: Optional[str] = None) -> NotificationCatalog:
    """
    Load a catalog from `path`, or the packaged default.

    The packaged default is parsed once per process and shared.
    """
    global _default_catalog
    if path is not None:
        return NotificationCatalog.from_file(path)
    with _default_lock:
        if _default_catalog is None:
            _default_catalog = NotificationCatalog.from_file(DEFAULT_CATALOG_PATH)
        return _default_catalog
