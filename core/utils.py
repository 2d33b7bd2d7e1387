import hashlib
import json
import logging
import string
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_formatter = string.Formatter()


def utcnow() -> datetime:
    """Timezone-aware current UTC time. Injected as the default engine clock."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def template_fields(template: str) -> set:
    """Return the placeholder names used by a ``{name}`` style template."""
    return {name for _, name, _, _ in _formatter.parse(template) if name}


def render_template(template: Optional[str], params: Mapping[str, Any]) -> Optional[str]:
    """
    Substitute ``{name}`` placeholders from params.

    Returns None when the template is empty or references a parameter that
    was not supplied. Callers that need a hard failure (event ids) check
    ``template_fields`` themselves first.
    """
    if not template:
        return None
    missing = template_fields(template) - set(params)
    if missing:
        logger.debug(f"Template {template!r} missing params {sorted(missing)}")
        return None
    return template.format_map({k: str(v) for k, v in params.items()})


def stable_hash(*parts: Any, length: int = 32) -> str:
    """
    Deterministic SHA-256 over the JSON-encoded parts.

    JSON keeps part boundaries, so ("a:b", "c") and ("a", "b:c") differ.

    Used for dedup keys so the same inputs collide across processes.
    """
    key = json.dumps(["*" if p is None else str(p) for p in parts])
    return hashlib.sha256(key.encode('utf-8')).hexdigest()[:length]


def like_pattern(value: str) -> str:
    """SQL LIKE pattern (escape char `\\`) where `*` is the only wildcard."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%")


def rollout_bucket(user_id: str) -> int:
    """Stable 0-99 bucket for gradual enablement, keyed only by user id."""
    digest = hashlib.sha256(user_id.encode('utf-8')).hexdigest()
    return int(digest[:8], 16) % 100


def mask_identifier(value: Optional[str], keep: int = 8) -> str:
    """Truncate device ids and tokens for safe logging."""
    if not value:
        return "***"
    return f"{value[:keep]}..." if len(value) > keep else value


def compact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None values from a dict."""
    return {k: v for k, v in data.items() if v is not None}
