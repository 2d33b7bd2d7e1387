import yaml
import os
from typing import Optional, Literal
from pydantic import BaseModel, Field


class DatabaseConfig(BaseModel):
    url: str


class ProviderConfig(BaseModel):
    """Push delivery provider settings."""
    type: Literal["onesignal", "dry_run"] = "onesignal"
    app_id: Optional[str] = None
    api_key: Optional[str] = None
    base_url: str = "https://onesignal.com/api/v1"
    timeout_seconds: float = 10.0


class NotificationConfig(BaseModel):
    """
    Configuration for the push dispatch engine.

    Controls which catalog is loaded, which ledger environment rows are
    written under, and how wide the fan-out runs.
    """
    enabled: bool = True

    # Ledger partition; dev/staging traffic never consumes prod dedup slots
    environment: Literal["prod", "dev", "staging"] = "prod"

    # None = notification/catalog.yaml shipped with the package
    catalog_path: Optional[str] = None

    # Wall-clock zone used for quiet hours
    timezone: str = "Europe/London"

    # Concurrency: candidates per event, and events handled at once
    max_workers: int = Field(default=8, ge=1)
    event_workers: int = Field(default=4, ge=1)

    provider: ProviderConfig = Field(default_factory=ProviderConfig)


class ReconciliationConfig(BaseModel):
    """Device reconciliation job settings."""
    batch_size: int = Field(default=200, ge=1)
    max_workers: int = Field(default=10, ge=1)


class AppConfig(BaseModel):
    database: DatabaseConfig
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try the project root
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    # Allow env var override for DB URL
    env_db_url = os.environ.get("DATABASE_URL")
    if env_db_url:
        data.setdefault('database', {})
        data['database']['url'] = env_db_url

    notifications = data.get('notifications') or {}

    env_name = os.environ.get("NOTIFICATION_ENV")
    if env_name:
        notifications['environment'] = env_name

    # Provider credentials normally live in the environment, not the YAML
    provider = notifications.get('provider') or {}
    env_app_id = os.environ.get("ONESIGNAL_APP_ID")
    if env_app_id:
        provider['app_id'] = env_app_id
    env_api_key = os.environ.get("ONESIGNAL_REST_API_KEY")
    if env_api_key:
        provider['api_key'] = env_api_key
    if os.environ.get("NOTIFICATION_DRY_RUN", "").lower() in ("true", "1", "yes"):
        provider['type'] = "dry_run"
    notifications['provider'] = provider

    data['notifications'] = notifications

    return AppConfig(**data)
