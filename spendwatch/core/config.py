"""Application configuration loading utilities."""

from __future__ import annotations

import os
import pathlib
from functools import lru_cache

import yaml
from pydantic import BaseModel, Field

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR.parent / "config" / "settings.yaml"


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)


class CollectionSettings(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    request_timeout_seconds: float = 10.0
    max_pages: int = Field(default=100, ge=1)
    cost_page_limit: int = Field(default=180, ge=1, le=180)
    usage_page_limit: int = Field(default=31, ge=1, le=31)
    organization_delay_seconds: float = 1.0
    data_delay_hours: int = 24
    batch_size: int = Field(default=500, ge=1)
    collect_usage: bool = True


class AlertSettings(BaseModel):
    cooldown_minutes: int = Field(default=60, ge=0)
    notification_timeout_seconds: float = 10.0
    dashboard_base_url: str = "http://localhost:3001"


class KmsSettings(BaseModel):
    backend: str = "aws"
    key_id: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    timeout_seconds: float = 5.0


class EmailSettings(BaseModel):
    api_base_url: str = "https://api.resend.com"
    from_address: str = "Spendwatch Alerts <alerts@spendwatch.local>"
    admin_email: str | None = None
    failure_throttle_minutes: int = 60


class TelemetrySettings(BaseModel):
    events_enabled: bool = True
    retention_days: int = Field(default=7, ge=1)


class AppConfig(BaseModel):
    collection: CollectionSettings = Field(default_factory=CollectionSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    kms: KmsSettings = Field(default_factory=KmsSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)


@lru_cache(maxsize=1)
def load_config(path: pathlib.Path | None = None) -> AppConfig:
    """Load service configuration from YAML, falling back to defaults."""
    env_path = os.getenv("SPENDWATCH_CONFIG")
    config_path = path or (pathlib.Path(env_path) if env_path else DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        return AppConfig()
    raw = yaml.safe_load(config_path.read_text()) or {}
    return AppConfig(**raw)


def get_cron_secret() -> str | None:
    """Return the shared secret guarding the cron endpoints."""
    return os.getenv("CRON_SECRET") or None


def get_email_api_key() -> str | None:
    return os.getenv("RESEND_API_KEY") or None


def get_database_url() -> str | None:
    return os.getenv("DATABASE_URL") or None
