"""Configuration management using Pydantic models."""

import logging
from pathlib import Path
from typing import Optional

import yaml
from platformdirs import user_config_dir, user_data_dir
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import (
    APP_NAME,
    AUTH_STATE_TIMEOUT_SECONDS,
    DEFAULT_CACHE_TTL_HOURS,
    DEFAULT_OAUTH_PORT,
    DEFAULT_SYNC_INTERVAL_MINUTES,
)

logger = logging.getLogger(__name__)


# Placeholder values that indicate unconfigured credentials
INVALID_PLACEHOLDERS = {
    "YOUR_ANILIST_CLIENT_ID_HERE",
    "YOUR_ANILIST_CLIENT_SECRET_HERE",
    "",
}

CONFIG_TEMPLATE = """\
# anilist-offline-sync configuration
# Create an API client at https://anilist.co/settings/developer and set its
# redirect URL to the redirect_uri below.
anilist:
  client_id: YOUR_ANILIST_CLIENT_ID_HERE
  client_secret: YOUR_ANILIST_CLIENT_SECRET_HERE
  redirect_uri: http://localhost:8080/callback

oauth:
  port: 8080

sync:
  offline_mode: false
  cache_ttl_hours: 24
  interval_minutes: 15
  log_level: INFO
"""


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class AniListConfig(_Frozen):
    """AniList API configuration."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: str = f"http://localhost:{DEFAULT_OAUTH_PORT}/callback"
    auth_url: str = "https://anilist.co/api/v2/oauth/authorize"
    token_url: str = "https://anilist.co/api/v2/oauth/token"
    graphql_url: str = "https://graphql.anilist.co"
    scope: str = ""

    @field_validator("client_id", "client_secret", mode="before")
    @classmethod
    def coerce_to_str(cls, v):
        """YAML reads numeric client ids as int."""
        return str(v) if v is not None else None


class OAuthConfig(_Frozen):
    """Local redirect listener configuration."""
    port: int = DEFAULT_OAUTH_PORT
    state_timeout_seconds: int = AUTH_STATE_TIMEOUT_SECONDS


class SyncConfig(_Frozen):
    """Synchronization settings."""
    offline_mode: bool = False
    cache_ttl_hours: int = Field(default=DEFAULT_CACHE_TTL_HOURS, ge=0)
    interval_minutes: int = Field(default=DEFAULT_SYNC_INTERVAL_MINUTES, ge=1)
    log_level: str = "INFO"


class PathsConfig(_Frozen):
    data_dir: Optional[Path] = None


class Settings(_Frozen):
    """Root configuration, loaded once at startup and passed around as-is."""
    anilist: AniListConfig = Field(default_factory=AniListConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @property
    def data_dir(self) -> Path:
        return self.paths.data_dir or Path(user_data_dir(APP_NAME, appauthor=False))

    @property
    def token_file(self) -> Path:
        return self.data_dir / "credential.json"

    @property
    def cache_db(self) -> Path:
        return self.data_dir / "cache.db"


def default_config_path() -> Path:
    """Config file location in the platform's per-user config directory."""
    return Path(user_config_dir(APP_NAME, appauthor=False)) / "config.yaml"


def _create_config_template(config_path: Path) -> None:
    """Write a config template for the user to fill in."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    logger.info(f"Created config template: {config_path}")
    logger.info("Please edit the config file with your AniList client credentials")


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load configuration from YAML, creating a template on first run."""
    config_path = Path(config_path) if config_path else default_config_path()

    if not config_path.exists():
        _create_config_template(config_path)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}
        settings = Settings(**raw_config)
    except Exception as e:
        logger.error(f"Failed to load config {config_path}: {e}")
        raise

    logger.debug(f"Loaded configuration from {config_path}")
    return settings


def validate_credentials(settings: Settings) -> tuple[bool, list[str]]:
    """
    Validate that credentials are not placeholder values.
    Returns (is_valid, list_of_invalid_keys).
    """
    missing_or_invalid = []
    for key in ("client_id", "client_secret"):
        value = getattr(settings.anilist, key) or ""
        if value in INVALID_PLACEHOLDERS:
            missing_or_invalid.append(f"anilist.{key}")

    return len(missing_or_invalid) == 0, missing_or_invalid
