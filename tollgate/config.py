"""Tollgate configuration management.

Configuration sources (in priority order):
1. Environment variables (TOLLGATE_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseConfig(BaseModel):
    """Database configuration."""

    # Any SQLAlchemy async URL, e.g. postgresql+asyncpg://...
    url: str = "sqlite+aiosqlite:///./tollgate.db"
    echo: bool = False


class KeyPolicyConfig(BaseModel):
    """API key issuance and retention policy."""

    # Keys look like "{prefix}_{43 url-safe chars}"
    prefix: str = "vk"
    max_active_keys: int = 5
    default_ttl_days: int = 90
    max_ttl_days: int = 365
    # Keys not used for this long are removed by the reaper
    retention_days: int = 90

    # bcrypt work factor
    hash_rounds: int = 10

    # Pre-generated secrets kept in memory; 0 disables the buffer
    buffer_size: int = 10
    # Cached verification results; 0 disables the cache
    verification_cache_size: int = 1000

    name_min_length: int = 3
    name_max_length: int = 50


class UpstreamConfig(BaseModel):
    """Open-banking provider configuration."""

    api_url: str = "https://api.truelayer.com"
    auth_url: str = "https://auth.truelayer.com"
    token_endpoint: str = "/connect/token"
    # Token revocation on user-requested disconnect; unset skips it
    revoke_endpoint: str | None = None

    client_id: str = ""
    client_secret: str | None = None
    redirect_uri: str = "http://localhost:3000/callback"

    # Client assertion signing material. The PEM may carry literal "\n"
    # sequences when supplied through an environment variable.
    kid: str | None = None
    private_key: str | None = None
    signing_algorithm: str = "ES512"
    assertion_ttl_seconds: int = 300

    scopes: list[str] = Field(
        default_factory=lambda: [
            "info",
            "accounts",
            "balance",
            "cards",
            "transactions",
            "offline_access",
        ]
    )

    timeout_seconds: float = 10.0

    # Total attempts per upstream call, first try included
    retry_attempts: int = 3
    max_backoff_seconds: float = 30.0

    # A cached service token is reused until this close to expiry
    service_token_margin_seconds: int = 30
    # A user access token is refreshed once it has less validity than this
    refresh_window_seconds: int = 300

    @property
    def token_url(self) -> str:
        return f"{self.auth_url.rstrip('/')}{self.token_endpoint}"

    @property
    def revoke_url(self) -> str | None:
        if not self.revoke_endpoint:
            return None
        return f"{self.auth_url.rstrip('/')}{self.revoke_endpoint}"


class ReaperConfig(BaseModel):
    """Expired/stale key reaper configuration."""

    enabled: bool = True
    run_on_startup: bool = True
    interval_seconds: int = 3600


class LoggingConfig(BaseModel):
    """structlog output configuration."""

    level: str = "INFO"
    renderer: Literal["json", "console"] = "json"


class Settings(BaseSettings):
    """Tollgate application settings."""

    model_config = SettingsConfigDict(
        env_prefix="TOLLGATE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    keys: KeyPolicyConfig = Field(default_factory=KeyPolicyConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    reaper: ReaperConfig = Field(default_factory=ReaperConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats values loaded from the YAML file
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. TOLLGATE_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/tollgate/config.yaml
    """
    config_paths = [
        os.environ.get("TOLLGATE_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/tollgate/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    The YAML file provides initial values; environment variables
    override them via pydantic-settings.
    """
    return Settings(**_load_config_file())
