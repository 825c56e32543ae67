"""Configuration management using Pydantic Settings."""

import logging
import tomllib
from pathlib import Path

import tomli_w
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class VaultConfig(BaseModel):
    """Where the notes live on disk and how changes are picked up."""

    path: Path = Field(default_factory=lambda: Path.home() / "StickyVault")
    watch_files: bool = True
    # A file must be quiet this long before a change is reported.
    watch_stability_ms: int = Field(default=500, ge=0)

    @field_validator("path", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class SyncConfig(BaseModel):
    """Configuration for synchronization with the remote file store."""

    enabled: bool = False
    app_key: str | None = None
    remote_folder: str = "/notes"
    interval_minutes: int = Field(default=1, ge=1)
    change_debounce_seconds: float = Field(default=5.0, ge=0)
    tolerance_seconds: float = Field(default=2.0, ge=0)
    grace_seconds: float = Field(default=30.0, ge=0)
    api_url: str = "https://api.dropboxapi.com"
    content_url: str = "https://content.dropboxapi.com"
    token_url: str = "https://api.dropboxapi.com/oauth2/token"
    request_timeout: float = Field(default=30.0, gt=0)

    @field_validator("remote_folder", mode="before")
    @classmethod
    def validate_remote_folder(cls, v: str) -> str:
        v = str(v).strip()
        if not v.startswith("/"):
            raise ValueError("Remote folder must start with '/'")
        return v.rstrip("/") or "/"

    @field_validator("api_url", "content_url", "token_url", mode="before")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not str(v).startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return str(v).rstrip("/")


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class GeneralConfig(BaseModel):
    """Logging and the local data directory (state DB, logs, default config)."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".stickyvault")
    log_level: str = "INFO"
    log_file_name: str = "stickyvault.log"
    log_file_max_bytes: int = Field(default=2 * 1024 * 1024, gt=0)
    log_file_backup_count: int = Field(default=5, ge=0)
    # Category -> level, applied to records logged with extra={"log_category": ...}
    log_overrides: dict[str, str] = Field(default_factory=dict)
    # Where this config was loaded from; never written back
    config_file: Path | None = Field(default=None, exclude=True)

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = str(v).upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of: {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("log_overrides", mode="before")
    @classmethod
    def validate_log_overrides(cls, v: dict[str, str]) -> dict[str, str]:
        overrides = {str(category): str(level).upper() for category, level in dict(v).items()}
        unknown = sorted(level for level in overrides.values() if level not in LOG_LEVELS)
        if unknown:
            raise ValueError(f"Unknown log levels in overrides: {', '.join(unknown)}")
        return overrides


class AppConfig(BaseSettings):
    """Top-level settings: a TOML file, overridden by ``STICKYVAULT_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="STICKYVAULT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Read a TOML file; a missing file gives the defaults."""
        try:
            raw = config_path.read_bytes()
        except FileNotFoundError:
            logger.warning("Config file not found: %s, using defaults", config_path)
            return cls()
        return cls(**tomllib.loads(raw.decode("utf-8")))

    def save_to_file(self, config_path: Path) -> None:
        """Write the settings as TOML, leaving out unset values and runtime fields."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(tomli_w.dumps(self.model_dump(mode="json", exclude_none=True)), encoding="utf-8")
        logger.info("Configuration saved to %s", config_path)

    def ensure_data_dir(self) -> None:
        self.general.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def sync_state_db_path(self) -> Path:
        """SQLite file holding per-note upload hashes."""
        return self.general.data_dir / "sync_state.db"

    @property
    def default_config_path(self) -> Path:
        return self.general.data_dir / "config.toml"


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load settings from ``config_path`` (default: ``<data_dir>/config.toml``)."""
    config_path = config_path or AppConfig().default_config_path
    config = AppConfig.load_from_file(config_path)
    config.general.config_file = config_path
    return config
