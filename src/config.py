"""Application configuration.

Sources, highest precedence first:
    1. CLI arguments (passed as init kwargs)
    2. Environment variables prefixed ``EMPORIA_`` (or a .env file)
    3. YAML config file (``--config``, default ./config.yaml if present)
    4. Field defaults
"""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from pydantic import ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_CONFIG_FILE = Path("config.yaml")
DEFAULT_LOG_FILE = Path("application.log")


class ConfigurationError(ValueError):
    """Raised when required settings are missing or invalid."""


class Settings(BaseSettings):
    """Runtime settings for the sync service."""

    # --- Emporia / Cognito ---
    region: str
    client_app_id: str
    pool_id: str
    username: str
    password: str
    customer: str | None = None  # customer email, defaults to username

    # --- InfluxDB ---
    influx_url: str = "http://localhost"
    influx_port: int = 8086
    influx_user: str | None = None
    influx_password: str | None = None
    influx_db: str = "electricity"
    disable_influx: bool = False

    # --- Logging ---
    log_file: Path | None = None
    debug: bool = False
    quiet: bool = False

    config_file: Path | None = None

    model_config = SettingsConfigDict(
        env_prefix="EMPORIA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        config_file = getattr(init_settings, "init_kwargs", {}).get("config_file")
        yaml_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _check_influx(self) -> "Settings":
        if not self.disable_influx:
            if not self.influx_db:
                raise ValueError("influx_db is required unless disable_influx is set")
            if not 0 < self.influx_port < 65536:
                raise ValueError(f"influx_port {self.influx_port} is out of range")
        return self

    @property
    def customer_email(self) -> str:
        return self.customer or self.username

    @property
    def influx_base_url(self) -> str:
        """``influx_url`` with ``influx_port`` applied."""
        parts = urlsplit(self.influx_url)
        netloc = f"{parts.hostname or 'localhost'}:{self.influx_port}"
        return urlunsplit((parts.scheme or "http", netloc, parts.path.rstrip("/"), "", ""))


def load_settings(**overrides: object) -> Settings:
    """Build Settings, turning validation failures into ConfigurationError.

    ``None`` overrides are dropped so unset CLI options don't mask env or
    file values.
    """
    kwargs = {k: v for k, v in overrides.items() if v is not None}
    try:
        return Settings(**kwargs)  # type: ignore[arg-type]
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ConfigurationError("; ".join(problems)) from exc
