"""Load and validate the sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module and is loaded
once, on first use.

Usage::

    from src.metering.config_loader import get_sync_config

    config = get_sync_config()
    config.poll_interval          # timedelta(minutes=5)
    config.readings.scale         # "1S"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

import yaml

from src.metering.base import SCALE_INTERVALS

logger = logging.getLogger("emporia.metering.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ReadingsConfig:
    """Query parameters sent with every usage request."""

    type: str
    scale: str
    unit: str


@dataclass
class ApiConfig:
    """Upstream endpoint settings."""

    base_url: str
    maintenance_url: str
    timeout_seconds: float


@dataclass
class SyncConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:                Config schema version string.
        poll_interval_seconds:  Sleep between sync cycles.
        backfill_horizon_hours: Default look-back for channels without history.
        end_offset_ms:          Gap kept between a window's end and "now".
        readings:               Usage query parameters.
        api:                    Upstream endpoint settings.
        measurement:            InfluxDB measurement name.
    """

    version: str
    poll_interval_seconds: float
    backfill_horizon_hours: float
    end_offset_ms: int
    readings: ReadingsConfig
    api: ApiConfig
    measurement: str

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=self.poll_interval_seconds)

    @property
    def backfill_horizon(self) -> timedelta:
        return timedelta(hours=self.backfill_horizon_hours)

    @property
    def end_offset(self) -> timedelta:
        return timedelta(milliseconds=self.end_offset_ms)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Missing optional keys fall back to defaults; every error found is
    collected and reported together.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, path: str) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if number <= 0:
            errors.append(f"{path}.{key} must be positive, got {number}")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Sync ──
    sync_raw = raw.get("sync") or {}
    poll_interval = _number(sync_raw, "poll_interval_seconds", 300, "sync")
    horizon = _number(sync_raw, "backfill_horizon_hours", 12, "sync")
    end_offset = _number(sync_raw, "end_offset_ms", 1, "sync")
    if end_offset > 0 and not float(end_offset).is_integer():
        errors.append(f"sync.end_offset_ms must be a whole number >= 1, got {end_offset}")

    # ── Readings ──
    rd_raw = raw.get("readings") or {}
    readings = ReadingsConfig(
        type=str(rd_raw.get("type", "INSTANT")),
        scale=str(rd_raw.get("scale", "1S")),
        unit=str(rd_raw.get("unit", "KilowattHours")),
    )
    if readings.scale not in SCALE_INTERVALS:
        errors.append(
            f"readings.scale {readings.scale!r} is not one of {sorted(SCALE_INTERVALS)}"
        )

    # ── API ──
    api_raw = raw.get("api") or {}
    api = ApiConfig(
        base_url=str(api_raw.get("base_url", "https://api.emporiaenergy.com")).rstrip("/"),
        maintenance_url=str(api_raw.get("maintenance_url", "")),
        timeout_seconds=_number(api_raw, "timeout_seconds", 30, "api"),
    )
    if not api.base_url.startswith(("http://", "https://")):
        errors.append(f"api.base_url must be an http(s) URL, got {api.base_url!r}")

    # ── Influx ──
    influx_raw = raw.get("influx") or {}
    measurement = str(influx_raw.get("measurement", "usage"))
    if not measurement:
        errors.append("influx.measurement must not be empty")

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        poll_interval_seconds=poll_interval,
        backfill_horizon_hours=horizon,
        end_offset_ms=int(end_offset),
        readings=readings,
        api=api,
        measurement=measurement,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


@lru_cache
def get_sync_config() -> SyncConfig:
    """Return the bundled SyncConfig, loading it on first call."""
    return load_sync_config()
