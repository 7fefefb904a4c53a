"""Emporia usage sync engine.

This package keeps a time-series store up to date with per-channel
electricity usage from the Emporia Energy cloud API.

Subpackages:
    adapters/ — Upstream API clients (Emporia)
    sync/     — Watermark store, adaptive window planner, polling loop

Core modules:
    base          — Customer/Device/Channel/Readings models and collaborator ABCs
    config_loader — Load/validate sync_config.yaml
"""

from src.metering.base import (
    Channel,
    Customer,
    Device,
    Readings,
    ReadingsSink,
    SinkError,
    UpstreamError,
    UsageSource,
)
from src.metering.config_loader import SyncConfig, get_sync_config

__all__ = [
    "Channel",
    "Customer",
    "Device",
    "Readings",
    "ReadingsSink",
    "SinkError",
    "UpstreamError",
    "UsageSource",
    "SyncConfig",
    "get_sync_config",
]
