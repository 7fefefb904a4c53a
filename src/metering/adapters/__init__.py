"""Upstream API adapters for the usage sync engine.

Each adapter implements the UsageSource ABC and handles:
- Authentication with the provider
- Resolving the customer's device/channel hierarchy
- Fetching usage windows for one channel

Available adapters:
    EmporiaClient — Emporia Energy cloud API (Cognito auth)
"""

from src.metering.adapters.emporia import EmporiaClient

__all__ = ["EmporiaClient"]
