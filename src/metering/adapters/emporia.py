"""Emporia Energy cloud API adapter.

API base: https://api.emporiaenergy.com

Endpoints used:
    /customers?email=...                                   — Resolve customer id
    /customers/{gid}/devices?detailed=true&hierarchy=true  — Device/channel tree
    /usage/time?start=&end=&type=&deviceGid=&scale=&unit=&channels=
                                                           — Usage samples

Every request carries a Cognito ID token in the ``authtoken`` header.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from src.metering.base import (
    AuthenticationError,
    Channel,
    Customer,
    Device,
    Readings,
    UpstreamError,
    UsageSource,
)
from src.metering.config_loader import SyncConfig, get_sync_config
from src.services.cognito import CognitoAuthenticator

logger = logging.getLogger("emporia.metering.emporia")


def format_instant(value: datetime) -> str:
    """Render a datetime the way the API expects (UTC, millis, ``Z``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_instant(value: str | None) -> datetime | None:
    """Parse an API timestamp into an aware UTC datetime (None if absent)."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse instant: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class EmporiaClient(UsageSource):
    """Async client for the Emporia cloud API.

    Requests are issued one at a time; the sync engine awaits each before
    issuing the next.
    """

    SOURCE_ID = "emporia"
    DISPLAY_NAME = "Emporia Energy"

    def __init__(
        self,
        authenticator: CognitoAuthenticator,
        username: str,
        config: SyncConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            authenticator: Supplies the ``authtoken`` header.
            username:      Default customer email.
            config:        Engine config (API base URL, readings parameters).
            http_client:   Optional pre-configured httpx client (for testing).
        """
        self._auth = authenticator
        self._username = username
        self._config = config or get_sync_config()
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self._config.api.timeout_seconds
        )

    # ------------------------------------------------------------------
    # UsageSource interface
    # ------------------------------------------------------------------

    async def get_customer(self, email: str | None = None) -> Customer:
        """Resolve a customer by email, then load its device hierarchy.

        Args:
            email: Customer email (defaults to the login username).

        Returns:
            Customer with its full device/channel tree.
        """
        email = email or self._username
        data = await self._get("/customers", params={"email": email})
        if not isinstance(data, dict) or data.get("customerGid") is None:
            raise UpstreamError(f"No customer found for {email}")
        customer = self.parse_customer(data)

        tree = await self._get(
            f"/customers/{customer.customer_gid}/devices",
            params={"detailed": "true", "hierarchy": "true"},
        )
        if not isinstance(tree, dict):
            raise UpstreamError(f"Empty device list for customer {customer.customer_gid}")
        customer.devices = [self.parse_device(d) for d in tree.get("devices") or []]
        logger.info(
            "Loaded customer %s with %d devices", customer, len(customer.devices)
        )
        return customer

    async def get_readings(
        self, channel: Channel, start: datetime, end: datetime
    ) -> Readings:
        """Fetch usage samples for one channel over ``[start, end]``."""
        rd = self._config.readings
        data = await self._get(
            "/usage/time",
            params={
                "start": format_instant(start),
                "end": format_instant(end),
                "type": rd.type,
                "deviceGid": channel.device_gid,
                "scale": rd.scale,
                "unit": rd.unit,
                "channels": channel.channel_num,
            },
        )
        if not isinstance(data, dict):
            raise UpstreamError(f"Empty usage response for {channel}")
        return self.parse_readings(channel, start, data)

    async def is_down_for_maintenance(self) -> bool:
        """Return True if Emporia's maintenance notice is published.

        Any error reaching the notice is treated as "not in maintenance".
        """
        url = self._config.api.maintenance_url
        if not url:
            return False
        try:
            response = await self._http_client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("Maintenance check failed: %s", exc)
            return False
        return response.is_success

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def parse_customer(data: dict) -> Customer:
        return Customer(
            customer_gid=int(data["customerGid"]),
            email=data.get("email", ""),
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
        )

    @classmethod
    def parse_device(cls, data: dict) -> Device:
        """Convert a device JSON object (and its attached devices) to a Device."""
        device_gid = int(data["deviceGid"])
        channels = [
            Channel(
                device_gid=int(ch.get("deviceGid", device_gid)),
                channel_num=str(ch["channelNum"]),
                name=ch.get("name"),
                channel_multiplier=float(ch.get("channelMultiplier") or 1.0),
                channel_type_gid=ch.get("channelTypeGid"),
            )
            for ch in data.get("channels") or []
        ]
        return Device(
            device_gid=device_gid,
            manufacturer_device_id=data.get("manufacturerDeviceId"),
            model=data.get("model"),
            firmware=data.get("firmware"),
            channels=channels,
            devices=[cls.parse_device(d) for d in data.get("devices") or []],
        )

    def parse_readings(self, channel: Channel, requested_start: datetime, data: dict) -> Readings:
        """Convert a usage response to Readings.

        A missing ``end`` means the provider has no data for the window.

        Raises:
            UpstreamError: If ``end`` is present but not a valid instant.
        """
        start = parse_instant(data.get("start")) or requested_start
        end = parse_instant(data.get("end"))
        if data.get("end") and end is None:
            raise UpstreamError(f"Unparseable end {data['end']!r} in usage response for {channel}")
        return Readings(
            channel=channel,
            start=start,
            end=end,
            scale=data.get("scale") or self._config.readings.scale,
            unit=data.get("unit") or self._config.readings.unit,
            usage=list(data.get("usageList") or []),
        )

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        """Make an authenticated GET request to the Emporia API.

        Raises:
            AuthenticationError: If no token can be obtained or it is rejected.
            UpstreamError:       On transport errors, non-2xx, or bad JSON.
        """
        headers = {"authtoken": await self._auth.id_token()}
        url = f"{self._config.api.base_url}{path}"

        try:
            response = await self._http_client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"GET {path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            self._auth.invalidate()
            raise AuthenticationError(f"GET {path} rejected with {response.status_code}")

        try:
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(f"GET {path} returned {response.status_code}") from exc
        except ValueError as exc:
            raise UpstreamError(f"GET {path} returned invalid JSON: {exc}") from exc
