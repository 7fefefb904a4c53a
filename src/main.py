"""Emporia usage sync — command-line entry point.

Run locally:
    python -m src.main --config config.yaml
    emporia-sync --username me@example.com --password ... --disable-influx
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from src.config import DEFAULT_LOG_FILE, ConfigurationError, Settings, load_settings
from src.metering.adapters.emporia import EmporiaClient
from src.metering.base import UpstreamError
from src.metering.config_loader import get_sync_config
from src.metering.sync.scheduler import SyncLoop
from src.services.cognito import CognitoAuthenticator
from src.services.influxdb import InfluxDBLoader

logger = logging.getLogger("emporia")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"


# ---------- CLI ----------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emporia-sync",
        description="Continuously copy Emporia Energy usage into InfluxDB.",
    )
    parser.add_argument(
        "--config", dest="config_file", type=Path,
        help="YAML configuration file [config.yaml] (CLI parameters override it)",
    )

    parser.add_argument("--region", help="AWS region")
    parser.add_argument("--clientapp-id", dest="client_app_id", help="AWS client ID")
    parser.add_argument("--pool-id", dest="pool_id", help="AWS user pool ID")
    parser.add_argument("--username", help="username")
    parser.add_argument("--password", help="password")
    parser.add_argument("--customer", help="customer email [defaults to username]")

    parser.add_argument("--influx-url", dest="influx_url", help="InfluxDB server URL [http://localhost]")
    parser.add_argument("--influx-port", dest="influx_port", type=int, help="InfluxDB server port [8086]")
    parser.add_argument("--influx-user", dest="influx_user", help="InfluxDB server username")
    parser.add_argument("--influx-password", dest="influx_password", help="InfluxDB server password")
    parser.add_argument("--influx-db", dest="influx_db", help="InfluxDB database [electricity]")
    parser.add_argument(
        "--disable-influx", dest="disable_influx", action="store_true", default=None,
        help="disable the uploading to InfluxDB",
    )

    parser.add_argument(
        "--logfile", dest="log_file", type=Path, nargs="?", const=DEFAULT_LOG_FILE,
        help=f"log to this file [{DEFAULT_LOG_FILE}]",
    )
    parser.add_argument("-d", "--debug", action="store_true", default=None, help="enable debug messages.")
    parser.add_argument(
        "-q", "--quiet", action="store_true", default=None,
        help="do not print any messages to the console except for errors.",
    )
    return parser


# ---------- Logging ----------

def configure_logging(settings: Settings) -> None:
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.ERROR if settings.quiet else logging.NOTSET)
    handlers: list[logging.Handler] = [console]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if settings.debug else logging.WARNING)


# ---------- Run ----------

async def run(settings: Settings) -> int:
    """Resolve the customer and run the sync loop until SIGINT/SIGTERM."""
    config = get_sync_config()
    authenticator = CognitoAuthenticator(
        username=settings.username,
        password=settings.password,
        client_id=settings.client_app_id,
        pool_id=settings.pool_id,
        region=settings.region,
    )
    client = EmporiaClient(authenticator, settings.username, config=config)

    sink: InfluxDBLoader | None = None
    if not settings.disable_influx:
        sink = InfluxDBLoader(
            settings.influx_base_url,
            database=settings.influx_db,
            username=settings.influx_user,
            password=settings.influx_password,
            measurement=config.measurement,
        )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # Windows
            pass

    try:
        try:
            customer = await client.get_customer(settings.customer_email)
        except UpstreamError as exc:
            logger.error("Cannot load customer %s: %s", settings.customer_email, exc)
            return 1

        sync = SyncLoop(
            customer,
            client,
            sink=sink,
            poll_interval=config.poll_interval,
            backfill_horizon=config.backfill_horizon,
            end_offset=config.end_offset,
        )
        await sync.run(stop_event)
    finally:
        await client.aclose()
        if sink is not None:
            await sink.aclose()

    logger.info("Emporia sync shut down")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(**vars(args))
    except ConfigurationError as exc:
        parser.print_help()
        print(f"\nConfiguration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(settings)
    logger.info("Starting run!")
    return asyncio.run(run(settings))


if __name__ == "__main__":
    sys.exit(main())
