"""Command line interface for the thermobeacon gateway."""
from __future__ import annotations

import dataclasses
import json
import logging
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .config import AppConfig, load_config
from .demo import run_demo
from .discovery import publish_discovery
from .errors import ConfigError, PublishError, ScheduleError
from .frames import FrameDecoder, ReadingFrame
from .gateway import Gateway
from .health import HealthState, OutcomeKind
from .health_server import HealthServer
from .logging_config import configure_logging
from .publisher import MqttPublisher, build_publishers
from .scheduler import Scheduler, validate_schedule
from .transport import BleakFrameSource

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("config.json")

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Collect ThermoBeacon readings over BLE and publish them.",
)


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="JSON configuration file (default: ./config.json if present)."
    ),
    override: Optional[list[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set seconds_to_scan=10 --set mqtt.homeassistant=true",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    once: bool = typer.Option(False, "--once", help="Scan once even if a cron expression is configured."),
) -> None:
    """Run the gateway: scan on the cron schedule (or once) and publish samples."""

    path = config_path if config_path is not None else (DEFAULT_CONFIG if DEFAULT_CONFIG.exists() else None)
    try:
        cfg = load_config(path, override)
    except ConfigError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    configure_logging(log_level or cfg.log_level)
    logger.debug("config %s", cfg)

    cron = None if once else cfg.cron
    try:
        validate_schedule(cron, cfg.timezone)
    except ScheduleError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    health = HealthState()
    publisher = build_publishers(_connect_mqtt(cfg), cfg.output_csv)
    gateway = Gateway(cfg, BleakFrameSource(adapter=cfg.adapter), publisher)
    scheduler = Scheduler(gateway.run_once, health, cron=cron, timezone=cfg.timezone)

    server: Optional[HealthServer] = None
    if scheduler.cron is not None and cfg.health.active:
        server = HealthServer(health, host=cfg.health.ip, port=cfg.health.port)
        server.start()

    signal.signal(signal.SIGTERM, lambda _signum, _frame: scheduler.stop())
    try:
        scheduler.run()
    except KeyboardInterrupt:
        logger.info("Stopping gateway (Ctrl+C)")
        scheduler.stop()
    finally:
        publisher.close()
        if server is not None:
            server.stop()

    outcome = scheduler.last_outcome
    if scheduler.cron is None and outcome is not None and outcome.kind is OutcomeKind.FAILURE:
        raise typer.Exit(code=1)


def _connect_mqtt(cfg: AppConfig) -> Optional[MqttPublisher]:
    if cfg.mqtt is None:
        logger.info("No MQTT configuration found")
        logger.warning("Results are just printed to the console")
        return None
    try:
        mqtt_publisher = MqttPublisher(cfg.mqtt)
        mqtt_publisher.connect()
    except PublishError as exc:
        logger.error("Failed to connect to MQTT server: %s", exc)
        logger.warning("Results are just printed to the console")
        return None
    if cfg.mqtt.homeassistant:
        logger.info("Home Assistant auto-discovery enabled")
        try:
            publish_discovery(mqtt_publisher, cfg.devices)
        except PublishError as exc:
            logger.error("Failed to publish Home Assistant discovery messages: %s", exc)
    return mqtt_publisher


@app.command()
def decode(
    payload: str = typer.Argument(..., help="Manufacturer payload as hex (spaces and ':' allowed)."),
) -> None:
    """Decode a single advertisement payload and print it as JSON."""

    cleaned = payload.replace(" ", "").replace(":", "")
    try:
        raw = bytes.fromhex(cleaned)
    except ValueError as exc:
        raise typer.BadParameter(f"Not a hex string: {payload}") from exc
    frame = FrameDecoder().decode(raw)
    if frame is None:
        typer.echo(f"Not a ThermoBeacon payload ({len(raw)} bytes)", err=True)
        raise typer.Exit(code=1)
    data: Dict[str, Any] = dataclasses.asdict(frame)
    data.pop("address")
    data = {"type": "reading" if isinstance(frame, ReadingFrame) else "extremes", "mac": frame.mac, **data}
    typer.echo(json.dumps(data, indent=2))


@app.command()
def demo(
    devices: int = typer.Option(3, "--devices", "-n", min=0, help="Number of simulated beacons."),
    seconds: float = typer.Option(5.0, "--seconds", "-s", min=0.1, help="Scan window in seconds."),
) -> None:
    """Run one scan session against simulated beacons."""

    configure_logging()
    result = run_demo(devices, seconds)
    for sample in result.samples:
        typer.echo(json.dumps(sample.to_message()))
    typer.echo(
        f"{result.state.value}: {len(result.samples)} sample(s), "
        f"{result.incomplete} incomplete, {result.elapsed:.1f}s",
        err=True,
    )


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
