from __future__ import annotations

import csv
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Sequence, TextIO, Tuple
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt
import typer

from .config import MqttConfig
from .correlation import Sample
from .errors import PublishError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SEC = 20.0
PUBLISH_TIMEOUT_SEC = 10.0


class Publisher:
    """Destination for finalized samples."""

    def publish(self, sample: Sample) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class ConsolePublisher(Publisher):
    """Print one JSON document per sample to stdout."""

    def publish(self, sample: Sample) -> None:
        typer.echo(json.dumps(sample.to_message()))


class CsvSampleLog(Publisher):
    """
    Append samples to a CSV file. The file is created lazily on the first
    sample so dry runs never touch the filesystem.
    """

    fieldnames = [
        "timestamp",
        "name",
        "mac",
        "battery_level",
        "humidity",
        "temperature",
        "uptime",
        "button_pressed",
        "max_temperature",
        "min_temperature",
        "max_temp_time",
        "min_temp_time",
    ]

    def __init__(self, path: Path):
        self.path = path
        self._writer: Optional[csv.DictWriter[str]] = None
        self._file_handle: Optional[TextIO] = None

    def publish(self, sample: Sample) -> None:
        try:
            self._write(sample)
        except OSError as exc:
            raise PublishError(f"Cannot write {self.path}: {exc}") from exc

    def _write(self, sample: Sample) -> None:
        if self._writer is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            new_file = not self.path.exists() or self.path.stat().st_size == 0
            self._file_handle = self.path.open("a", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._file_handle, fieldnames=self.fieldnames)
            if new_file:
                self._writer.writeheader()
        message = sample.to_message()
        row = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "name": message["name"],
            **message["data"],
        }
        self._writer.writerow(row)
        assert self._file_handle is not None
        self._file_handle.flush()

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._writer = None


class FanoutPublisher(Publisher):
    """Deliver each sample to several publishers; the first error is re-raised after all ran."""

    def __init__(self, publishers: Sequence[Publisher]):
        self.publishers = list(publishers)

    def publish(self, sample: Sample) -> None:
        first_error: Optional[Exception] = None
        for publisher in self.publishers:
            try:
                publisher.publish(sample)
            except Exception as exc:
                logger.warning("%s failed for %s: %s", type(publisher).__name__, sample.name, exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    def close(self) -> None:
        for publisher in self.publishers:
            publisher.close()


def parse_broker_url(url: str) -> Tuple[str, int, bool]:
    """Return ``(host, port, tls)`` for ``tcp://``, ``mqtt://``, ``ssl://`` or ``mqtts://`` URLs."""
    candidate = url if "://" in url else f"tcp://{url}"
    parts = urlsplit(candidate)
    scheme = parts.scheme.lower()
    if scheme not in {"tcp", "mqtt", "ssl", "mqtts"}:
        raise PublishError(f"Unsupported MQTT URL scheme '{scheme}'")
    if not parts.hostname:
        raise PublishError(f"MQTT URL '{url}' has no host")
    tls = scheme in {"ssl", "mqtts"}
    try:
        port = parts.port or (8883 if tls else 1883)
    except ValueError as exc:
        raise PublishError(f"MQTT URL '{url}' has an invalid port") from exc
    return parts.hostname, port, tls


class MqttPublisher(Publisher):
    """Publish samples to an MQTT broker (paho-mqtt, protocol v5)."""

    def __init__(
        self,
        config: MqttConfig,
        connect_timeout: float = CONNECT_TIMEOUT_SEC,
        publish_timeout: float = PUBLISH_TIMEOUT_SEC,
    ):
        self.config = config
        self.connect_timeout = connect_timeout
        self.publish_timeout = publish_timeout
        self.host, self.port, self.tls = parse_broker_url(config.url)
        self.client_id = config.client_id or f"thermobeacon-{uuid.uuid4().hex[:8]}"
        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._connect_done = threading.Event()
        self._connect_error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def connect(self) -> None:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        if self.config.username is not None:
            logger.debug("Configuring MQTT with user %s and password ***", self.config.username)
            client.username_pw_set(self.config.username, self.config.password)
        else:
            logger.debug("Configuring MQTT without username / password")
        if self.tls:
            client.tls_set()
        self._client = client
        logger.debug("Connecting to MQTT broker %s:%d", self.host, self.port)
        try:
            client.connect(self.host, self.port, keepalive=self.config.keep_alive)
        except (OSError, ValueError) as exc:
            raise PublishError(f"Cannot connect to MQTT broker {self.host}:{self.port}: {exc}") from exc
        client.loop_start()
        self._connect_done.wait(self.connect_timeout)
        if not self._connected.is_set():
            self.close()
            reason = self._connect_error or f"no answer within {self.connect_timeout:.0f}s"
            raise PublishError(f"MQTT connection to {self.host}:{self.port} failed: {reason}")
        logger.info("Connected to MQTT broker %s:%d", self.host, self.port)

    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if getattr(reason_code, "is_failure", False):
            self._connect_error = str(reason_code)
            logger.error("MQTT broker refused connection: %s", reason_code)
            self._connect_done.set()
            return
        self._connect_error = None
        self._connected.set()
        self._connect_done.set()

    def _on_disconnect(
        self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        self._connected.clear()
        if getattr(reason_code, "is_failure", False):
            logger.warning("Unexpected MQTT disconnect (%s), paho will reconnect", reason_code)

    def publish_message(self, topic: str, payload: str, qos: int = 1, retain: bool = False) -> None:
        if self._client is None:
            raise PublishError("MQTT client is not connected")
        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Publishing to {topic} failed: {mqtt.error_string(info.rc)}")
        try:
            info.wait_for_publish(timeout=self.publish_timeout)
        except (RuntimeError, ValueError) as exc:
            raise PublishError(f"Publishing to {topic} failed: {exc}") from exc
        if not info.is_published():
            raise PublishError(f"Publishing to {topic} timed out after {self.publish_timeout:.0f}s")
        logger.debug("Published %d bytes to %s (qos=%d, retain=%s)", len(payload), topic, qos, retain)

    def publish(self, sample: Sample) -> None:
        device = sample.device
        self.publish_message(
            device.state_topic,
            json.dumps(sample.to_message()),
            qos=device.qos,
            retain=device.retained,
        )

    def close(self) -> None:
        if self._client is None:
            return
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
            self._client = None
            self._connected.clear()


def build_publishers(
    mqtt_publisher: Optional[Publisher],
    output_csv: Optional[Path],
) -> Publisher:
    publishers: List[Publisher] = [mqtt_publisher or ConsolePublisher()]
    if output_csv is not None:
        publishers.append(CsvSampleLog(output_csv))
    if len(publishers) == 1:
        return publishers[0]
    return FanoutPublisher(publishers)
