from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from dotenv import dotenv_values

from .errors import ConfigError
from .frames import format_mac, parse_mac

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"
DEFAULT_SECONDS_TO_SCAN = 30
DEFAULT_DOTENV = Path(".env")
ENV_PREFIX = "APP_"
EMPTY_SCAN_POLICIES = {"success", "failure", "skip"}

# keys addressable through APP_ variables; None marks a leaf
_KNOWN_KEYS: Dict[str, Optional[set[str]]] = {
    "devices": None,
    "cron": None,
    "timezone": None,
    "seconds_to_scan": None,
    "empty_scan_policy": None,
    "adapter": None,
    "output_csv": None,
    "log_level": None,
    "mqtt": {"url", "keep_alive", "keepalive", "username", "password", "password_file", "homeassistant", "client_id"},
    "health": {"active", "ip", "port"},
}

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


@dataclass(frozen=True)
class DeviceConfig:
    address: bytes
    name: str
    topic: Optional[str] = None
    qos: int = 1
    retained: bool = False
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    # MAC as written in the configuration; Home Assistant ids are derived from it
    configured_mac: Optional[str] = field(default=None, compare=False)

    @property
    def mac(self) -> str:
        return format_mac(self.address)

    @property
    def discovery_id(self) -> str:
        return self.configured_mac or self.mac

    @property
    def state_topic(self) -> str:
        return self.topic or f"ThermoBeacon/{self.name}"

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "DeviceConfig":
        if not data.get("mac"):
            raise ConfigError("device entries require a 'mac' field")
        if not data.get("name"):
            raise ConfigError(f"device {data['mac']} requires a 'name' field")
        try:
            address = parse_mac(str(data["mac"]))
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        qos = int(data["qos"]) if data.get("qos") is not None else 1
        if qos not in (0, 1, 2):
            raise ConfigError(f"device {data['name']}: qos must be 0, 1 or 2")
        return DeviceConfig(
            address=address,
            name=str(data["name"]),
            topic=_text(data.get("topic")),
            qos=qos,
            retained=_as_bool(data.get("retained", False), "retained"),
            manufacturer=_text(data.get("manufacturer")),
            model=_text(data.get("model")),
            configured_mac=str(data["mac"]).strip(),
        )


@dataclass
class MqttConfig:
    url: str
    keep_alive: int = 60
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    password_file: Optional[Path] = None
    homeassistant: bool = False
    client_id: Optional[str] = None


@dataclass
class HealthCheckConfig:
    active: bool = False
    ip: str = "127.0.0.1"
    port: int = 8080


@dataclass
class AppConfig:
    devices: List[DeviceConfig] = field(default_factory=list)
    cron: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE
    seconds_to_scan: float = DEFAULT_SECONDS_TO_SCAN
    empty_scan_policy: str = "success"
    adapter: Optional[str] = None
    output_csv: Optional[Path] = None
    mqtt: Optional[MqttConfig] = None
    health: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    log_level: Optional[str] = None


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read configuration {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must contain a JSON object")
    return data


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(
    path: Path | str | None = None,
    overrides: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
    dotenv_path: Path | str | None = DEFAULT_DOTENV,
) -> AppConfig:
    """
    Load the gateway configuration.

    Sources are layered file < environment < overrides. Without a path only
    the environment and overrides are used.
    Environment variables use the ``APP_`` prefix with ``__`` between nested
    keys, e.g. ``APP_MQTT__PASSWORD``. When *environ* is not given, the
    process environment is used, with values from *dotenv_path* filling in
    variables that are not set. Overrides are dotted ``key=value`` pairs,
    e.g.:
        ["seconds_to_scan=10", "mqtt.homeassistant=true"]
    Environment and override values stay strings (JSON lists and objects
    excepted); typed fields are converted when the config is built.
    """
    env = _process_environment(dotenv_path) if environ is None else environ
    data: Dict[str, Any] = {}
    if path is not None:
        data = _load_json(Path(path))
    data = _merge(data, _env_overrides(env))
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    try:
        return _build_config(merged, env)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration value: {exc}") from exc


def _process_environment(dotenv_path: Path | str | None) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if dotenv_path is not None and Path(dotenv_path).is_file():
        logger.debug("Loading environment defaults from %s", dotenv_path)
        env.update({key: value for key, value in dotenv_values(dotenv_path).items() if value is not None})
    env.update(os.environ)
    return env


def _build_config(merged: Dict[str, Any], env: Mapping[str, str]) -> AppConfig:
    devices = [DeviceConfig.from_mapping(item) for item in merged.get("devices") or []]
    seen: set[bytes] = set()
    for device in devices:
        if device.address in seen:
            raise ConfigError(f"Device {device.mac} is configured twice")
        seen.add(device.address)

    seconds_to_scan = float(merged.get("seconds_to_scan", DEFAULT_SECONDS_TO_SCAN))
    if seconds_to_scan <= 0:
        raise ConfigError("seconds_to_scan must be positive")

    policy = str(merged.get("empty_scan_policy", "success")).lower()
    if policy not in EMPTY_SCAN_POLICIES:
        raise ConfigError(
            f"empty_scan_policy must be one of {sorted(EMPTY_SCAN_POLICIES)}, got '{policy}'"
        )

    health_data = merged.get("health") or {}
    cron = merged.get("cron")
    return AppConfig(
        devices=devices,
        cron=str(cron).strip() if cron else None,
        timezone=str(merged.get("timezone") or env.get("TZ") or DEFAULT_TIMEZONE),
        seconds_to_scan=seconds_to_scan,
        empty_scan_policy=policy,
        adapter=_text(merged.get("adapter")),
        output_csv=Path(merged["output_csv"]) if merged.get("output_csv") else None,
        mqtt=_build_mqtt(merged.get("mqtt")),
        health=HealthCheckConfig(
            active=_as_bool(health_data.get("active", False), "health.active"),
            ip=str(health_data.get("ip", "127.0.0.1")),
            port=int(health_data.get("port", 8080)),
        ),
        log_level=_text(merged.get("log_level")),
    )


def _build_mqtt(data: Optional[Dict[str, Any]]) -> Optional[MqttConfig]:
    if not data or not data.get("url"):
        return None
    password = data.get("password")
    password_file = Path(data["password_file"]) if data.get("password_file") else None
    if password is None and password_file is not None:
        try:
            password = password_file.read_text(encoding="utf-8").rstrip("\r\n")
        except OSError as exc:
            raise ConfigError(
                f"password_file {password_file} configured, but not readable: {exc}"
            ) from exc
    keep_alive = data.get("keep_alive", data.get("keepAlive", data.get("keepalive", 60)))
    return MqttConfig(
        url=str(data["url"]),
        keep_alive=int(keep_alive),
        username=_text(data.get("username")),
        password=_text(password),
        password_file=password_file,
        homeassistant=_as_bool(data.get("homeassistant", False), "mqtt.homeassistant"),
        client_id=_text(data.get("client_id")),
    )


def _text(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{key} must be true or false, got '{value}'")


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for name, raw_value in env.items():
        if not name.startswith(ENV_PREFIX) or len(name) == len(ENV_PREFIX):
            continue
        parts = [part.lower() for part in name[len(ENV_PREFIX) :].split("__")]
        if not _is_known_key(parts):
            logger.warning(
                "Ignoring unrecognised environment variable %s (nested keys are separated by '__', e.g. APP_MQTT__PASSWORD)",
                name,
            )
            continue
        _assign_nested(result, ".".join(parts), _decode_value(raw_value))
    return result


def _is_known_key(parts: List[str]) -> bool:
    if parts[0] not in _KNOWN_KEYS:
        return False
    children = _KNOWN_KEYS[parts[0]]
    if children is None:
        return len(parts) == 1
    return len(parts) == 2 and parts[1] in children


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ConfigError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ConfigError("Override key may not be empty")
    value = _decode_value(raw_value.strip())
    return key, value


def _decode_value(raw: str) -> Any:
    stripped = raw.strip()
    if (stripped.startswith("[") and stripped.endswith("]")) or (
        stripped.startswith("{") and stripped.endswith("}")
    ):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON value '{raw}': {exc}") from exc
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
