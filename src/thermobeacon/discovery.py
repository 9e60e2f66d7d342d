"""Home Assistant MQTT discovery messages for configured beacons."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Tuple

from .config import DeviceConfig
from .publisher import MqttPublisher

logger = logging.getLogger(__name__)

DISCOVERY_PREFIX = "homeassistant/sensor/thermobeacon"

# (topic suffix, device_class, unit, sample field, unique id suffix)
_MEASUREMENTS = (
    ("temperature", "temperature", "°C", "temperature", "temp"),
    ("humidity", "humidity", "%", "humidity", "humidity"),
    ("battery", "battery", "%", "battery_level", "battery"),
)


def discovery_messages(device: DeviceConfig) -> List[Tuple[str, Dict[str, Any]]]:
    """Return ``(topic, payload)`` pairs announcing *device*'s sensors."""
    mac = device.discovery_id
    device_info = {
        "identifiers": [mac],
        "name": device.name,
        "manufacturer": device.manufacturer or "Unknown",
        "model": device.model or "Smart hygrometer",
    }
    messages = []
    for suffix, device_class, unit, field_name, id_suffix in _MEASUREMENTS:
        topic = f"{DISCOVERY_PREFIX}/{mac.replace(':', '_')}_{suffix}/config"
        payload = {
            "device_class": device_class,
            "state_topic": device.state_topic,
            "unit_of_measurement": unit,
            "value_template": f"{{{{ value_json.data.{field_name} }}}}",
            "unique_id": f"{mac}_{id_suffix}",
            "device": device_info,
        }
        messages.append((topic, payload))
    return messages


def publish_discovery(publisher: MqttPublisher, devices: Iterable[DeviceConfig]) -> int:
    count = 0
    for device in devices:
        for topic, payload in discovery_messages(device):
            logger.debug("Publishing discovery message for %s to %s", device.name, topic)
            publisher.publish_message(topic, json.dumps(payload), qos=1, retain=True)
            count += 1
    return count
