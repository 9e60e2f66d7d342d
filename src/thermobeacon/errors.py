"""Exception hierarchy shared by the gateway modules."""
from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ConfigError(GatewayError):
    """Invalid or unreadable configuration. Fatal at startup."""


class ScheduleError(ConfigError):
    """Malformed cron expression or unknown timezone."""


class TransportError(GatewayError):
    """The BLE transport could not be started or failed mid-scan."""


class PublishError(GatewayError):
    """A sample could not be delivered to the broker."""
