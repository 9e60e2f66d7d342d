from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .config import DeviceConfig
from .frames import ExtremesFrame, Frame, ReadingFrame, format_mac


@dataclass(frozen=True)
class Sample:
    """A complete reading for one device: both fragments seen in one session."""

    device: DeviceConfig
    reading: ReadingFrame
    extremes: ExtremesFrame

    @property
    def name(self) -> str:
        return self.device.name

    @property
    def mac(self) -> str:
        return format_mac(self.device.address)

    def to_message(self) -> Dict[str, Any]:
        return {
            "data": {
                "battery_level": self.reading.battery_level,
                "humidity": self.reading.humidity,
                "temperature": self.reading.temperature,
                "uptime": self.reading.uptime,
                "button_pressed": self.reading.button_pressed,
                "mac": self.mac,
                "max_temperature": self.extremes.max_temperature,
                "min_temperature": self.extremes.min_temperature,
                "max_temp_time": self.extremes.max_temp_time,
                "min_temp_time": self.extremes.min_temp_time,
            },
            "name": self.device.name,
        }


@dataclass
class PendingSample:
    first_seen: float
    reading: Optional[ReadingFrame] = None
    extremes: Optional[ExtremesFrame] = None

    @property
    def complete(self) -> bool:
        return self.reading is not None and self.extremes is not None


class Correlator:
    """
    Per-session accumulator merging reading and extremes fragments by address.

    Create one per scan session; nothing carries over between sessions.
    """

    def __init__(self, devices: Iterable[DeviceConfig]):
        self._devices: Dict[bytes, DeviceConfig] = {device.address: device for device in devices}
        self._pending: Dict[bytes, PendingSample] = {}

    def observe(self, frame: Frame, now: Optional[float] = None) -> bool:
        """Store *frame*; returns False when the address is not configured."""
        if frame.address not in self._devices:
            return False
        pending = self._pending.get(frame.address)
        if pending is None:
            pending = PendingSample(first_seen=time.monotonic() if now is None else now)
            self._pending[frame.address] = pending
        if isinstance(frame, ReadingFrame):
            pending.reading = frame
        else:
            pending.extremes = frame
        return True

    def is_complete(self, address: bytes) -> bool:
        pending = self._pending.get(address)
        return pending is not None and pending.complete

    def pending(self, address: bytes) -> Optional[PendingSample]:
        return self._pending.get(address)

    def all_complete(self) -> bool:
        return all(self.is_complete(address) for address in self._devices)

    def complete_addresses(self) -> List[bytes]:
        return [address for address in self._devices if self.is_complete(address)]

    def missing_devices(self) -> List[DeviceConfig]:
        return [device for address, device in self._devices.items() if not self.is_complete(address)]

    def finalize(self, address: bytes) -> Optional[Sample]:
        pending = self._pending.get(address)
        if pending is None or not pending.complete:
            return None
        del self._pending[address]
        assert pending.reading is not None and pending.extremes is not None
        return Sample(device=self._devices[address], reading=pending.reading, extremes=pending.extremes)

    def discard(self) -> None:
        self._pending.clear()
