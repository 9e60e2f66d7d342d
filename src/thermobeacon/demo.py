"""Simulated beacons for trying the gateway without a Bluetooth adapter."""
from __future__ import annotations

import random
import threading
from typing import List, Optional, Sequence

from .config import DeviceConfig
from .frames import encode_extremes_frame, encode_fixed_point, encode_reading_frame
from .session import ScanSession, SessionResult
from .transport import FrameHandler, FrameSource, RawFrame


def demo_devices(count: int = 3) -> List[DeviceConfig]:
    return [
        DeviceConfig(address=bytes([0xD0, 0x0E, 0x00, 0x00, 0x00, index + 1]), name=f"demo-{index + 1}")
        for index in range(count)
    ]


class SimulatedFrameSource(FrameSource):
    """
    Emit alternating reading/extremes payloads for *devices*, interleaved with
    advertisements of other lengths from unrelated devices.
    """

    def __init__(self, devices: Sequence[DeviceConfig], interval: float = 0.05, seed: Optional[int] = 7):
        self.devices = list(devices)
        self.interval = interval
        self.last_exception: Optional[BaseException] = None
        self._rng = random.Random(seed)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def open(self, handler: FrameHandler) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, args=(handler,), name="simulated-beacons", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    def _run(self, handler: FrameHandler) -> None:
        while not self._stop_event.wait(self.interval):
            if not self.devices or self._rng.random() < 0.2:
                handler(RawFrame(address="AA:BB:CC:00:00:01", payload=bytes(self._rng.randrange(256) for _ in range(27))))
                continue
            device = self._rng.choice(self.devices)
            handler(RawFrame(address=device.mac, payload=self._payload_for(device)))

    def _payload_for(self, device: DeviceConfig) -> bytes:
        rng = self._rng
        temperature = rng.uniform(-5.0, 28.0)
        if rng.random() < 0.5:
            return encode_reading_frame(
                device.address,
                temperature_raw=encode_fixed_point(temperature),
                humidity_raw=int(rng.uniform(30.0, 70.0) * 16),
                battery_raw=rng.randrange(2600, 3400),
                uptime=rng.randrange(0, 10_000_000),
            )
        return encode_extremes_frame(
            device.address,
            max_raw=encode_fixed_point(temperature + rng.uniform(0.0, 6.0)),
            min_raw=encode_fixed_point(temperature - rng.uniform(0.0, 6.0)),
            max_time=rng.randrange(0, 1_000_000),
            min_time=rng.randrange(0, 1_000_000),
        )


def run_demo(device_count: int = 3, seconds: float = 5.0) -> SessionResult:
    devices = demo_devices(device_count)
    source = SimulatedFrameSource(devices)
    return ScanSession(devices, source, seconds_to_scan=seconds).run()
