from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawFrame:
    """One manufacturer-data payload as reported by the radio."""

    address: str
    payload: bytes
    received_at: float = field(default_factory=time.monotonic)


FrameHandler = Callable[[RawFrame], None]


class FrameSource:
    """
    Subscription to raw advertisement payloads.

    ``open`` starts delivering frames to the handler (from any thread) and
    ``close`` stops delivery. A source can be opened again after closing.
    ``last_exception`` is set when delivery stopped because of a failure.
    """

    last_exception: Optional[BaseException] = None

    def open(self, handler: FrameHandler) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


def payloads_from_advertisement(advertisement: AdvertisementData) -> list[bytes]:
    # bleak strips the 2-byte company id; the beacon layout counts it as the code field
    return [
        company_id.to_bytes(2, "little") + bytes(data)
        for company_id, data in advertisement.manufacturer_data.items()
    ]


class BleakFrameSource(FrameSource):
    """Passive BLE scan using bleak, run on a private event loop in a daemon thread."""

    def __init__(self, adapter: Optional[str] = None, start_timeout: float = 10.0):
        self.adapter = adapter
        self.start_timeout = start_timeout
        self.last_exception: Optional[BaseException] = None
        self._handler: Optional[FrameHandler] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._ready_event = threading.Event()
        self._log = logging.getLogger(__name__)

    def open(self, handler: FrameHandler) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise TransportError("BLE scan already running")
        self._handler = handler
        self.last_exception = None
        self._stop_event.clear()
        self._ready_event.clear()
        self._thread = threading.Thread(target=self._run, name="ble-scanner", daemon=True)
        self._thread.start()
        if not self._ready_event.wait(self.start_timeout):
            self.close()
            raise TransportError(f"BLE scanner did not start within {self.start_timeout:.0f}s")
        if self.last_exception is not None:
            self.close()
            raise TransportError(f"Cannot start BLE scan: {self.last_exception}") from self.last_exception

    def close(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():  # pragma: no cover - stuck D-Bus call
                self._log.warning("BLE scanner thread did not stop within 5s")
            self._thread = None
        self._handler = None

    def _run(self) -> None:  # pragma: no cover - needs a Bluetooth adapter
        try:
            asyncio.run(self._scan())
        except Exception as exc:
            self.last_exception = exc
            self._log.error("BLE scan failed: %s", exc)
        finally:
            self._ready_event.set()

    async def _scan(self) -> None:  # pragma: no cover - needs a Bluetooth adapter
        kwargs: Dict[str, Any] = {}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        async with BleakScanner(detection_callback=self._on_advertisement, **kwargs):
            self._log.debug("BLE scan started (adapter=%s)", self.adapter or "default")
            self._ready_event.set()
            while not self._stop_event.is_set():
                await asyncio.sleep(0.1)
        self._log.debug("BLE scan stopped")

    def _on_advertisement(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        handler = self._handler
        if handler is None or self._stop_event.is_set():
            return
        for payload in payloads_from_advertisement(advertisement):
            handler(RawFrame(address=device.address, payload=payload))
