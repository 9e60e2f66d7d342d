from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config import DEFAULT_SECONDS_TO_SCAN, DeviceConfig
from .correlation import Correlator, Sample
from .errors import TransportError
from .frames import FrameDecoder
from .transport import FrameSource, RawFrame

logger = logging.getLogger(__name__)

# upper bound for one queue wait, so cancellation and transport failures are noticed
POLL_INTERVAL = 0.25


class SessionState(str, enum.Enum):
    SCANNING = "scanning"
    ALL_COMPLETE = "all_complete"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class SessionResult:
    state: SessionState
    samples: List[Sample] = field(default_factory=list)
    incomplete: int = 0
    elapsed: float = 0.0
    stats: Dict[str, int] = field(default_factory=dict)


class ScanSession:
    """
    One bounded scan pass over all configured devices.

    Frames are queued by the source thread and applied in arrival order on the
    calling thread. The pass ends when every device has both fragments or when
    ``seconds_to_scan`` elapses, whichever comes first. The source subscription
    is closed on every exit path.
    """

    def __init__(
        self,
        devices: Sequence[DeviceConfig],
        source: FrameSource,
        seconds_to_scan: float = DEFAULT_SECONDS_TO_SCAN,
        decoder: Optional[FrameDecoder] = None,
    ):
        self.devices = list(devices)
        self.source = source
        self.seconds_to_scan = seconds_to_scan
        self.decoder = decoder or FrameDecoder()
        self.state = SessionState.SCANNING
        self._stats: Dict[str, int] = {"received": 0, "accepted": 0, "unknown_address": 0}

    def run(self, stop_event: Optional[threading.Event] = None) -> SessionResult:
        stop_event = stop_event or threading.Event()
        correlator = Correlator(self.devices)
        frames: "queue.Queue[RawFrame]" = queue.Queue()
        started = time.monotonic()
        deadline = started + self.seconds_to_scan

        if not self.devices:
            logger.warning("No devices configured, nothing to scan for")
            return self._finish(SessionState.ALL_COMPLETE, correlator, started)

        logger.debug("Scanning for %d device(s) for up to %.1fs", len(self.devices), self.seconds_to_scan)
        self.source.open(frames.put_nowait)
        try:
            while True:
                if stop_event.is_set():
                    correlator.discard()
                    return self._finish(SessionState.CANCELLED, correlator, started)
                if self.source.last_exception is not None:
                    raise TransportError(f"BLE scan aborted: {self.source.last_exception}")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return self._finish(SessionState.TIMED_OUT, correlator, started)
                try:
                    raw = frames.get(timeout=min(remaining, POLL_INTERVAL))
                except queue.Empty:
                    continue
                self._apply(raw, correlator)
                if correlator.all_complete():
                    return self._finish(SessionState.ALL_COMPLETE, correlator, started)
        finally:
            self.source.close()

    def _apply(self, raw: RawFrame, correlator: Correlator) -> None:
        self._stats["received"] += 1
        frame = self.decoder.decode(raw.payload)
        if frame is None:
            return
        if correlator.observe(frame, now=raw.received_at):
            self._stats["accepted"] += 1
            logger.debug("%s from %s", type(frame).__name__, frame.mac)
        else:
            self._stats["unknown_address"] += 1

    def _finish(self, state: SessionState, correlator: Correlator, started: float) -> SessionResult:
        self.state = state
        samples: List[Sample] = []
        missing = correlator.missing_devices()
        if state is not SessionState.CANCELLED:
            for address in correlator.complete_addresses():
                sample = correlator.finalize(address)
                if sample is not None:
                    samples.append(sample)
        correlator.discard()
        elapsed = time.monotonic() - started
        if state is SessionState.TIMED_OUT and missing:
            logger.info(
                "Scan timed out after %.1fs, no complete data from: %s",
                elapsed,
                ", ".join(device.name for device in missing),
            )
        stats = {**self.decoder.stats(), **self._stats}
        return SessionResult(
            state=state,
            samples=samples,
            incomplete=len(self.devices) - len(samples),
            elapsed=elapsed,
            stats=stats,
        )
