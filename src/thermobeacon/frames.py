from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass
from typing import Dict, Optional, Union

READING_FRAME_LEN = 20
EXTREMES_FRAME_LEN = 22

BUTTON_PRESSED = 0x80
# Registers above this value wrap to small negative temperatures. The device
# notes give 4000 rather than a two's-complement boundary; keep it as-is.
NEGATIVE_THRESHOLD = 4000
REGISTER_WRAP = 4096
FIXED_POINT_SCALE = 16.0
BATTERY_FULL_SCALE = 3400.0

# code, reserved, button, address, battery, temperature, humidity, uptime
_READING_STRUCT = struct.Struct("<HBB6sHHHI")
# code, reserved, button, address, max temp, max time, min temp, min time
_EXTREMES_STRUCT = struct.Struct("<HBB6sHIHI")

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{12}$")


def parse_mac(text: str) -> bytes:
    """Parse ``AA:BB:CC:DD:EE:FF`` (any case, ``:``/``-`` or no separator) into a 6-byte key."""
    cleaned = text.strip().replace(":", "").replace("-", "")
    if not _MAC_RE.match(cleaned):
        raise ValueError(f"Invalid hardware address '{text}'")
    return bytes.fromhex(cleaned)


def format_mac(address: bytes) -> str:
    if len(address) != 6:
        raise ValueError(f"Hardware address must be 6 bytes, got {len(address)}")
    return ":".join(f"{byte:02X}" for byte in address)


def decode_fixed_point(raw: int) -> float:
    effective = raw - REGISTER_WRAP if raw > NEGATIVE_THRESHOLD else raw
    return effective / FIXED_POINT_SCALE


def encode_fixed_point(value: float) -> int:
    raw = int(round(value * FIXED_POINT_SCALE))
    if raw < 0:
        raw += REGISTER_WRAP
    if not 0 <= raw <= 0xFFFF:
        raise ValueError(f"Temperature {value} does not fit a 16-bit register")
    return raw


@dataclass(frozen=True)
class ReadingFrame:
    """Current battery, temperature, humidity and uptime (20-byte fragment)."""

    address: bytes
    code: int
    battery_level: float
    temperature: float
    humidity: float
    uptime: int
    button_pressed: bool

    @property
    def mac(self) -> str:
        return format_mac(self.address)


@dataclass(frozen=True)
class ExtremesFrame:
    """Min/max temperature since reset (22-byte fragment)."""

    address: bytes
    code: int
    max_temperature: float
    max_temp_time: int
    min_temperature: float
    min_temp_time: int
    button_pressed: bool

    @property
    def mac(self) -> str:
        return format_mac(self.address)


Frame = Union[ReadingFrame, ExtremesFrame]


class FrameDecoder:
    """
    Decode ThermoBeacon manufacturer payloads.

    Only the payload length selects the layout; anything that is neither 20 nor
    22 bytes long belongs to some other device and is ignored without error.
    """

    def __init__(self) -> None:
        self._stats: Dict[str, int] = {"reading_frames": 0, "extremes_frames": 0, "ignored": 0}
        self._log = logging.getLogger(__name__)

    def decode(self, payload: bytes) -> Optional[Frame]:
        length = len(payload)
        if length == READING_FRAME_LEN:
            self._stats["reading_frames"] += 1
            return decode_reading(payload)
        if length == EXTREMES_FRAME_LEN:
            self._stats["extremes_frames"] += 1
            return decode_extremes(payload)
        self._stats["ignored"] += 1
        self._log.debug("Ignoring payload of %d bytes", length)
        return None

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)


def _address_from_wire(raw: bytes) -> bytes:
    # stored least significant byte first
    return raw[::-1]


def decode_reading(payload: bytes) -> ReadingFrame:
    (
        code,
        _reserved,
        button,
        address,
        battery_raw,
        temperature_raw,
        humidity_raw,
        uptime,
    ) = _READING_STRUCT.unpack(payload)
    return ReadingFrame(
        address=_address_from_wire(address),
        code=code,
        battery_level=battery_raw * 100.0 / BATTERY_FULL_SCALE,
        temperature=decode_fixed_point(temperature_raw),
        humidity=humidity_raw / FIXED_POINT_SCALE,
        uptime=uptime,
        button_pressed=button == BUTTON_PRESSED,
    )


def decode_extremes(payload: bytes) -> ExtremesFrame:
    (
        code,
        _reserved,
        button,
        address,
        max_raw,
        max_time,
        min_raw,
        min_time,
    ) = _EXTREMES_STRUCT.unpack(payload)
    return ExtremesFrame(
        address=_address_from_wire(address),
        code=code,
        max_temperature=decode_fixed_point(max_raw),
        max_temp_time=max_time,
        min_temperature=decode_fixed_point(min_raw),
        min_temp_time=min_time,
        button_pressed=button == BUTTON_PRESSED,
    )


def encode_reading_frame(
    address: bytes,
    *,
    temperature_raw: int,
    humidity_raw: int,
    battery_raw: int = 3400,
    uptime: int = 0,
    button: int = 0x00,
    code: int = 0x0010,
) -> bytes:
    """Build a 20-byte reading payload from raw register values."""
    return _READING_STRUCT.pack(
        code, 0, button, address[::-1], battery_raw, temperature_raw, humidity_raw, uptime
    )


def encode_extremes_frame(
    address: bytes,
    *,
    max_raw: int,
    min_raw: int,
    max_time: int = 0,
    min_time: int = 0,
    button: int = 0x00,
    code: int = 0x0010,
) -> bytes:
    """Build a 22-byte extremes payload from raw register values."""
    return _EXTREMES_STRUCT.pack(code, 0, button, address[::-1], max_raw, max_time, min_raw, min_time)
