from __future__ import annotations

from types import SimpleNamespace

from beacons import ADDR_A
from thermobeacon.frames import FrameDecoder, ReadingFrame, encode_reading_frame
from thermobeacon.transport import BleakFrameSource, payloads_from_advertisement


def _advertisement(payload: bytes):
    # bleak reports the first two bytes as the company id key
    company_id = int.from_bytes(payload[:2], "little")
    return SimpleNamespace(manufacturer_data={company_id: payload[2:]})


def test_company_id_is_put_back_in_front_of_the_payload():
    payload = encode_reading_frame(ADDR_A, temperature_raw=280, humidity_raw=800)

    (restored,) = payloads_from_advertisement(_advertisement(payload))

    assert restored == payload
    assert isinstance(FrameDecoder().decode(restored), ReadingFrame)


def test_advertisements_are_forwarded_only_while_open():
    payload = encode_reading_frame(ADDR_A, temperature_raw=280, humidity_raw=800)
    source = BleakFrameSource()
    received = []
    source._handler = received.append

    source._on_advertisement(SimpleNamespace(address="D0:0E:00:00:00:01"), _advertisement(payload))
    source.close()
    source._on_advertisement(SimpleNamespace(address="D0:0E:00:00:00:01"), _advertisement(payload))

    assert len(received) == 1
    assert received[0].address == "D0:0E:00:00:00:01"
    assert received[0].payload == payload
