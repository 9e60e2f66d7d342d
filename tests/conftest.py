from __future__ import annotations

from typing import List

import pytest

from beacons import ADDR_A, ADDR_B
from thermobeacon.config import DeviceConfig


@pytest.fixture
def devices() -> List[DeviceConfig]:
    return [
        DeviceConfig(address=ADDR_A, name="living-room"),
        DeviceConfig(address=ADDR_B, name="cellar", topic="home/cellar", retained=True, qos=0),
    ]
