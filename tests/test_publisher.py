from __future__ import annotations

import csv
import json

import pytest

import thermobeacon.publisher as publisher_module
from beacons import ADDR_A, ADDR_B
from thermobeacon.config import DeviceConfig, MqttConfig
from thermobeacon.correlation import Correlator
from thermobeacon.discovery import discovery_messages, publish_discovery
from thermobeacon.errors import PublishError
from thermobeacon.frames import FrameDecoder, encode_extremes_frame, encode_reading_frame
from thermobeacon.publisher import (
    ConsolePublisher,
    CsvSampleLog,
    FanoutPublisher,
    MqttPublisher,
    Publisher,
    build_publishers,
    parse_broker_url,
)


class FakeReasonCode:
    def __init__(self, failure: bool, text: str = "Success"):
        self.is_failure = failure
        self.text = text

    def __str__(self) -> str:
        return self.text


class FakeMessageInfo:
    rc = publisher_module.mqtt.MQTT_ERR_SUCCESS

    def wait_for_publish(self, timeout=None):
        pass

    def is_published(self):
        return True


class FakeClient:
    instances: list = []
    refuse = False

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.published = []
        self.credentials = None
        self.tls = False
        self.connected_to = None
        self.stopped = False
        FakeClient.instances.append(self)

    def username_pw_set(self, username, password):
        self.credentials = (username, password)

    def tls_set(self):
        self.tls = True

    def connect(self, host, port, keepalive=60):
        self.connected_to = (host, port, keepalive)

    def loop_start(self):
        reason = FakeReasonCode(True, "Not authorized") if FakeClient.refuse else FakeReasonCode(False)
        self.on_connect(self, None, {}, reason, None)

    def loop_stop(self):
        self.stopped = True

    def disconnect(self):
        pass

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))
        return FakeMessageInfo()


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.instances = []
    FakeClient.refuse = False
    monkeypatch.setattr(publisher_module.mqtt, "Client", FakeClient)
    return FakeClient


def _sample(device: DeviceConfig):
    decoder = FrameDecoder()
    correlator = Correlator([device])
    correlator.observe(decoder.decode(encode_reading_frame(device.address, temperature_raw=280, humidity_raw=800)))
    correlator.observe(decoder.decode(encode_extremes_frame(device.address, max_raw=400, min_raw=4080)))
    return correlator.finalize(device.address)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("tcp://broker", ("broker", 1883, False)),
        ("mqtt://broker:1884", ("broker", 1884, False)),
        ("ssl://broker", ("broker", 8883, True)),
        ("mqtts://broker:9999", ("broker", 9999, True)),
        ("broker.local", ("broker.local", 1883, False)),
    ],
)
def test_parse_broker_url(url, expected):
    assert parse_broker_url(url) == expected


@pytest.mark.parametrize("url", ["http://broker", "tcp://", "tcp://broker:port"])
def test_parse_broker_url_rejects_bad_input(url):
    with pytest.raises(PublishError):
        parse_broker_url(url)


def test_mqtt_publish_uses_device_topic_qos_and_retain(fake_client):
    mqtt_publisher = MqttPublisher(MqttConfig(url="ssl://broker", username="gw", password="secret", keep_alive=30))
    mqtt_publisher.connect()
    client = fake_client.instances[0]
    assert client.connected_to == ("broker", 8883, 30)
    assert client.credentials == ("gw", "secret")
    assert client.tls is True
    assert mqtt_publisher.connected

    mqtt_publisher.publish(_sample(DeviceConfig(address=ADDR_A, name="living-room")))
    mqtt_publisher.publish(_sample(DeviceConfig(address=ADDR_B, name="cellar", topic="home/cellar", qos=0, retained=True)))

    (topic_a, payload_a, qos_a, retain_a), (topic_b, _payload_b, qos_b, retain_b) = client.published
    assert (topic_a, qos_a, retain_a) == ("ThermoBeacon/living-room", 1, False)
    assert (topic_b, qos_b, retain_b) == ("home/cellar", 0, True)
    message = json.loads(payload_a)
    assert message["name"] == "living-room"
    assert message["data"]["temperature"] == 17.5
    assert message["data"]["mac"] == "D0:0E:00:00:00:01"

    mqtt_publisher.close()
    assert client.stopped
    assert not mqtt_publisher.connected


def test_refused_connection_raises(fake_client):
    fake_client.refuse = True
    mqtt_publisher = MqttPublisher(MqttConfig(url="tcp://broker"), connect_timeout=5)

    with pytest.raises(PublishError, match="Not authorized"):
        mqtt_publisher.connect()


def test_publish_without_connection_raises():
    mqtt_publisher = MqttPublisher(MqttConfig(url="tcp://broker"))
    with pytest.raises(PublishError):
        mqtt_publisher.publish_message("topic", "{}")


def test_discovery_messages_describe_three_sensors():
    device = DeviceConfig(address=ADDR_A, name="living-room", manufacturer="Brifit")

    messages = dict(discovery_messages(device))

    assert sorted(messages) == [
        "homeassistant/sensor/thermobeacon/D0_0E_00_00_00_01_battery/config",
        "homeassistant/sensor/thermobeacon/D0_0E_00_00_00_01_humidity/config",
        "homeassistant/sensor/thermobeacon/D0_0E_00_00_00_01_temperature/config",
    ]
    temperature = messages["homeassistant/sensor/thermobeacon/D0_0E_00_00_00_01_temperature/config"]
    assert temperature["state_topic"] == "ThermoBeacon/living-room"
    assert temperature["unit_of_measurement"] == "°C"
    assert temperature["value_template"] == "{{ value_json.data.temperature }}"
    assert temperature["unique_id"] == "D0:0E:00:00:00:01_temp"
    assert temperature["device"]["manufacturer"] == "Brifit"
    assert temperature["device"]["model"] == "Smart hygrometer"
    battery = messages["homeassistant/sensor/thermobeacon/D0_0E_00_00_00_01_battery/config"]
    assert battery["value_template"] == "{{ value_json.data.battery_level }}"


def test_discovery_is_published_retained(fake_client):
    mqtt_publisher = MqttPublisher(MqttConfig(url="tcp://broker"))
    mqtt_publisher.connect()
    devices = [DeviceConfig(address=ADDR_A, name="a"), DeviceConfig(address=ADDR_B, name="b")]

    assert publish_discovery(mqtt_publisher, devices) == 6

    published = fake_client.instances[0].published
    assert all(qos == 1 and retain for _topic, _payload, qos, retain in published)


def test_csv_log_appends_rows(tmp_path):
    path = tmp_path / "out" / "samples.csv"
    sample = _sample(DeviceConfig(address=ADDR_A, name="living-room"))

    log = CsvSampleLog(path)
    assert not path.exists()
    log.publish(sample)
    log.close()
    log = CsvSampleLog(path)
    log.publish(sample)
    log.close()

    with path.open(newline="", encoding="utf-8") as fh:
        rows = list(csv.DictReader(fh))
    assert len(rows) == 2
    assert rows[0]["name"] == "living-room"
    assert rows[0]["temperature"] == "17.5"
    assert rows[1]["mac"] == "D0:0E:00:00:00:01"


def test_console_publisher_prints_json(capsys):
    ConsolePublisher().publish(_sample(DeviceConfig(address=ADDR_A, name="living-room")))

    message = json.loads(capsys.readouterr().out)
    assert message["name"] == "living-room"


def test_fanout_delivers_to_all_before_raising(tmp_path):
    class Broken(Publisher):
        def publish(self, sample):
            raise PublishError("offline")

    path = tmp_path / "samples.csv"
    fanout = FanoutPublisher([Broken(), CsvSampleLog(path)])

    with pytest.raises(PublishError):
        fanout.publish(_sample(DeviceConfig(address=ADDR_A, name="living-room")))
    fanout.close()

    assert path.exists()


def test_build_publishers_falls_back_to_console(tmp_path):
    assert isinstance(build_publishers(None, None), ConsolePublisher)
    assert isinstance(build_publishers(None, tmp_path / "x.csv"), FanoutPublisher)


def test_csv_write_errors_become_publish_errors(tmp_path):
    log = CsvSampleLog(tmp_path)

    with pytest.raises(PublishError, match="Cannot write"):
        log.publish(_sample(DeviceConfig(address=ADDR_A, name="living-room")))


def test_discovery_ids_keep_the_configured_mac_spelling():
    device = DeviceConfig.from_mapping({"mac": "d0:0e:00:00:00:01", "name": "living-room"})

    topics = [topic for topic, _payload in discovery_messages(device)]
    temperature = dict(discovery_messages(device))[topics[0]]

    assert topics[0] == "homeassistant/sensor/thermobeacon/d0_0e_00_00_00_01_temperature/config"
    assert temperature["unique_id"] == "d0:0e:00:00:00:01_temp"
    assert temperature["device"]["identifiers"] == ["d0:0e:00:00:00:01"]
