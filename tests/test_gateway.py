from __future__ import annotations

import threading

import pytest

from beacons import ADDR_A, ADDR_B, ScriptedFrameSource, extremes, reading
from thermobeacon.config import AppConfig
from thermobeacon.errors import PublishError
from thermobeacon.gateway import Gateway
from thermobeacon.health import HealthState, HealthStatus, OutcomeKind, RunOutcome
from thermobeacon.publisher import Publisher
from thermobeacon.scheduler import Scheduler


class RecordingPublisher(Publisher):
    def __init__(self, fail_for=()):
        self.samples = []
        self.fail_for = set(fail_for)

    def publish(self, sample):
        if sample.name in self.fail_for:
            raise PublishError("broker went away")
        self.samples.append(sample)


def _full_script():
    return [(0.0, reading(ADDR_A)), (0.0, extremes(ADDR_A)), (0.0, reading(ADDR_B)), (0.0, extremes(ADDR_B))]


def test_complete_samples_are_published(devices):
    publisher = RecordingPublisher()
    gateway = Gateway(AppConfig(devices=devices, seconds_to_scan=5), ScriptedFrameSource(_full_script()), publisher)

    outcome = gateway.run_once()

    assert outcome == RunOutcome.success(2)
    assert sorted(sample.name for sample in publisher.samples) == ["cellar", "living-room"]


def test_publish_failure_fails_the_run(devices):
    publisher = RecordingPublisher(fail_for={"cellar"})
    gateway = Gateway(AppConfig(devices=devices, seconds_to_scan=5), ScriptedFrameSource(_full_script()), publisher)

    outcome = gateway.run_once()

    assert outcome.kind is OutcomeKind.FAILURE
    assert "cellar" in outcome.reason
    assert [sample.name for sample in publisher.samples] == ["living-room"]


@pytest.mark.parametrize(
    "policy, expected",
    [
        ("success", RunOutcome.success(0)),
        ("failure", RunOutcome.failure("No devices found")),
        ("skip", RunOutcome.skipped("no devices found")),
    ],
)
def test_empty_scan_follows_policy(devices, policy, expected):
    config = AppConfig(devices=devices, seconds_to_scan=0.3, empty_scan_policy=policy)
    gateway = Gateway(config, ScriptedFrameSource(), RecordingPublisher())

    assert gateway.run_once() == expected


def test_transport_failure_fails_the_run(devices):
    source = ScriptedFrameSource(fail_with=RuntimeError("adapter gone"))
    gateway = Gateway(AppConfig(devices=devices, seconds_to_scan=5), source, RecordingPublisher())

    outcome = gateway.run_once()

    assert outcome.kind is OutcomeKind.FAILURE
    assert "adapter gone" in outcome.reason


def test_cancelled_scan_is_skipped(devices):
    stop_event = threading.Event()
    stop_event.set()
    publisher = RecordingPublisher()
    gateway = Gateway(AppConfig(devices=devices, seconds_to_scan=5), ScriptedFrameSource(_full_script()), publisher)

    outcome = gateway.run_once(stop_event)

    assert outcome.kind is OutcomeKind.SKIPPED
    assert publisher.samples == []


def test_scheduled_run_updates_health(devices):
    health = HealthState()
    gateway = Gateway(
        AppConfig(devices=devices, seconds_to_scan=0.3, empty_scan_policy="failure"),
        ScriptedFrameSource(),
        RecordingPublisher(),
    )

    Scheduler(gateway.run_once, health).run()

    assert health.status is HealthStatus.UNHEALTHY
    assert health.snapshot().last_error == "No devices found"


def test_sink_io_error_does_not_stop_other_devices(devices):
    class DiskFullPublisher(RecordingPublisher):
        def publish(self, sample):
            if sample.name == "living-room":
                raise OSError(28, "No space left on device")
            super().publish(sample)

    publisher = DiskFullPublisher()
    gateway = Gateway(AppConfig(devices=devices, seconds_to_scan=5), ScriptedFrameSource(_full_script()), publisher)

    outcome = gateway.run_once()

    assert outcome.kind is OutcomeKind.FAILURE
    assert "living-room" in outcome.reason
    assert "No space left on device" in outcome.reason
    assert [sample.name for sample in publisher.samples] == ["cellar"]
