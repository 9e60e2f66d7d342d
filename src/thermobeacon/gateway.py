from __future__ import annotations

import logging
import threading
from typing import Optional

from .config import AppConfig
from .errors import GatewayError
from .health import RunOutcome
from .publisher import Publisher
from .session import ScanSession, SessionState
from .transport import FrameSource

logger = logging.getLogger(__name__)


class Gateway:
    """One scheduler job: scan, then publish every complete sample."""

    def __init__(self, config: AppConfig, source: FrameSource, publisher: Publisher):
        self.config = config
        self.source = source
        self.publisher = publisher

    def run_once(self, stop_event: Optional[threading.Event] = None) -> RunOutcome:
        logger.debug("Start collecting data ...")
        session = ScanSession(self.config.devices, self.source, self.config.seconds_to_scan)
        try:
            result = session.run(stop_event)
        except GatewayError as exc:
            return RunOutcome.failure(str(exc))

        if result.state is SessionState.CANCELLED:
            return RunOutcome.skipped("scan cancelled by shutdown")

        logger.info(
            "Data collected. Found %d of %d devices in %.1fs.",
            len(result.samples),
            len(self.config.devices),
            result.elapsed,
        )
        logger.debug("Session stats: %s", result.stats)

        published = 0
        errors = []
        for sample in result.samples:
            logger.info("ThermoBeacon data from %s: %s", sample.name, sample.to_message()["data"])
            try:
                self.publisher.publish(sample)
            except Exception as exc:
                logger.debug("Publishing %s failed", sample.name, exc_info=True)
                errors.append(f"{sample.name}: {exc}")
                continue
            published += 1
        if errors:
            return RunOutcome.failure("; ".join(errors))

        if published == 0 and self.config.devices:
            return self._empty_outcome()
        return RunOutcome.success(published)

    def _empty_outcome(self) -> RunOutcome:
        policy = self.config.empty_scan_policy
        if policy == "failure":
            return RunOutcome.failure("No devices found")
        if policy == "skip":
            return RunOutcome.skipped("no devices found")
        return RunOutcome.success(0)
