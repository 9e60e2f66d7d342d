from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RunOutcome:
    """Result of one scheduler invocation."""

    kind: OutcomeKind
    count: int = 0
    reason: Optional[str] = None

    @staticmethod
    def success(count: int) -> "RunOutcome":
        return RunOutcome(OutcomeKind.SUCCESS, count=count)

    @staticmethod
    def failure(reason: str) -> "RunOutcome":
        return RunOutcome(OutcomeKind.FAILURE, reason=reason)

    @staticmethod
    def skipped(reason: Optional[str] = None) -> "RunOutcome":
        return RunOutcome(OutcomeKind.SKIPPED, reason=reason)


class HealthStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthSnapshot:
    status: HealthStatus
    last_error: Optional[str] = None

    @property
    def http_status(self) -> int:
        if self.status is HealthStatus.HEALTHY:
            return 200
        if self.status is HealthStatus.UNHEALTHY:
            return 500
        return 404

    @property
    def message(self) -> str:
        if self.status is HealthStatus.HEALTHY:
            return "Everything is working fine"
        if self.status is HealthStatus.UNHEALTHY:
            return self.last_error or "Last run failed"
        return "Waiting for the first run"


class HealthState:
    """
    Last-run health shared between the scheduler (writer) and the HTTP
    responder (reader). Snapshots are immutable, so readers never see a
    half-applied update.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = HealthSnapshot(HealthStatus.UNKNOWN)

    def snapshot(self) -> HealthSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def status(self) -> HealthStatus:
        return self.snapshot().status

    def record(self, outcome: RunOutcome) -> HealthSnapshot:
        with self._lock:
            if outcome.kind is OutcomeKind.SUCCESS:
                self._snapshot = HealthSnapshot(HealthStatus.HEALTHY)
            elif outcome.kind is OutcomeKind.FAILURE:
                self._snapshot = HealthSnapshot(HealthStatus.UNHEALTHY, outcome.reason)
            current = self._snapshot
        logger.debug("Health after %s outcome: %s", outcome.kind.value, current.status.value)
        return current
