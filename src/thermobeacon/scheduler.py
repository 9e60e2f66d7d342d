from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .config import DEFAULT_TIMEZONE
from .errors import ScheduleError
from .health import HealthState, OutcomeKind, RunOutcome

logger = logging.getLogger(__name__)

# longest single wait; wall-clock jumps are noticed at least this often
MAX_SLEEP_SEC = 60.0

Job = Callable[[threading.Event], RunOutcome]


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    RUNNING = "running"
    TERMINATED = "terminated"


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleError(f"Unknown timezone '{name}'") from exc


def validate_schedule(cron: Optional[str], timezone: Optional[str] = DEFAULT_TIMEZONE) -> None:
    """Raise :class:`ScheduleError` for a malformed cron expression or unknown timezone."""
    resolve_timezone(timezone)
    if cron is not None and not croniter.is_valid(cron.strip()):
        raise ScheduleError(f"Invalid cron expression '{cron.strip()}'")


class Scheduler:
    """
    Drive the gateway job once, or repeatedly on a cron schedule.

    The cron expression and timezone are validated on construction so a bad
    schedule fails at startup instead of on the first tick. Each outcome is
    recorded into the shared :class:`HealthState`.
    """

    def __init__(
        self,
        job: Job,
        health: HealthState,
        cron: Optional[str] = None,
        timezone: Optional[str] = DEFAULT_TIMEZONE,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.job = job
        self.health = health
        validate_schedule(cron, timezone)
        self.cron = cron.strip() if cron else None
        self.tz = resolve_timezone(timezone)
        self._now = now or (lambda: datetime.now(self.tz))
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self.next_fire_time: Optional[datetime] = None
        self.last_outcome: Optional[RunOutcome] = None
        self.runs = 0

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return self._state

    def _set_state(self, state: SchedulerState) -> None:
        with self._lock:
            self._state = state

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def stop(self) -> None:
        self._stop_event.set()

    def next_after(self, moment: datetime) -> datetime:
        if self.cron is None:
            raise ScheduleError("No cron expression configured")
        local = moment.astimezone(self.tz)
        return croniter(self.cron, local).get_next(datetime)

    def run(self) -> None:
        try:
            if self.cron is None:
                logger.info("No cron expression configured, running once")
                self._execute()
                return
            logger.info("Running on cron schedule '%s' (%s)", self.cron, self.tz.key)
            while not self._stop_event.is_set():
                fire_at = self.next_after(self._now())
                self.next_fire_time = fire_at
                self._set_state(SchedulerState.WAITING)
                logger.info("Next run at %s", fire_at.isoformat())
                if not self._wait_until(fire_at):
                    break
                self._execute()
        finally:
            self.next_fire_time = None
            self._set_state(SchedulerState.TERMINATED)

    def _wait_until(self, fire_at: datetime) -> bool:
        """Sleep until *fire_at*; False when stopped first. A past *fire_at* returns at once."""
        while True:
            delay = (fire_at - self._now()).total_seconds()
            if delay <= 0:
                return True
            if self._stop_event.wait(min(delay, MAX_SLEEP_SEC)):
                return False

    def _execute(self) -> RunOutcome:
        self._set_state(SchedulerState.RUNNING)
        try:
            outcome = self.job(self._stop_event)
        except Exception as exc:
            logger.debug("Job raised", exc_info=True)
            outcome = RunOutcome.failure(str(exc) or type(exc).__name__)
        self.runs += 1
        self.last_outcome = outcome
        self.health.record(outcome)
        if outcome.kind is OutcomeKind.SUCCESS:
            logger.debug("Run was successful (%d sample(s))", outcome.count)
        elif outcome.kind is OutcomeKind.FAILURE:
            logger.error("Failed to read and deliver data, trying again next time: %s", outcome.reason)
        else:
            logger.info("Run skipped%s", f": {outcome.reason}" if outcome.reason else "")
        self._set_state(SchedulerState.IDLE)
        return outcome
