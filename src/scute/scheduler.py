"""
Scheduled activation.

`Scheduler.evaluate` is the single entry point used by every trigger (alarm,
foreground, process start, countdown). It is idempotent: evaluating twice
at the same instant does the same thing as evaluating once.
"""

import threading
import time
from collections.abc import Callable
from datetime import datetime

from loguru import logger
from pydantic import BaseModel, Field

from scute.conflicts import (
    check_running_lock_conflict,
    check_schedule_conflict,
    enabled_schedules,
    first_overlap,
)
from scute.errors import (
    BackendError,
    BackendWriteFailed,
    ConflictRejected,
    InvalidTransition,
    PresetLocked,
    ScuteError,
    TransitionInFlight,
)
from scute.gateway import EnforcementGateway
from scute.schema import Preset
from scute.session import SessionMachine
from scute.store import PresetStore
from scute.utils.time import next_occurrence, utcnow
from scute.utils.timeouts import call_with_timeout


class ScheduleReport(BaseModel):
    """What one evaluation pass did."""

    skipped: bool = False
    expired: str | None = None
    rearmed: list[str] = Field(default_factory=list)
    disabled: list[str] = Field(default_factory=list)
    deactivated: list[str] = Field(default_factory=list)
    superseded: str | None = None
    activated: str | None = None
    errors: list[str] = Field(default_factory=list)


class Scheduler:
    def __init__(
        self,
        machine: SessionMachine,
        store: PresetStore,
        gateway: EnforcementGateway,
        clock: Callable[[], datetime] = utcnow,
        marker_seconds: float = 2.0,
        horizon: int = 52,
        io_timeout: float = 5.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.machine = machine
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.marker_seconds = marker_seconds
        self.horizon = horizon
        self.io_timeout = io_timeout
        self.monotonic = monotonic

        self._evaluating = threading.Lock()
        self._markers: dict[tuple[str, datetime], float] = {}

    def _write(self, operation: str, fn, *args):
        try:
            return call_with_timeout(fn, *args, timeout=self.io_timeout)
        except (BackendError, TimeoutError) as e:
            raise BackendWriteFailed(operation, e) from e

    def _alarm(self, preset_id: str, firing_time: datetime | None) -> None:
        try:
            if firing_time is None:
                self.gateway.cancel_alarm(preset_id)
            else:
                self.gateway.schedule_alarm(preset_id, firing_time)
        except Exception as e:
            logger.warning(f"Could not update alarm for {preset_id}: {e}")

    def _claim_marker(self, preset: Preset) -> bool:
        """Returns False if this occurrence was activated moments ago."""
        now = self.monotonic()
        self._markers = {k: t for k, t in self._markers.items() if now - t < self.marker_seconds}
        key = (preset.id, preset.schedule_start_date)
        if key in self._markers:
            return False
        self._markers[key] = now
        return True

    def rearm(self, preset: Preset, presets: list[Preset], now: datetime) -> bool:
        """
        Moves a recurring preset to its next free occurrence after `now`.

        Occurrences that overlap another enabled schedule or the rest of a
        running timed lock are skipped, up to `horizon` of them; after that the
        preset is disabled. `preset` is updated in place so later re-arms in
        the same pass see its new window. Returns True if the preset was moved.
        """
        others = enabled_schedules(presets, exclude_id=preset.id)
        session = self.machine.session
        start, end = preset.window
        after = now
        for _ in range(self.horizon):
            start, end = next_occurrence(
                start, end, preset.repeat_unit.value, preset.repeat_interval, after
            )
            conflict = first_overlap(start, end, others) or check_running_lock_conflict(
                start, end, session, now
            )
            if conflict is None:
                self._write("move schedule", self.store.update_schedule, preset.id, start, end)
                preset.schedule_start_date, preset.schedule_end_date = start, end
                self._alarm(preset.id, start)
                logger.info(f"'{preset.name}' rescheduled to {start.isoformat()} - {end.isoformat()}")
                return True
            logger.info(
                f"Skipping occurrence of '{preset.name}' at {start.isoformat()}: "
                f"overlaps '{conflict.preset_name}'"
            )
            after = start

        logger.warning(
            f"No free occurrence of '{preset.name}' within {self.horizon} repeats; disabling it"
        )
        self._write("disable preset", self.store.set_preset_active, preset.id, False)
        preset.is_active = False
        self._alarm(preset.id, None)
        return False

    def evaluate(self, now: datetime | None = None) -> ScheduleReport:
        now = now or self.clock()
        report = ScheduleReport()
        if not self._evaluating.acquire(blocking=False):
            logger.debug("Schedule evaluation already running")
            report.skipped = True
            return report
        try:
            self._evaluate(now, report)
        except TransitionInFlight:
            report.skipped = True
        finally:
            self._evaluating.release()
        return report

    def _evaluate(self, now: datetime, report: ScheduleReport) -> None:
        session = self.machine.refresh()

        if session.lock.has_expired(now):
            expired = session.preset
            try:
                self.machine.expire(now)
                report.expired = expired.id if expired else None
            except (InvalidTransition, BackendWriteFailed) as e:
                report.errors.append(str(e))
                logger.error(f"Could not end expired block: {e}")
            session = self.machine.refresh()

        enforced_id = session.preset.id if session.preset else None
        presets = self.machine.presets
        changed = False
        for preset in enabled_schedules(presets):
            if preset.schedule_end_date > now or preset.id == enforced_id:
                continue
            try:
                if preset.is_recurring:
                    if self.rearm(preset, presets, now):
                        report.rearmed.append(preset.id)
                    else:
                        report.disabled.append(preset.id)
                else:
                    self._write("deactivate preset", self.store.set_preset_active, preset.id, False)
                    preset.is_active = False
                    self._alarm(preset.id, None)
                    report.deactivated.append(preset.id)
                    logger.info(f"Schedule of '{preset.name}' ended; preset deactivated")
                changed = True
            except BackendWriteFailed as e:
                report.errors.append(str(e))
                logger.error(f"Could not update ended schedule '{preset.name}': {e}")
        if changed:
            session = self.machine.refresh()

        due = sorted(
            (p for p in enabled_schedules(self.machine.presets) if p.window_contains(now)),
            key=lambda p: p.schedule_start_date,
        )
        for preset in due:
            if session.preset is not None and session.preset.id == preset.id:
                return
            if session.is_locked and session.lock.lock_ends_at is not None:
                # A timed lock by another preset runs to its end.
                logger.debug(f"'{preset.name}' is due but another timed block is running")
                return
            if not self._claim_marker(preset):
                logger.debug(f"'{preset.name}' was activated moments ago")
                return
            try:
                if session.is_locked:
                    displaced = self.machine.supersede(now)
                    report.superseded = displaced.id if displaced else None
                self.machine.activate(preset.id, now)
                report.activated = preset.id
                logger.info(f"Scheduled block '{preset.name}' started")
            except TransitionInFlight:
                raise
            except ScuteError as e:
                report.errors.append(str(e))
                logger.error(f"Could not start scheduled block '{preset.name}': {e}")
            return

    def enable_schedule(self, preset_id: str, now: datetime | None = None) -> Preset:
        now = now or self.clock()
        presets = self.store.list_presets()
        preset = next((p for p in presets if p.id == preset_id), None)
        if preset is None:
            preset = self.store.get_preset(preset_id)
        if not preset.is_scheduled:
            raise InvalidTransition(f"'{preset.name}' has no schedule")

        if preset.schedule_end_date <= now:
            if not preset.is_recurring:
                raise InvalidTransition(f"The schedule of '{preset.name}' has already ended")
            start, end = next_occurrence(
                preset.schedule_start_date,
                preset.schedule_end_date,
                preset.repeat_unit.value,
                preset.repeat_interval,
                now,
            )
            preset.schedule_start_date, preset.schedule_end_date = start, end

        conflict = check_schedule_conflict(preset, presets) or check_running_lock_conflict(
            *preset.window, self.machine.refresh(), now
        )
        if conflict is not None:
            raise ConflictRejected(conflict.preset_id, conflict.preset_name)

        preset.is_active = True
        self._write("enable schedule", self.store.save_preset, preset)
        if preset.schedule_start_date > now:
            self._alarm(preset.id, preset.schedule_start_date)
        logger.info(f"Schedule of '{preset.name}' enabled")
        return preset

    def disable_schedule(self, preset_id: str) -> Preset:
        session = self.machine.refresh()
        preset = self.store.get_preset(preset_id)
        if session.preset is not None and session.preset.id == preset.id:
            raise PresetLocked(preset.name)
        self._write("disable schedule", self.store.set_preset_active, preset.id, False)
        self._alarm(preset.id, None)
        preset.is_active = False
        logger.info(f"Schedule of '{preset.name}' disabled")
        return preset
