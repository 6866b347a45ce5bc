"""
Session state machine.

Holds the one authoritative view of what is being enforced and performs the
transitions between IDLE, LOCKED_TIMED and LOCKED_UNTIMED. Every transition
follows the same order: validate, apply the change locally (the session
reports TRANSITIONING meanwhile), command the enforcement engine, then write
through to the backend. A failed backend write restores the local snapshot
and compensates the engine command that was already issued.

Only one transition runs at a time; a second caller gets TransitionInFlight
immediately instead of waiting.
"""

import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime

from loguru import logger

from scute.conflicts import check_activation_conflict
from scute.errors import (
    BackendError,
    BackendWriteFailed,
    ConflictRejected,
    EnforcementFailed,
    InvalidTransition,
    PresetNotFound,
    StrictModeActive,
    TapoutConsumeRaced,
    TapoutExhausted,
    TapoutNotAllowed,
    TransitionInFlight,
)
from scute.gateway import EnforcementGateway
from scute.schema import LockStatus, Preset, Session
from scute.store import PresetStore
from scute.tapout import TapoutLedger, UnconfirmedTapout
from scute.utils.time import utcnow
from scute.utils.timeouts import call_with_timeout

Snapshot = tuple[list[Preset], LockStatus]


def resolve_enforced(presets: Iterable[Preset], lock: LockStatus) -> Preset | None:
    """
    Finds the preset behind a lock: an enabled scheduled preset whose window
    end equals the lock end, else the current non-scheduled preset.
    """
    if not lock.is_locked:
        return None
    presets = list(presets)
    if lock.lock_ends_at is not None:
        for p in presets:
            if p.is_scheduled and p.is_active and p.schedule_end_date == lock.lock_ends_at:
                return p
    for p in presets:
        if not p.is_scheduled and p.is_active:
            return p
    return None


class SessionMachine:
    def __init__(
        self,
        store: PresetStore,
        gateway: EnforcementGateway,
        ledger: TapoutLedger,
        clock: Callable[[], datetime] = utcnow,
        io_timeout: float = 5.0,
    ):
        self.store = store
        self.gateway = gateway
        self.ledger = ledger
        self.clock = clock
        self.io_timeout = io_timeout

        self._guard = threading.Lock()
        self._transitioning = False
        self._presets: list[Preset] = []
        self._lock_status = LockStatus.unlocked()

    @property
    def session(self) -> Session:
        return Session(
            preset=resolve_enforced(self._presets, self._lock_status),
            lock=self._lock_status,
            transitioning=self._transitioning,
        )

    @property
    def presets(self) -> list[Preset]:
        return [p.model_copy(deep=True) for p in self._presets]

    @property
    def current_preset(self) -> Preset | None:
        """The selected non-scheduled preset, locked or not."""
        return next((p for p in self._presets if not p.is_scheduled and p.is_active), None)

    @property
    def in_transition(self) -> bool:
        return self._transitioning

    def refresh(self, skip_cache: bool = False) -> Session:
        """Reloads presets and lock status unless a transition is running."""
        if not self._guard.acquire(blocking=False):
            return self.session
        try:
            self._load(skip_cache=skip_cache)
        finally:
            self._guard.release()
        return self.session

    @contextmanager
    def _transition(self, name: str) -> Iterator[None]:
        if not self._guard.acquire(blocking=False):
            logger.debug(f"Dropping {name}: another transition is in flight")
            raise TransitionInFlight()
        self._transitioning = True
        try:
            yield
        finally:
            self._transitioning = False
            self._guard.release()

    def _load(self, skip_cache: bool = False) -> None:
        try:
            self._presets = call_with_timeout(
                self.store.list_presets, skip_cache=skip_cache, timeout=self.io_timeout
            )
            self._lock_status = call_with_timeout(
                self.store.get_lock_status, skip_cache=skip_cache, timeout=self.io_timeout
            )
        except TimeoutError as e:
            raise BackendError(str(e)) from e

    def _snapshot(self) -> Snapshot:
        return [p.model_copy(deep=True) for p in self._presets], self._lock_status.model_copy()

    def _restore(self, snapshot: Snapshot) -> None:
        self._presets, self._lock_status = snapshot

    def _find(self, preset_id: str) -> Preset:
        for p in self._presets:
            if p.id == preset_id:
                return p
        raise PresetNotFound(preset_id)

    def _set_current_local(self, preset_id: str | None) -> None:
        # Single setter for the one-current-preset rule; scheduled presets keep their flag.
        for p in self._presets:
            if not p.is_scheduled:
                p.is_active = p.id == preset_id

    def _set_enabled_local(self, preset_id: str, is_active: bool) -> None:
        self._find(preset_id).is_active = is_active

    def _write(self, operation: str, fn, *args):
        try:
            return call_with_timeout(fn, *args, timeout=self.io_timeout)
        except (BackendError, TimeoutError) as e:
            logger.error(f"Backend write failed ({operation}): {e}")
            raise BackendWriteFailed(operation, e) from e

    def _command(self, command: str, fn, *args) -> None:
        try:
            ack = call_with_timeout(fn, *args, timeout=self.io_timeout)
        except Exception as e:
            logger.error(f"Enforcement engine failed to {command}: {e}")
            raise EnforcementFailed(command, e) from e
        if ack is False:
            logger.error(f"Enforcement engine refused to {command}")
            raise EnforcementFailed(command)

    def _best_effort(self, what: str, fn, *args) -> bool:
        try:
            call_with_timeout(fn, *args, timeout=self.io_timeout)
            return True
        except Exception as e:
            logger.warning(f"Could not {what}: {e}")
            return False

    def _restart_enforcement(self, preset: Preset | None, lock: LockStatus) -> None:
        """Compensates a stop command after the matching backend write failed."""
        if preset is None:
            return
        logger.warning(f"Restarting enforcement for '{preset.name}' after a failed unlock write")
        self._best_effort(
            "restart enforcement", self.gateway.start_blocking, preset.blocking_config(lock.lock_ends_at)
        )
        if lock.lock_ends_at is not None:
            self._best_effort("re-arm alarm", self.gateway.schedule_alarm, preset.id, lock.lock_ends_at)

    def select(self, preset_id: str | None) -> Session:
        """Makes a non-scheduled preset the current one without locking."""
        with self._transition("select"):
            self._load()
            if self._lock_status.is_locked:
                raise InvalidTransition("The current preset cannot change while blocking")
            if preset_id is not None and self._find(preset_id).is_scheduled:
                raise InvalidTransition("Scheduled presets are enabled, not selected")

            snapshot = self._snapshot()
            self._set_current_local(preset_id)
            try:
                self._write("select preset", self.store.activate_preset, preset_id)
            except BackendWriteFailed:
                self._restore(snapshot)
                raise
            logger.info(f"Current preset set to {preset_id}")
        return self.session

    def activate(self, preset_id: str, now: datetime | None = None) -> Session:
        """Starts blocking with `preset_id`; only allowed while idle."""
        now = now or self.clock()
        with self._transition("activate"):
            self._load()
            preset = self._find(preset_id)
            if self._lock_status.is_locked:
                raise InvalidTransition("A block is already running")

            if preset.is_scheduled:
                # The schedule's own window is never checked against itself.
                if not preset.is_active:
                    raise InvalidTransition(f"'{preset.name}' is not enabled")
                if not preset.window_contains(now):
                    raise InvalidTransition(f"'{preset.name}' is outside its scheduled window")
            else:
                conflict = check_activation_conflict(preset, self._presets, now)
                if conflict is not None:
                    logger.info(f"Activation of '{preset.name}' rejected: overlaps '{conflict.preset_name}'")
                    raise ConflictRejected(conflict.preset_id, conflict.preset_name)

            lock_ends_at = preset.projected_end(now)
            if lock_ends_at is not None and lock_ends_at <= now:
                raise InvalidTransition(f"The end time of '{preset.name}' has already passed")

            snapshot = self._snapshot()
            self._lock_status = LockStatus(is_locked=True, lock_ends_at=lock_ends_at, lock_started_at=now)
            if not preset.is_scheduled:
                self._set_current_local(preset.id)

            try:
                self._command("start blocking", self.gateway.start_blocking, preset.blocking_config(lock_ends_at))
            except EnforcementFailed:
                self._restore(snapshot)
                raise

            try:
                status = self._write("save lock status", self.store.set_lock_status, True, lock_ends_at)
                if not preset.is_scheduled:
                    self._write("activate preset", self.store.activate_preset, preset.id)
            except BackendWriteFailed:
                self._restore(snapshot)
                self._best_effort("stop enforcement", self.gateway.force_unlock)
                self._best_effort("clear lock status", self.store.set_lock_status, False, None)
                raise

            self._lock_status = status
            if lock_ends_at is not None:
                self._best_effort("arm alarm", self.gateway.schedule_alarm, preset.id, lock_ends_at)

            ends = lock_ends_at.isoformat() if lock_ends_at else "no time limit"
            logger.info(f"Blocking started with '{preset.name}' until {ends}")
        return self.session

    def slide_unlock(self, now: datetime | None = None) -> Session:
        """Ends the session early; refused for strict presets with a running timer."""
        with self._transition("slide unlock"):
            self._load()
            if not self._lock_status.is_locked:
                raise InvalidTransition("Nothing is blocking right now")
            preset = resolve_enforced(self._presets, self._lock_status)
            if preset is not None and preset.strict_mode and self._lock_status.lock_ends_at is not None:
                raise StrictModeActive(preset.name)

            self._teardown(preset, deactivate_scheduled=True, restart_on_failure=True)
            logger.info(f"Slide unlock of '{preset.name if preset else 'unknown preset'}'")
        return self.session

    def tapout_unlock(self, now: datetime | None = None) -> Session:
        """Ends the session with an emergency tapout, confirmed by the server."""
        now = now or self.clock()
        with self._transition("tapout unlock"):
            self._load()
            if not self._lock_status.is_locked:
                raise InvalidTransition("Nothing is blocking right now")
            preset = resolve_enforced(self._presets, self._lock_status)
            if preset is None or not preset.allow_emergency_tapout:
                raise TapoutNotAllowed(preset.name if preset else None)

            status = self.ledger.status()
            if status.remaining <= 0:
                raise TapoutExhausted()

            lock_started_at = self._lock_status.lock_started_at
            try:
                self.ledger.consume()
                consumed = True
            except TapoutConsumeRaced as e:
                # Unlock anyway; reconciliation settles the count later.
                logger.warning(f"Tapout for '{preset.name}' not confirmed ({e.cause}); unlocking anyway")
                consumed = False

            try:
                self._teardown(preset, deactivate_scheduled=True, rollback=False)
                lock_written = True
            except BackendWriteFailed:
                lock_written = False

            if not consumed or not lock_written:
                self.ledger.record_unconfirmed(
                    UnconfirmedTapout(
                        preset_id=preset.id,
                        lock_started_at=lock_started_at,
                        remaining_before=status.remaining,
                        consumed=consumed,
                        recorded_at=now,
                    )
                )
            logger.info(f"Emergency tapout unlock of '{preset.name}'")
        return self.session

    def expire(self, now: datetime | None = None) -> Session:
        """Ends a timed session whose end time has passed; strict mode does not apply."""
        now = now or self.clock()
        with self._transition("expire"):
            self._load()
            if not self._lock_status.has_expired(now):
                raise InvalidTransition("The block has not reached its end time")
            preset = resolve_enforced(self._presets, self._lock_status)
            # Recurring presets stay enabled; the scheduler moves them to the next window.
            recurring = preset is not None and preset.is_recurring
            self._teardown(preset, deactivate_scheduled=not recurring, keep_alarm=recurring)
            logger.info(f"Block of '{preset.name if preset else 'unknown preset'}' expired")
        return self.session

    def supersede(self, now: datetime | None = None) -> Preset | None:
        """
        Stops an untimed non-scheduled session so a scheduled window can take
        over; the displaced preset is deselected. Returns the displaced preset.
        """
        with self._transition("supersede"):
            self._load()
            if not self._lock_status.is_locked or self._lock_status.lock_ends_at is not None:
                raise InvalidTransition("Only untimed blocks can be superseded")
            displaced = resolve_enforced(self._presets, self._lock_status)
            if displaced is not None and displaced.is_scheduled:
                raise InvalidTransition("Scheduled blocks cannot be superseded")

            snapshot = self._snapshot()
            previous_lock = self._lock_status
            self._lock_status = LockStatus.unlocked()
            self._set_current_local(None)
            try:
                self._command("stop blocking", self.gateway.force_unlock)
            except EnforcementFailed:
                self._restore(snapshot)
                raise
            try:
                self._write("clear lock status", self.store.set_lock_status, False, None)
                self._write("deactivate preset", self.store.activate_preset, None)
            except BackendWriteFailed:
                self._restore(snapshot)
                self._restart_enforcement(displaced, previous_lock)
                raise
            name = displaced.name if displaced else "unknown preset"
            logger.info(f"Untimed block of '{name}' stopped for an incoming schedule")
            return displaced

    def clear_orphan(self) -> None:
        """Fails open: clears a lock that no preset accounts for."""
        with self._transition("clear orphan"):
            self._lock_status = LockStatus.unlocked()
            self._best_effort("stop enforcement", self.gateway.force_unlock)
            self._write("clear lock status", self.store.set_lock_status, False, None)

    def resume_enforcement(self) -> bool:
        """Re-sends the start command for the current lock after the engine lost it."""
        with self._transition("resume enforcement"):
            preset = resolve_enforced(self._presets, self._lock_status)
            if preset is None:
                return False
            self._command(
                "start blocking", self.gateway.start_blocking, preset.blocking_config(self._lock_status.lock_ends_at)
            )
            return True

    def _teardown(
        self,
        preset: Preset | None,
        deactivate_scheduled: bool,
        rollback: bool = True,
        restart_on_failure: bool = False,
        keep_alarm: bool = False,
    ) -> None:
        snapshot = self._snapshot()
        previous_lock = self._lock_status
        deactivate = preset is not None and preset.is_scheduled and deactivate_scheduled

        self._lock_status = LockStatus.unlocked()
        if deactivate:
            self._set_enabled_local(preset.id, False)

        if rollback:
            try:
                self._command("stop blocking", self.gateway.force_unlock)
            except EnforcementFailed:
                self._restore(snapshot)
                raise
        else:
            self._best_effort("stop enforcement", self.gateway.force_unlock)

        if preset is not None and not keep_alarm:
            self._best_effort("cancel alarm", self.gateway.cancel_alarm, preset.id)

        try:
            self._write("clear lock status", self.store.set_lock_status, False, None)
            if deactivate:
                self._write("deactivate preset", self.store.set_preset_active, preset.id, False)
        except BackendWriteFailed:
            if rollback:
                self._restore(snapshot)
                if restart_on_failure:
                    self._restart_enforcement(preset, previous_lock)
            raise
