from collections.abc import Callable
from datetime import datetime

from loguru import logger

from scute.backend import JsonFileBackend
from scute.conflicts import check_running_lock_conflict, check_schedule_conflict
from scute.errors import PresetLocked, PresetNotFound, TransitionInFlight
from scute.gateway import EnforcementGateway, ProcessGateway
from scute.reconcile import ReconcileReport, ReconciliationAgent
from scute.scheduler import ScheduleReport, Scheduler
from scute.schema import EmergencyTapoutStatus, Preset, Session
from scute.session import SessionMachine
from scute.settings import Settings
from scute.store import PresetStore
from scute.tapout import TapoutLedger
from scute.utils.time import utcnow


class SessionManager:
    """
    Entry point for everything that can change a session.

    Triggers (process start, foreground, alarm, countdown tick) and user
    intents all go through here; the session machine, scheduler and
    reconciliation agent are never driven directly by callers.
    """

    def __init__(
        self,
        store: PresetStore,
        gateway: EnforcementGateway,
        ledger: TapoutLedger,
        clock: Callable[[], datetime] = utcnow,
        io_timeout: float = 5.0,
        marker_seconds: float = 2.0,
        horizon: int = 52,
    ):
        self.store = store
        self.gateway = gateway
        self.ledger = ledger
        self.clock = clock
        self.machine = SessionMachine(store, gateway, ledger, clock=clock, io_timeout=io_timeout)
        self.scheduler = Scheduler(
            self.machine,
            store,
            gateway,
            clock=clock,
            marker_seconds=marker_seconds,
            horizon=horizon,
            io_timeout=io_timeout,
        )
        self.reconciler = ReconciliationAgent(self.machine, store, gateway, ledger, clock=clock)
        self._expiry_requested_for: datetime | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionManager":
        backend = JsonFileBackend(
            settings.backend_dir,
            tapout_max=settings.tapout_max,
            tapout_refill_days=settings.tapout_refill_days,
        )
        store = PresetStore(
            backend,
            settings.user_id,
            presets_ttl=settings.presets_cache_ttl_seconds,
            lock_ttl=settings.lock_cache_ttl_seconds,
        )
        gateway = ProcessGateway(settings.alarms_file, settings.enforce_interval_seconds)
        ledger = TapoutLedger(store, settings.tapout_journal_file, timeout=settings.io_timeout_seconds)
        return cls(
            store,
            gateway,
            ledger,
            io_timeout=settings.io_timeout_seconds,
            marker_seconds=settings.activation_marker_seconds,
            horizon=settings.recurrence_horizon,
        )

    def on_process_start(self, now: datetime | None = None) -> tuple[ReconcileReport, ScheduleReport]:
        logger.info("Process start: reconciling session")
        return self._reconcile_and_evaluate(now)

    def on_foreground(self, now: datetime | None = None) -> tuple[ReconcileReport, ScheduleReport]:
        return self._reconcile_and_evaluate(now)

    def _reconcile_and_evaluate(self, now: datetime | None) -> tuple[ReconcileReport, ScheduleReport]:
        now = now or self.clock()
        reconciled = self.reconciler.run(now)
        evaluated = self.scheduler.evaluate(now)
        return reconciled, evaluated

    def on_alarm(self, preset_id: str, now: datetime | None = None) -> ScheduleReport:
        logger.info(f"Alarm fired for {preset_id}")
        return self.scheduler.evaluate(now)

    def countdown_tick(self, now: datetime | None = None) -> int | None:
        """
        Runs once per displayed countdown second. Calls expire at most once
        per lock when its end time passes; returns the remaining seconds.
        """
        now = now or self.clock()
        session = self.machine.session
        if session.lock.has_expired(now):
            if self._expiry_requested_for != session.lock.lock_started_at:
                self._expiry_requested_for = session.lock.lock_started_at
                self.scheduler.evaluate(now)
            return 0
        return session.remaining_seconds(now)

    def session(self, refresh: bool = True) -> Session:
        return self.machine.refresh() if refresh else self.machine.session

    def presets(self) -> list[Preset]:
        self.machine.refresh()
        return self.machine.presets

    def tapout_status(self) -> EmergencyTapoutStatus:
        return self.ledger.status()

    def find(self, key: str) -> Preset:
        return self.store.find_preset(key)

    def _dropping_in_flight(self, fn, *args) -> Session:
        try:
            fn(*args)
        except TransitionInFlight:
            logger.debug(f"{fn.__name__} ignored: a transition is already running")
        return self.machine.session

    def select(self, key: str | None) -> Session:
        preset_id = self.find(key).id if key is not None else None
        return self._dropping_in_flight(self.machine.select, preset_id)

    def activate(self, key: str, now: datetime | None = None) -> Session:
        return self._dropping_in_flight(self.machine.activate, self.find(key).id, now)

    def slide_unlock(self, now: datetime | None = None) -> Session:
        return self._dropping_in_flight(self.machine.slide_unlock, now)

    def tapout_unlock(self, now: datetime | None = None) -> Session:
        return self._dropping_in_flight(self.machine.tapout_unlock, now)

    def enable_schedule(self, key: str, now: datetime | None = None, evaluate: bool = True) -> Preset:
        preset = self.scheduler.enable_schedule(self.find(key).id, now)
        if evaluate:
            self.scheduler.evaluate(now)
        return preset

    def disable_schedule(self, key: str) -> Preset:
        return self.scheduler.disable_schedule(self.find(key).id)

    def _enforced_id(self) -> str | None:
        session = self.machine.refresh()
        return session.preset.id if session.preset else None

    def save_preset(self, preset: Preset, now: datetime | None = None, evaluate: bool = True) -> Preset:
        """
        Creates or edits a preset. The active flag is never taken from the
        caller: non-scheduled presets keep their selection, and an enabled
        schedule stays enabled only if its new window is still free.
        """
        now = now or self.clock()
        if preset.id == self._enforced_id():
            raise PresetLocked(preset.name)
        try:
            existing = self.store.get_preset(preset.id, skip_cache=True)
        except PresetNotFound:
            existing = None

        was_enabled = existing is not None and existing.is_scheduled and existing.is_active
        if was_enabled:
            self.gateway.cancel_alarm(preset.id)

        if preset.is_scheduled:
            preset.is_active = was_enabled
            if was_enabled:
                conflict = check_schedule_conflict(
                    preset, self.store.list_presets()
                ) or check_running_lock_conflict(*preset.window, self.machine.session, now)
                if conflict is not None:
                    logger.warning(
                        f"New window of '{preset.name}' overlaps '{conflict.preset_name}'; "
                        "saving it disabled"
                    )
                    preset.is_active = False
                elif preset.schedule_end_date <= now:
                    preset.is_active = preset.is_recurring
        else:
            preset.is_active = existing is not None and not existing.is_scheduled and existing.is_active

        self.store.save_preset(preset)
        logger.info(f"Preset saved: {preset.name} ({preset.id})")

        if preset.is_scheduled and preset.is_active:
            if preset.schedule_start_date > now:
                self.gateway.schedule_alarm(preset.id, preset.schedule_start_date)
            if evaluate:
                self.scheduler.evaluate(now)
        return preset

    def delete_preset(self, key: str) -> Preset:
        preset = self.find(key)
        if preset.id == self._enforced_id():
            raise PresetLocked(preset.name)
        self.gateway.cancel_alarm(preset.id)
        self.store.delete_preset(preset.id)
        logger.info(f"Preset deleted: {preset.name} ({preset.id})")
        return preset

    def deactivate_all(self) -> None:
        session = self.machine.refresh()
        if session.is_locked:
            raise PresetLocked(session.preset.name if session.preset else "unknown preset")
        for preset in self.store.list_presets():
            self.gateway.cancel_alarm(preset.id)
        self.store.deactivate_all()

    def reset(self) -> None:
        self.deactivate_all()
        self.store.reset()
        logger.info("All presets deleted")
