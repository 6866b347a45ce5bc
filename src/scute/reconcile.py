"""
Startup and foreground reconciliation.

Brings the local session, the backend and the enforcement engine back into
agreement after the process was killed, the device slept through an end
time, or a tapout unlock could not be confirmed.
"""

from collections.abc import Callable
from datetime import datetime

from loguru import logger
from pydantic import BaseModel, Field

from scute.errors import ScuteError, TransitionInFlight
from scute.gateway import EnforcementGateway
from scute.session import SessionMachine
from scute.store import PresetStore
from scute.tapout import TapoutLedger
from scute.utils.time import utcnow


class ReconcileReport(BaseModel):
    skipped: bool = False
    stale_cleared: bool = False
    orphan_cleared: bool = False
    tapouts_settled: int = 0
    engine_stopped: bool = False
    engine_restarted: bool = False
    anomalies: list[str] = Field(default_factory=list)


class ReconciliationAgent:
    def __init__(
        self,
        machine: SessionMachine,
        store: PresetStore,
        gateway: EnforcementGateway,
        ledger: TapoutLedger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.machine = machine
        self.store = store
        self.gateway = gateway
        self.ledger = ledger
        self.clock = clock

    def run(self, now: datetime | None = None) -> ReconcileReport:
        """Runs every check once; failures are logged, never raised."""
        now = now or self.clock()
        report = ReconcileReport()
        if self.machine.in_transition:
            report.skipped = True
            return report

        self.store.invalidate()
        try:
            self.machine.refresh(skip_cache=True)
        except ScuteError as e:
            logger.error(f"Reconciliation could not load state: {e}")
            report.anomalies.append(f"load failed: {e}")
            return report

        for step in (self._settle_tapouts, self._clear_stale, self._clear_orphan, self._cross_check):
            try:
                step(now, report)
            except TransitionInFlight:
                report.skipped = True
                return report
            except Exception as e:
                logger.exception(f"Reconciliation step {step.__name__} failed: {e}")
                report.anomalies.append(f"{step.__name__} failed: {e}")

        if report.anomalies:
            logger.info(f"Reconciliation finished with {len(report.anomalies)} anomalies")
        return report

    def _settle_tapouts(self, now: datetime, report: ReconcileReport) -> None:
        entries = self.ledger.unconfirmed()
        if not entries:
            return

        for entry in entries:
            if not entry.consumed:
                status = self.ledger.status()
                if status.remaining >= entry.remaining_before:
                    logger.warning(
                        f"Tapout unlock of {entry.preset_id} at {entry.recorded_at.isoformat()} "
                        "was never counted by the server"
                    )
                    report.anomalies.append(f"uncounted tapout for {entry.preset_id}")

            lock = self.store.get_lock_status(skip_cache=True)
            if lock.is_locked and lock.lock_started_at == entry.lock_started_at:
                logger.warning(f"Clearing lock left behind by tapout unlock of {entry.preset_id}")
                self.store.set_lock_status(False, None)
                preset = next((p for p in self.machine.presets if p.id == entry.preset_id), None)
                if preset is not None and preset.is_scheduled:
                    self.store.set_preset_active(preset.id, False)
                report.anomalies.append(f"unconfirmed tapout lock cleared for {entry.preset_id}")

            self.ledger.settle(entry)
            report.tapouts_settled += 1

        self.machine.refresh(skip_cache=True)

    def _clear_stale(self, now: datetime, report: ReconcileReport) -> None:
        session = self.machine.session
        if not session.lock.has_expired(now):
            return
        logger.info(f"Lock ended at {session.lock.lock_ends_at.isoformat()} while away; clearing it")
        self.machine.expire(now)
        report.stale_cleared = True
        report.anomalies.append("stale lock")

    def _clear_orphan(self, now: datetime, report: ReconcileReport) -> None:
        session = self.machine.session
        if not session.is_locked or session.preset is not None:
            return
        logger.warning("Backend is locked but no preset accounts for it; unlocking")
        self.machine.clear_orphan()
        report.orphan_cleared = True
        report.anomalies.append("orphaned lock")

    def _cross_check(self, now: datetime, report: ReconcileReport) -> None:
        info = self.gateway.get_session_info()
        if info is None:
            return
        session = self.machine.session
        if info.is_active and not session.is_locked:
            logger.warning("Enforcement engine is running without a lock; stopping it")
            self.gateway.force_unlock()
            report.engine_stopped = True
            report.anomalies.append("engine running while idle")
        elif not info.is_active and session.is_locked and not session.lock.has_expired(now):
            logger.warning("Lock is active but the enforcement engine is not; restarting it")
            report.engine_restarted = self.machine.resume_enforcement()
            report.anomalies.append("engine idle while locked")
