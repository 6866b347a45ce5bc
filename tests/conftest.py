from datetime import datetime, timedelta, timezone

import pytest

from scute.backend import JsonFileBackend
from scute.errors import BackendError
from scute.gateway import EnforcementGateway
from scute.manager import SessionManager
from scute.schema import EngineSessionInfo, Preset, RepeatUnit
from scute.settings import settings
from scute.store import PresetStore
from scute.tapout import TapoutLedger

# Monday, 09:00 UTC
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingGateway(EnforcementGateway):
    """Enforcement engine double that records every command it receives."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.alarms: dict[str, datetime] = {}
        self.active = False
        self.config = None
        self.refuse_start = False
        self.reports_sessions = True

    def start_blocking(self, config):
        self.calls.append(("start_blocking", config))
        if self.refuse_start:
            return False
        self.active = True
        self.config = config
        return True

    def force_unlock(self):
        self.calls.append(("force_unlock",))
        self.active = False
        self.config = None
        return True

    def get_session_info(self):
        if not self.reports_sessions:
            return None
        if not self.active:
            return EngineSessionInfo(is_active=False)
        return EngineSessionInfo(is_active=True, no_time_limit=self.config.lock_end_time_epoch_ms == 0)

    def schedule_alarm(self, preset_id, firing_time):
        self.calls.append(("schedule_alarm", preset_id, firing_time))
        self.alarms[preset_id] = firing_time

    def cancel_alarm(self, preset_id):
        self.calls.append(("cancel_alarm", preset_id))
        self.alarms.pop(preset_id, None)

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)


class FlakyBackend(JsonFileBackend):
    """File backend whose writes can be made to fail by operation name."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing: set[str] = set()

    def _maybe_fail(self, operation: str):
        if operation in self.failing:
            raise BackendError(f"{operation} unavailable")

    def save_preset(self, user_id, preset):
        self._maybe_fail("save_preset")
        return super().save_preset(user_id, preset)

    def activate_preset(self, user_id, preset_id):
        self._maybe_fail("activate_preset")
        return super().activate_preset(user_id, preset_id)

    def set_preset_active(self, user_id, preset_id, is_active):
        self._maybe_fail("set_preset_active")
        return super().set_preset_active(user_id, preset_id, is_active)

    def update_schedule(self, user_id, preset_id, start, end):
        self._maybe_fail("update_schedule")
        return super().update_schedule(user_id, preset_id, start, end)

    def set_lock_status(self, user_id, is_locked, lock_ends_at):
        self._maybe_fail("set_lock_status")
        return super().set_lock_status(user_id, is_locked, lock_ends_at)

    def consume_tapout(self, user_id):
        self._maybe_fail("consume_tapout")
        return super().consume_tapout(user_id)


def timed_preset(name: str = "Focus", minutes: int = 30, **kwargs) -> Preset:
    return Preset(name=name, timer_minutes=minutes, no_time_limit=False, **kwargs)


def untimed_preset(name: str = "Deep Work", **kwargs) -> Preset:
    return Preset(name=name, no_time_limit=True, **kwargs)


def scheduled_preset(
    name: str,
    start: datetime,
    end: datetime,
    active: bool = True,
    repeat: RepeatUnit | None = None,
    every: int = 1,
    **kwargs,
) -> Preset:
    return Preset(
        name=name,
        is_scheduled=True,
        schedule_start_date=start,
        schedule_end_date=end,
        is_active=active,
        repeat_enabled=repeat is not None,
        repeat_unit=repeat,
        repeat_interval=every if repeat is not None else None,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def backend(tmp_path, clock):
    return FlakyBackend(tmp_path / "users", clock=clock)


@pytest.fixture
def store(backend):
    return PresetStore(backend, "tester")


@pytest.fixture
def ledger(store, tmp_path):
    return TapoutLedger(store, tmp_path / "tapout_journal.json", timeout=2.0)


@pytest.fixture
def manager(store, gateway, ledger, clock):
    return SessionManager(store, gateway, ledger, clock=clock, io_timeout=2.0)


@pytest.fixture
def tmp_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("SCUTE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("SCUTE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(settings, "data_dir", tmp_path)
    monkeypatch.setattr(settings, "log_dir", tmp_path / "logs")
    return settings
