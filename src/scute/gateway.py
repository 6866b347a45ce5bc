import json
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from loguru import logger

from scute.schema import BlockingConfig, EngineSessionInfo, PresetMode
from scute.utils.notifications import send_notification
from scute.utils.processes import is_screen_locked, kill_processes, lock_screen
from scute.utils.time import ensure_aware


class EnforcementGateway(ABC):
    """Commands understood by the device-level enforcement engine."""

    @abstractmethod
    def start_blocking(self, config: BlockingConfig) -> bool: ...

    @abstractmethod
    def force_unlock(self) -> bool:
        """Stops enforcement unconditionally."""

    def get_session_info(self) -> EngineSessionInfo | None:
        """Engine's own view of its session, or None when it cannot report one."""
        return None

    @abstractmethod
    def schedule_alarm(self, preset_id: str, firing_time: datetime) -> None: ...

    @abstractmethod
    def cancel_alarm(self, preset_id: str) -> None: ...


class AlarmBook:
    """Alarms persisted to disk so they survive a daemon restart."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load alarms: {e}")
            return {}

    def _save(self, alarms: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(alarms, f, indent=4)

    def set(self, preset_id: str, firing_time: datetime) -> None:
        with self._lock:
            alarms = self._load()
            alarms[preset_id] = ensure_aware(firing_time).isoformat()
            self._save(alarms)

    def cancel(self, preset_id: str) -> None:
        with self._lock:
            alarms = self._load()
            if alarms.pop(preset_id, None) is not None:
                self._save(alarms)

    def all(self) -> dict[str, datetime]:
        with self._lock:
            return {k: datetime.fromisoformat(v) for k, v in self._load().items()}

    def pop_due(self, now: datetime) -> list[str]:
        """Removes and returns the ids of alarms whose firing time has passed."""
        with self._lock:
            alarms = self._load()
            due = [k for k, v in alarms.items() if datetime.fromisoformat(v) <= now]
            if due:
                for k in due:
                    del alarms[k]
                self._save(alarms)
            return sorted(due)


class ProcessGateway(EnforcementGateway):
    """
    Desktop enforcement engine.

    Runs a background thread for the active session:
    - `specific` mode kills the preset's selected apps.
    - `all` mode keeps the screen locked.
    Website lists are passed through but not enforced on the desktop.
    """

    def __init__(self, alarms_file: Path, enforce_interval_seconds: float = 2.0):
        self.alarms = AlarmBook(alarms_file)
        self.enforce_interval_seconds = enforce_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._config: BlockingConfig | None = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_blocking(self, config: BlockingConfig) -> bool:
        with self._lock:
            if self.is_running:
                logger.warning("Enforcement is already running; refusing a second session.")
                return False

            logger.info(
                f"Starting enforcement for '{config.preset_name}': Mode={config.mode.value}, "
                f"Apps={config.selected_apps}, EndsAtMs={config.lock_end_time_epoch_ms}"
            )
            if config.blocked_websites:
                logger.debug(
                    f"{len(config.blocked_websites)} websites listed; "
                    "website blocking is not available on this engine"
                )
            self._config = config
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, args=(config,), daemon=True)
            self._thread.start()
        send_notification("Blocking started", f"{config.preset_name} is now active.")
        return True

    def force_unlock(self) -> bool:
        with self._lock:
            if not self.is_running:
                self._config = None
                return True
            logger.info("Stopping enforcement...")
            self._stop_event.set()
            self._thread.join(timeout=2.0)
            stopped = not self._thread.is_alive()
            self._thread = None
            self._config = None
        if stopped:
            logger.info("Enforcement stopped.")
        else:
            logger.warning("Enforcement thread did not stop within 2s.")
        return stopped

    def get_session_info(self) -> EngineSessionInfo:
        config = self._config
        if not self.is_running or config is None:
            return EngineSessionInfo(is_active=False)
        if config.lock_end_time_epoch_ms == 0:
            return EngineSessionInfo(is_active=True, no_time_limit=True)
        remaining = max(0, config.lock_end_time_epoch_ms - int(time.time() * 1000))
        return EngineSessionInfo(is_active=True, remaining_ms=remaining)

    def schedule_alarm(self, preset_id: str, firing_time: datetime) -> None:
        logger.debug(f"Alarm for {preset_id} set at {firing_time.isoformat()}")
        self.alarms.set(preset_id, firing_time)

    def cancel_alarm(self, preset_id: str) -> None:
        logger.debug(f"Alarm for {preset_id} cancelled")
        self.alarms.cancel(preset_id)

    def pop_due_alarms(self, now: datetime) -> list[str]:
        return self.alarms.pop_due(now)

    def _run(self, config: BlockingConfig):
        """Enforcement loop running in the thread."""
        end_ms = config.lock_end_time_epoch_ms
        try:
            while not self._stop_event.is_set():
                if end_ms and time.time() * 1000 >= end_ms:
                    logger.info(f"Enforcement timer for '{config.preset_name}' finished.")
                    send_notification("Block finished", "You can now resume your work.")
                    return

                if config.mode == PresetMode.ALL:
                    if not is_screen_locked():
                        lock_screen()
                elif config.selected_apps:
                    kill_processes(config.selected_apps)

                if self._stop_event.wait(timeout=self.enforce_interval_seconds):
                    return
        except Exception as e:
            logger.exception(f"Error in enforcement loop: {e}")
