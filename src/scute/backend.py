"""
Persistent record of presets, lock status and emergency tapouts.

`Backend` is the contract the orchestrator writes through. `JsonFileBackend`
keeps one JSON document per user under `settings.backend_dir`; every
read-modify-write holds an exclusive `flock` on the user's lock file, so the
CLI and the daemon never overwrite each other's changes, and the document
is replaced atomically. That is what makes `consume_tapout` a single atomic
decrement.
"""

import fcntl
import json
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from scute.errors import BackendError, PresetNotFound, TapoutExhausted
from scute.schema import EmergencyTapoutStatus, LockStatus, Preset
from scute.utils.time import utcnow


class Backend(ABC):
    """Operations the orchestrator needs from the persistent store."""

    @abstractmethod
    def list_presets(self, user_id: str) -> list[Preset]: ...

    @abstractmethod
    def save_preset(self, user_id: str, preset: Preset) -> None: ...

    @abstractmethod
    def delete_preset(self, user_id: str, preset_id: str) -> None: ...

    @abstractmethod
    def activate_preset(self, user_id: str, preset_id: str | None) -> None:
        """Marks `preset_id` active and every other non-scheduled preset inactive."""

    @abstractmethod
    def set_preset_active(self, user_id: str, preset_id: str, is_active: bool) -> None: ...

    @abstractmethod
    def update_schedule(
        self, user_id: str, preset_id: str, start: datetime, end: datetime
    ) -> None: ...

    @abstractmethod
    def deactivate_all(self, user_id: str) -> None: ...

    @abstractmethod
    def reset_presets(self, user_id: str) -> None: ...

    @abstractmethod
    def get_lock_status(self, user_id: str) -> LockStatus: ...

    @abstractmethod
    def set_lock_status(
        self, user_id: str, is_locked: bool, lock_ends_at: datetime | None
    ) -> LockStatus: ...

    @abstractmethod
    def get_tapout_status(self, user_id: str) -> EmergencyTapoutStatus: ...

    @abstractmethod
    def consume_tapout(self, user_id: str) -> EmergencyTapoutStatus:
        """Decrements iff remaining > 0, else raises TapoutExhausted."""

    def has_changed(self) -> bool:
        """True when another process modified the stored data since the last check."""
        return False


_SAFE_NAME = re.compile(r"[^a-zA-Z0-9_.@-]")


class JsonFileBackend(Backend):
    """File-backed store, one document per user."""

    def __init__(
        self,
        root: Path,
        tapout_max: int = 3,
        tapout_refill_days: int = 14,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.root = root
        self.tapout_max = tapout_max
        self.tapout_refill = timedelta(days=tapout_refill_days)
        self.clock = clock
        self._lock = threading.RLock()
        self._known_mtimes: dict[Path, float] = {}

    def _path(self, user_id: str) -> Path:
        return self.root / f"{_SAFE_NAME.sub('_', user_id.lower())}.json"

    def _lock_path(self, user_id: str) -> Path:
        return self._path(user_id).with_suffix(".lock")

    @contextmanager
    def _locked(self, user_id: str) -> Iterator[None]:
        """Serialises access to a user's document across threads and processes."""
        with self._lock:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                lock_file = open(self._lock_path(user_id), "a")
            except OSError as e:
                raise BackendError(f"Failed to open lock file for {user_id}: {e}") from e
            with lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _empty_document(self) -> dict:
        return {
            "presets": [],
            "lock": LockStatus.unlocked().to_wire(),
            "tapout": {"remaining": self.tapout_max, "nextRefillAt": None},
        }

    def _read(self, user_id: str) -> dict:
        path = self._path(user_id)
        if not path.exists():
            return self._empty_document()
        try:
            with open(path) as f:
                data = json.load(f)
            self._known_mtimes[path] = path.stat().st_mtime
        except (OSError, json.JSONDecodeError) as e:
            raise BackendError(f"Failed to read {path}: {e}") from e
        document = self._empty_document()
        document.update(data)
        return document

    def _write(self, user_id: str, document: dict) -> None:
        path = self._path(user_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=".json")
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=4)
            os.replace(tmp_name, path)
            self._known_mtimes[path] = path.stat().st_mtime
        except OSError as e:
            raise BackendError(f"Failed to write {path}: {e}") from e

    def _presets(self, document: dict) -> list[Preset]:
        try:
            return [Preset.model_validate(p) for p in document["presets"]]
        except ValidationError as e:
            raise BackendError(f"Stored preset is invalid: {e}") from e

    def _store_presets(self, document: dict, presets: list[Preset]) -> None:
        document["presets"] = [p.to_wire() for p in presets]

    def has_changed(self) -> bool:
        changed = False
        for path, known in list(self._known_mtimes.items()):
            try:
                current = path.stat().st_mtime
            except FileNotFoundError:
                current = None
            if current != known:
                changed = True
                if current is None:
                    del self._known_mtimes[path]
                else:
                    self._known_mtimes[path] = current
        return changed

    def list_presets(self, user_id: str) -> list[Preset]:
        with self._locked(user_id):
            return self._presets(self._read(user_id))

    def save_preset(self, user_id: str, preset: Preset) -> None:
        with self._locked(user_id):
            document = self._read(user_id)
            presets = self._presets(document)
            for i, existing in enumerate(presets):
                if existing.id == preset.id:
                    presets[i] = preset
                    break
            else:
                presets.append(preset)
            self._store_presets(document, presets)
            self._write(user_id, document)
        logger.debug(f"Preset saved: {preset.name} ({preset.id}) for {user_id}")

    def delete_preset(self, user_id: str, preset_id: str) -> None:
        with self._locked(user_id):
            document = self._read(user_id)
            presets = self._presets(document)
            remaining = [p for p in presets if p.id != preset_id]
            if len(remaining) == len(presets):
                raise PresetNotFound(preset_id)
            self._store_presets(document, remaining)
            self._write(user_id, document)
        logger.debug(f"Preset deleted: {preset_id} for {user_id}")

    def activate_preset(self, user_id: str, preset_id: str | None) -> None:
        with self._locked(user_id):
            document = self._read(user_id)
            presets = self._presets(document)
            if preset_id is not None and not any(p.id == preset_id for p in presets):
                raise PresetNotFound(preset_id)
            # Scheduled presets keep their own enabled flag.
            for p in presets:
                if p.id == preset_id:
                    p.is_active = True
                elif not p.is_scheduled:
                    p.is_active = False
            self._store_presets(document, presets)
            self._write(user_id, document)

    def set_preset_active(self, user_id: str, preset_id: str, is_active: bool) -> None:
        with self._locked(user_id):
            document = self._read(user_id)
            presets = self._presets(document)
            for p in presets:
                if p.id == preset_id:
                    p.is_active = is_active
                    break
            else:
                raise PresetNotFound(preset_id)
            self._store_presets(document, presets)
            self._write(user_id, document)

    def update_schedule(
        self, user_id: str, preset_id: str, start: datetime, end: datetime
    ) -> None:
        with self._locked(user_id):
            document = self._read(user_id)
            presets = self._presets(document)
            for i, p in enumerate(presets):
                if p.id == preset_id:
                    presets[i] = p.model_copy(
                        update={"schedule_start_date": start, "schedule_end_date": end}
                    )
                    break
            else:
                raise PresetNotFound(preset_id)
            self._store_presets(document, presets)
            self._write(user_id, document)
        logger.debug(f"Schedule of {preset_id} moved to {start.isoformat()} - {end.isoformat()}")

    def deactivate_all(self, user_id: str) -> None:
        with self._locked(user_id):
            document = self._read(user_id)
            presets = self._presets(document)
            for p in presets:
                p.is_active = False
            self._store_presets(document, presets)
            self._write(user_id, document)

    def reset_presets(self, user_id: str) -> None:
        with self._locked(user_id):
            document = self._read(user_id)
            document["presets"] = []
            self._write(user_id, document)

    def get_lock_status(self, user_id: str) -> LockStatus:
        with self._locked(user_id):
            return LockStatus.model_validate(self._read(user_id)["lock"])

    def set_lock_status(
        self, user_id: str, is_locked: bool, lock_ends_at: datetime | None
    ) -> LockStatus:
        with self._locked(user_id):
            document = self._read(user_id)
            if is_locked:
                status = LockStatus(
                    is_locked=True,
                    lock_ends_at=lock_ends_at,
                    lock_started_at=self.clock(),
                )
            else:
                status = LockStatus.unlocked()
            document["lock"] = status.to_wire()
            self._write(user_id, document)
        logger.debug(f"Lock status updated for {user_id}: isLocked={is_locked}")
        return status

    def _refilled(self, document: dict) -> tuple[EmergencyTapoutStatus, bool]:
        status = EmergencyTapoutStatus.model_validate(document["tapout"])
        now = self.clock()
        if (
            status.remaining < self.tapout_max
            and status.next_refill_at is not None
            and now >= status.next_refill_at
        ):
            remaining = min(status.remaining + 1, self.tapout_max)
            next_refill = now + self.tapout_refill if remaining < self.tapout_max else None
            return EmergencyTapoutStatus(remaining=remaining, next_refill_at=next_refill), True
        return status, False

    def get_tapout_status(self, user_id: str) -> EmergencyTapoutStatus:
        with self._locked(user_id):
            document = self._read(user_id)
            status, refilled = self._refilled(document)
            if refilled:
                document["tapout"] = status.to_wire()
                self._write(user_id, document)
                logger.info(f"Emergency tapout refilled for {user_id}: {status.remaining} remaining")
            return status

    def consume_tapout(self, user_id: str) -> EmergencyTapoutStatus:
        with self._locked(user_id):
            document = self._read(user_id)
            status, _ = self._refilled(document)
            if status.remaining <= 0:
                raise TapoutExhausted()
            next_refill = status.next_refill_at
            if status.remaining == self.tapout_max:
                # First tapout from a full ledger starts the refill countdown.
                next_refill = self.clock() + self.tapout_refill
            status = EmergencyTapoutStatus(
                remaining=status.remaining - 1, next_refill_at=next_refill
            )
            document["tapout"] = status.to_wire()
            self._write(user_id, document)
        logger.info(f"Emergency tapout used for {user_id}, {status.remaining} remaining")
        return status
