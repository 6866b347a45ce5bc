import json
import threading
from datetime import datetime
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from scute.errors import BackendError, TapoutConsumeRaced
from scute.schema import EmergencyTapoutStatus
from scute.store import PresetStore
from scute.utils.timeouts import call_with_timeout


class UnconfirmedTapout(BaseModel):
    """A tapout unlock whose ledger decrement or lock write was not confirmed."""

    preset_id: str | None
    lock_started_at: datetime | None
    remaining_before: int
    consumed: bool
    recorded_at: datetime


class TapoutLedger:
    """
    Client side of the emergency tapout counter.

    The server owns `remaining`; this class never subtracts locally. It only
    forwards the atomic consume call and keeps a small journal of unlocks the
    server did not confirm, for the reconciliation pass to settle.
    """

    def __init__(self, store: PresetStore, journal_file: Path, timeout: float = 5.0):
        self.store = store
        self.journal_file = journal_file
        self.timeout = timeout
        self._lock = threading.Lock()

    def status(self) -> EmergencyTapoutStatus:
        try:
            return call_with_timeout(self.store.get_tapout_status, timeout=self.timeout)
        except TimeoutError as e:
            raise BackendError(str(e)) from e

    def consume(self) -> EmergencyTapoutStatus:
        """
        Asks the server to use one tapout.

        Raises TapoutExhausted when the server has none left, and
        TapoutConsumeRaced when the outcome of the call is unknown.
        """
        try:
            status = call_with_timeout(self.store.consume_tapout, timeout=self.timeout)
        except (BackendError, TimeoutError) as e:
            raise TapoutConsumeRaced(e) from e
        logger.info(f"Emergency tapout confirmed, {status.remaining} remaining")
        return status

    def _load(self) -> list[UnconfirmedTapout]:
        if not self.journal_file.exists():
            return []
        try:
            with open(self.journal_file) as f:
                return [UnconfirmedTapout.model_validate(e) for e in json.load(f)]
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load tapout journal: {e}")
            return []

    def _save(self, entries: list[UnconfirmedTapout]) -> None:
        self.journal_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.journal_file, "w") as f:
            json.dump([e.model_dump(mode="json") for e in entries], f, indent=4)

    def record_unconfirmed(self, entry: UnconfirmedTapout) -> None:
        with self._lock:
            entries = self._load()
            entries.append(entry)
            self._save(entries)
        logger.warning(
            f"Tapout unlock recorded as unconfirmed (preset={entry.preset_id}, "
            f"consumed={entry.consumed})"
        )

    def unconfirmed(self) -> list[UnconfirmedTapout]:
        with self._lock:
            return self._load()

    def settle(self, entry: UnconfirmedTapout) -> None:
        with self._lock:
            entries = [e for e in self._load() if e != entry]
            self._save(entries)
