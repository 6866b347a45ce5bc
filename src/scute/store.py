import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from loguru import logger

from scute.backend import Backend
from scute.errors import PresetNotFound
from scute.schema import EmergencyTapoutStatus, LockStatus, Preset, PresetMode


class ReadCache:
    """Short-lived in-memory cache for backend reads, keyed by strings."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str, ttl: float) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry and self._clock() - entry[0] < ttl:
                return entry[1]
            return None

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def invalidate(self, pattern: str | None = None) -> None:
        """Drops every key containing `pattern`, or everything when no pattern is given."""
        with self._lock:
            if pattern is None:
                self._entries.clear()
                return
            for key in [k for k in self._entries if pattern in k]:
                del self._entries[key]


class PresetStore:
    """
    Per-user view of the backend with a read cache in front of preset and
    lock-status reads. Every write invalidates the user's cached entries so
    the next read goes to the backend.
    """

    def __init__(
        self,
        backend: Backend,
        user_id: str,
        presets_ttl: float = 30.0,
        lock_ttl: float = 10.0,
        cache: ReadCache | None = None,
    ):
        self.backend = backend
        self.user_id = user_id.lower()
        self.presets_ttl = presets_ttl
        self.lock_ttl = lock_ttl
        self.cache = cache or ReadCache()

    @property
    def _presets_key(self) -> str:
        return f"presets:{self.user_id}"

    @property
    def _lock_key(self) -> str:
        return f"lockStatus:{self.user_id}"

    def invalidate(self) -> None:
        self.cache.invalidate(self._presets_key)
        self.cache.invalidate(self._lock_key)

    def refresh_if_changed(self) -> bool:
        """Drops cached reads when another process wrote to the backend."""
        if self.backend.has_changed():
            logger.debug("Backend changed on disk, invalidating cache")
            self.invalidate()
            return True
        return False

    def list_presets(self, skip_cache: bool = False) -> list[Preset]:
        if not skip_cache:
            cached = self.cache.get(self._presets_key, self.presets_ttl)
            if cached is not None:
                return [p.model_copy(deep=True) for p in cached]
        presets = self.backend.list_presets(self.user_id)
        self.cache.set(self._presets_key, presets)
        return [p.model_copy(deep=True) for p in presets]

    def get_preset(self, preset_id: str, skip_cache: bool = False) -> Preset:
        for p in self.list_presets(skip_cache=skip_cache):
            if p.id == preset_id:
                return p
        raise PresetNotFound(preset_id)

    def find_preset(self, key: str) -> Preset:
        """Looks a preset up by id, then by case-insensitive name."""
        presets = self.list_presets()
        for p in presets:
            if p.id == key:
                return p
        for p in presets:
            if p.name.lower() == key.lower():
                return p
        raise PresetNotFound(key)

    def get_lock_status(self, skip_cache: bool = False) -> LockStatus:
        if not skip_cache:
            cached = self.cache.get(self._lock_key, self.lock_ttl)
            if cached is not None:
                return cached.model_copy()
        status = self.backend.get_lock_status(self.user_id)
        self.cache.set(self._lock_key, status)
        return status.model_copy()

    def get_tapout_status(self) -> EmergencyTapoutStatus:
        return self.backend.get_tapout_status(self.user_id)

    def save_preset(self, preset: Preset) -> None:
        try:
            self.backend.save_preset(self.user_id, preset)
        finally:
            self.invalidate()

    def delete_preset(self, preset_id: str) -> None:
        try:
            self.backend.delete_preset(self.user_id, preset_id)
        finally:
            self.invalidate()

    def activate_preset(self, preset_id: str | None) -> None:
        try:
            self.backend.activate_preset(self.user_id, preset_id)
        finally:
            self.invalidate()

    def set_preset_active(self, preset_id: str, is_active: bool) -> None:
        try:
            self.backend.set_preset_active(self.user_id, preset_id, is_active)
        finally:
            self.invalidate()

    def update_schedule(self, preset_id: str, start: datetime, end: datetime) -> None:
        try:
            self.backend.update_schedule(self.user_id, preset_id, start, end)
        finally:
            self.invalidate()

    def set_lock_status(self, is_locked: bool, lock_ends_at: datetime | None) -> LockStatus:
        try:
            return self.backend.set_lock_status(self.user_id, is_locked, lock_ends_at)
        finally:
            self.invalidate()

    def consume_tapout(self) -> EmergencyTapoutStatus:
        return self.backend.consume_tapout(self.user_id)

    def deactivate_all(self) -> None:
        try:
            self.backend.deactivate_all(self.user_id)
        finally:
            self.invalidate()

    def reset(self) -> None:
        try:
            self.backend.reset_presets(self.user_id)
        finally:
            self.invalidate()

    def init_defaults(self) -> list[Preset]:
        """Seeds the starter presets for a user that has none yet."""
        if self.list_presets(skip_cache=True):
            logger.debug(f"User {self.user_id} already has presets, skipping defaults")
            return []
        defaults = [
            Preset(
                name="Social Media Apps & Sites",
                mode=PresetMode.SPECIFIC,
                selected_apps=[
                    "discord",
                    "slack",
                    "telegram-desktop",
                    "signal-desktop",
                    "whatsapp",
                ],
                blocked_websites=[
                    "instagram.com",
                    "tiktok.com",
                    "youtube.com",
                    "twitter.com",
                    "x.com",
                    "facebook.com",
                    "reddit.com",
                    "discord.com",
                    "linkedin.com",
                    "twitch.tv",
                    "threads.net",
                ],
                allow_emergency_tapout=True,
            ),
            Preset(
                name="Adult Sites",
                mode=PresetMode.SPECIFIC,
                blocked_websites=[
                    "pornhub.com",
                    "xvideos.com",
                    "xnxx.com",
                    "xhamster.com",
                    "onlyfans.com",
                    "chaturbate.com",
                ],
                allow_emergency_tapout=True,
            ),
        ]
        for preset in defaults:
            self.save_preset(preset)
        logger.info(f"Default presets created for {self.user_id}")
        return defaults
