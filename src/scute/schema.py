from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from scute.utils.time import ensure_aware, to_epoch_ms


class WireModel(BaseModel):
    """Base model serialised with camelCase keys, matching the backend contract."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class PresetMode(str, Enum):
    ALL = "all"
    SPECIFIC = "specific"


class RepeatUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class SessionState(str, Enum):
    IDLE = "IDLE"
    LOCKED_TIMED = "LOCKED_TIMED"
    LOCKED_UNTIMED = "LOCKED_UNTIMED"
    TRANSITIONING = "TRANSITIONING"


def new_preset_id() -> str:
    return f"preset-{uuid4().hex[:12]}"


class Preset(WireModel):
    """A named blocking configuration."""

    id: str = Field(default_factory=new_preset_id)
    name: str
    mode: PresetMode = PresetMode.SPECIFIC
    selected_apps: list[str] = Field(default_factory=list)
    blocked_websites: list[str] = Field(default_factory=list)

    # Duration: timer fields, an absolute target date, or no limit at all
    timer_days: int = Field(default=0, ge=0)
    timer_hours: int = Field(default=0, ge=0)
    timer_minutes: int = Field(default=0, ge=0)
    timer_seconds: int = Field(default=0, ge=0)
    target_date: datetime | None = None
    no_time_limit: bool = True

    block_settings: bool = False
    strict_mode: bool = False
    allow_emergency_tapout: bool = False

    # Scheduling
    is_scheduled: bool = False
    schedule_start_date: datetime | None = None
    schedule_end_date: datetime | None = None
    repeat_enabled: bool = False
    repeat_unit: RepeatUnit | None = None
    repeat_interval: int | None = Field(default=None, ge=1)

    is_active: bool = False
    is_default: bool = False

    @field_validator("selected_apps", "blocked_websites")
    @classmethod
    def _dedupe(cls, values: list[str]) -> list[str]:
        # Sets on the wire are plain lists; keep first-seen order.
        return list(dict.fromkeys(v.strip() for v in values if v.strip()))

    @field_validator("target_date", "schedule_start_date", "schedule_end_date")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @model_validator(mode="after")
    def _check_schedule(self):
        if self.is_scheduled:
            if self.schedule_start_date is None or self.schedule_end_date is None:
                raise ValueError("Scheduled presets need both a start and an end date")
            if self.schedule_start_date >= self.schedule_end_date:
                raise ValueError("Schedule start must be before schedule end")
        if self.repeat_enabled and (self.repeat_unit is None or self.repeat_interval is None):
            raise ValueError("Recurring presets need a repeat unit and interval")
        return self

    @property
    def timer_duration(self) -> timedelta:
        return timedelta(
            days=self.timer_days,
            hours=self.timer_hours,
            minutes=self.timer_minutes,
            seconds=self.timer_seconds,
        )

    @property
    def is_untimed(self) -> bool:
        """True when the preset blocks until it is manually stopped."""
        if self.is_scheduled:
            return False
        if self.no_time_limit:
            return True
        return self.target_date is None and self.timer_duration <= timedelta(0)

    @property
    def is_recurring(self) -> bool:
        return self.is_scheduled and self.repeat_enabled

    @property
    def window(self) -> tuple[datetime, datetime] | None:
        if not self.is_scheduled:
            return None
        return self.schedule_start_date, self.schedule_end_date

    def projected_end(self, now: datetime) -> datetime | None:
        """Lock end time if this preset were activated at `now` (None = no limit)."""
        if self.is_scheduled:
            return self.schedule_end_date
        if self.is_untimed:
            return None
        if self.target_date is not None:
            return self.target_date
        return now + self.timer_duration

    def window_contains(self, now: datetime) -> bool:
        return self.is_scheduled and self.schedule_start_date <= now < self.schedule_end_date

    def blocking_config(self, lock_ends_at: datetime | None) -> "BlockingConfig":
        return BlockingConfig(
            mode=self.mode,
            selected_apps=list(self.selected_apps),
            blocked_websites=list(self.blocked_websites),
            block_settings=self.block_settings,
            strict_mode=self.strict_mode,
            lock_end_time_epoch_ms=to_epoch_ms(lock_ends_at),
            preset_id=self.id,
            preset_name=self.name,
            is_scheduled=self.is_scheduled,
        )


class LockStatus(WireModel):
    """The single global enforcement record of a user."""

    is_locked: bool = False
    lock_ends_at: datetime | None = None
    lock_started_at: datetime | None = None

    @field_validator("lock_ends_at", "lock_started_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @model_validator(mode="after")
    def _check_consistency(self):
        if not self.is_locked:
            self.lock_ends_at = None
            self.lock_started_at = None
        elif self.lock_started_at is None:
            raise ValueError("A locked status needs lock_started_at")
        return self

    @classmethod
    def unlocked(cls) -> "LockStatus":
        return cls()

    @property
    def is_timed(self) -> bool:
        return self.is_locked and self.lock_ends_at is not None

    def has_expired(self, now: datetime) -> bool:
        return self.is_timed and self.lock_ends_at <= now


class EmergencyTapoutStatus(WireModel):
    remaining: int = Field(ge=0)
    next_refill_at: datetime | None = None


class BlockingConfig(WireModel):
    """Command payload for the enforcement engine's startBlocking call."""

    mode: PresetMode
    selected_apps: list[str]
    blocked_websites: list[str]
    block_settings: bool
    strict_mode: bool
    lock_end_time_epoch_ms: int = 0
    preset_id: str
    preset_name: str
    is_scheduled: bool


class EngineSessionInfo(WireModel):
    """What the enforcement engine reports about its own session."""

    is_active: bool
    remaining_ms: int = 0
    no_time_limit: bool = False


class Session(BaseModel):
    """The enforced preset combined with the lock status; never persisted."""

    preset: Preset | None = None
    lock: LockStatus = Field(default_factory=LockStatus)
    transitioning: bool = False

    @property
    def state(self) -> SessionState:
        if self.transitioning:
            return SessionState.TRANSITIONING
        if not self.lock.is_locked:
            return SessionState.IDLE
        if self.lock.lock_ends_at is None:
            return SessionState.LOCKED_UNTIMED
        return SessionState.LOCKED_TIMED

    @property
    def is_locked(self) -> bool:
        return self.lock.is_locked

    def remaining_seconds(self, now: datetime) -> int | None:
        if not self.lock.is_timed:
            return None
        return max(0, int((self.lock.lock_ends_at - now).total_seconds()))

    def elapsed_seconds(self, now: datetime) -> int | None:
        if not self.lock.is_locked or self.lock.lock_started_at is None:
            return None
        return max(0, int((now - self.lock.lock_started_at).total_seconds()))
