"""
Overlap checks between schedule windows.

All functions are pure: they never touch storage and never raise on a
collision. A collision is reported as a `Conflict` naming the other preset.
"""

from collections.abc import Iterable
from datetime import datetime

from pydantic import BaseModel

from scute.schema import Preset, Session


class Conflict(BaseModel):
    preset_id: str
    preset_name: str
    start: datetime
    end: datetime


def windows_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """Half-open interval overlap; windows that only touch do not overlap."""
    return start_a < end_b and start_b < end_a


def enabled_schedules(presets: Iterable[Preset], exclude_id: str | None = None) -> list[Preset]:
    return [
        p
        for p in presets
        if p.is_scheduled and p.is_active and p.id != exclude_id
    ]


def first_overlap(
    start: datetime, end: datetime, others: Iterable[Preset]
) -> Conflict | None:
    for other in others:
        other_start, other_end = other.window
        if windows_overlap(start, end, other_start, other_end):
            return Conflict(
                preset_id=other.id,
                preset_name=other.name,
                start=other_start,
                end=other_end,
            )
    return None


def check_schedule_conflict(candidate: Preset, presets: Iterable[Preset]) -> Conflict | None:
    """Scheduled-vs-scheduled check run before enabling `candidate`."""
    if not candidate.is_scheduled:
        return None
    start, end = candidate.window
    return first_overlap(start, end, enabled_schedules(presets, exclude_id=candidate.id))


def check_activation_conflict(
    candidate: Preset, presets: Iterable[Preset], now: datetime
) -> Conflict | None:
    """
    Timed-vs-scheduled check run before activating a non-scheduled preset.

    Untimed presets are exempt: the scheduler displaces them when a scheduled
    window arrives.
    """
    if candidate.is_scheduled or candidate.is_untimed:
        return None
    projected_end = candidate.projected_end(now)
    if projected_end is None or projected_end <= now:
        return None
    return first_overlap(now, projected_end, enabled_schedules(presets, exclude_id=candidate.id))


def check_running_lock_conflict(
    start: datetime, end: datetime, session: Session, now: datetime
) -> Conflict | None:
    """
    Schedule window vs the remainder of a running timed lock of a
    non-scheduled preset. The scheduler never interrupts such a lock, so a
    window inside `[now, lockEndsAt)` would never be enforced.
    """
    preset, lock = session.preset, session.lock
    if preset is None or preset.is_scheduled or not lock.is_locked or lock.lock_ends_at is None:
        return None
    if lock.lock_ends_at <= now or not windows_overlap(start, end, now, lock.lock_ends_at):
        return None
    return Conflict(preset_id=preset.id, preset_name=preset.name, start=now, end=lock.lock_ends_at)
