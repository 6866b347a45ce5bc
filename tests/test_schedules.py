import pytest
from datetime import timedelta

from conftest import T0, scheduled_preset, timed_preset, untimed_preset
from scute.conflicts import windows_overlap
from scute.errors import ConflictRejected, PresetLocked
from scute.manager import SessionManager
from scute.schema import RepeatUnit, SessionState


def add(manager, preset):
    manager.store.save_preset(preset)
    return preset


def starts_and_stops(gateway):
    return [c[0] for c in gateway.calls if c[0] in ("start_blocking", "force_unlock")]


def test_due_schedule_activates_once(manager, gateway):
    schedule = add(manager, scheduled_preset("Evening", T0, T0 + timedelta(hours=1)))

    first = manager.scheduler.evaluate(T0)
    second = manager.scheduler.evaluate(T0)

    assert first.activated == schedule.id
    assert second.activated is None
    assert gateway.count("start_blocking") == 1
    session = manager.session()
    assert session.state == SessionState.LOCKED_TIMED
    assert session.preset.id == schedule.id
    assert session.lock.lock_ends_at == T0 + timedelta(hours=1)


def test_alarm_trigger_activates_schedule(manager, clock):
    schedule = add(manager, scheduled_preset("Evening", T0 + timedelta(hours=1), T0 + timedelta(hours=2)))
    assert manager.on_alarm(schedule.id).activated is None

    clock.advance(hours=1)
    report = manager.on_alarm(schedule.id)

    assert report.activated == schedule.id


def test_schedule_overrides_untimed_lock(manager, gateway, clock, store):
    deep = add(manager, untimed_preset("Deep Work"))
    schedule = add(
        manager, scheduled_preset("Work Block", T0 + timedelta(minutes=10), T0 + timedelta(hours=1))
    )
    manager.activate("Deep Work")

    clock.advance(minutes=10)
    report = manager.scheduler.evaluate()

    assert report.superseded == deep.id
    assert report.activated == schedule.id
    # Strict stop-then-start ordering
    assert starts_and_stops(gateway) == ["start_blocking", "force_unlock", "start_blocking"]
    assert not store.get_preset(deep.id).is_active
    session = manager.session()
    assert session.preset.id == schedule.id
    assert session.lock.lock_ends_at == T0 + timedelta(hours=1)


def test_timed_lock_of_another_preset_is_left_alone(manager, gateway, clock):
    focus = add(manager, timed_preset("Focus", minutes=60))
    manager.activate("Focus")
    # Enabled after the timed lock started
    add(manager, scheduled_preset("Work Block", T0 + timedelta(minutes=10), T0 + timedelta(hours=2)))

    clock.advance(minutes=15)
    report = manager.scheduler.evaluate()

    assert report.activated is None
    assert gateway.count("start_blocking") == 1
    assert manager.session().preset.id == focus.id


def test_ended_schedule_expires_and_is_disabled(manager, gateway, clock, store):
    schedule = add(manager, scheduled_preset("Evening", T0 - timedelta(minutes=5), T0 + timedelta(hours=1)))
    manager.scheduler.evaluate()

    clock.advance(hours=1)
    report = manager.scheduler.evaluate()

    assert report.expired == schedule.id
    assert manager.session().state == SessionState.IDLE
    assert not store.get_preset(schedule.id).is_active
    assert schedule.id not in gateway.alarms
    assert gateway.count("force_unlock") == 1


def test_daily_schedule_rearms_for_tomorrow(manager, gateway, clock, store):
    schedule = add(
        manager, scheduled_preset("Morning", T0, T0 + timedelta(hours=1), repeat=RepeatUnit.DAYS)
    )
    manager.scheduler.evaluate()

    clock.advance(hours=1, minutes=1)
    report = manager.scheduler.evaluate()

    assert report.expired == schedule.id
    assert report.rearmed == [schedule.id]
    moved = store.get_preset(schedule.id)
    assert moved.is_active
    assert moved.schedule_start_date == T0 + timedelta(days=1)
    assert moved.schedule_end_date == T0 + timedelta(days=1, hours=1)
    assert gateway.alarms[schedule.id] == T0 + timedelta(days=1)
    assert manager.session().state == SessionState.IDLE


def test_missed_recurring_windows_roll_forward(manager, store):
    schedule = add(
        manager,
        scheduled_preset(
            "Morning", T0 - timedelta(days=3), T0 - timedelta(days=3) + timedelta(hours=1), repeat=RepeatUnit.DAYS
        ),
    )

    report = manager.scheduler.evaluate()

    assert report.rearmed == [schedule.id]
    assert store.get_preset(schedule.id).schedule_start_date == T0 + timedelta(days=1)


def test_recurring_rearm_skips_colliding_occurrence(manager, store):
    daily = add(
        manager,
        scheduled_preset(
            "Daily", T0 - timedelta(hours=2), T0 - timedelta(hours=1), repeat=RepeatUnit.DAYS
        ),
    )
    add(manager, scheduled_preset("Trip", T0 + timedelta(hours=22), T0 + timedelta(hours=23)))

    manager.scheduler.evaluate()

    assert store.get_preset(daily.id).schedule_start_date == T0 + timedelta(hours=46)


def test_recurring_rearm_disables_after_horizon(store, gateway, ledger, clock):
    manager = SessionManager(store, gateway, ledger, clock=clock, io_timeout=2.0, horizon=2)
    daily = add(
        manager,
        scheduled_preset(
            "Daily", T0 - timedelta(hours=2), T0 - timedelta(hours=1), repeat=RepeatUnit.DAYS
        ),
    )
    add(manager, scheduled_preset("Holiday", T0 + timedelta(hours=12), T0 + timedelta(days=3)))

    report = manager.scheduler.evaluate()

    assert report.disabled == [daily.id]
    assert not store.get_preset(daily.id).is_active
    assert daily.id not in gateway.alarms


def test_enable_schedule_rejects_overlap(manager, store):
    add(manager, scheduled_preset("Evening", T0 + timedelta(hours=1), T0 + timedelta(hours=2)))
    late = add(
        manager,
        scheduled_preset("Late", T0 + timedelta(minutes=90), T0 + timedelta(hours=3), active=False),
    )

    with pytest.raises(ConflictRejected) as exc:
        manager.enable_schedule("Late")

    assert exc.value.conflicting_preset_name == "Evening"
    assert not store.get_preset(late.id).is_active


def test_enable_schedule_arms_start_alarm(manager, gateway, store):
    add(manager, scheduled_preset("Evening", T0 + timedelta(hours=1), T0 + timedelta(hours=2)))
    night = add(
        manager,
        scheduled_preset("Night", T0 + timedelta(hours=2), T0 + timedelta(hours=3), active=False),
    )

    manager.enable_schedule("Night")

    assert store.get_preset(night.id).is_active
    assert gateway.alarms[night.id] == T0 + timedelta(hours=2)


def test_enforced_schedule_cannot_be_disabled(manager):
    add(manager, scheduled_preset("Evening", T0, T0 + timedelta(hours=1)))
    manager.scheduler.evaluate()

    with pytest.raises(PresetLocked):
        manager.disable_schedule("Evening")


def test_disable_schedule_cancels_alarm(manager, gateway, store):
    evening = add(manager, scheduled_preset("Evening", T0 + timedelta(hours=1), T0 + timedelta(hours=2), active=False))
    manager.enable_schedule("Evening")

    manager.disable_schedule("Evening")

    assert not store.get_preset(evening.id).is_active
    assert evening.id not in gateway.alarms


def test_countdown_tick_expires_once(manager, gateway, clock):
    add(manager, timed_preset("Focus", minutes=30))
    manager.activate("Focus")

    clock.advance(minutes=10)
    assert manager.countdown_tick() == 20 * 60

    clock.advance(minutes=20)
    assert manager.countdown_tick() == 0
    assert manager.countdown_tick() is None
    assert gateway.count("force_unlock") == 1


def test_editing_enforced_preset_is_rejected(manager):
    focus = add(manager, timed_preset("Focus", minutes=30))
    manager.activate("Focus")

    edited = focus.model_copy(update={"selected_apps": ["steam"]})
    with pytest.raises(PresetLocked):
        manager.save_preset(edited)
    with pytest.raises(PresetLocked):
        manager.delete_preset("Focus")


def test_editing_enabled_schedule_into_overlap_saves_it_disabled(manager, gateway, store):
    add(manager, scheduled_preset("Evening", T0 + timedelta(hours=1), T0 + timedelta(hours=2)))
    night = add(
        manager,
        scheduled_preset("Night", T0 + timedelta(hours=3), T0 + timedelta(hours=4), active=False),
    )
    manager.enable_schedule("Night")

    moved = night.model_copy(
        update={
            "schedule_start_date": T0 + timedelta(minutes=90),
            "schedule_end_date": T0 + timedelta(hours=3),
        }
    )
    saved = manager.save_preset(moved)

    assert not saved.is_active
    assert not store.get_preset(night.id).is_active
    assert night.id not in gateway.alarms


def test_editing_keeps_selection_of_non_scheduled_preset(manager, store):
    focus = add(manager, timed_preset("Focus", minutes=30))
    manager.select("Focus")

    manager.save_preset(focus.model_copy(update={"timer_minutes": 45, "is_active": False}))

    saved = store.get_preset(focus.id)
    assert saved.timer_minutes == 45
    assert saved.is_active


def test_delete_preset_cancels_alarm(manager, gateway, store):
    evening = add(manager, scheduled_preset("Evening", T0 + timedelta(hours=1), T0 + timedelta(hours=2), active=False))
    manager.enable_schedule("Evening")

    manager.delete_preset("Evening")

    assert evening.id not in gateway.alarms
    assert store.list_presets() == []


def test_enable_schedule_rejects_window_inside_running_timed_lock(manager, store):
    add(manager, timed_preset("Focus", minutes=120))
    manager.activate("Focus")
    evening = add(
        manager,
        scheduled_preset("Evening", T0 + timedelta(hours=1), T0 + timedelta(hours=3), active=False),
    )

    with pytest.raises(ConflictRejected) as exc:
        manager.enable_schedule("Evening")

    assert exc.value.conflicting_preset_name == "Focus"
    assert not store.get_preset(evening.id).is_active


def test_enable_schedule_starting_at_lock_end_is_allowed(manager, store):
    add(manager, timed_preset("Focus", minutes=120))
    manager.activate("Focus")
    night = add(
        manager,
        scheduled_preset("Night", T0 + timedelta(hours=2), T0 + timedelta(hours=3), active=False),
    )

    manager.enable_schedule("Night")

    assert store.get_preset(night.id).is_active


def test_editing_schedule_into_running_timed_lock_saves_it_disabled(manager, gateway, store):
    evening = add(
        manager,
        scheduled_preset("Evening", T0 + timedelta(hours=3), T0 + timedelta(hours=4), active=False),
    )
    manager.enable_schedule("Evening")
    add(manager, timed_preset("Focus", minutes=120))
    manager.activate("Focus")

    moved = store.get_preset(evening.id).model_copy(
        update={
            "schedule_start_date": T0 + timedelta(hours=1),
            "schedule_end_date": T0 + timedelta(hours=2),
        }
    )
    saved = manager.save_preset(moved)

    assert not saved.is_active
    assert not store.get_preset(evening.id).is_active
    assert evening.id not in gateway.alarms


def test_recurring_rearm_skips_occurrence_inside_running_timed_lock(manager, store):
    daily = add(
        manager,
        scheduled_preset(
            "Daily", T0 - timedelta(hours=23), T0 - timedelta(hours=22), repeat=RepeatUnit.DAYS
        ),
    )
    add(manager, timed_preset("Focus", minutes=120))
    manager.activate("Focus")

    report = manager.scheduler.evaluate()

    assert report.rearmed == [daily.id]
    moved = store.get_preset(daily.id)
    assert moved.is_active
    # Today's 10:00 occurrence falls inside Focus (09:00 - 11:00)
    assert moved.schedule_start_date == T0 + timedelta(hours=25)


def test_recurring_rearms_in_one_pass_do_not_overlap(manager, store, clock):
    daily = add(
        manager,
        scheduled_preset("Daily", T0 - timedelta(hours=1), T0, repeat=RepeatUnit.DAYS),
    )
    alternate = add(
        manager,
        scheduled_preset(
            "Alternate",
            T0 - timedelta(days=1, hours=1),
            T0 - timedelta(days=1),
            repeat=RepeatUnit.DAYS,
            every=2,
        ),
    )
    clock.advance(minutes=30)

    report = manager.scheduler.evaluate()

    assert sorted(report.rearmed) == sorted([daily.id, alternate.id])
    a, b = store.get_preset(daily.id, skip_cache=True), store.get_preset(alternate.id, skip_cache=True)
    assert a.is_active and b.is_active
    assert not windows_overlap(*a.window, *b.window)
