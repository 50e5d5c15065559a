"""Tests for the trigger engine."""

import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from pidash.data.schedules import Schedule, ScheduleStore
from pidash.devices.triggers import TriggerEngine
from pidash.drivers.power import DigitalTwinPowerController, PowerAction

JUST_BEFORE_8 = datetime(2024, 6, 3, 7, 59, 59, 950000)  # Monday
AT_8 = datetime(2024, 6, 3, 8, 0)


def monday_8am(schedule_id: str = "1", enabled: bool = True) -> Schedule:
    return Schedule(
        id=schedule_id, time="08:00", days=[1], enabled=enabled, created="2024-06-01"
    )


@pytest.fixture
def power() -> DigitalTwinPowerController:
    return DigitalTwinPowerController()


@pytest.fixture
async def engine(power, frozen_clock) -> TriggerEngine:
    frozen_clock.moment = JUST_BEFORE_8
    engine = TriggerEngine(power, action=PowerAction.SHUTDOWN, clock=frozen_clock)
    yield engine
    engine.shutdown()


class TestReconcile:
    """Tests for arming and disarming."""

    async def test_enabled_schedule_armed(self, engine):
        engine.reconcile(monday_8am())
        assert engine.active_ids() == ["1"]
        assert engine.next_fire("1") == AT_8

    async def test_disabled_schedule_not_armed(self, engine):
        engine.reconcile(monday_8am(enabled=False))
        assert engine.active_ids() == []
        assert engine.next_fire("1") is None

    async def test_reconcile_replaces_timer(self, engine):
        """Verifies repeated reconciles never leave duplicate timers.

        Arrangement:
        1. Schedule armed once; its handle captured.

        Action:
        Reconciles the same schedule again.

        Assertion Strategy:
        - Still exactly one active trigger.
        - The first handle was cancelled.
        """
        engine.reconcile(monday_8am())
        first = engine._active["1"].handle
        engine.reconcile(monday_8am())
        assert engine.active_ids() == ["1"]
        assert first.cancelled()
        assert not engine._active["1"].handle.cancelled()

    async def test_stop_is_idempotent(self, engine):
        engine.reconcile(monday_8am())
        assert engine.stop("1") is True
        assert engine.stop("1") is False
        assert engine.active_ids() == []

    async def test_shutdown_cancels_everything(self, engine):
        engine.reconcile(monday_8am("1"))
        engine.reconcile(monday_8am("2"))
        handles = [t.handle for t in engine._active.values()]
        engine.shutdown()
        assert engine.active_ids() == []
        assert all(h.cancelled() for h in handles)


class TestFiring:
    """Tests for timer expiry."""

    async def test_fires_power_action_and_rearms(self, engine, power, frozen_clock):
        engine.reconcile(monday_8am())
        frozen_clock.moment = AT_8
        await asyncio.sleep(0.15)

        assert power.actions == [PowerAction.SHUTDOWN]
        assert engine.fired == [("1", AT_8)]
        assert engine.active_ids() == ["1"]
        assert engine.next_fire("1") == datetime(2024, 6, 10, 8, 0)

    async def test_early_fire_rearms_without_acting(self, engine, power, frozen_clock):
        """Verifies a wall clock stepped backwards does not trigger the action.

        Arrangement:
        1. Timer armed 50 ms before 08:00.
        2. Clock then stepped back one minute.

        Action:
        Lets the timer expire.

        Assertion Strategy:
        - No power action executed.
        - Trigger still armed for today's 08:00.
        """
        engine.reconcile(monday_8am())
        frozen_clock.moment = datetime(2024, 6, 3, 7, 59)
        await asyncio.sleep(0.15)

        assert power.actions == []
        assert engine.fired == []
        assert engine.next_fire("1") == AT_8

    async def test_failed_action_logged_and_stays_armed(self, frozen_clock):
        power = DigitalTwinPowerController(fail_with="sudo: a password is required")
        frozen_clock.moment = JUST_BEFORE_8
        engine = TriggerEngine(power, action=PowerAction.REBOOT, clock=frozen_clock)
        engine.reconcile(monday_8am())
        frozen_clock.moment = AT_8
        await asyncio.sleep(0.15)

        assert power.actions == [PowerAction.REBOOT]
        assert engine.active_ids() == ["1"]
        engine.shutdown()


class TestStoreIntegration:
    """Tests for ScheduleStore driving the engine."""

    async def test_toggle_and_reload(self, engine, tmp_path: Path):
        """Verifies the store/engine round trip.

        Arrangement:
        1. Store wired to the engine; one schedule added.

        Action:
        Disables it, reloads into a fresh engine, re-enables it.

        Assertion Strategy:
        - After disable + reload: no active trigger.
        - After enable: exactly one.
        """
        path = tmp_path / "schedules.json"
        store = ScheduleStore(path, triggers=engine)
        schedule = store.add("08:00", [1])
        assert engine.active_ids() == [schedule.id]

        store.update(schedule.id, False)
        assert engine.active_ids() == []

        fresh_engine = TriggerEngine(DigitalTwinPowerController(), clock=engine._clock)
        reloaded = ScheduleStore(path, triggers=fresh_engine)
        reloaded.load()
        assert fresh_engine.active_ids() == []

        reloaded.update(schedule.id, True)
        assert fresh_engine.active_ids() == [schedule.id]

        reloaded.remove(schedule.id)
        assert fresh_engine.active_ids() == []
        fresh_engine.shutdown()
