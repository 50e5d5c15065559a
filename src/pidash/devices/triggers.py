"""Trigger engine: one recurring timer per enabled schedule.

Timers are plain ``loop.call_later`` handles computed from the schedule's
(time-of-day, weekday set). When a timer fires the engine re-checks the
wall clock; if the clock was stepped backwards and the fire is early it
re-arms without acting. Otherwise it starts the power action as a task and
re-arms for the next occurrence.

Per schedule:

    Unregistered --enabled--> Armed --fires--> Armed (next occurrence)
    Armed --disabled / deleted--> Unregistered
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from pidash.data.schedules import Schedule
from pidash.drivers.power import PowerAction, PowerController
from pidash.observability import get_logger
from pidash.utils.recurrence import next_fire_time

logger = get_logger(__name__)


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Wall clock (injectable for testing).

    Example:
        class FrozenClock:
            def __init__(self, moment: datetime):
                self.moment = moment

            def now(self) -> datetime:
                return self.moment

        engine = TriggerEngine(power, clock=FrozenClock(datetime(2024, 6, 3, 8, 0)))
    """

    def now(self) -> datetime:
        """Current local wall-clock time."""
        ...


class SystemClock:
    """Local wall clock from ``datetime.now()``."""

    def now(self) -> datetime:
        return datetime.now()


@dataclass
class ActiveTrigger:
    """Runtime timer for one enabled schedule. Never persisted."""

    schedule_id: str
    time: str
    days: tuple[int, ...]
    next_fire: datetime
    handle: asyncio.TimerHandle


class TriggerEngine:
    """Arms, re-arms and cancels schedule timers.

    Example:
        engine = TriggerEngine(power, action=PowerAction.SHUTDOWN)
        store = ScheduleStore(path, triggers=engine)
        store.load()  # reconciles every enabled schedule
        ...
        engine.shutdown()
    """

    def __init__(
        self,
        power: PowerController,
        action: PowerAction = PowerAction.SHUTDOWN,
        clock: Clock | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._power = power
        self.action = action
        self._clock = clock or SystemClock()
        self._loop = loop
        self._active: dict[str, ActiveTrigger] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self.fired: list[tuple[str, datetime]] = []

    # -- queries ------------------------------------------------------------

    def active_ids(self) -> list[str]:
        return list(self._active)

    def next_fire(self, schedule_id: str) -> datetime | None:
        trigger = self._active.get(schedule_id)
        return trigger.next_fire if trigger else None

    # -- reconciliation -----------------------------------------------------

    def reconcile(self, schedule: Schedule) -> None:
        """Arm an enabled schedule (replacing any timer) or disarm a disabled one."""
        if not schedule.enabled:
            self.stop(schedule.id)
            return
        self._cancel_handle(schedule.id)
        self._arm(schedule.id, schedule.time, tuple(schedule.days))

    def stop(self, schedule_id: str) -> bool:
        """Disarm a schedule. Idempotent.

        Returns:
            True if a timer was cancelled.
        """
        if not self._cancel_handle(schedule_id):
            return False
        logger.info("Trigger disarmed", schedule_id=schedule_id)
        return True

    def shutdown(self) -> None:
        """Cancel every timer and any power action still running."""
        for schedule_id in list(self._active):
            self._cancel_handle(schedule_id)
        for task in list(self._pending):
            task.cancel()
        logger.info("Trigger engine shut down")

    # -- internals ----------------------------------------------------------

    def _loop_or_running(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _cancel_handle(self, schedule_id: str) -> bool:
        trigger = self._active.pop(schedule_id, None)
        if trigger is None:
            return False
        trigger.handle.cancel()
        return True

    def _arm(
        self,
        schedule_id: str,
        time: str,
        days: tuple[int, ...],
        after: datetime | None = None,
    ) -> ActiveTrigger:
        now = self._clock.now()
        next_fire = next_fire_time(time, days, after or now)
        delay = max(0.0, (next_fire - now).total_seconds())
        handle = self._loop_or_running().call_later(delay, self._fire, schedule_id)
        trigger = ActiveTrigger(schedule_id, time, days, next_fire, handle)
        self._active[schedule_id] = trigger
        logger.info(
            "Trigger armed",
            schedule_id=schedule_id,
            next_fire=next_fire.isoformat(),
            delay_s=round(delay, 1),
        )
        return trigger

    def _fire(self, schedule_id: str) -> None:
        trigger = self._active.get(schedule_id)
        if trigger is None:
            return
        now = self._clock.now()
        if now < trigger.next_fire:
            logger.warning(
                "Trigger fired early, re-arming",
                schedule_id=schedule_id,
                now=now.isoformat(),
                expected=trigger.next_fire.isoformat(),
            )
            self._arm(schedule_id, trigger.time, trigger.days)
            return

        logger.warning(
            "Schedule fired",
            schedule_id=schedule_id,
            action=self.action.value,
            scheduled_for=trigger.next_fire.isoformat(),
        )
        self.fired.append((schedule_id, now))
        task = self._loop_or_running().create_task(self._execute(schedule_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        self._arm(schedule_id, trigger.time, trigger.days, after=max(now, trigger.next_fire))

    async def _execute(self, schedule_id: str) -> None:
        try:
            await self._power.execute(self.action)
        except Exception as e:
            logger.error(
                "Scheduled power action failed",
                schedule_id=schedule_id,
                action=self.action.value,
                error=str(e),
            )
