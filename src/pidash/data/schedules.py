"""Durable power schedules.

The store keeps every schedule in memory and rewrites the whole file after
each mutation. Writes go to a temp file in the same directory followed by
``os.replace``, so a reader (or a crash) never observes a partial file.

Every mutation that can change whether a schedule should be armed is
pushed to the attached TriggerSink before the call returns.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pidash.data.images import now_millis
from pidash.errors import NotFoundError, ValidationError
from pidash.observability import get_logger
from pidash.utils.recurrence import parse_time

logger = get_logger(__name__)

#: Suffix of the copy kept when a damaged schedule file is loaded.
CORRUPT_SUFFIX = ".corrupt"


@dataclass
class Schedule:
    """One recurring power action.

    Attributes:
        id: Unique id derived from the creation time in milliseconds.
        time: 24-hour ``HH:MM``.
        days: Sorted weekdays, 0=Sunday.
        enabled: Whether a trigger is armed for it.
        created: ISO-8601 creation timestamp.
    """

    id: str
    time: str
    days: list[int]
    enabled: bool
    created: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "time": self.time,
            "days": list(self.days),
            "enabled": self.enabled,
            "created": self.created,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Schedule:
        """Rebuild a schedule read from disk, re-validating every field.

        Raises:
            ValidationError: Any field is missing or malformed.
        """
        try:
            schedule_id = str(data["id"])
            created = str(data["created"])
            raw_time, raw_days, enabled = data["time"], data["days"], data["enabled"]
        except (KeyError, TypeError) as e:
            raise ValidationError(f"schedule record is incomplete: {e}") from e
        return cls(
            id=schedule_id,
            time=validate_time(raw_time),
            days=validate_days(raw_days),
            enabled=validate_enabled(enabled),
            created=created,
        )


class TriggerSink(Protocol):  # pragma: no cover
    """Receiver of schedule state changes (the trigger engine)."""

    def reconcile(self, schedule: Schedule) -> None: ...

    def stop(self, schedule_id: str) -> bool: ...


def validate_time(value: Any) -> str:
    try:
        parse_time(value)
    except ValueError as e:
        raise ValidationError(f"Invalid time: {e}") from e
    return value


def validate_days(value: Any) -> list[int]:
    """Normalize weekday input to a sorted, de-duplicated list of ints 0-6.

    Accepts ints and digit strings, since the dashboard posts either.
    """
    if not isinstance(value, list | tuple) or not value:
        raise ValidationError("days must be a non-empty list of weekdays 0-6")
    days: set[int] = set()
    for item in value:
        if isinstance(item, bool):
            raise ValidationError(f"Invalid day: {item!r}")
        if isinstance(item, str) and item.isdigit():
            item = int(item)
        if not isinstance(item, int) or not 0 <= item <= 6:
            raise ValidationError(f"Invalid day: {item!r}")
        days.add(item)
    return sorted(days)


def validate_enabled(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"enabled must be true or false, got {value!r}")
    return value


class ScheduleStore:
    """CRUD over schedules with atomic full-file persistence.

    Example:
        store = ScheduleStore(Path("schedules.json"), triggers=engine)
        store.load()  # arms every enabled schedule
        schedule = store.add("22:30", [1, 2, 3, 4, 5])
        store.update(schedule.id, enabled=False)  # disarms it
    """

    def __init__(self, path: Path, triggers: TriggerSink | None = None) -> None:
        self.path = Path(path)
        self.triggers = triggers
        self._schedules: dict[str, Schedule] = {}

    def __len__(self) -> int:
        return len(self._schedules)

    # -- queries ------------------------------------------------------------

    def list(self) -> list[Schedule]:
        """All schedules in creation order."""
        return list(self._schedules.values())

    def get(self, schedule_id: str) -> Schedule:
        try:
            return self._schedules[schedule_id]
        except KeyError:
            raise NotFoundError(f"Schedule not found: {schedule_id}") from None

    # -- mutations ----------------------------------------------------------

    def add(self, time: Any, days: Any, enabled: Any = True) -> Schedule:
        """Validate and add a schedule, then persist and arm it.

        Raises:
            ValidationError: Bad time, days or enabled flag. Nothing changes.
        """
        schedule = Schedule(
            id=self._next_id(),
            time=validate_time(time),
            days=validate_days(days),
            enabled=validate_enabled(enabled),
            created=datetime.now(UTC).isoformat(),
        )
        self._schedules[schedule.id] = schedule
        logger.info(
            "Schedule added",
            schedule_id=schedule.id,
            time=schedule.time,
            days=schedule.days,
            enabled=schedule.enabled,
        )
        self._persist()
        self._reconcile(schedule)
        return schedule

    def update(self, schedule_id: str, enabled: Any) -> Schedule:
        """Toggle a schedule.

        Raises:
            NotFoundError: Unknown id.
            ValidationError: ``enabled`` is not a bool.
        """
        schedule = self.get(schedule_id)
        schedule.enabled = validate_enabled(enabled)
        logger.info("Schedule updated", schedule_id=schedule_id, enabled=schedule.enabled)
        self._persist()
        self._reconcile(schedule)
        return schedule

    def remove(self, schedule_id: str) -> None:
        """Delete a schedule and disarm its trigger.

        Raises:
            NotFoundError: Unknown id, including a second delete.
        """
        if self._schedules.pop(schedule_id, None) is None:
            raise NotFoundError(f"Schedule not found: {schedule_id}")
        logger.info("Schedule removed", schedule_id=schedule_id)
        self._persist()
        if self.triggers is not None:
            self.triggers.stop(schedule_id)

    # -- persistence --------------------------------------------------------

    def load(self) -> list[Schedule]:
        """Replace the in-memory state with the file, then arm triggers.

        A missing file is an empty store. Records that fail validation are
        skipped; a file that cannot be decoded at all is treated as empty.
        Either way the damaged file is first copied to ``<name>.corrupt`` so
        the next mutation does not destroy the only copy.
        """
        self._schedules = {}
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            logger.info("No schedule file, starting empty", path=str(self.path))
            raw = None
        except OSError as e:
            logger.error("Failed to read schedule file", path=str(self.path), error=str(e))
            raw = None

        if raw is not None:
            self._schedules, damaged = self._decode(raw)
            if damaged:
                self._backup_damaged()

        for schedule in self._schedules.values():
            if schedule.enabled:
                self._reconcile(schedule)
        logger.info(
            "Schedules loaded",
            count=len(self._schedules),
            enabled=sum(s.enabled for s in self._schedules.values()),
        )
        return self.list()

    def _decode(self, raw: bytes) -> tuple[dict[str, Schedule], bool]:
        """Parse file content. Returns the valid schedules and a damaged flag."""
        try:
            records = json.loads(raw.decode("utf-8"))
            if not isinstance(records, list):
                raise ValidationError("schedule file is not a JSON array")
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            logger.error(
                "Corrupt schedule file, starting empty",
                path=str(self.path),
                error=str(e),
            )
            return {}, True

        schedules: dict[str, Schedule] = {}
        damaged = False
        for index, record in enumerate(records):
            try:
                schedule = _from_record(record)
            except ValidationError as e:
                logger.warning(
                    "Skipping invalid schedule record",
                    path=str(self.path),
                    index=index,
                    error=str(e),
                )
                damaged = True
                continue
            schedules[schedule.id] = schedule
        return schedules, damaged

    def _backup_damaged(self) -> None:
        backup = self.path.with_name(self.path.name + CORRUPT_SUFFIX)
        try:
            shutil.copyfile(self.path, backup)
        except OSError as e:
            logger.error("Failed to back up schedule file", path=str(backup), error=str(e))
            return
        logger.warning("Damaged schedule file backed up", path=str(backup))

    def _persist(self) -> None:
        """Atomically rewrite the file. Failures are logged, not raised."""
        payload = json.dumps([s.to_dict() for s in self._schedules.values()], indent=2)
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            logger.error("Failed to persist schedules", path=str(self.path), error=str(e))
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

    # -- helpers ------------------------------------------------------------

    def _next_id(self) -> str:
        candidate = now_millis()
        while str(candidate) in self._schedules:
            candidate += 1
        return str(candidate)

    def _reconcile(self, schedule: Schedule) -> None:
        if self.triggers is not None:
            self.triggers.reconcile(schedule)


def _from_record(record: Any) -> Schedule:
    if not isinstance(record, dict):
        raise ValidationError(f"schedule record is not an object: {record!r}")
    return Schedule.from_dict(record)
