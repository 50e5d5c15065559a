"""Persistent data: captured stills and power schedules.

Example:
    from pathlib import Path

    from pidash.data import ImageStore, ScheduleStore

    images = ImageStore(Path("/var/lib/pidash/images"))
    schedules = ScheduleStore(Path("/var/lib/pidash/schedules.json"))
    schedules.load()
    schedules.add("23:00", [0, 6])
"""

from pidash.data.images import CapturedImage, ImageStore
from pidash.data.schedules import Schedule, ScheduleStore, TriggerSink

__all__ = [
    "CapturedImage",
    "ImageStore",
    "Schedule",
    "ScheduleStore",
    "TriggerSink",
]
