"""Pytest configuration and fixtures for pidash tests.

Everything runs against the digital twin host, so no Raspberry Pi, camera
or sudo rights are needed. Captured frames are real JPEGs rendered with
OpenCV by the twin.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

import pytest

from pidash.drivers import config as config_module
from pidash.drivers.commands import (
    DigitalTwinCommandRunner,
    DigitalTwinHostConfig,
    TwinCamera,
)
from pidash.drivers.config import DaemonConfig, StreamPacing
from pidash.observability import reset_logging


class FrozenClock:
    """Wall clock the test moves by hand."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def now(self) -> datetime:
        return self.moment


@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Give every test a fresh global factory and clean logging handlers."""
    monkeypatch.setattr(config_module, "_factory", None)
    yield
    reset_logging()


@pytest.fixture
def frozen_clock() -> FrozenClock:
    """Clock pinned to Monday 2024-06-03 08:00 local time."""
    return FrozenClock(datetime(2024, 6, 3, 8, 0))


@pytest.fixture
def csi_twin() -> DigitalTwinCommandRunner:
    """Simulated host with a CSI camera and a fast capture."""
    return DigitalTwinCommandRunner(
        DigitalTwinHostConfig(camera=TwinCamera.CSI, capture_delay_s=0.0)
    )


@pytest.fixture
def usb_twin() -> DigitalTwinCommandRunner:
    """Simulated host with a USB webcam on /dev/video0."""
    return DigitalTwinCommandRunner(
        DigitalTwinHostConfig(camera=TwinCamera.USB, capture_delay_s=0.0)
    )


@pytest.fixture
def no_camera_twin() -> DigitalTwinCommandRunner:
    """Simulated host with nothing attached."""
    return DigitalTwinCommandRunner(DigitalTwinHostConfig(camera=TwinCamera.NONE))


@pytest.fixture
def daemon_config(tmp_path: Path) -> DaemonConfig:
    """Digital-twin config writing into tmp_path with instant power actions."""
    return DaemonConfig(
        data_dir=tmp_path / "data",
        stream_width=640,
        stream_height=480,
        stream_pacing=StreamPacing.PACED,
        frame_interval_s=0.01,
        capture_timeout_s=2.0,
        probe_timeout_s=1.0,
        power_delay_s=0.0,
    )
