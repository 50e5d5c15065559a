"""Daemon configuration and driver factory.

Supports switching between real host drivers (subprocesses, sudo power
commands) and digital twin drivers for testing and development without a
Raspberry Pi or camera attached.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from pidash.drivers.commands import (
    CommandRunner,
    DigitalTwinCommandRunner,
    DigitalTwinHostConfig,
    SubprocessCommandRunner,
    TwinCamera,
)
from pidash.drivers.power import (
    DigitalTwinPowerController,
    PowerAction,
    PowerController,
    SystemPowerController,
)
from pidash.drivers.telemetry import MetricsProvider

# =============================================================================
# Constants
# =============================================================================

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3001

# Streaming defaults (1280x720 at ~10 fps in paced mode)
DEFAULT_STREAM_WIDTH = 1280
DEFAULT_STREAM_HEIGHT = 720
DEFAULT_FRAME_INTERVAL_S = 0.1
MIN_ERROR_BACKOFF_S = 0.5
ERROR_BACKOFF_FACTOR = 5

# Still photos are captured at full HD
DEFAULT_PHOTO_WIDTH = 1920
DEFAULT_PHOTO_HEIGHT = 1080

DEFAULT_CAPTURE_TIMEOUT_S = 10.0
DEFAULT_PROBE_TIMEOUT_S = 5.0

# Delay between answering a power request and executing it
DEFAULT_POWER_DELAY_S = 1.0

#: Resolutions the stream accepts.
STREAM_RESOLUTIONS = frozenset({(640, 480), (1280, 720)})


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"  # Real host programs
    DIGITAL_TWIN = "digital_twin"  # Simulated host for testing


class StreamPacing(Enum):
    """How the stream loop schedules the next capture."""

    FAST = "fast"  # re-trigger as soon as a frame lands
    PACED = "paced"  # fixed inter-frame delay


def _default_data_dir() -> Path:
    """Default location for schedules.json and captured images.

    Returns:
        ~/.pidash/data. Created on first write.
    """
    return Path.home() / ".pidash" / "data"


@dataclass
class DaemonConfig:
    """Configuration for driver selection and daemon behaviour.

    Attributes:
        mode: HARDWARE for the real host, DIGITAL_TWIN for simulation.
        data_dir: Holds schedules.json and the images/ directory.
        host: Bind address for the HTTP server.
        port: Bind port for the HTTP server.
        stream_width: Stream frame width (640 or 1280).
        stream_height: Stream frame height (480 or 720).
        stream_pacing: FAST re-trigger or PACED with frame_interval_s.
        frame_interval_s: Inter-frame delay in PACED mode.
        error_backoff_s: Explicit backoff after a failed stream capture.
            None derives it from frame_interval_s.
        capture_timeout_s: Upper bound on one capture invocation.
        probe_timeout_s: Upper bound on one detection/telemetry probe.
        power_delay_s: Delay between responding and acting on shutdown/reboot.
        schedule_action: Power action fired by schedules.
        twin_camera: Camera attached to the simulated host.
    """

    mode: DriverMode = DriverMode.DIGITAL_TWIN

    # Data storage
    data_dir: Path = field(default_factory=_default_data_dir)

    # HTTP server
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    # Streaming
    stream_width: int = DEFAULT_STREAM_WIDTH
    stream_height: int = DEFAULT_STREAM_HEIGHT
    stream_pacing: StreamPacing = StreamPacing.PACED
    frame_interval_s: float = DEFAULT_FRAME_INTERVAL_S
    error_backoff_s: float | None = None

    # Timeouts
    capture_timeout_s: float = DEFAULT_CAPTURE_TIMEOUT_S
    probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S

    # Power
    power_delay_s: float = DEFAULT_POWER_DELAY_S
    schedule_action: PowerAction = PowerAction.SHUTDOWN

    # Digital twin settings
    twin_camera: TwinCamera = TwinCamera.CSI

    @property
    def images_dir(self) -> Path:
        return self.data_dir / "images"

    @property
    def schedules_path(self) -> Path:
        return self.data_dir / "schedules.json"

    @property
    def backoff_s(self) -> float:
        """Effective error backoff for the stream loop.

        Never below MIN_ERROR_BACKOFF_S nor below ERROR_BACKOFF_FACTOR times
        the frame interval, whatever error_backoff_s asks for.
        """
        floor = max(MIN_ERROR_BACKOFF_S, ERROR_BACKOFF_FACTOR * self.frame_interval_s)
        if self.error_backoff_s is None:
            return floor
        return max(floor, self.error_backoff_s)


class DriverFactory:
    """Factory for creating host drivers based on configuration.

    In HARDWARE mode drivers talk to the real host through subprocesses.
    In DIGITAL_TWIN mode they share one simulated host, so the camera the
    detector finds is the one the capture loop writes frames from.

    Thread Safety:
        Not thread-safe. Configure once at startup before the event loop
        starts serving requests.
    """

    def __init__(self, config: DaemonConfig | None = None):
        """Initialize the factory.

        Args:
            config: DaemonConfig; None uses defaults (digital twin mode).
        """
        self.config = config or DaemonConfig()
        self._runner: CommandRunner | None = None

    def create_command_runner(self) -> CommandRunner:
        """Return the command runner for the configured mode.

        The runner is created once per factory and shared, so the twin's
        call log covers every component.

        Returns:
            SubprocessCommandRunner in HARDWARE mode,
            DigitalTwinCommandRunner in DIGITAL_TWIN mode.
        """
        if self._runner is None:
            if self.config.mode == DriverMode.HARDWARE:
                self._runner = SubprocessCommandRunner()
            else:
                self._runner = DigitalTwinCommandRunner(
                    DigitalTwinHostConfig(camera=self.config.twin_camera)
                )
        return self._runner

    def create_path_probe(self) -> Callable[[str], bool]:
        """Filesystem existence check used by camera detection."""
        runner = self.create_command_runner()
        if isinstance(runner, DigitalTwinCommandRunner):
            return runner.path_exists
        return os.path.exists

    def create_power_controller(self) -> PowerController:
        """Return the shutdown/reboot primitive for the configured mode."""
        if self.config.mode == DriverMode.HARDWARE:
            return SystemPowerController(self.create_command_runner())
        return DigitalTwinPowerController()

    def create_metrics_provider(self) -> MetricsProvider:
        """Return the telemetry provider backed by the shared runner."""
        return MetricsProvider(
            self.create_command_runner(),
            probe_timeout_s=self.config.probe_timeout_s,
        )


# =============================================================================
# Global Singleton
# =============================================================================
# Not thread-safe. Configure once at startup.

_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Get the global driver factory, creating a digital twin one on first use.

    Example:
        >>> factory = get_factory()  # Default digital twin
        >>> use_hardware(preserve_config=True)
        >>> get_factory().config.mode
        <DriverMode.HARDWARE: 'hardware'>
    """
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: DaemonConfig) -> None:
    """Replace the global factory with one built from ``config``.

    Example:
        >>> mode = DriverMode.HARDWARE if os.getenv("PIDASH_HW") else DriverMode.DIGITAL_TWIN
        >>> configure(DaemonConfig(mode=mode, data_dir=Path("/var/lib/pidash")))
    """
    global _factory
    _factory = DriverFactory(config)


def _copy_config_with_mode(mode: DriverMode) -> DaemonConfig:
    return replace(get_factory().config, mode=mode)


def use_digital_twin(preserve_config: bool = False) -> None:
    """Switch to the simulated host.

    Args:
        preserve_config: Keep the current settings and change only the mode.
    """
    if preserve_config:
        configure(_copy_config_with_mode(DriverMode.DIGITAL_TWIN))
    else:
        configure(DaemonConfig(mode=DriverMode.DIGITAL_TWIN))


def use_hardware(preserve_config: bool = False) -> None:
    """Switch to the real host.

    Args:
        preserve_config: Keep the current settings and change only the mode.
    """
    if preserve_config:
        configure(_copy_config_with_mode(DriverMode.HARDWARE))
    else:
        configure(DaemonConfig(mode=DriverMode.HARDWARE))


def set_data_dir(data_dir: Path | str) -> None:
    """Point schedules and images at ``data_dir``, keeping other settings."""
    configure(replace(get_factory().config, data_dir=Path(data_dir)))
