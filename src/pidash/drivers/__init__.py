"""Host drivers: command execution, power actions, telemetry and config."""

from pidash.drivers.commands import (
    CommandResult,
    CommandRunner,
    DigitalTwinCommandRunner,
    SubprocessCommandRunner,
)
from pidash.drivers.config import (
    DaemonConfig,
    DriverFactory,
    DriverMode,
    StreamPacing,
    configure,
    get_factory,
    use_digital_twin,
    use_hardware,
)
from pidash.drivers.power import PowerAction, PowerController
from pidash.drivers.telemetry import MetricsProvider

__all__ = [
    "CommandResult",
    "CommandRunner",
    "DaemonConfig",
    "DigitalTwinCommandRunner",
    "DriverFactory",
    "DriverMode",
    "MetricsProvider",
    "PowerAction",
    "PowerController",
    "StreamPacing",
    "SubprocessCommandRunner",
    "configure",
    "get_factory",
    "use_digital_twin",
    "use_hardware",
]
