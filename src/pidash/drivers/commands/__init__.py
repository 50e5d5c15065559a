"""External command execution.

Every host interaction (camera probes, frame capture, telemetry, power)
goes through a CommandRunner, so the daemon's logic runs unchanged against
the real host or a simulated one.

Protocols:
    CommandRunner: run(argv, timeout_s) -> CommandResult

Implementations:
    SubprocessCommandRunner: asyncio subprocesses on the real host
    DigitalTwinCommandRunner: simulated Raspberry Pi with scripted programs
"""

from pidash.drivers.commands.subprocess_runner import SubprocessCommandRunner
from pidash.drivers.commands.twin import (
    DigitalTwinCommandRunner,
    DigitalTwinHostConfig,
    ScriptedResponse,
    TwinCamera,
)
from pidash.drivers.commands.types import (
    CommandError,
    CommandFailedError,
    CommandNotFoundError,
    CommandResult,
    CommandRunner,
    CommandTimeoutError,
)

__all__ = [
    # Protocol and types
    "CommandRunner",
    "CommandResult",
    "CommandError",
    "CommandFailedError",
    "CommandNotFoundError",
    "CommandTimeoutError",
    # Real host
    "SubprocessCommandRunner",
    # Digital twin
    "DigitalTwinCommandRunner",
    "DigitalTwinHostConfig",
    "ScriptedResponse",
    "TwinCamera",
]
