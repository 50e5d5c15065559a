"""Command runner type definitions and protocol.

Every interaction with the host (camera probes, frame capture, telemetry,
power actions) is an external program invocation. This module defines the
seam those components depend on, so capture and detection logic can run
against the digital twin in tests and development.

Types defined here:
- CommandResult: Outcome of one finished invocation
- CommandRunner: Protocol for runner implementations
- CommandError and subclasses: Runner-level failures

Example:
    from pidash.drivers.commands.types import CommandRunner

    async def cpu_temp(runner: CommandRunner) -> str:
        result = await runner.run(["vcgencmd", "measure_temp"], timeout_s=2.0)
        return result.check().stdout.strip()
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


class CommandError(Exception):
    """Base exception for command invocation failures."""

    def __init__(self, message: str, argv: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.argv = tuple(argv)


class CommandNotFoundError(CommandError):
    """Raised when the program does not exist on the host."""

    pass


class CommandTimeoutError(CommandError):
    """Raised after a process exceeded its timeout and was killed."""

    def __init__(self, argv: Sequence[str], timeout_s: float) -> None:
        super().__init__(
            f"{argv[0] if argv else '<empty>'} timed out after {timeout_s:.2f}s",
            argv,
        )
        self.timeout_s = timeout_s


class CommandFailedError(CommandError):
    """Raised by CommandResult.check() for a non-zero exit status."""

    def __init__(self, result: CommandResult) -> None:
        detail = result.stderr.strip().splitlines()[-1:] or [""]
        super().__init__(
            f"{result.program} exited with status {result.returncode}"
            + (f": {detail[0]}" if detail[0] else ""),
            result.argv,
        )
        self.result = result


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished command.

    Attributes:
        argv: Program and arguments as executed.
        returncode: Exit status (0 = success).
        stdout: Decoded standard output.
        stderr: Decoded standard error.
        duration_ms: Wall time from spawn to exit.
    """

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0

    @property
    def program(self) -> str:
        return self.argv[0] if self.argv else ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr; some camera tools log to stderr."""
        return self.stdout + self.stderr

    def check(self) -> CommandResult:
        """Return self, or raise CommandFailedError for a non-zero exit."""
        if self.returncode != 0:
            raise CommandFailedError(self)
        return self


@runtime_checkable
class CommandRunner(Protocol):  # pragma: no cover
    """Protocol for executing external programs.

    Implemented by SubprocessCommandRunner (real host) and
    DigitalTwinCommandRunner (simulated host).

    Contract:
        - Non-zero exit is returned, not raised.
        - A missing program raises CommandNotFoundError.
        - Exceeding ``timeout_s`` kills the process, then raises
          CommandTimeoutError.
        - Cancelling the awaiting task kills the process before the
          CancelledError propagates; no orphaned children.
    """

    async def run(self, argv: Sequence[str], timeout_s: float) -> CommandResult:
        """Run ``argv`` to completion or until ``timeout_s`` expires.

        Args:
            argv: Program followed by its arguments. No shell is involved.
            timeout_s: Upper bound on wall time in seconds.

        Returns:
            CommandResult with exit status and decoded output.

        Raises:
            CommandNotFoundError: Program not installed.
            CommandTimeoutError: Process killed after the timeout.
            asyncio.CancelledError: Caller cancelled; process was killed.
        """
        ...
