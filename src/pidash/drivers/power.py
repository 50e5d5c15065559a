"""Power action drivers (shutdown / reboot).

Protocols:
    PowerController: execute(action) -> None

Implementations:
    SystemPowerController: runs the OS power command through a CommandRunner
    DigitalTwinPowerController: records requests without touching the host

Example:
    power = SystemPowerController(runner)
    try:
        await power.execute(PowerAction.REBOOT)
    except PowerActionError as e:
        logger.error("Reboot refused", error=str(e))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol, runtime_checkable

from pidash.drivers.commands import CommandError, CommandRunner
from pidash.errors import PowerActionError
from pidash.observability import get_logger

logger = get_logger(__name__)

#: Upper bound on how long the OS power command may take to return.
DEFAULT_POWER_TIMEOUT_S = 10.0


class PowerAction(Enum):
    """OS-level power actions the daemon can request."""

    SHUTDOWN = "shutdown"
    REBOOT = "reboot"


#: argv per action. ``sudo -n`` fails fast instead of prompting when the
#: service user lacks a sudoers rule.
POWER_COMMANDS: dict[PowerAction, tuple[str, ...]] = {
    PowerAction.SHUTDOWN: ("sudo", "-n", "shutdown", "-h", "now"),
    PowerAction.REBOOT: ("sudo", "-n", "reboot"),
}


@runtime_checkable
class PowerController(Protocol):  # pragma: no cover
    """Protocol for the shutdown/reboot primitive."""

    async def execute(self, action: PowerAction) -> None:
        """Request ``action`` from the operating system.

        Raises:
            PowerActionError: The OS refused or the command failed.
        """
        ...


class SystemPowerController:
    """Runs ``sudo -n shutdown -h now`` / ``sudo -n reboot``."""

    def __init__(
        self,
        runner: CommandRunner,
        commands: dict[PowerAction, tuple[str, ...]] | None = None,
        timeout_s: float = DEFAULT_POWER_TIMEOUT_S,
    ) -> None:
        self._runner = runner
        self._commands = dict(commands or POWER_COMMANDS)
        self._timeout_s = timeout_s

    async def execute(self, action: PowerAction) -> None:
        argv = self._commands[action]
        logger.warning("Executing power action", action=action.value, argv=list(argv))
        try:
            result = await self._runner.run(argv, timeout_s=self._timeout_s)
        except CommandError as e:
            raise PowerActionError(f"{action.value} failed: {e}") from e
        if not result.ok:
            raise PowerActionError(
                f"{action.value} refused (exit {result.returncode}): "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )


@dataclass
class PowerRequest:
    """A request recorded by the digital twin."""

    action: PowerAction
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class DigitalTwinPowerController:
    """Records power requests instead of executing them.

    Set ``fail_with`` to make every request raise PowerActionError, which
    is how tests exercise the logged-only failure path.
    """

    def __init__(self, fail_with: str | None = None) -> None:
        self.requests: list[PowerRequest] = []
        self.fail_with = fail_with

    async def execute(self, action: PowerAction) -> None:
        self.requests.append(PowerRequest(action))
        logger.info("Digital twin power action", action=action.value)
        if self.fail_with is not None:
            raise PowerActionError(self.fail_with)

    @property
    def actions(self) -> list[PowerAction]:
        return [r.action for r in self.requests]
