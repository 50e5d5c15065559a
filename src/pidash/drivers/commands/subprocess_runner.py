"""Command runner backed by asyncio subprocesses.

Runs programs with ``asyncio.create_subprocess_exec`` so a slow capture
never stalls the event loop serving other requests. Processes that exceed
their timeout, or whose awaiting task is cancelled (client disconnected
from a stream), are killed and reaped before control returns.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Mapping, Sequence

from pidash.drivers.commands.types import (
    CommandError,
    CommandNotFoundError,
    CommandResult,
    CommandTimeoutError,
)
from pidash.observability import get_logger

logger = get_logger(__name__)

#: Seconds to wait for a killed process to be reaped.
DEFAULT_KILL_GRACE_S = 2.0


class SubprocessCommandRunner:
    """Real-host CommandRunner.

    Example:
        runner = SubprocessCommandRunner()
        result = await runner.run(["rpicam-hello", "--list-cameras"], timeout_s=5)
        if result.ok:
            print(result.output)
    """

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        kill_grace_s: float = DEFAULT_KILL_GRACE_S,
    ) -> None:
        """Create a runner.

        Args:
            env: Extra environment variables layered over os.environ.
                ``LC_ALL=C`` is always set so probe output parses the
                same regardless of the host locale.
            kill_grace_s: How long to wait for a killed child to exit.
        """
        self._env = {**os.environ, "LC_ALL": "C", **(env or {})}
        self._kill_grace_s = kill_grace_s

    def __repr__(self) -> str:
        return f"SubprocessCommandRunner(kill_grace_s={self._kill_grace_s})"

    async def run(self, argv: Sequence[str], timeout_s: float) -> CommandResult:
        args = tuple(str(a) for a in argv)
        if not args:
            raise CommandError("Empty command", args)

        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
            )
        except FileNotFoundError as e:
            raise CommandNotFoundError(f"{args[0]} not found", args) from e
        except PermissionError as e:
            raise CommandError(f"{args[0]} is not executable: {e}", args) from e

        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(
                proc.communicate(), timeout=timeout_s
            )
        except TimeoutError:
            await self._kill(proc, args)
            logger.debug("Command timed out", program=args[0], timeout_s=timeout_s)
            raise CommandTimeoutError(args, timeout_s) from None
        except asyncio.CancelledError:
            await self._kill(proc, args)
            raise

        return CommandResult(
            argv=args,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout_raw.decode("utf-8", errors="replace"),
            stderr=stderr_raw.decode("utf-8", errors="replace"),
            duration_ms=(time.monotonic() - start) * 1000,
        )

    async def _kill(
        self, proc: asyncio.subprocess.Process, args: tuple[str, ...]
    ) -> None:
        """Kill and reap ``proc``. A child that ignores SIGKILL is only logged."""
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace_s)
        except TimeoutError:
            logger.warning("Killed process did not exit", program=args[0], pid=proc.pid)
        else:
            logger.debug("Killed process", program=args[0], pid=proc.pid)
