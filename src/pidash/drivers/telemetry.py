"""Host telemetry probes for the /api/system-info endpoint.

Each field is produced by its own probe. Probes run concurrently and are
isolated: a failing probe degrades only its field to "N/A" and is logged,
the rest of the response is unaffected.

Fields:
    cpuTemp       vcgencmd measure_temp          "48.3'C"
    cpuUsage      top -bn1, Cpu(s) user value    "3.1%"
    memoryUsage   free, Mem used / total         "15.8%"
    diskSpace     df -h /, Use%                  "23% used"
    uptime        /proc/uptime                   "74h 12m"
    hostname      socket.gethostname()           "raspberrypi"
    osVersion     /etc/os-release PRETTY_NAME    "Debian GNU/Linux 12 (bookworm)"
"""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Awaitable, Callable
from pathlib import Path

from pidash.drivers.commands import CommandError, CommandRunner
from pidash.errors import ProbeFailure
from pidash.observability import get_logger

logger = get_logger(__name__)

NOT_AVAILABLE = "N/A"

DEFAULT_PROBE_TIMEOUT_S = 5.0

UPTIME_PATH = Path("/proc/uptime")
OS_RELEASE_PATH = Path("/etc/os-release")

SYSTEM_INFO_FIELDS = (
    "cpuTemp",
    "cpuUsage",
    "memoryUsage",
    "diskSpace",
    "uptime",
    "hostname",
    "osVersion",
)


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


class MetricsProvider:
    """Collects the system-info fields from the host.

    Example:
        provider = MetricsProvider(SubprocessCommandRunner())
        info = await provider.collect()
        info["cpuTemp"]  # "48.3'C" or "N/A"
    """

    def __init__(
        self,
        runner: CommandRunner,
        read_text: Callable[[Path], str] = _read_text,
        hostname: Callable[[], str] = socket.gethostname,
        probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
    ) -> None:
        self._runner = runner
        self._read_text = read_text
        self._hostname = hostname
        self._timeout_s = probe_timeout_s

    async def collect(self) -> dict[str, str]:
        """Run every probe concurrently and return the field mapping."""
        probes: dict[str, Callable[[], Awaitable[str]]] = {
            "cpuTemp": self.cpu_temp,
            "cpuUsage": self.cpu_usage,
            "memoryUsage": self.memory_usage,
            "diskSpace": self.disk_space,
            "uptime": self.uptime,
            "hostname": self.host_name,
            "osVersion": self.os_version,
        }
        values = await asyncio.gather(
            *(self._isolated(name, probe) for name, probe in probes.items())
        )
        return dict(zip(probes, values, strict=True))

    async def _isolated(self, name: str, probe: Callable[[], Awaitable[str]]) -> str:
        try:
            return await probe()
        except (CommandError, ProbeFailure, OSError, ValueError, IndexError) as e:
            logger.warning("Telemetry probe failed", field=name, error=str(e))
            return NOT_AVAILABLE

    async def _stdout(self, *argv: str) -> str:
        result = await self._runner.run(argv, timeout_s=self._timeout_s)
        return result.check().stdout

    async def cpu_temp(self) -> str:
        out = (await self._stdout("vcgencmd", "measure_temp")).strip()
        if not out.startswith("temp="):
            raise ProbeFailure(f"unexpected vcgencmd output: {out!r}")
        return out.removeprefix("temp=")

    async def cpu_usage(self) -> str:
        out = await self._stdout("top", "-bn1")
        for line in out.splitlines():
            if "Cpu(s)" in line:
                return f"{line.split()[1]}%"
        raise ProbeFailure("no Cpu(s) line in top output")

    async def memory_usage(self) -> str:
        out = await self._stdout("free")
        for line in out.splitlines():
            if line.startswith("Mem:"):
                fields = line.split()
                total, used = int(fields[1]), int(fields[2])
                return f"{used / total * 100:.1f}%"
        raise ProbeFailure("no Mem line in free output")

    async def disk_space(self) -> str:
        out = await self._stdout("df", "-h", "/")
        lines = [line for line in out.splitlines() if line.strip()]
        return f"{lines[-1].split()[4]} used"

    async def uptime(self) -> str:
        text = await asyncio.to_thread(self._read_text, UPTIME_PATH)
        seconds = float(text.split()[0])
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"

    async def host_name(self) -> str:
        return self._hostname()

    async def os_version(self) -> str:
        text = await asyncio.to_thread(self._read_text, OS_RELEASE_PATH)
        for line in text.splitlines():
            if line.startswith("PRETTY_NAME="):
                return line.partition("=")[2].strip().strip('"')
        raise ProbeFailure("PRETTY_NAME missing from os-release")
