"""Tests for power and telemetry drivers."""

from pathlib import Path

import pytest

from pidash.drivers.commands import ScriptedResponse
from pidash.drivers.power import (
    POWER_COMMANDS,
    DigitalTwinPowerController,
    PowerAction,
    PowerController,
    SystemPowerController,
)
from pidash.drivers.telemetry import (
    NOT_AVAILABLE,
    OS_RELEASE_PATH,
    SYSTEM_INFO_FIELDS,
    UPTIME_PATH,
    MetricsProvider,
)
from pidash.errors import PowerActionError

FAKE_FILES = {
    UPTIME_PATH: "266520.42 1032010.11\n",
    OS_RELEASE_PATH: (
        'PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\n'
        'NAME="Debian GNU/Linux"\n'
        "VERSION_ID=\"12\"\n"
    ),
}


def fake_read_text(path: Path) -> str:
    try:
        return FAKE_FILES[path]
    except KeyError:
        raise FileNotFoundError(path) from None


class TestSystemPowerController:
    """Tests for SystemPowerController."""

    async def test_runs_sudo_command(self, csi_twin):
        power = SystemPowerController(csi_twin)
        await power.execute(PowerAction.REBOOT)
        assert csi_twin.calls == [POWER_COMMANDS[PowerAction.REBOOT]]

    async def test_nonzero_exit_raises(self, csi_twin):
        """Verifies a refused sudo becomes PowerActionError.

        Arrangement:
        1. sudo scripted to exit 1 with a password prompt error.

        Action:
        Executes SHUTDOWN.

        Assertion Strategy:
        - PowerActionError raised.
        - Message carries the stderr detail.
        """
        csi_twin.script(
            "sudo", ScriptedResponse(returncode=1, stderr="sudo: a password is required")
        )
        power = SystemPowerController(csi_twin)
        with pytest.raises(PowerActionError, match="password is required"):
            await power.execute(PowerAction.SHUTDOWN)

    async def test_missing_program_raises(self, csi_twin):
        csi_twin.script("sudo", ScriptedResponse(missing=True))
        with pytest.raises(PowerActionError):
            await SystemPowerController(csi_twin).execute(PowerAction.SHUTDOWN)


class TestDigitalTwinPowerController:
    """Tests for the recording power controller."""

    def test_implements_protocol(self):
        assert isinstance(DigitalTwinPowerController(), PowerController)

    async def test_records_actions(self):
        power = DigitalTwinPowerController()
        await power.execute(PowerAction.SHUTDOWN)
        await power.execute(PowerAction.REBOOT)
        assert power.actions == [PowerAction.SHUTDOWN, PowerAction.REBOOT]

    async def test_fail_with_raises_after_recording(self):
        power = DigitalTwinPowerController(fail_with="not permitted")
        with pytest.raises(PowerActionError, match="not permitted"):
            await power.execute(PowerAction.REBOOT)
        assert power.actions == [PowerAction.REBOOT]


class TestMetricsProvider:
    """Tests for host telemetry collection."""

    async def test_collects_every_field(self, csi_twin):
        provider = MetricsProvider(
            csi_twin, read_text=fake_read_text, hostname=lambda: "raspberrypi"
        )
        info = await provider.collect()
        assert tuple(info) == SYSTEM_INFO_FIELDS
        assert info == {
            "cpuTemp": "48.3'C",
            "cpuUsage": "3.1%",
            "memoryUsage": "15.8%",
            "diskSpace": "23% used",
            "uptime": "74h 2m",
            "hostname": "raspberrypi",
            "osVersion": "Debian GNU/Linux 12 (bookworm)",
        }

    async def test_failing_probe_degrades_only_its_field(self, csi_twin):
        """Verifies probe isolation.

        Arrangement:
        1. vcgencmd missing, free exits non-zero.
        2. /etc/os-release unreadable.

        Action:
        Collects telemetry.

        Assertion Strategy:
        - cpuTemp, memoryUsage and osVersion are "N/A".
        - Every other field still has its real value.
        """
        csi_twin.script("vcgencmd", ScriptedResponse(missing=True))
        csi_twin.script("free", ScriptedResponse(returncode=1))
        files = {UPTIME_PATH: FAKE_FILES[UPTIME_PATH]}

        def read_text(path: Path) -> str:
            if path not in files:
                raise PermissionError(path)
            return files[path]

        provider = MetricsProvider(csi_twin, read_text=read_text, hostname=lambda: "pi")
        info = await provider.collect()

        assert info["cpuTemp"] == NOT_AVAILABLE
        assert info["memoryUsage"] == NOT_AVAILABLE
        assert info["osVersion"] == NOT_AVAILABLE
        assert info["cpuUsage"] == "3.1%"
        assert info["diskSpace"] == "23% used"
        assert info["uptime"] == "74h 2m"
        assert info["hostname"] == "pi"

    async def test_unexpected_output_degrades(self, csi_twin):
        csi_twin.script("vcgencmd", ScriptedResponse(stdout="VCHI initialization failed\n"))
        csi_twin.script("top", ScriptedResponse(stdout="nothing useful\n"))
        provider = MetricsProvider(csi_twin, read_text=fake_read_text)
        info = await provider.collect()
        assert info["cpuTemp"] == NOT_AVAILABLE
        assert info["cpuUsage"] == NOT_AVAILABLE

    async def test_hung_probe_times_out(self, csi_twin):
        csi_twin.script("df", ScriptedResponse(hang=True))
        provider = MetricsProvider(csi_twin, read_text=fake_read_text, probe_timeout_s=0.05)
        info = await provider.collect()
        assert info["diskSpace"] == NOT_AVAILABLE
        assert ("df", "-h", "/") in csi_twin.killed
