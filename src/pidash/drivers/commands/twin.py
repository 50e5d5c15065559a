"""Digital Twin Command Runner - Simulated Host for Testing.

Emulates the external programs the daemon shells out to, so detection,
capture, streaming and telemetry run end-to-end without a Raspberry Pi or
camera attached. Follows the CommandRunner protocol for drop-in use.

Simulated programs:
    rpicam-hello / libcamera-hello --list-cameras   camera listing
    v4l2-ctl --device <dev> --info                  V4L2 driver info
    rpicam-still / libcamera-still -o <path>        CSI still capture
    ffmpeg ... -i <dev> -frames:v 1 <path>          USB single-frame grab
    vcgencmd, top, free, df                         telemetry probes
    sudo, shutdown, reboot, systemctl               power actions (no-op)

Capture programs write a synthetic JPEG test pattern (numpy + OpenCV) at
the requested resolution. Any program can be overridden with a
ScriptedResponse to inject failures, hangs or a missing binary.

Example:
    twin = DigitalTwinCommandRunner(DigitalTwinHostConfig(camera=TwinCamera.USB))
    twin.script("ffmpeg", ScriptedResponse(hang=True))
    with pytest.raises(CommandTimeoutError):
        await twin.run(["ffmpeg", "-i", "/dev/video0", "out.jpg"], timeout_s=0.1)
    assert twin.killed  # the hung "process" was killed
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pidash.drivers.commands.types import (
    CommandNotFoundError,
    CommandResult,
    CommandTimeoutError,
)
from pidash.observability import get_logger
from pidash.utils.image import CV2ImageEncoder, ImageEncoder, render_test_pattern

logger = get_logger(__name__)

__all__ = [
    "DigitalTwinCommandRunner",
    "DigitalTwinHostConfig",
    "ScriptedResponse",
    "TwinCamera",
]

_DEFAULT_DEVICE = "/dev/video0"

_CSI_LISTING = (
    "Available cameras\n"
    "-----------------\n"
    "0 : imx219 [3280x2464 10-bit RGGB] (/base/soc/i2c0mux/i2c@1/imx219@10)\n"
    "    Modes: 'SRGGB10_CSI2P' : 640x480 [206.65 fps - (1000, 752)/1280x960 crop]\n"
)
_NO_CAMERAS = "No cameras available!\n"

_V4L2_INFO = {
    "csi": (
        "Driver Info:\n"
        "\tDriver name      : unicam\n"
        "\tCard type        : unicam\n"
        "\tBus info         : platform:fe801000.csi\n"
    ),
    "usb": (
        "Driver Info:\n"
        "\tDriver name      : uvcvideo\n"
        "\tCard type        : USB 2.0 Camera: USB Camera\n"
        "\tBus info         : usb-0000:01:00.0-1.3\n"
    ),
}

_TELEMETRY_OUTPUT = {
    "vcgencmd": "temp=48.3'C\n",
    "top": (
        "top - 10:02:11 up 3 days,  2:14,  1 user,  load average: 0.08, 0.12, 0.10\n"
        "Tasks: 152 total,   1 running, 151 sleeping,   0 stopped,   0 zombie\n"
        "%Cpu(s):  3.1 us,  1.2 sy,  0.0 ni, 95.5 id,  0.0 wa,  0.0 hi,  0.2 si\n"
    ),
    "free": (
        "               total        used        free      shared  buff/cache\n"
        "Mem:         3884096      612340     2417020       33020      854736\n"
        "Swap:         102396           0      102396\n"
    ),
    "df": (
        "Filesystem      Size  Used Avail Use% Mounted on\n"
        "/dev/root        29G  6.1G   22G  23% /\n"
    ),
}

_POWER_PROGRAMS = frozenset({"sudo", "shutdown", "reboot", "systemctl", "poweroff"})


class TwinCamera(Enum):
    """Which camera the simulated host has attached."""

    NONE = "none"
    CSI = "csi"
    USB = "usb"


@dataclass
class DigitalTwinHostConfig:
    """Configuration for the simulated host.

    Attributes:
        camera: Attached camera variant.
        device: V4L2 device node path for CSI/USB cameras.
        capture_delay_s: Simulated exposure + encode time per capture.
        usb_formats: Pixel formats the simulated USB camera accepts.
        device_tree_paths: Paths reported present for device-tree probes.
    """

    camera: TwinCamera = TwinCamera.CSI
    device: str = _DEFAULT_DEVICE
    capture_delay_s: float = 0.05
    usb_formats: frozenset[str] = frozenset({"mjpeg", "yuyv422"})
    device_tree_paths: frozenset[str] = frozenset()


@dataclass
class ScriptedResponse:
    """Override for one program.

    Attributes:
        returncode: Exit status to report.
        stdout: Standard output to report.
        stderr: Standard error to report.
        delay_s: Simulated run time before exiting.
        hang: Never exit on its own; killed at the caller's timeout.
        missing: Behave as if the program is not installed.
    """

    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    delay_s: float = 0.0
    hang: bool = False
    missing: bool = False


@dataclass
class _CallLog:
    calls: list[tuple[str, ...]] = field(default_factory=list)
    killed: list[tuple[str, ...]] = field(default_factory=list)


class DigitalTwinCommandRunner:
    """Simulated host implementing the CommandRunner protocol."""

    def __init__(
        self,
        config: DigitalTwinHostConfig | None = None,
        encoder: ImageEncoder | None = None,
    ) -> None:
        """Create a simulated host.

        Args:
            config: Host configuration; defaults to a CSI camera.
            encoder: Image encoder for synthetic frames. Created lazily
                (OpenCV) on the first capture when not given.
        """
        self.config = config or DigitalTwinHostConfig()
        self._encoder = encoder
        self._scripts: dict[str, ScriptedResponse] = {}
        self._log = _CallLog()
        self._frame_counter = 0
        logger.info(
            "Digital twin host initialized",
            camera=self.config.camera.value,
            device=self.config.device,
        )

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCommandRunner(camera={self.config.camera.value}, "
            f"scripted={sorted(self._scripts)})"
        )

    # -- test hooks ---------------------------------------------------------

    @property
    def calls(self) -> list[tuple[str, ...]]:
        """Every argv passed to run(), in order."""
        return self._log.calls

    @property
    def killed(self) -> list[tuple[str, ...]]:
        """argvs whose simulated process was killed (timeout or cancel)."""
        return self._log.killed

    def calls_for(self, program: str) -> list[tuple[str, ...]]:
        return [argv for argv in self._log.calls if argv and argv[0] == program]

    def script(self, program: str, response: ScriptedResponse) -> None:
        """Override every future invocation of ``program``."""
        self._scripts[program] = response

    def unscript(self, program: str) -> None:
        self._scripts.pop(program, None)

    def path_exists(self, path: Path | str) -> bool:
        """Filesystem probe matching the simulated hardware."""
        path = str(path)
        if path in self.config.device_tree_paths:
            return True
        return self.config.camera is not TwinCamera.NONE and path == self.config.device

    # -- CommandRunner ------------------------------------------------------

    async def run(self, argv: Sequence[str], timeout_s: float) -> CommandResult:
        args = tuple(str(a) for a in argv)
        self._log.calls.append(args)
        program = args[0] if args else ""
        start = time.monotonic()

        scripted = self._scripts.get(program)
        if scripted is not None:
            returncode, stdout, stderr = await self._run_scripted(
                args, scripted, timeout_s
            )
        else:
            returncode, stdout, stderr = await self._run_default(args, timeout_s)

        return CommandResult(
            argv=args,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    async def _simulate_runtime(
        self, args: tuple[str, ...], delay_s: float, timeout_s: float
    ) -> None:
        """Sleep like a running process would; killed at timeout or cancel."""
        try:
            if delay_s > timeout_s:
                await asyncio.sleep(timeout_s)
                self._log.killed.append(args)
                raise CommandTimeoutError(args, timeout_s)
            if delay_s > 0:
                await asyncio.sleep(delay_s)
        except asyncio.CancelledError:
            self._log.killed.append(args)
            raise

    async def _run_scripted(
        self,
        args: tuple[str, ...],
        scripted: ScriptedResponse,
        timeout_s: float,
    ) -> tuple[int, str, str]:
        if scripted.missing:
            raise CommandNotFoundError(f"{args[0]} not found", args)
        delay = float("inf") if scripted.hang else scripted.delay_s
        await self._simulate_runtime(args, delay, timeout_s)
        return scripted.returncode, scripted.stdout, scripted.stderr

    async def _run_default(
        self, args: tuple[str, ...], timeout_s: float
    ) -> tuple[int, str, str]:
        program = args[0] if args else ""
        camera = self.config.camera

        if program in ("rpicam-hello", "libcamera-hello"):
            if camera is TwinCamera.CSI:
                return 0, _CSI_LISTING, ""
            return 0, "", _NO_CAMERAS

        if program == "v4l2-ctl":
            if camera is TwinCamera.NONE or self.config.device not in args:
                return 1, "", f"Cannot open device {_arg_after(args, '--device')}\n"
            return 0, _V4L2_INFO[camera.value], ""

        if program in ("rpicam-still", "libcamera-still"):
            if camera is not TwinCamera.CSI:
                return 255, "", "ERROR: *** no cameras available ***\n"
            width = int(_arg_after(args, "--width") or 640)
            height = int(_arg_after(args, "--height") or 480)
            output = _arg_after(args, "-o")
            await self._simulate_runtime(args, self.config.capture_delay_s, timeout_s)
            if output:
                await self._write_frame(Path(output), width, height, program)
            return 0, "", ""

        if program == "ffmpeg":
            return await self._run_ffmpeg(args, timeout_s)

        if program in _TELEMETRY_OUTPUT:
            return 0, _TELEMETRY_OUTPUT[program], ""

        if program in _POWER_PROGRAMS:
            logger.info("Digital twin power command (ignored)", argv=list(args))
            return 0, "", ""

        raise CommandNotFoundError(f"{program or '<empty>'} not found", args)

    async def _run_ffmpeg(
        self, args: tuple[str, ...], timeout_s: float
    ) -> tuple[int, str, str]:
        if self.config.camera is not TwinCamera.USB:
            device = _arg_after(args, "-i")
            return 1, "", f"{device}: No such file or directory\n"

        input_format = _arg_after(args, "-input_format")
        if input_format and input_format not in self.config.usb_formats:
            return 1, "", f"[video4linux2,v4l2] Cannot find a proper format for {input_format}\n"

        size = _arg_after(args, "-video_size") or "640x480"
        width, _, height = size.partition("x")
        await self._simulate_runtime(args, self.config.capture_delay_s, timeout_s)
        await self._write_frame(Path(args[-1]), int(width), int(height), "ffmpeg")
        return 0, "", ""

    async def _write_frame(
        self, output: Path, width: int, height: int, program: str
    ) -> None:
        if self._encoder is None:
            self._encoder = CV2ImageEncoder()
        self._frame_counter += 1
        lines = [
            "DIGITAL TWIN",
            f"{program} {width}x{height}",
            f"frame {self._frame_counter}",
        ]
        jpeg = await asyncio.to_thread(
            render_test_pattern, width, height, lines, self._encoder
        )
        await asyncio.to_thread(output.write_bytes, jpeg)


def _arg_after(args: Sequence[str], flag: str) -> str | None:
    """Value following ``flag`` in ``args``, or None."""
    try:
        return args[args.index(flag) + 1]
    except (ValueError, IndexError):
        return None
