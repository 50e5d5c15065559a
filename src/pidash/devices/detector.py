"""Camera detection.

Classifies the attached capture device once at startup. Probes run in a
strict priority order and the first conclusive one wins:

1. ``rpicam-hello --list-cameras`` lists a camera               -> CSI
2. ``/dev/video0`` exists and ``v4l2-ctl --info`` names a CSI
   chipset (unicam, bcm2835, mmal, rp1-cfe)                     -> CSI
   ... or names anything else                                   -> USB
3. A device-tree CSI camera node exists                         -> CSI
   (degraded when the V4L2 node is missing)
4. ``libcamera-hello --list-cameras`` lists a camera            -> CSI
5. ``/dev/video0`` exists with no other signal                  -> USB
6. Nothing matched                                              -> NONE

A failing probe (missing program, non-zero exit, timeout) is logged at
debug level and the next step runs.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pidash.drivers.commands import CommandError, CommandRunner
from pidash.errors import ProbeFailure
from pidash.observability import get_logger

logger = get_logger(__name__)

DEFAULT_DEVICE = "/dev/video0"
DEFAULT_PROBE_TIMEOUT_S = 5.0

CSI_CHIPSETS = ("unicam", "bcm2835", "mmal", "rp1-cfe")

#: Device-tree nodes present when a CSI sensor overlay is active.
DEVICE_TREE_CSI_PATHS = (
    "/proc/device-tree/soc/i2c0mux/i2c@1/imx219@10",
    "/proc/device-tree/soc/i2c0mux/i2c@1/imx708@1a",
    "/proc/device-tree/soc/i2c0mux/i2c@1/ov5647@36",
    "/proc/device-tree/soc/i2c0mux/i2c@1/imx477@1a",
    "/proc/device-tree/axi/pcie@120000/rp1/i2c@88000/imx219@10",
    "/proc/device-tree/axi/pcie@120000/rp1/i2c@88000/imx708@1a",
)

_NO_CAMERAS = "no cameras available"


class CameraType(Enum):
    """Capture device variant."""

    NONE = "none"
    CSI = "csi"
    USB = "usb"


@dataclass(frozen=True)
class CameraCapability:
    """What the detector found. Written once at startup, read by captures.

    Attributes:
        type: NONE, CSI or USB.
        device: V4L2 node for USB (and CSI when known), else None.
        details: Human-readable note on how the camera was identified.
        degraded: Camera believed present but not fully usable.
    """

    type: CameraType
    device: str | None = None
    details: str | None = None
    degraded: bool = False

    @property
    def available(self) -> bool:
        return self.type is not CameraType.NONE

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "device": self.device,
            "available": self.available,
        }
        if self.details:
            data["details"] = self.details
        if self.degraded:
            data["degraded"] = True
        return data


NO_CAMERA = CameraCapability(CameraType.NONE, details="No camera detected")


class CameraDetector:
    """Probes the host and classifies the camera.

    Example:
        detector = CameraDetector(runner, path_exists=os.path.exists)
        capability = await detector.detect()
        if not capability.available:
            logger.warning("Running without a camera")
    """

    def __init__(
        self,
        runner: CommandRunner,
        path_exists: Callable[[str], bool] = os.path.exists,
        device: str = DEFAULT_DEVICE,
        device_tree_paths: Sequence[str] = DEVICE_TREE_CSI_PATHS,
        probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
    ) -> None:
        self._runner = runner
        self._path_exists = path_exists
        self.device = device
        self.device_tree_paths = tuple(device_tree_paths)
        self._timeout_s = probe_timeout_s

    async def detect(self) -> CameraCapability:
        """Run the probe ladder and return the first conclusive result."""
        capability = await self._detect()
        logger.info(
            "Camera detected",
            camera_type=capability.type.value,
            device=capability.device,
            degraded=capability.degraded,
            details=capability.details,
        )
        return capability

    async def _detect(self) -> CameraCapability:
        if await self._lists_camera("rpicam-hello"):
            return CameraCapability(
                CameraType.CSI,
                device=self._device_if_present(),
                details="Detected by rpicam-hello",
            )

        device_present = self._path_exists(self.device)
        if device_present:
            info = await self._v4l2_info()
            if info is not None:
                chipset = _csi_chipset(info)
                if chipset:
                    return CameraCapability(
                        CameraType.CSI,
                        device=self.device,
                        details=f"V4L2 driver {chipset}",
                    )
                return CameraCapability(
                    CameraType.USB,
                    device=self.device,
                    details="V4L2 device with non-CSI driver",
                )

        dt_path = self._device_tree_node()
        if dt_path is not None:
            if device_present:
                return CameraCapability(
                    CameraType.CSI,
                    device=self.device,
                    details=f"Device tree node {dt_path}",
                )
            return CameraCapability(
                CameraType.CSI,
                details=f"Device tree node {dt_path} present but {self.device} missing",
                degraded=True,
            )

        if await self._lists_camera("libcamera-hello"):
            return CameraCapability(
                CameraType.CSI,
                device=self._device_if_present(),
                details="Detected by libcamera-hello",
            )

        if device_present:
            return CameraCapability(
                CameraType.USB,
                device=self.device,
                details="Assumed USB from device node",
            )

        return NO_CAMERA

    # -- probes -------------------------------------------------------------

    async def _probe(self, *argv: str) -> str:
        """Run a probe and return its combined output.

        Raises:
            ProbeFailure: Missing program, timeout or non-zero exit.
        """
        try:
            result = await self._runner.run(argv, timeout_s=self._timeout_s)
        except CommandError as e:
            raise ProbeFailure(str(e)) from e
        if not result.ok:
            raise ProbeFailure(f"{argv[0]} exited {result.returncode}")
        return result.output

    async def _lists_camera(self, program: str) -> bool:
        try:
            output = await self._probe(program, "--list-cameras")
        except ProbeFailure as e:
            logger.debug("Camera listing probe failed", program=program, error=str(e))
            return False
        text = output.strip()
        return bool(text) and _NO_CAMERAS not in text.lower()

    async def _v4l2_info(self) -> str | None:
        try:
            return await self._probe("v4l2-ctl", "--device", self.device, "--info")
        except ProbeFailure as e:
            logger.debug("V4L2 info probe failed", device=self.device, error=str(e))
            return None

    def _device_tree_node(self) -> str | None:
        for path in self.device_tree_paths:
            if self._path_exists(path):
                return path
        return None

    def _device_if_present(self) -> str | None:
        return self.device if self._path_exists(self.device) else None


def _csi_chipset(info: str) -> str | None:
    lowered = info.lower()
    for chipset in CSI_CHIPSETS:
        if chipset in lowered:
            return chipset
    return None
