"""Single-frame capture through external programs.

One capture is one invocation of an external tool that writes a finished
JPEG to a path:

    CSI   rpicam-still -o <path> --width W --height H --timeout 1 --nopreview
    USB   ffmpeg -hide_banner -loglevel error -f v4l2 -input_format <fmt>
                 -video_size WxH -i <device> -frames:v 1 -y <path>
    NONE  CaptureError, nothing runs

USB capture tries MJPEG first and retries once with YUYV. Every invocation
is bounded by a timeout; a hung tool is killed by the command runner and
reported as CaptureError. Outcomes are recorded in CaptureStats.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from pidash.data.images import CapturedImage, ImageStore, now_millis
from pidash.devices.detector import CameraCapability, CameraType
from pidash.drivers.commands import (
    CommandError,
    CommandNotFoundError,
    CommandRunner,
    CommandTimeoutError,
)
from pidash.errors import CaptureError
from pidash.observability import CaptureStats, get_logger

logger = get_logger(__name__)

DEFAULT_CAPTURE_TIMEOUT_S = 10.0
USB_INPUT_FORMATS = ("mjpeg", "yuyv422")

PHOTO_SOURCE = "photo"
STREAM_SOURCE = "stream"

PHOTO_WIDTH = 1920
PHOTO_HEIGHT = 1080

NO_CAMERA_MESSAGE = "No camera detected"


def csi_still_argv(output: Path, width: int, height: int) -> list[str]:
    return [
        "rpicam-still",
        "-o", str(output),
        "--width", str(width),
        "--height", str(height),
        "--timeout", "1",
        "--nopreview",
    ]  # fmt: skip


def usb_frame_argv(
    device: str, output: Path, width: int, height: int, input_format: str
) -> list[str]:
    return [
        "ffmpeg",
        "-hide_banner",
        "-loglevel", "error",
        "-f", "v4l2",
        "-input_format", input_format,
        "-video_size", f"{width}x{height}",
        "-i", device,
        "-frames:v", "1",
        "-y", str(output),
    ]  # fmt: skip


class FrameCapture:
    """Captures one frame at a time for the detected camera.

    Example:
        capture = FrameCapture(runner, capability, stats)
        await capture.capture_once(Path("/tmp/frame.jpg"), 1280, 720, timeout_s=5)
    """

    def __init__(
        self,
        runner: CommandRunner,
        capability: CameraCapability,
        stats: CaptureStats | None = None,
        timeout_s: float = DEFAULT_CAPTURE_TIMEOUT_S,
        usb_formats: Sequence[str] = USB_INPUT_FORMATS,
    ) -> None:
        self._runner = runner
        self.capability = capability
        self.stats = stats or CaptureStats()
        self.timeout_s = timeout_s
        self.usb_formats = tuple(usb_formats)

    async def capture_once(
        self,
        output_path: Path,
        width: int,
        height: int,
        timeout_s: float | None = None,
        source: str = STREAM_SOURCE,
    ) -> None:
        """Capture one JPEG into ``output_path``.

        Args:
            output_path: Destination; overwritten if present.
            width: Frame width in pixels.
            height: Frame height in pixels.
            timeout_s: Per-invocation bound; defaults to the instance timeout.
            source: Stats label for this capture.

        Raises:
            CaptureError: No camera, tool missing, timeout, non-zero exit,
                or no image written.
        """
        timeout = self.timeout_s if timeout_s is None else timeout_s
        start = time.monotonic()
        try:
            await self._dispatch(Path(output_path), width, height, timeout)
        except CaptureError as e:
            self.stats.record_capture(
                source, _elapsed_ms(start), success=False, error_type=_error_type(e)
            )
            raise
        self.stats.record_capture(source, _elapsed_ms(start), success=True)

    async def _dispatch(
        self, output: Path, width: int, height: int, timeout_s: float
    ) -> None:
        camera = self.capability
        if camera.type is CameraType.CSI:
            await self._invoke(csi_still_argv(output, width, height), output, timeout_s)
        elif camera.type is CameraType.USB and camera.device:
            await self._capture_usb(camera.device, output, width, height, timeout_s)
        else:
            raise CaptureError(NO_CAMERA_MESSAGE)

    async def _capture_usb(
        self, device: str, output: Path, width: int, height: int, timeout_s: float
    ) -> None:
        *preferred, last = self.usb_formats
        for input_format in preferred:
            argv = usb_frame_argv(device, output, width, height, input_format)
            try:
                await self._invoke(argv, output, timeout_s)
                return
            except CaptureError as e:
                if isinstance(e.__cause__, CommandNotFoundError | CommandTimeoutError):
                    raise
                logger.debug(
                    "USB capture format failed, falling back",
                    input_format=input_format,
                    error=str(e),
                )
        await self._invoke(
            usb_frame_argv(device, output, width, height, last), output, timeout_s
        )

    async def _invoke(self, argv: list[str], output: Path, timeout_s: float) -> None:
        try:
            result = await self._runner.run(argv, timeout_s=timeout_s)
        except CommandTimeoutError as e:
            raise CaptureError(f"{argv[0]} timed out after {timeout_s:.1f}s") from e
        except CommandError as e:
            raise CaptureError(f"{argv[0]} could not run: {e}") from e
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            raise CaptureError(f"{argv[0]} exited {result.returncode}: {detail}")
        size = await asyncio.to_thread(_file_size, output)
        if not size:
            raise CaptureError(f"{argv[0]} wrote no image to {output}")


class PhotoCapture:
    """Full-resolution stills written atomically into the image store.

    A still is captured into a hidden temporary sibling and renamed into
    ``photo_<millis>.jpg`` only on success, so a failed capture leaves no
    file behind. Two photos in the same millisecond share a name; the
    later one wins.
    """

    def __init__(
        self,
        capture: FrameCapture,
        images: ImageStore,
        width: int = PHOTO_WIDTH,
        height: int = PHOTO_HEIGHT,
        millis: Callable[[], int] = now_millis,
    ) -> None:
        self._capture = capture
        self._images = images
        self.width = width
        self.height = height
        self._millis = millis

    async def take_photo(self, timeout_s: float | None = None) -> CapturedImage:
        """Capture a still.

        Raises:
            CaptureError: Capture failed; no file was created.
        """
        if not self._capture.capability.available:
            raise CaptureError(NO_CAMERA_MESSAGE)
        millis = self._millis()
        try:
            await asyncio.to_thread(self._images.ensure)
        except OSError as e:
            raise CaptureError(f"Images directory unavailable: {e}") from e
        final = self._images.photo_path(millis)
        tmp = self._images.temp_path(final)
        try:
            await self._capture.capture_once(
                tmp, self.width, self.height, timeout_s=timeout_s, source=PHOTO_SOURCE
            )
            await asyncio.to_thread(os.replace, tmp, final)
        except OSError as e:
            raise CaptureError(f"Failed to store photo {final.name}: {e}") from e
        finally:
            await asyncio.to_thread(tmp.unlink, missing_ok=True)
        image = CapturedImage.from_filename(final.name)
        logger.info("Photo captured", filename=image.filename)
        return image


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


def _error_type(error: CaptureError) -> str:
    cause = error.__cause__
    if isinstance(cause, CommandTimeoutError):
        return "timeout"
    if isinstance(cause, CommandNotFoundError):
        return "not_found"
    if str(error) == NO_CAMERA_MESSAGE:
        return "no_camera"
    return "failed"
