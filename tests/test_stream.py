"""Tests for the MJPEG stream multiplexer."""

import asyncio
from pathlib import Path

import pytest

from pidash.data.images import ImageStore
from pidash.devices.capture import FrameCapture
from pidash.devices.detector import CameraCapability, CameraType
from pidash.devices.stream import (
    MEDIA_TYPE,
    StreamConfig,
    StreamMultiplexer,
    format_part,
)
from pidash.drivers.commands import ScriptedResponse
from pidash.drivers.config import StreamPacing
from pidash.errors import CaptureError, StreamAlreadyRunningError
from pidash.utils.image import is_jpeg

CSI = CameraCapability(CameraType.CSI, "/dev/video0")


def make_streams(twin, tmp_path: Path, capability=CSI, **config) -> StreamMultiplexer:
    settings = {"width": 640, "height": 480, "frame_interval_s": 0.0, **config}
    return StreamMultiplexer(
        FrameCapture(twin, capability, timeout_s=2),
        ImageStore(tmp_path / "images"),
        StreamConfig(**settings),
    )


def split_part(part: bytes) -> tuple[dict[str, str], bytes]:
    head, _, body = part.partition(b"\r\n\r\n")
    lines = head.decode("ascii").split("\r\n")
    assert lines[0] == "--FRAME"
    headers = dict(line.split(": ", 1) for line in lines[1:])
    return headers, body


class TestFormatPart:
    """Tests for multipart framing."""

    def test_part_layout(self):
        part = format_part(b"\xff\xd8abc")
        assert part == (
            b"--FRAME\r\nContent-Type: image/jpeg\r\nContent-Length: 5\r\n\r\n"
            b"\xff\xd8abc\r\n"
        )
        assert MEDIA_TYPE == "multipart/x-mixed-replace; boundary=FRAME"


class TestStreamConfig:
    """Tests for StreamConfig validation."""

    def test_rejects_unsupported_resolution(self):
        with pytest.raises(ValueError, match="Unsupported stream resolution"):
            StreamConfig(width=1920, height=1080)

    def test_default_is_720p(self):
        config = StreamConfig()
        assert (config.width, config.height) == (1280, 720)


class TestStreamSessions:
    """Tests for session registration and stop semantics."""

    async def test_duplicate_client_rejected(self, csi_twin, tmp_path: Path):
        streams = make_streams(csi_twin, tmp_path)
        streams.open("alice")
        with pytest.raises(StreamAlreadyRunningError):
            streams.open("alice")
        streams.open("bob")
        assert set(streams.sessions) == {"alice", "bob"}

    async def test_sessions_get_distinct_scratch_files(self, csi_twin, tmp_path: Path):
        streams = make_streams(csi_twin, tmp_path)
        a = streams.open("alice")
        b = streams.open("bob")
        assert a.scratch_path != b.scratch_path
        assert a.scratch_path.name.startswith("stream_")

    async def test_no_camera(self, csi_twin, tmp_path: Path):
        streams = make_streams(csi_twin, tmp_path, CameraCapability(CameraType.NONE))
        with pytest.raises(CaptureError):
            streams.open("alice")

    async def test_stop_is_idempotent(self, csi_twin, tmp_path: Path):
        streams = make_streams(csi_twin, tmp_path)
        streams.open("alice")
        streams.open("bob")
        assert streams.stop("alice") == 1
        assert streams.stop("alice") == 0
        assert streams.stop() == 1
        assert streams.stop() == 0
        assert not streams.is_running()


class TestStreamGenerator:
    """Tests for the per-session capture loop."""

    async def test_emits_well_formed_parts(self, csi_twin, tmp_path: Path):
        """Verifies parts carry complete JPEGs and cleanup on close.

        Arrangement:
        1. CSI twin, fast pacing, one session.

        Action:
        Reads two parts, then closes the generator.

        Assertion Strategy:
        - Each part has matching Content-Length and a JPEG body.
        - After aclose the session is unregistered and its scratch
          file is gone.
        """
        streams = make_streams(csi_twin, tmp_path, pacing=StreamPacing.FAST)
        session = streams.open("alice")
        gen = streams.stream(session)

        for _ in range(2):
            headers, body = split_part(await anext(gen))
            assert headers["Content-Type"] == "image/jpeg"
            assert body.endswith(b"\r\n")
            jpeg = body[:-2]
            assert int(headers["Content-Length"]) == len(jpeg)
            assert is_jpeg(jpeg)

        await gen.aclose()
        assert session.frames_sent == 2
        assert not streams.is_running("alice")
        assert not session.scratch_path.exists()

    async def test_paced_mode_waits_between_frames(self, csi_twin, tmp_path: Path):
        streams = make_streams(csi_twin, tmp_path, frame_interval_s=0.2)
        gen = streams.stream(streams.open("alice"))
        loop = asyncio.get_running_loop()
        await anext(gen)
        start = loop.time()
        await anext(gen)
        assert loop.time() - start >= 0.19
        await gen.aclose()

    async def test_errors_back_off_without_ending(self, csi_twin, tmp_path: Path):
        """Verifies failing captures are retried after the backoff delay.

        Arrangement:
        1. rpicam-still always exits non-zero.
        2. Backoff of 0.2 s.

        Action:
        Lets the loop run for ~0.5 s, then stops the session.

        Assertion Strategy:
        - No frame was yielded; the generator ends cleanly on stop.
        - Between 2 and 4 attempts were made (backoff respected).
        """
        csi_twin.script("rpicam-still", ScriptedResponse(returncode=255))
        streams = make_streams(csi_twin, tmp_path, backoff_s=0.2)
        session = streams.open("alice")
        gen = streams.stream(session)
        pending = asyncio.create_task(anext(gen))

        await asyncio.sleep(0.5)
        assert not pending.done()
        streams.stop("alice")
        with pytest.raises(StopAsyncIteration):
            await pending

        attempts = len(csi_twin.calls_for("rpicam-still"))
        assert 2 <= attempts <= 4
        assert session.capture_errors == attempts
        assert session.frames_sent == 0

    async def test_stop_kills_in_flight_capture(self, csi_twin, tmp_path: Path):
        csi_twin.script("rpicam-still", ScriptedResponse(hang=True))
        streams = make_streams(csi_twin, tmp_path)
        session = streams.open("alice")
        pending = asyncio.create_task(anext(streams.stream(session)))

        await asyncio.sleep(0.05)
        assert session.task is not None
        streams.stop("alice")
        with pytest.raises(StopAsyncIteration):
            await pending
        assert len(csi_twin.killed) == 1

    async def test_client_going_away_kills_in_flight_capture(
        self, csi_twin, tmp_path: Path
    ):
        csi_twin.script("rpicam-still", ScriptedResponse(hang=True))
        streams = make_streams(csi_twin, tmp_path)
        session = streams.open("alice")
        pending = asyncio.create_task(anext(streams.stream(session)))

        await asyncio.sleep(0.05)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending
        assert len(csi_twin.killed) == 1
        assert not streams.is_running("alice")

    async def test_disconnect_check_ends_stream(self, csi_twin, tmp_path: Path):
        disconnected = False

        async def is_disconnected() -> bool:
            return disconnected

        streams = make_streams(csi_twin, tmp_path)
        gen = streams.stream(streams.open("alice"), is_disconnected)
        await anext(gen)
        disconnected = True
        with pytest.raises(StopAsyncIteration):
            await anext(gen)
        assert not streams.is_running()

    async def test_release_without_iterating_frees_client(
        self, csi_twin, tmp_path: Path
    ):
        """Verifies a session whose generator never ran can be reclaimed.

        Arrangement:
        1. Session opened and a generator created but never iterated.

        Action:
        Drops the generator, releases the session twice, reopens.

        Assertion Strategy:
        - The client slot is free after release.
        - Reopening for the same client succeeds.
        - The released session is flagged stopped and closed.
        """
        streams = make_streams(csi_twin, tmp_path)
        session = streams.open("alice")
        gen = streams.stream(session)
        del gen

        await streams.release(session)
        await streams.release(session)

        assert not streams.is_running("alice")
        assert session.stopped and session.closed
        reopened = streams.open("alice")
        assert reopened is not session
        assert streams.is_running("alice")

    async def test_release_of_stale_session_keeps_newer_one(
        self, csi_twin, tmp_path: Path
    ):
        streams = make_streams(csi_twin, tmp_path)
        old = streams.open("alice")
        streams.stop("alice")
        new = streams.open("alice")
        await streams.release(old)
        assert streams.sessions == {"alice": new}
