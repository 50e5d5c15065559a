"""MJPEG streaming over multipart/x-mixed-replace.

Each connected client gets a StreamSession that drives its own capture
loop: capture a frame into the session's scratch file, emit it as one
multipart part, then capture the next one either immediately (fast
re-trigger) or after a fixed interval (paced). Failed captures back off
before retrying and never end the stream.

A session ends when the client disconnects, the response generator is
closed, or stop() is called. The in-flight capture task is cancelled on
the way out, which kills the external capture process, and the scratch
file is removed.

Wire format of one part:

    --FRAME\\r\\n
    Content-Type: image/jpeg\\r\\n
    Content-Length: <n>\\r\\n
    \\r\\n
    <jpeg bytes>\\r\\n
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from pidash.data.images import ImageStore
from pidash.devices.capture import STREAM_SOURCE, FrameCapture
from pidash.drivers.config import (
    DEFAULT_CAPTURE_TIMEOUT_S,
    DEFAULT_FRAME_INTERVAL_S,
    DEFAULT_STREAM_HEIGHT,
    DEFAULT_STREAM_WIDTH,
    MIN_ERROR_BACKOFF_S,
    STREAM_RESOLUTIONS,
    DaemonConfig,
    StreamPacing,
)
from pidash.errors import CaptureError, StreamAlreadyRunningError
from pidash.observability import get_logger

logger = get_logger(__name__)

BOUNDARY = "FRAME"
MEDIA_TYPE = f"multipart/x-mixed-replace; boundary={BOUNDARY}"

DisconnectCheck = Callable[[], Awaitable[bool]]


def format_part(frame: bytes) -> bytes:
    """Wrap one JPEG as a multipart part."""
    header = (
        f"--{BOUNDARY}\r\n"
        "Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(frame)}\r\n\r\n"
    ).encode("ascii")
    return header + frame + b"\r\n"


@dataclass(frozen=True)
class StreamConfig:
    """Per-stream capture settings.

    Attributes:
        width: Frame width, 640 or 1280.
        height: Frame height, 480 or 720.
        pacing: FAST re-trigger or PACED.
        frame_interval_s: Delay between frames when PACED.
        backoff_s: Delay after a failed capture.
        capture_timeout_s: Bound on one capture invocation.
    """

    width: int = DEFAULT_STREAM_WIDTH
    height: int = DEFAULT_STREAM_HEIGHT
    pacing: StreamPacing = StreamPacing.PACED
    frame_interval_s: float = DEFAULT_FRAME_INTERVAL_S
    backoff_s: float = MIN_ERROR_BACKOFF_S
    capture_timeout_s: float = DEFAULT_CAPTURE_TIMEOUT_S

    def __post_init__(self) -> None:
        if (self.width, self.height) not in STREAM_RESOLUTIONS:
            raise ValueError(
                f"Unsupported stream resolution {self.width}x{self.height}; "
                f"expected one of {sorted(STREAM_RESOLUTIONS)}"
            )
        if self.frame_interval_s < 0 or self.backoff_s < 0:
            raise ValueError("stream delays must be non-negative")

    @classmethod
    def from_daemon_config(cls, config: DaemonConfig) -> StreamConfig:
        return cls(
            width=config.stream_width,
            height=config.stream_height,
            pacing=config.stream_pacing,
            frame_interval_s=config.frame_interval_s,
            backoff_s=config.backoff_s,
            capture_timeout_s=config.capture_timeout_s,
        )


@dataclass
class StreamSession:
    """One client's live stream."""

    client_id: str
    scratch_path: Path
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    frames_sent: int = 0
    capture_errors: int = 0
    closed: bool = False

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def cancel(self) -> None:
        """Flag the session stopped and kill any in-flight capture."""
        self.stop_event.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()


class StreamMultiplexer:
    """Registry of per-client stream sessions and their capture loops.

    Example:
        session = streams.open(client_id)  # may raise StreamAlreadyRunningError
        return StreamingResponse(
            streams.stream(session, request.is_disconnected),
            media_type=MEDIA_TYPE,
        )
    """

    def __init__(
        self,
        capture: FrameCapture,
        images: ImageStore,
        config: StreamConfig | None = None,
    ) -> None:
        self._capture = capture
        self._images = images
        self.config = config or StreamConfig()
        self._sessions: dict[str, StreamSession] = {}

    @property
    def sessions(self) -> dict[str, StreamSession]:
        return dict(self._sessions)

    def is_running(self, client_id: str | None = None) -> bool:
        if client_id is None:
            return bool(self._sessions)
        return client_id in self._sessions

    def open(self, client_id: str) -> StreamSession:
        """Register a new session for ``client_id``.

        Raises:
            CaptureError: No camera detected.
            StreamAlreadyRunningError: The client already has a live stream.
        """
        if not self._capture.capability.available:
            raise CaptureError("No camera detected")
        if client_id in self._sessions:
            raise StreamAlreadyRunningError(client_id)
        self._images.ensure()
        session_id = uuid.uuid4().hex[:12]
        session = StreamSession(
            client_id=client_id,
            scratch_path=self._images.scratch_path(session_id),
            session_id=session_id,
        )
        self._sessions[client_id] = session
        logger.info(
            "Stream session opened",
            client_id=client_id,
            session_id=session.session_id,
            width=self.config.width,
            height=self.config.height,
            pacing=self.config.pacing.value,
        )
        return session

    def stop(self, client_id: str | None = None) -> int:
        """Stop one client's session, or all sessions when ``client_id`` is None.

        Idempotent: stopping an unknown or already stopped client is a no-op.

        Returns:
            Number of sessions stopped.
        """
        if client_id is None:
            targets = list(self._sessions.values())
            self._sessions.clear()
        else:
            session = self._sessions.pop(client_id, None)
            targets = [session] if session is not None else []
        for session in targets:
            session.cancel()
            logger.info(
                "Stream session stopped",
                client_id=session.client_id,
                session_id=session.session_id,
            )
        return len(targets)

    async def stream(
        self,
        session: StreamSession,
        is_disconnected: DisconnectCheck | None = None,
    ) -> AsyncIterator[bytes]:
        """Yield multipart parts until the session ends."""
        config = self.config
        try:
            while not session.stopped:
                if is_disconnected is not None and await is_disconnected():
                    logger.info(
                        "Stream client disconnected", session_id=session.session_id
                    )
                    break

                try:
                    captured = await self._capture_frame(session)
                    if not captured:
                        break
                    frame = await asyncio.to_thread(session.scratch_path.read_bytes)
                except (CaptureError, OSError) as e:
                    session.capture_errors += 1
                    logger.warning(
                        "Stream capture failed, backing off",
                        session_id=session.session_id,
                        error=str(e),
                        backoff_s=config.backoff_s,
                    )
                    await self._pause(session, config.backoff_s)
                    continue

                if session.stopped:
                    break
                session.frames_sent += 1
                yield format_part(frame)

                if config.pacing is StreamPacing.PACED:
                    await self._pause(session, config.frame_interval_s)
        finally:
            await self.release(session)

    async def _capture_frame(self, session: StreamSession) -> bool:
        """Capture into the scratch file unless the session stops first.

        Returns:
            True when a frame was captured, False when stopped mid-capture.

        Raises:
            CaptureError: The capture failed.
        """
        capture = asyncio.create_task(
            self._capture.capture_once(
                session.scratch_path,
                self.config.width,
                self.config.height,
                timeout_s=self.config.capture_timeout_s,
                source=STREAM_SOURCE,
            )
        )
        session.task = capture
        stop_wait = asyncio.create_task(session.stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {capture, stop_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_wait.cancel()
            if not capture.done():
                capture.cancel()
                await asyncio.gather(capture, return_exceptions=True)
            session.task = None

        if capture not in done or capture.cancelled():
            return False
        capture.result()
        return True

    async def _pause(self, session: StreamSession, delay_s: float) -> None:
        """Sleep for ``delay_s`` or until the session stops."""
        if delay_s <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(session.stop_event.wait(), timeout=delay_s)
        except TimeoutError:
            pass

    async def release(self, session: StreamSession) -> None:
        """End ``session`` and free its client slot and scratch file.

        Idempotent. Also valid for a session whose stream() generator never
        started.
        """
        session.cancel()
        if self._sessions.get(session.client_id) is session:
            del self._sessions[session.client_id]
        if session.closed:
            return
        session.closed = True
        await asyncio.to_thread(session.scratch_path.unlink, missing_ok=True)
        logger.info(
            "Stream session closed",
            client_id=session.client_id,
            session_id=session.session_id,
            frames_sent=session.frames_sent,
            capture_errors=session.capture_errors,
        )
