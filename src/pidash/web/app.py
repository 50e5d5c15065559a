"""FastAPI web application for the Raspberry Pi dashboard API."""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from starlette.types import Receive, Scope, Send

from pidash import __version__
from pidash.data import ImageStore, ScheduleStore
from pidash.devices import (
    MEDIA_TYPE,
    CameraDetector,
    FrameCapture,
    PhotoCapture,
    StreamConfig,
    StreamMultiplexer,
    StreamSession,
    TriggerEngine,
)
from pidash.drivers.config import DaemonConfig, DriverFactory, get_factory
from pidash.drivers.power import PowerAction, PowerController
from pidash.errors import (
    CaptureError,
    NotFoundError,
    StreamAlreadyRunningError,
    ValidationError,
)
from pidash.observability import CaptureStats, get_logger

logger = get_logger(__name__)

STREAM_URL = "/api/camera/stream"
PHOTO_FAILED_MESSAGE = (
    "Failed to capture photo. Make sure the camera is connected and enabled."
)
POWER_MESSAGES = {
    PowerAction.SHUTDOWN: "System is shutting down...",
    PowerAction.REBOOT: "System is rebooting...",
}


async def run_power_action(
    power: PowerController, action: PowerAction, delay_s: float
) -> None:
    """Execute ``action`` after ``delay_s``. Failures are logged only.

    Runs as a background task after the HTTP response has been sent.
    """
    await asyncio.sleep(delay_s)
    try:
        await power.execute(action)
    except Exception as e:
        logger.error("Power action failed", action=action.value, error=str(e))


def _client_id(request: Request, client_id: str | None) -> str:
    """Stream session key: explicit ``client_id`` or the peer host."""
    if client_id:
        return client_id
    if request.client is not None:
        return request.client.host
    return "anonymous"


async def _json_object(request: Request) -> dict[str, Any]:
    """Parse the request body as a JSON object.

    Raises:
        ValidationError: Body is not valid JSON or not an object.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


class SessionStreamingResponse(StreamingResponse):
    """StreamingResponse that releases its stream session however it ends.

    The session is registered before the response starts. If sending fails
    before the body is iterated, the generator's own cleanup never runs.
    """

    def __init__(
        self,
        streams: StreamMultiplexer,
        session: StreamSession,
        content: AsyncIterator[bytes],
        **kwargs: Any,
    ) -> None:
        super().__init__(content, **kwargs)
        self._streams = streams
        self._session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._streams.release(self._session)


def create_app(
    config: DaemonConfig | None = None,
    factory: DriverFactory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Components are built in the lifespan handler: the camera is detected
    once, schedules are loaded and their triggers armed. Everything lives
    on ``app.state`` rather than module globals, so each call returns an
    independent application.

    Args:
        config: Daemon settings. Ignored when ``factory`` is given.
        factory: Driver factory. Defaults to one built from ``config``, or
            the global factory when neither is given.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Example:
        >>> app = create_app(DaemonConfig(data_dir=Path("/var/lib/pidash")))
        >>> uvicorn.run(app, host="0.0.0.0", port=3001)
    """
    if factory is None:
        factory = DriverFactory(config) if config is not None else get_factory()
    settings = factory.config
    images = ImageStore(settings.images_dir)
    images.ensure()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runner = factory.create_command_runner()
        detector = CameraDetector(
            runner,
            path_exists=factory.create_path_probe(),
            probe_timeout_s=settings.probe_timeout_s,
        )
        capability = await detector.detect()

        stats = CaptureStats()
        capture = FrameCapture(
            runner, capability, stats, timeout_s=settings.capture_timeout_s
        )
        power = factory.create_power_controller()
        triggers = TriggerEngine(power, action=settings.schedule_action)
        schedules = ScheduleStore(settings.schedules_path, triggers=triggers)
        schedules.load()

        app.state.config = settings
        app.state.capability = capability
        app.state.stats = stats
        app.state.images = images
        app.state.photos = PhotoCapture(capture, images)
        app.state.streams = StreamMultiplexer(
            capture, images, StreamConfig.from_daemon_config(settings)
        )
        app.state.power = power
        app.state.triggers = triggers
        app.state.schedules = schedules
        app.state.metrics = factory.create_metrics_provider()

        logger.info(
            "pidash started",
            mode=settings.mode.value,
            camera=capability.type.value,
            schedules=len(schedules),
        )
        yield

        app.state.streams.stop()
        triggers.shutdown()
        logger.info("pidash stopped")

    app = FastAPI(
        title="pidash",
        description="Raspberry Pi telemetry, camera and power control API",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.mount("/images", StaticFiles(directory=images.directory), name="images")

    # -- system -------------------------------------------------------------

    @app.get("/api/system-info")
    async def system_info(request: Request) -> JSONResponse:
        """Host telemetry; individual fields degrade to "N/A"."""
        try:
            info = await request.app.state.metrics.collect()
        except Exception as e:
            logger.error("Failed to fetch system information", error=str(e))
            return JSONResponse(
                {"error": "Failed to fetch system information"}, status_code=500
            )
        return JSONResponse(info)

    @app.post("/api/system/shutdown")
    async def shutdown(request: Request, background: BackgroundTasks) -> JSONResponse:
        return _schedule_power(request, background, PowerAction.SHUTDOWN)

    @app.post("/api/system/reboot")
    async def reboot(request: Request, background: BackgroundTasks) -> JSONResponse:
        return _schedule_power(request, background, PowerAction.REBOOT)

    def _schedule_power(
        request: Request, background: BackgroundTasks, action: PowerAction
    ) -> JSONResponse:
        state = request.app.state
        background.add_task(
            run_power_action, state.power, action, state.config.power_delay_s
        )
        logger.warning(
            "Power action requested",
            action=action.value,
            delay_s=state.config.power_delay_s,
        )
        return JSONResponse({"success": True, "message": POWER_MESSAGES[action]})

    # -- schedules ----------------------------------------------------------

    @app.get("/api/system/schedules")
    async def list_schedules(request: Request) -> JSONResponse:
        schedules = request.app.state.schedules.list()
        return JSONResponse({"schedules": [s.to_dict() for s in schedules]})

    @app.post("/api/system/schedules")
    async def add_schedule(request: Request) -> JSONResponse:
        """Create a schedule from ``{time, days, enabled?}``."""
        try:
            body = await _json_object(request)
            schedule = request.app.state.schedules.add(
                body.get("time"), body.get("days"), body.get("enabled", True)
            )
        except ValidationError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=400)
        return JSONResponse({"success": True, "schedule": schedule.to_dict()})

    @app.patch("/api/system/schedules/{schedule_id}")
    async def update_schedule(schedule_id: str, request: Request) -> JSONResponse:
        """Toggle a schedule with ``{enabled}``."""
        try:
            body = await _json_object(request)
            if "enabled" not in body:
                raise ValidationError("enabled is required")
            schedule = request.app.state.schedules.update(schedule_id, body["enabled"])
        except NotFoundError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=404)
        except ValidationError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=400)
        return JSONResponse({"success": True, "schedule": schedule.to_dict()})

    @app.delete("/api/system/schedules/{schedule_id}")
    async def delete_schedule(schedule_id: str, request: Request) -> JSONResponse:
        try:
            request.app.state.schedules.remove(schedule_id)
        except NotFoundError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=404)
        return JSONResponse({"success": True})

    # -- camera -------------------------------------------------------------

    @app.get("/api/camera/info")
    async def camera_info(request: Request) -> JSONResponse:
        return JSONResponse(request.app.state.capability.to_dict())

    @app.get("/api/camera/stats")
    async def camera_stats(request: Request) -> JSONResponse:
        return JSONResponse(request.app.state.stats.to_dict())

    @app.post("/api/camera/photo")
    async def take_photo(request: Request) -> JSONResponse:
        """Capture a full-resolution still into the images directory."""
        try:
            image = await request.app.state.photos.take_photo()
        except CaptureError as e:
            logger.error("Error taking photo", error=str(e))
            return JSONResponse(
                {"success": False, "error": PHOTO_FAILED_MESSAGE, "details": str(e)},
                status_code=500,
            )
        return JSONResponse({"success": True, **image.to_dict()})

    @app.get("/api/camera/stream/start")
    async def stream_start(
        request: Request,
        client_id: str | None = Query(None, description="Stream session key"),
    ) -> JSONResponse:
        """Report whether this client's stream is running."""
        state = request.app.state
        if not state.capability.available:
            return JSONResponse(
                {"success": False, "error": "No camera detected"}, status_code=500
            )
        running = state.streams.is_running(_client_id(request, client_id))
        return JSONResponse(
            {
                "success": True,
                "message": "Stream already running" if running else "Stream ready",
                "url": STREAM_URL,
            }
        )

    @app.get("/api/camera/stream/stop")
    async def stream_stop(
        request: Request,
        client_id: str | None = Query(None, description="Stop only this session"),
    ) -> JSONResponse:
        """Stop one client's stream, or every stream when no client_id is given."""
        stopped = request.app.state.streams.stop(client_id)
        return JSONResponse(
            {"success": True, "message": "Stream stopped", "stopped": stopped}
        )

    @app.get("/api/camera/stream", response_model=None)
    async def stream(
        request: Request,
        client_id: str | None = Query(None, description="Stream session key"),
    ) -> StreamingResponse | JSONResponse:
        """MJPEG stream of the camera, one JPEG per multipart part."""
        streams: StreamMultiplexer = request.app.state.streams
        try:
            session = streams.open(_client_id(request, client_id))
        except StreamAlreadyRunningError as e:
            return JSONResponse(
                {"error": "Stream already running", "details": str(e)},
                status_code=409,
            )
        except CaptureError as e:
            logger.error("Failed to start video stream", error=str(e))
            return JSONResponse(
                {"error": "Failed to start video stream", "details": str(e)},
                status_code=500,
            )
        return SessionStreamingResponse(
            streams,
            session,
            streams.stream(session, request.is_disconnected),
            media_type=MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    # -- images -------------------------------------------------------------

    @app.get("/api/camera/images")
    async def list_images(request: Request) -> JSONResponse:
        """Captured stills, newest first."""
        try:
            images = await asyncio.to_thread(request.app.state.images.list)
        except OSError as e:
            logger.error("Error listing images", error=str(e))
            return JSONResponse({"error": "Failed to list images"}, status_code=500)
        return JSONResponse({"images": [image.to_dict() for image in images]})

    @app.delete("/api/camera/images/{filename}")
    async def delete_image(filename: str, request: Request) -> JSONResponse:
        try:
            await asyncio.to_thread(request.app.state.images.delete, filename)
        except NotFoundError:
            return JSONResponse({"error": "Image not found"}, status_code=404)
        except ValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except OSError as e:
            logger.error("Error deleting image", filename=filename, error=str(e))
            return JSONResponse({"error": "Failed to delete image"}, status_code=500)
        return JSONResponse({"success": True})

    return app

