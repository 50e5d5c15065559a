"""Device layer - camera detection, capture, streaming and power triggers."""

from pidash.devices.capture import FrameCapture, PhotoCapture
from pidash.devices.detector import (
    CameraCapability,
    CameraDetector,
    CameraType,
)
from pidash.devices.stream import (
    MEDIA_TYPE,
    StreamConfig,
    StreamMultiplexer,
    StreamSession,
    format_part,
)
from pidash.devices.triggers import (
    ActiveTrigger,
    Clock,
    SystemClock,
    TriggerEngine,
)

__all__ = [
    # Detection
    "CameraCapability",
    "CameraDetector",
    "CameraType",
    # Capture
    "FrameCapture",
    "PhotoCapture",
    # Streaming
    "MEDIA_TYPE",
    "StreamConfig",
    "StreamMultiplexer",
    "StreamSession",
    "format_part",
    # Triggers
    "ActiveTrigger",
    "Clock",
    "SystemClock",
    "TriggerEngine",
]
