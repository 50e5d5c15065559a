"""Observability module for pidash.

Provides structured logging and capture statistics.

Example:
    from pidash.observability import get_logger, LogContext

    logger = get_logger(__name__)
    logger.info("Camera detected", type="usb", device="/dev/video0")

    with LogContext(session_id="3f2a"):
        logger.warning("Frame capture failed", error="timeout")

Statistics Example:
    from pidash.observability import CaptureStats

    stats = CaptureStats()
    capture = FrameCapture(runner, capability, stats=stats)
    ...
    stats.get_summary("photo").success_rate
"""

from pidash.observability.logging import (
    LogContext,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from pidash.observability.stats import (
    CaptureStats,
    StatsSummary,
)

__all__ = [
    # Logging
    "LogContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "CaptureStats",
    "StatsSummary",
]
