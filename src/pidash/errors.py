"""Exception taxonomy for pidash.

Component seams raise these; the web layer translates them into HTTP
status codes (ValidationError -> 400, NotFoundError -> 404,
StreamAlreadyRunningError -> 409, CaptureError -> 500).

Hierarchy:
    PidashError
    ├── ProbeFailure            detection/telemetry probe failed (degraded)
    ├── CaptureError            external capture failed or timed out
    ├── ValidationError         malformed user input, no mutation applied
    ├── NotFoundError           unknown schedule id or image filename
    ├── PowerActionError        OS refused shutdown/reboot
    └── StreamAlreadyRunningError
"""

from __future__ import annotations


class PidashError(Exception):
    """Base exception for pidash operations."""

    pass


class ProbeFailure(PidashError):
    """Raised when a host probe (detection or telemetry) fails.

    Always caught by the component that issued the probe and degraded to
    a fallback value ("N/A", or the next detection step).
    """

    pass


class CaptureError(PidashError):
    """Raised when a frame capture fails, times out, or has no camera."""

    pass


class ValidationError(PidashError):
    """Raised for malformed input. The store is left unchanged."""

    pass


class NotFoundError(PidashError):
    """Raised when a schedule id or image filename does not exist."""

    pass


class PowerActionError(PidashError):
    """Raised when the OS refuses a shutdown or reboot request."""

    pass


class StreamAlreadyRunningError(PidashError):
    """Raised when a client opens a second stream while one is active."""

    def __init__(self, client_id: str) -> None:
        super().__init__(f"Stream already running for client {client_id}")
        self.client_id = client_id
