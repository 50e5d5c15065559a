"""pidash - local device-control daemon for a Raspberry Pi dashboard.

Exposes host telemetry, camera capture and MJPEG streaming, and scheduled
power actions over HTTP.
"""

__version__ = "0.1.0"
