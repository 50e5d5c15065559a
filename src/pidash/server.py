"""Server entry point for the pidash daemon."""

import argparse
import logging
from collections.abc import Sequence
from pathlib import Path

import uvicorn

from pidash.drivers.commands import TwinCamera
from pidash.drivers.config import (
    DEFAULT_CAPTURE_TIMEOUT_S,
    DEFAULT_FRAME_INTERVAL_S,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_POWER_DELAY_S,
    DaemonConfig,
    DriverMode,
    StreamPacing,
    configure,
    get_factory,
)
from pidash.drivers.power import PowerAction
from pidash.observability import configure_logging, get_logger
from pidash.web.app import create_app

logger = get_logger(__name__)

STREAM_SIZES = {"640x480": (640, 480), "1280x720": (1280, 720)}


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments for the daemon.

    Args:
        argv: Arguments to parse; defaults to sys.argv[1:].

    Returns:
        argparse.Namespace with one attribute per option below.

    Example:
        >>> args = parse_args(["--mode", "hardware", "--port", "8080"])
        >>> args.port
        8080
    """
    parser = argparse.ArgumentParser(
        prog="pidash",
        description="Raspberry Pi telemetry, camera and power-scheduling daemon",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=DEFAULT_HOST,
        help=f"Address to bind the HTTP server to (default: {DEFAULT_HOST})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port for the HTTP server (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Directory for schedules.json and captured images (default: ~/.pidash/data)",
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=["hardware", "digital_twin"],
        default="hardware",
        help="Driver mode: 'hardware' for the real host, 'digital_twin' for simulation",
    )
    parser.add_argument(
        "--twin-camera",
        type=str,
        choices=[c.value for c in TwinCamera],
        default=TwinCamera.CSI.value,
        help="Camera attached to the simulated host (digital_twin mode only)",
    )
    parser.add_argument(
        "--stream-size",
        type=str,
        choices=sorted(STREAM_SIZES),
        default="1280x720",
        help="Stream resolution (default: 1280x720)",
    )
    parser.add_argument(
        "--pacing",
        type=str,
        choices=[p.value for p in StreamPacing],
        default=StreamPacing.PACED.value,
        help="'paced' waits --frame-interval between frames, 'fast' re-triggers at once",
    )
    parser.add_argument(
        "--frame-interval",
        type=float,
        default=DEFAULT_FRAME_INTERVAL_S,
        help=f"Seconds between stream frames when paced (default: {DEFAULT_FRAME_INTERVAL_S})",
    )
    parser.add_argument(
        "--capture-timeout",
        type=float,
        default=DEFAULT_CAPTURE_TIMEOUT_S,
        help=f"Seconds before a capture process is killed (default: {DEFAULT_CAPTURE_TIMEOUT_S})",
    )
    parser.add_argument(
        "--power-delay",
        type=float,
        default=DEFAULT_POWER_DELAY_S,
        help=f"Seconds between answering and acting on shutdown/reboot (default: {DEFAULT_POWER_DELAY_S})",
    )
    parser.add_argument(
        "--schedule-action",
        type=str,
        choices=[a.value for a in PowerAction],
        default=PowerAction.SHUTDOWN.value,
        help="Power action fired by schedules (default: shutdown)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["critical", "error", "warning", "info", "debug"],
        default="info",
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> DaemonConfig:
    """Translate parsed arguments into a DaemonConfig.

    Raises:
        ValueError: A timing option is negative or zero where not allowed.
    """
    if args.frame_interval < 0:
        raise ValueError(f"--frame-interval must be >= 0, got {args.frame_interval}")
    if args.capture_timeout <= 0:
        raise ValueError(f"--capture-timeout must be > 0, got {args.capture_timeout}")
    if args.power_delay < 0:
        raise ValueError(f"--power-delay must be >= 0, got {args.power_delay}")

    width, height = STREAM_SIZES[args.stream_size]
    config = DaemonConfig(
        mode=DriverMode(args.mode),
        host=args.host,
        port=args.port,
        stream_width=width,
        stream_height=height,
        stream_pacing=StreamPacing(args.pacing),
        frame_interval_s=args.frame_interval,
        capture_timeout_s=args.capture_timeout,
        power_delay_s=args.power_delay,
        schedule_action=PowerAction(args.schedule_action),
        twin_camera=TwinCamera(args.twin_camera),
    )
    if args.data_dir:
        config.data_dir = Path(args.data_dir).expanduser()
    return config


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point: parse arguments, configure logging, serve HTTP."""
    args = parse_args(argv)

    configure_logging(
        level=getattr(logging, args.log_level.upper()),
        json_format=args.log_json,
    )

    configure(build_config(args))
    config = get_factory().config
    logger.info(
        "Starting pidash",
        mode=config.mode.value,
        host=config.host,
        port=config.port,
        data_dir=str(config.data_dir),
    )

    uvicorn.run(
        create_app(),
        host=config.host,
        port=config.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
