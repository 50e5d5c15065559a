"""Capture statistics collection and reporting.

Tracks every external capture invocation per source ("photo", "stream"):
- Success/failure counts and rates
- Timing statistics (min, max, avg, p95) of successful captures
- Failure categorization (timeout, exit_code, not_found, no_camera)
- Rolling window of recent captures

All callers run on the daemon's event loop, but the lock keeps the
collector safe if a capture result is ever recorded from a worker thread.

Example:
    stats = CaptureStats()
    stats.record_capture("stream", duration_ms=412.0, success=True)
    stats.record_capture("stream", duration_ms=0, success=False,
                         error_type="timeout")

    summary = stats.get_summary("stream")
    print(f"{summary.success_rate:.0%} ok, p95 {summary.p95_duration_ms:.0f}ms")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

#: Capture records retained per source for timing percentiles.
DEFAULT_STATS_WINDOW_SIZE: int = 500


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class StatsSummary:
    """Point-in-time statistics for one capture source.

    Attributes:
        source: Source label ("photo", "stream").
        total_captures: Captures attempted since start or last reset.
        successful_captures: Captures that produced an image.
        failed_captures: Captures that raised CaptureError.
        success_rate: successful / total, 0.0 when nothing recorded.
        min_duration_ms: Fastest successful capture in the window.
        max_duration_ms: Slowest successful capture in the window.
        avg_duration_ms: Mean successful capture time in the window.
        p95_duration_ms: 95th percentile successful capture time.
        error_counts: Failures by category.
        last_capture_time: UTC time of the most recent record.
        uptime_seconds: Seconds since the collector was created or reset.
    """

    source: str
    total_captures: int = 0
    successful_captures: int = 0
    failed_captures: int = 0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)
    last_capture_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the /api/camera/stats response."""
        return {
            "source": self.source,
            "totalCaptures": self.total_captures,
            "successfulCaptures": self.successful_captures,
            "failedCaptures": self.failed_captures,
            "successRate": round(self.success_rate, 4),
            "minDurationMs": round(self.min_duration_ms, 1),
            "maxDurationMs": round(self.max_duration_ms, 1),
            "avgDurationMs": round(self.avg_duration_ms, 1),
            "p95DurationMs": round(self.p95_duration_ms, 1),
            "errorCounts": self.error_counts.copy(),
            "lastCaptureTime": (
                self.last_capture_time.isoformat() if self.last_capture_time else None
            ),
            "uptimeSeconds": round(self.uptime_seconds, 1),
        }


@dataclass
class CaptureRecord:
    """Single capture outcome kept in the rolling window."""

    timestamp: float  # monotonic time
    duration_ms: float
    success: bool
    error_type: str | None = None


class CaptureStatsCollector:
    """Statistics for one capture source."""

    def __init__(
        self,
        source: str,
        window_size: int = DEFAULT_STATS_WINDOW_SIZE,
    ) -> None:
        self.source = source
        self._records: deque[CaptureRecord] = deque(maxlen=window_size)
        self._error_counts: dict[str, int] = {}
        self._total_captures = 0
        self._successful_captures = 0
        self._start_time = time.monotonic()
        self._last_capture_time: datetime | None = None
        self._lock = threading.Lock()

    def record(
        self,
        duration_ms: float,
        success: bool,
        error_type: str | None = None,
    ) -> None:
        """Record one capture outcome.

        Args:
            duration_ms: Wall time of the capture invocation(s).
            success: True when the image landed on disk.
            error_type: Failure category; ignored for successes.
        """
        record = CaptureRecord(
            timestamp=time.monotonic(),
            duration_ms=duration_ms,
            success=success,
            error_type=error_type,
        )

        with self._lock:
            self._records.append(record)
            self._total_captures += 1
            if success:
                self._successful_captures += 1
            elif error_type:
                self._error_counts[error_type] = (
                    self._error_counts.get(error_type, 0) + 1
                )
            self._last_capture_time = _utc_now()

    def get_summary(self) -> StatsSummary:
        """Compute a summary. Data is copied under the lock, math done outside."""
        with self._lock:
            total = self._total_captures
            successful = self._successful_captures
            error_counts = self._error_counts.copy()
            last_capture_time = self._last_capture_time
            start_time = self._start_time
            durations = [
                r.duration_ms for r in self._records if r.success and r.duration_ms > 0
            ]

        if durations:
            min_dur = min(durations)
            max_dur = max(durations)
            avg_dur = sum(durations) / len(durations)
            p95_dur = _percentile(sorted(durations), 95)
        else:
            min_dur = max_dur = avg_dur = p95_dur = 0.0

        return StatsSummary(
            source=self.source,
            total_captures=total,
            successful_captures=successful,
            failed_captures=total - successful,
            success_rate=successful / total if total > 0 else 0.0,
            min_duration_ms=min_dur,
            max_duration_ms=max_dur,
            avg_duration_ms=avg_dur,
            p95_duration_ms=p95_dur,
            error_counts=error_counts,
            last_capture_time=last_capture_time,
            uptime_seconds=time.monotonic() - start_time,
        )

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._error_counts.clear()
            self._total_captures = 0
            self._successful_captures = 0
            self._start_time = time.monotonic()
            self._last_capture_time = None


class CaptureStats:
    """Capture statistics keyed by source label.

    Injected into FrameCapture; one instance per application, held on
    ``app.state.stats``. Collectors are created lazily on first record.
    """

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        self._window_size = window_size
        self._collectors: dict[str, CaptureStatsCollector] = {}
        self._lock = threading.Lock()

    def _get_collector(self, source: str) -> CaptureStatsCollector:
        with self._lock:
            if source not in self._collectors:
                self._collectors[source] = CaptureStatsCollector(
                    source, self._window_size
                )
            return self._collectors[source]

    def record_capture(
        self,
        source: str,
        duration_ms: float,
        success: bool,
        error_type: str | None = None,
    ) -> None:
        self._get_collector(source).record(duration_ms, success, error_type)

    def get_summary(self, source: str) -> StatsSummary:
        return self._get_collector(source).get_summary()

    def get_all_summaries(self) -> dict[str, StatsSummary]:
        with self._lock:
            collectors = list(self._collectors.items())
        return {source: collector.get_summary() for source, collector in collectors}

    def reset(self, source: str | None = None) -> None:
        """Reset one source, or every source when ``source`` is None."""
        with self._lock:
            if source is not None:
                if source in self._collectors:
                    self._collectors[source].reset()
            else:
                for collector in self._collectors.values():
                    collector.reset()

    def to_dict(self) -> dict[str, Any]:
        summaries = self.get_all_summaries()
        return {
            "sources": {
                source: summary.to_dict() for source, summary in summaries.items()
            },
            "timestamp": _utc_now().isoformat(),
        }


def _percentile(sorted_data: list[float], p: float) -> float:
    """Linear-interpolated percentile of pre-sorted data.

    Args:
        sorted_data: Ascending values.
        p: Percentile in [0, 100].

    Returns:
        Interpolated value, 0.0 for empty input.

    Raises:
        ValueError: If p is outside [0, 100].
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")

    if not sorted_data:
        return 0.0

    k = (len(sorted_data) - 1) * (p / 100)
    floor_idx = int(k)
    ceil_idx = min(floor_idx + 1, len(sorted_data) - 1)

    if floor_idx == ceil_idx:
        return sorted_data[floor_idx]

    fraction = k - floor_idx
    return sorted_data[floor_idx] * (1 - fraction) + sorted_data[ceil_idx] * fraction
