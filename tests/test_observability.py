"""Tests for the observability module (logging and statistics)."""

import io
import json
import logging
import sys
import threading

import pytest

from pidash.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    _format_value,
    _log_context,
    configure_logging,
    get_logger,
    reset_logging,
    structured_fields,
)
from pidash.observability.stats import (
    CaptureStats,
    CaptureStatsCollector,
    StatsSummary,
    _percentile,
)


@pytest.fixture
def buffer() -> io.StringIO:
    """Text-mode logging routed into a StringIO."""
    stream = io.StringIO()
    configure_logging(level="DEBUG", stream=stream, force=True)
    return stream


def make_record(msg: str = "Schedule added", **structured) -> logging.LogRecord:
    record = logging.LogRecord("pidash.test", logging.INFO, __file__, 1, msg, None, None)
    record.structured_data = structured
    return record


# =============================================================================
# Structured Logging Tests
# =============================================================================


class TestStructuredLogger:
    """Tests for keyword-argument logging."""

    def test_get_logger_returns_structured_logger(self):
        assert isinstance(get_logger("pidash.test.kind"), StructuredLogger)

    def test_plain_logger_is_upgraded(self):
        plain = logging.Logger.manager.getLogger("pidash.test.preexisting")
        plain.__class__ = logging.Logger
        assert isinstance(get_logger("pidash.test.preexisting"), StructuredLogger)

    def test_kwargs_appended_as_pairs(self, buffer):
        get_logger("pidash.test").info("Image deleted", filename="photo_1.jpg")
        line = buffer.getvalue().strip()
        assert line.endswith("- INFO - Image deleted | filename=photo_1.jpg")

    def test_level_filtering(self):
        stream = io.StringIO()
        configure_logging(level="WARNING", stream=stream, force=True)
        logger = get_logger("pidash.test")
        logger.info("hidden")
        logger.debug("hidden")
        logger.warning("shown", code=1)
        logger.error("shown too")
        logger.critical("and this")
        lines = stream.getvalue().splitlines()
        assert len(lines) == 3
        assert "hidden" not in stream.getvalue()

    def test_crlf_in_value_cannot_forge_line(self, buffer):
        get_logger("pidash.test").warning(
            "Image not found", filename="x.jpg\nFAKE - ERROR - forged"
        )
        assert len(buffer.getvalue().splitlines()) == 1

    def test_configure_is_idempotent_without_force(self, buffer):
        other = io.StringIO()
        configure_logging(stream=other)
        get_logger("pidash.test").info("once")
        assert "once" in buffer.getvalue()
        assert other.getvalue() == ""

    def test_reset_logging_removes_handlers(self, buffer):
        reset_logging()
        assert logging.getLogger("pidash").handlers == []

    def test_fields_land_on_record(self):
        """Verifies keyword fields reach handlers as record attributes.

        Arrangement:
        1. Capturing handler on a fresh pidash logger.

        Action:
        Logs with two fields, then logs an exception with one field.

        Assertion Strategy:
        - structured_fields() returns the kwargs.
        - exception() keeps exc_info alongside the fields.
        - Caller location is the test, not the logging module.
        """
        records: list[logging.LogRecord] = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        configure_logging(stream=io.StringIO(), force=True)
        logger = get_logger("pidash.test.fields")
        handler = Capture()
        logger.addHandler(handler)
        try:
            logger.info("Schedule added", schedule_id="1718", days=[1])
            try:
                raise ValueError("bad")
            except ValueError:
                logger.exception("Load failed", path="/tmp/x")
        finally:
            logger.removeHandler(handler)

        assert structured_fields(records[0]) == {"schedule_id": "1718", "days": [1]}
        assert records[0].filename == "test_observability.py"
        assert structured_fields(records[1]) == {"path": "/tmp/x"}
        assert records[1].exc_info is not None


class TestLogContext:
    """Tests for contextvar-backed ambient fields."""

    def test_context_fields_attached(self, buffer):
        with LogContext(session_id="a1b2"):
            get_logger("pidash.test").info("Frame captured", bytes=100)
        assert "| session_id=a1b2 bytes=100" in buffer.getvalue()

    def test_nested_contexts_and_override(self, buffer):
        """Verifies nesting merges outer fields and explicit kwargs win.

        Arrangement:
        1. Outer context client_id, inner context session_id.

        Action:
        Logs with a kwarg that shadows the outer client_id.

        Assertion Strategy:
        - Both keys present, client_id from the kwarg.
        - Context restored to empty after exiting.
        """
        with LogContext(client_id="10.0.0.4"), LogContext(session_id="s1"):
            get_logger("pidash.test").info("Opened", client_id="override")
        assert "client_id=override session_id=s1" in buffer.getvalue()
        assert _log_context.get() == {}


class TestFormatters:
    """Tests for text and JSON formatting."""

    def test_structured_formatter_without_data(self):
        formatter = StructuredFormatter(fmt="%(levelname)s %(message)s")
        assert formatter.format(make_record("Started")) == "INFO Started"

    def test_structured_formatter_can_hide_pairs(self):
        formatter = StructuredFormatter(
            fmt="%(message)s", include_structured=False
        )
        assert formatter.format(make_record(schedule_id="1")) == "Schedule added"

    def test_third_party_record_without_structured_data(self):
        record = logging.LogRecord("uvicorn", logging.INFO, "", 0, "hi", None, None)
        assert StructuredFormatter(fmt="%(message)s").format(record) == "hi"

    def test_json_formatter(self):
        line = JSONFormatter().format(make_record(schedule_id="1718", days=[1, 3]))
        data = json.loads(line)
        assert data["message"] == "Schedule added"
        assert data["level"] == "INFO"
        assert data["logger"] == "pidash.test"
        assert data["schedule_id"] == "1718"
        assert data["days"] == [1, 3]
        assert data["timestamp"].endswith("+00:00")

    def test_json_formatter_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()
        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in data["exception"]

    def test_configure_json_output(self):
        stream = io.StringIO()
        configure_logging(json_format=True, stream=stream, force=True)
        get_logger("pidash.test").info("Stream stopped", stopped=2)
        data = json.loads(stream.getvalue())
        assert data["stopped"] == 2

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, "null"),
            ("22:00", "22:00"),
            ("two words", '"two words"'),
            ("a=b", '"a=b"'),
            ("x\ny", '"x\\ny"'),
            ([1, 3], "[1, 3]"),
            ({"k": 1}, '{"k": 1}'),
            (1.5, "1.5"),
            (True, "True"),
        ],
    )
    def test_format_value(self, value, expected):
        assert _format_value(value) == expected


# =============================================================================
# Statistics Tests
# =============================================================================


class TestCaptureStatsCollector:
    """Tests for per-source statistics."""

    def test_empty_summary(self):
        summary = CaptureStatsCollector("photo").get_summary()
        assert summary == StatsSummary(
            source="photo", uptime_seconds=summary.uptime_seconds
        )

    def test_counts_and_timings(self):
        """Verifies success rate, error categories and timing aggregates.

        Arrangement:
        1. Three successes (100, 200, 300 ms), two failures.

        Action:
        Computes summary.

        Assertion Strategy:
        - Rates and counts exact.
        - Failures do not contribute to timing.
        """
        collector = CaptureStatsCollector("stream")
        for duration in (100.0, 200.0, 300.0):
            collector.record(duration, success=True)
        collector.record(10_000.0, success=False, error_type="timeout")
        collector.record(5.0, success=False, error_type="not_found")

        summary = collector.get_summary()
        assert summary.total_captures == 5
        assert summary.successful_captures == 3
        assert summary.failed_captures == 2
        assert summary.success_rate == pytest.approx(0.6)
        assert summary.min_duration_ms == 100.0
        assert summary.max_duration_ms == 300.0
        assert summary.avg_duration_ms == 200.0
        assert summary.p95_duration_ms == pytest.approx(290.0)
        assert summary.error_counts == {"timeout": 1, "not_found": 1}
        assert summary.last_capture_time is not None

    def test_window_bounds_timing_not_totals(self):
        collector = CaptureStatsCollector("stream", window_size=2)
        for duration in (1000.0, 10.0, 20.0):
            collector.record(duration, success=True)
        summary = collector.get_summary()
        assert summary.total_captures == 3
        assert summary.max_duration_ms == 20.0

    def test_reset(self):
        collector = CaptureStatsCollector("photo")
        collector.record(50.0, success=False, error_type="no_camera")
        collector.reset()
        summary = collector.get_summary()
        assert summary.total_captures == 0
        assert summary.error_counts == {}
        assert summary.last_capture_time is None


class TestCaptureStats:
    """Tests for the multi-source registry."""

    def test_to_dict_camel_case(self):
        stats = CaptureStats()
        stats.record_capture("photo", duration_ms=812.34, success=True)
        data = stats.to_dict()
        photo = data["sources"]["photo"]
        assert photo["totalCaptures"] == 1
        assert photo["successRate"] == 1.0
        assert photo["avgDurationMs"] == 812.3
        assert photo["lastCaptureTime"] is not None
        assert "timestamp" in data

    def test_sources_independent(self):
        stats = CaptureStats()
        stats.record_capture("photo", 10.0, True)
        stats.record_capture("stream", 0, False, error_type="failed")
        assert set(stats.get_all_summaries()) == {"photo", "stream"}
        stats.reset("stream")
        assert stats.get_summary("stream").total_captures == 0
        assert stats.get_summary("photo").total_captures == 1
        stats.reset()
        assert stats.get_summary("photo").total_captures == 0

    def test_reset_unknown_source_is_noop(self):
        CaptureStats().reset("nope")

    def test_concurrent_records(self):
        stats = CaptureStats()

        def worker():
            for _ in range(200):
                stats.record_capture("stream", 1.0, True)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert stats.get_summary("stream").total_captures == 800


class TestPercentile:
    """Tests for _percentile."""

    @pytest.mark.parametrize(
        ("data", "p", "expected"),
        [
            ([], 95, 0.0),
            ([5.0], 95, 5.0),
            ([1.0, 2.0, 3.0, 4.0, 5.0], 50, 3.0),
            ([1.0, 2.0], 50, 1.5),
            ([1.0, 2.0, 3.0], 100, 3.0),
            ([1.0, 2.0, 3.0], 0, 1.0),
        ],
    )
    def test_values(self, data, p, expected):
        assert _percentile(data, p) == pytest.approx(expected)

    @pytest.mark.parametrize("p", [-1, 101])
    def test_out_of_range(self, p):
        with pytest.raises(ValueError):
            _percentile([1.0], p)
