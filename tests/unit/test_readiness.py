"""
Unit tests for ReadinessDetector.
Tests: tail pre-scan, live stream matching, idle deadline, stream failures
"""
import time

import pytest

from server_manager.errors import ReadinessTimeoutError, StreamError
from server_manager.readiness import ReadinessDetector, ReadinessState

SENTINEL = "RCON running on 0.0.0.0:25575"


def make_detector(containers, idle_timeout=0.3, tail_lines=100):
    return ReadinessDetector(
        containers,
        sentinel=SENTINEL,
        idle_timeout=idle_timeout,
        tail_lines=tail_lines,
    )


class TestPreScan:
    """Tests for the cheap path over already captured output."""

    def test_ready_from_tail_without_stream(self, containers):
        """Sentinel in recent output should return READY without streaming."""
        containers.tail_logs.return_value = f"Loading world\n{SENTINEL}\nDone\n"
        detector = make_detector(containers)

        assert detector.wait_until_ready("abc123") == ReadinessState.READY
        containers.stream_logs.assert_not_called()

    def test_pre_scan_uses_window_and_since(self, containers, log_stream):
        containers.stream_logs.return_value = log_stream([SENTINEL.encode()])
        detector = make_detector(containers, tail_lines=42)

        detector.wait_until_ready("abc123", since=1700000000.5)

        containers.tail_logs.assert_called_once_with("abc123", lines=42, since=1700000000.5)
        containers.stream_logs.assert_called_once_with("abc123", since=1700000000.5)


class TestLiveStream:
    """Tests for sentinel detection on the followed stream."""

    def test_ready_when_sentinel_streamed(self, containers, log_stream):
        stream = log_stream([b"Starting server\n", f"[Server] {SENTINEL}\n".encode()])
        containers.stream_logs.return_value = stream
        detector = make_detector(containers)

        assert detector.wait_until_ready("abc123") == ReadinessState.READY
        assert stream.closed.is_set()

    def test_ready_reported_when_seen_not_at_deadline(self, containers, log_stream):
        """READY is returned as soon as the sentinel arrives."""
        containers.stream_logs.return_value = log_stream([SENTINEL.encode()], delay=0.05)
        detector = make_detector(containers, idle_timeout=5.0)

        started = time.monotonic()
        detector.wait_until_ready("abc123")

        assert time.monotonic() - started < 2.0

    def test_sentinel_split_across_chunks(self, containers, log_stream):
        half = len(SENTINEL) // 2
        containers.stream_logs.return_value = log_stream([
            b"noise " + SENTINEL[:half].encode(),
            SENTINEL[half:].encode() + b"\n",
        ])
        detector = make_detector(containers)

        assert detector.wait_until_ready("abc123") == ReadinessState.READY

    def test_steady_output_outlives_idle_window(self, containers, log_stream):
        """Total time above the idle window is fine while output keeps coming."""
        chunks = [f"Preparing spawn area: {i}%\n".encode() for i in range(10)]
        chunks.append(SENTINEL.encode())
        containers.stream_logs.return_value = log_stream(chunks, delay=0.05)
        detector = make_detector(containers, idle_timeout=0.25)

        started = time.monotonic()
        assert detector.wait_until_ready("abc123") == ReadinessState.READY
        assert time.monotonic() - started > 0.25


class TestFailures:
    """Tests for timeout and stream errors."""

    def test_times_out_on_silence(self, containers, log_stream):
        stream = log_stream([b"Starting server\n"])
        containers.stream_logs.return_value = stream
        detector = make_detector(containers, idle_timeout=0.2)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            detector.wait_until_ready("abc123def4567890")

        assert exc_info.value.container_ref == "abc123def4567890"
        assert "Timed out" in str(exc_info.value)
        assert stream.closed.is_set()

    def test_idle_gap_counts_not_total(self, containers, log_stream):
        """A gap longer than the window fails even after earlier output."""
        containers.stream_logs.return_value = log_stream(
            [b"line 1\n", b"line 2\n"], delay=0.05
        )
        detector = make_detector(containers, idle_timeout=0.2)

        with pytest.raises(ReadinessTimeoutError):
            detector.wait_until_ready("abc123")

    def test_stream_error_short_circuits(self, containers, log_stream):
        containers.stream_logs.return_value = log_stream(
            [b"Starting\n"], error=ConnectionError("container removed")
        )
        detector = make_detector(containers, idle_timeout=5.0)

        started = time.monotonic()
        with pytest.raises(StreamError) as exc_info:
            detector.wait_until_ready("abc123")

        assert "container removed" in str(exc_info.value)
        assert time.monotonic() - started < 2.0

    def test_stream_end_before_ready(self, containers, log_stream):
        """A container that exits ends the stream and fails the watch."""
        containers.stream_logs.return_value = log_stream([b"Crashed\n"], end=True)
        detector = make_detector(containers, idle_timeout=5.0)

        with pytest.raises(StreamError):
            detector.wait_until_ready("abc123")

    def test_empty_sentinel_rejected(self, containers):
        with pytest.raises(ValueError):
            ReadinessDetector(containers, sentinel="")
