"""Tests for telemetry hook helpers."""

from unittest.mock import Mock

from toolloop.telemetry import (
    TelemetryHooks,
    call_telemetry,
    combine_hooks,
    safe_response_headers,
)


class TestSafeResponseHeaders:
    """Tests for safe_response_headers."""

    def test_drops_sensitive_headers(self):
        """Test cookies and credentials are removed case-insensitively."""
        headers = {
            "Content-Type": "application/json",
            "Set-Cookie": "session=1",
            "Authorization": "Bearer x",
            "X-Request-Id": "r1",
        }
        assert safe_response_headers(headers) == {
            "content-type": "application/json",
            "x-request-id": "r1",
        }

    def test_empty(self):
        """Test missing headers give an empty dict."""
        assert safe_response_headers(None) == {}


class TestCallTelemetry:
    """Tests for call_telemetry."""

    def test_calls_hook(self):
        """Test the named hook receives the event."""
        hook = Mock()
        call_telemetry(TelemetryHooks(on_stream_chunk=hook), "on_stream_chunk", 3)
        hook.assert_called_once_with(3)

    def test_missing_hooks_are_no_ops(self):
        """Test None hook sets and unset hooks do nothing."""
        call_telemetry(None, "on_stream_chunk", 1)
        call_telemetry(TelemetryHooks(), "on_stream_chunk", 1)

    def test_exceptions_swallowed(self):
        """Test a raising hook does not propagate."""
        hook = Mock(side_effect=RuntimeError("sink down"))
        call_telemetry(TelemetryHooks(on_stream_chunk=hook), "on_stream_chunk", 1)
        hook.assert_called_once()


class TestCombineHooks:
    """Tests for combine_hooks."""

    def test_none_when_empty(self):
        """Test no hook sets combine to None."""
        assert combine_hooks(None, None) is None

    def test_single_set_returned_as_is(self):
        """Test a single hook set is not wrapped."""
        hooks = TelemetryHooks()
        assert combine_hooks(None, hooks) is hooks

    def test_fan_out_in_order(self):
        """Test every sink sees the event, even after one fails."""
        seen = []
        failing = TelemetryHooks(on_stream_chunk=Mock(side_effect=RuntimeError("boom")))
        recording = TelemetryHooks(on_stream_chunk=seen.append)

        combined = combine_hooks(failing, recording)
        call_telemetry(combined, "on_stream_chunk", 7)

        assert seen == [7]
        failing.on_stream_chunk.assert_called_once_with(7)

    def test_unset_hooks_stay_unset(self):
        """Test hooks no sink defines remain None."""
        combined = combine_hooks(
            TelemetryHooks(on_stream_chunk=Mock()), TelemetryHooks(on_stream_chunk=Mock())
        )
        assert combined.on_tool_call_end is None
