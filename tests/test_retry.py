"""Tests for retry utilities"""
import pytest

from scan_engine.errors import ScanEngineError, SideEffectUnavailableError, TransientStoreError
from scan_engine.retry import convert_http_error, exponential_backoff


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestExponentialBackoff:
    """Tests for the backoff decorator"""

    async def test_retries_then_succeeds(self):
        """Test retryable errors are retried with growing delays"""
        sleep = SleepRecorder()
        calls = []

        @exponential_backoff(max_retries=3, base_delay=1.0, jitter=False, sleep=sleep)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientStoreError("connection lost")
            return "ok"

        assert await flaky() == "ok"
        assert sleep.delays == [1.0, 2.0]

    async def test_delay_capped(self):
        """Test delays never exceed max_delay"""
        sleep = SleepRecorder()

        @exponential_backoff(max_retries=4, base_delay=1.0, max_delay=3.0, jitter=False, sleep=sleep)
        async def always_fails():
            raise TransientStoreError("down")

        with pytest.raises(TransientStoreError):
            await always_fails()
        assert sleep.delays == [1.0, 2.0, 3.0, 3.0]

    async def test_non_retryable_raised_immediately(self):
        """Test other exceptions are not retried"""
        sleep = SleepRecorder()

        @exponential_backoff(max_retries=3, sleep=sleep)
        async def broken():
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await broken()
        assert sleep.delays == []


class TestConvertHttpError:
    """Tests for HTTP status mapping"""

    @pytest.mark.parametrize("status", [408, 429, 500, 503])
    def test_retryable_statuses(self, status):
        """Test timeouts, throttling and server errors are retryable"""
        error = convert_http_error(status, "unavailable")
        assert isinstance(error, SideEffectUnavailableError)
        assert error.retryable

    def test_client_error(self):
        """Test other client errors are permanent"""
        error = convert_http_error(404, "missing")
        assert type(error) is ScanEngineError
        assert not error.retryable
