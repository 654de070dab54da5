"""
Resilience Test Suite
=====================

Tests for the circuit breaker, retry helpers and periodic tasks.

Author: jetgause
Created: 2025-12-14
"""

import threading
from unittest.mock import MagicMock

import pytest

from editshield_core.exceptions import CircuitOpenError, TransportError
from editshield_core.resilience import (
    CircuitBreaker,
    CircuitState,
    backoff_delay,
    retry_with_backoff,
)
from editshield_core.scheduler import PeriodicTask


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def failing():
    raise TransportError("down")


# ============================================================================
# CIRCUIT BREAKER TESTS
# ============================================================================

class TestCircuitBreaker:
    """Test closed, open and half-open transitions."""

    def test_opens_after_threshold(self):
        """Consecutive failures open the circuit."""
        breaker = CircuitBreaker(failure_threshold=3, timeout=60, clock=FakeClock())
        for _ in range(2):
            with pytest.raises(TransportError):
                breaker.call(failing)
            assert breaker.state == CircuitState.CLOSED
        with pytest.raises(TransportError):
            breaker.call(failing)
        assert breaker.state == CircuitState.OPEN

    def test_open_circuit_fails_fast(self):
        """Calls are rejected without invoking the function."""
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, timeout=60, clock=clock)
        with pytest.raises(TransportError):
            breaker.call(failing)

        func = MagicMock()
        clock.advance(10)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(func)
        func.assert_not_called()
        assert exc_info.value.retry_after == pytest.approx(50)

    def test_half_open_success_closes(self):
        """A successful trial call after the cooldown closes the circuit."""
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, timeout=60, clock=clock)
        with pytest.raises(TransportError):
            breaker.call(failing)

        clock.advance(60)
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_state()["failures"] == 0

    def test_half_open_failure_reopens(self):
        """A failed trial call re-opens the circuit immediately."""
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=2, timeout=60, clock=clock)
        for _ in range(2):
            with pytest.raises(TransportError):
                breaker.call(failing)

        clock.advance(61)
        with pytest.raises(TransportError):
            breaker.call(failing)
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: "ok")

    def test_success_resets_failure_count(self):
        """Failures must be consecutive to open the circuit."""
        breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
        with pytest.raises(TransportError):
            breaker.call(failing)
        breaker.call(lambda: None)
        with pytest.raises(TransportError):
            breaker.call(failing)
        assert breaker.state == CircuitState.CLOSED

    def test_reset(self):
        """Reset closes the circuit."""
        breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())
        with pytest.raises(TransportError):
            breaker.call(failing)
        breaker.reset()
        assert breaker.get_state() == {"state": "closed", "failures": 0, "last_failure_time": None}


# ============================================================================
# RETRY TESTS
# ============================================================================

class TestRetry:
    """Test exponential backoff retry."""

    def test_succeeds_after_retries(self):
        """Transient failures are retried until success."""
        func = MagicMock(side_effect=[TransportError("a"), TransportError("b"), "done"])
        sleeps = []
        assert retry_with_backoff(func, max_retries=3, sleep=sleeps.append) == "done"
        assert func.call_count == 3
        assert len(sleeps) == 2

    def test_gives_up_after_max_retries(self):
        """The last error is re-raised once retries are exhausted."""
        func = MagicMock(side_effect=TransportError("down"))
        sleeps = []
        with pytest.raises(TransportError):
            retry_with_backoff(func, max_retries=2, sleep=sleeps.append)
        assert func.call_count == 3
        assert len(sleeps) == 2

    def test_other_errors_are_not_retried(self):
        """Only listed exception types are retried."""
        func = MagicMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            retry_with_backoff(func, max_retries=3, sleep=lambda s: None)
        assert func.call_count == 1

    def test_custom_retry_on(self):
        """retry_on selects which errors are retried."""
        func = MagicMock(side_effect=[ConnectionError(), "ok"])
        result = retry_with_backoff(func, retry_on=(ConnectionError,), sleep=lambda s: None)
        assert result == "ok"

    @pytest.mark.parametrize("attempt,low,high", [
        (0, 1.0, 1.1),
        (1, 2.0, 2.2),
        (2, 4.0, 4.4),
        (5, 10.0, 11.0),
    ])
    def test_backoff_delay_bounds(self, attempt, low, high):
        """Delays double, cap at the maximum and add at most 10% jitter."""
        for _ in range(20):
            delay = backoff_delay(attempt, base_delay=1.0, max_delay=10.0)
            assert low <= delay <= high


# ============================================================================
# PERIODIC TASK TESTS
# ============================================================================

class TestPeriodicTask:
    """Test the cancelable timer used for rotation and flushing."""

    def test_runs_until_cancelled(self):
        """The function runs repeatedly and stops on cancel."""
        called = threading.Event()
        task = PeriodicTask(0.01, called.set, name="test-task")
        task.start()
        assert called.wait(timeout=5)
        assert task.running

        task.cancel()
        assert not task.running

    def test_errors_do_not_stop_the_task(self):
        """A failing run is logged and the next run still happens."""
        calls = []
        done = threading.Event()

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")
            done.set()

        task = PeriodicTask(0.01, flaky)
        task.start()
        assert done.wait(timeout=5)
        task.cancel()

    def test_interval_must_be_positive(self):
        """Zero intervals are rejected."""
        with pytest.raises(ValueError):
            PeriodicTask(0, lambda: None)
