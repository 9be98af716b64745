"""
Tests for CircuitBreaker state transitions.
"""

import asyncio

import pytest

from fitsync.features.strava import CircuitBreaker, CircuitOpenError, CircuitState
from fitsync.features.strava.circuit_breaker import get_breaker


class Answered(Exception):
    pass


class Boom(Exception):
    pass


class Calls:
    """Async callable that fails while `failing` is set."""

    def __init__(self):
        self.count = 0
        self.failing = True
        self.error = Boom

    async def __call__(self):
        self.count += 1
        if self.failing:
            raise self.error("provider down")
        return "ok"


def _run(breaker, fn):
    return asyncio.run(breaker.execute(fn))


def _fail_times(breaker, fn, times):
    for _ in range(times):
        with pytest.raises(Boom):
            _run(breaker, fn)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        "test-breaker",
        failure_threshold=3,
        recovery_timeout=60.0,
        min_calls=100,
        ignored_exceptions=(Answered,),
        clock=clock,
    )


# =============================================================================
# Test Opening
# =============================================================================

class TestOpening:
    """CLOSED -> OPEN."""

    def test_opens_after_consecutive_failures(self, breaker):
        fn = Calls()
        _fail_times(breaker, fn, 3)
        assert breaker.state == CircuitState.OPEN

    def test_open_short_circuits_without_calling(self, breaker):
        fn = Calls()
        _fail_times(breaker, fn, 3)

        with pytest.raises(CircuitOpenError) as exc_info:
            _run(breaker, fn)

        assert fn.count == 3
        assert exc_info.value.retry_after_seconds == 60
        assert exc_info.value.last_failure["error"] == "Boom"
        assert breaker.short_circuited == 1

    def test_success_resets_consecutive_count(self, breaker):
        fn = Calls()
        _fail_times(breaker, fn, 2)
        fn.failing = False
        _run(breaker, fn)
        fn.failing = True
        _fail_times(breaker, fn, 2)
        assert breaker.state == CircuitState.CLOSED

    def test_ignored_exceptions_do_not_trip(self, breaker):
        fn = Calls()
        fn.error = Answered
        for _ in range(5):
            with pytest.raises(Answered):
                _run(breaker, fn)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_opens_on_error_rate(self, clock):
        breaker = CircuitBreaker(
            "test-error-rate",
            failure_threshold=100,
            error_rate_threshold=0.5,
            window_size=4,
            min_calls=4,
            clock=clock,
        )
        fn = Calls()
        for failing in (False, True, False):
            fn.failing = failing
            try:
                _run(breaker, fn)
            except Boom:
                pass
        assert breaker.state == CircuitState.CLOSED

        fn.failing = True
        with pytest.raises(Boom):
            _run(breaker, fn)
        assert breaker.state == CircuitState.OPEN


# =============================================================================
# Test Recovery
# =============================================================================

class TestRecovery:
    """OPEN -> HALF_OPEN -> CLOSED | OPEN."""

    def test_trial_success_closes(self, breaker, clock):
        fn = Calls()
        _fail_times(breaker, fn, 3)
        assert not breaker.is_available()

        clock.advance(61)
        assert breaker.is_available()
        fn.failing = False
        assert _run(breaker, fn) == "ok"
        assert breaker.state == CircuitState.CLOSED

    def test_trial_failure_reopens(self, breaker, clock):
        fn = Calls()
        _fail_times(breaker, fn, 3)

        clock.advance(61)
        _fail_times(breaker, fn, 1)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            _run(breaker, fn)
        assert fn.count == 4

    def test_single_trial_in_half_open(self, breaker, clock):
        fn = Calls()
        _fail_times(breaker, fn, 3)
        clock.advance(61)

        async def scenario():
            gate = asyncio.Event()

            async def slow_trial():
                await gate.wait()
                return "ok"

            trial = asyncio.create_task(breaker.execute(slow_trial))
            await asyncio.sleep(0)
            with pytest.raises(CircuitOpenError):
                await breaker.execute(fn)
            gate.set()
            return await trial

        assert asyncio.run(scenario()) == "ok"
        assert breaker.state == CircuitState.CLOSED


# =============================================================================
# Test Diagnostics
# =============================================================================

class TestDiagnostics:
    """Status snapshot and registry."""

    def test_status_records_transitions(self, breaker, clock):
        fn = Calls()
        _fail_times(breaker, fn, 3)
        clock.advance(61)
        fn.failing = False
        _run(breaker, fn)

        status = breaker.get_status()
        assert status["state"] == "CLOSED"
        assert [(t["from"], t["to"]) for t in status["transitions"]] == [
            ("CLOSED", "OPEN"),
            ("OPEN", "HALF_OPEN"),
            ("HALF_OPEN", "CLOSED"),
        ]

    def test_registry(self, breaker):
        assert get_breaker("test-breaker") is breaker

    def test_reset(self, breaker):
        _fail_times(breaker, Calls(), 3)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_available()
