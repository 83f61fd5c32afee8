"""
Tests for ExternalServiceBreaker

Tests cover:
- Closed -> open after consecutive failures
- Error-rate tripping over the rolling window
- Open breaker fails fast without calling the function
- Half-open trial call (success closes, failure reopens)
- Timeouts count as failures
- Concurrent calls are not serialized by the breaker
- Excluded business errors never trip the breaker
- Registry and issuer breakers are independent
"""

import threading
import time
import pytest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock, patch

import pybreaker

from app.exceptions import CircuitOpenError, IssuerRejected, IssuerUnavailable, UpstreamTimeout
from app.services.monitoring import circuit_breakers
from app.services.monitoring.circuit_breakers import ErrorRateListener, ExternalServiceBreaker


def _breaker(**overrides):
    options = dict(
        name="issuer",
        timeout=1.0,
        fail_max=3,
        reset_timeout=60,
        volume_threshold=1000,
        max_workers=2,
        exclude=[IssuerRejected],
    )
    options.update(overrides)
    return ExternalServiceBreaker(**options)


def _failing():
    raise IssuerUnavailable("connection refused")


class TestClosedToOpen:

    def test_successful_call_returns_value(self):
        breaker = _breaker()

        assert breaker.call(lambda x: x * 2, 21) == 42
        assert breaker.current_state == pybreaker.STATE_CLOSED

    def test_opens_after_consecutive_failures(self):
        breaker = _breaker(fail_max=3)

        for _ in range(2):
            with pytest.raises(IssuerUnavailable):
                breaker.call(_failing)
        # The tripping failure is reported as the breaker opening
        with pytest.raises(CircuitOpenError):
            breaker.call(_failing)

        assert breaker.current_state == pybreaker.STATE_OPEN
        assert breaker.is_open() is True

    def test_open_breaker_does_not_invoke_function(self):
        breaker = _breaker(fail_max=1)
        with pytest.raises(CircuitOpenError):
            breaker.call(_failing)

        func = Mock(return_value="ok")
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(func)

        func.assert_not_called()
        assert exc_info.value.retryable is True
        assert exc_info.value.details == {"service": "issuer"}

    def test_excluded_errors_do_not_trip(self):
        breaker = _breaker(fail_max=2)

        def reject():
            raise IssuerRejected(-36)

        for _ in range(5):
            with pytest.raises(IssuerRejected):
                breaker.call(reject)

        assert breaker.current_state == pybreaker.STATE_CLOSED


class TestErrorRate:

    def test_opens_when_error_percentage_reached(self):
        breaker = _breaker(fail_max=100, volume_threshold=4, error_threshold_percentage=50)

        breaker.call(lambda: "ok")
        breaker.call(lambda: "ok")
        with pytest.raises(IssuerUnavailable):
            breaker.call(_failing)
        assert breaker.current_state == pybreaker.STATE_CLOSED

        with pytest.raises(IssuerUnavailable):
            breaker.call(_failing)

        assert breaker.current_state == pybreaker.STATE_OPEN

    def test_below_volume_threshold_never_opens(self):
        breaker = _breaker(fail_max=100, volume_threshold=10, error_threshold_percentage=50)

        for _ in range(5):
            with pytest.raises(IssuerUnavailable):
                breaker.call(_failing)

        assert breaker.current_state == pybreaker.STATE_CLOSED

    def test_old_outcomes_leave_the_window(self):
        now = [100.0]
        listener = ErrorRateListener(threshold_percentage=50, window_seconds=10, volume_threshold=1, clock=lambda: now[0])
        cb = Mock(current_state=pybreaker.STATE_CLOSED)
        cb.name = "issuer"

        listener.success(cb)
        now[0] = 105.0
        listener.success(cb)
        assert listener.snapshot() == (0.0, 2)

        now[0] = 112.0
        assert listener.snapshot() == (0.0, 1)


class TestHalfOpen:

    def test_trial_success_closes(self):
        breaker = _breaker(fail_max=1, reset_timeout=0.1)
        with pytest.raises(CircuitOpenError):
            breaker.call(_failing)

        time.sleep(0.2)
        assert breaker.is_open() is False

        assert breaker.call(lambda: "recovered") == "recovered"
        assert breaker.current_state == pybreaker.STATE_CLOSED

    def test_trial_failure_reopens(self):
        breaker = _breaker(fail_max=1, reset_timeout=0.1)
        with pytest.raises(CircuitOpenError):
            breaker.call(_failing)

        time.sleep(0.2)
        trial = Mock(side_effect=IssuerUnavailable("still down"))
        with pytest.raises(CircuitOpenError):
            breaker.call(trial)

        assert trial.call_count == 1
        assert breaker.current_state == pybreaker.STATE_OPEN


class TestTimeout:

    def test_slow_call_raises_upstream_timeout(self):
        breaker = _breaker(timeout=0.05)

        with pytest.raises(UpstreamTimeout) as exc_info:
            breaker.call(time.sleep, 0.3)

        assert exc_info.value.code == "UPSTREAM_TIMEOUT"
        assert breaker.breaker.fail_counter == 1

    def test_repeated_timeouts_open_breaker(self):
        breaker = _breaker(timeout=0.05, fail_max=2)

        with pytest.raises(UpstreamTimeout):
            breaker.call(time.sleep, 0.3)
        with pytest.raises(CircuitOpenError):
            breaker.call(time.sleep, 0.3)

        func = Mock()
        with pytest.raises(CircuitOpenError):
            breaker.call(func)
        func.assert_not_called()



class TestConcurrency:

    def test_slow_calls_run_in_parallel(self):
        breaker = _breaker(timeout=2.0, max_workers=4)

        def slow(value):
            time.sleep(0.5)
            return value

        started = time.monotonic()
        with ThreadPoolExecutor(max_workers=4) as callers:
            results = list(callers.map(lambda i: breaker.call(slow, i), range(4)))
        elapsed = time.monotonic() - started

        assert results == [0, 1, 2, 3]
        assert elapsed < 1.0
        breaker.shutdown()

    def test_half_open_admits_a_single_trial(self):
        breaker = _breaker(fail_max=1, reset_timeout=0.1)
        with pytest.raises(CircuitOpenError):
            breaker.call(_failing)
        time.sleep(0.2)

        release = threading.Event()
        entered = threading.Event()

        def trial():
            entered.set()
            release.wait(1.0)
            return "recovered"

        with ThreadPoolExecutor(max_workers=1) as caller:
            pending = caller.submit(breaker.call, trial)
            assert entered.wait(1.0)

            second = Mock(return_value="ok")
            with pytest.raises(CircuitOpenError):
                breaker.call(second)
            second.assert_not_called()

            release.set()
            assert pending.result(timeout=1.0) == "recovered"

        assert breaker.current_state == pybreaker.STATE_CLOSED

    def test_success_in_flight_when_breaker_opens_is_returned(self):
        breaker = _breaker(fail_max=1)
        release = threading.Event()
        entered = threading.Event()

        def slow_success():
            entered.set()
            release.wait(1.0)
            return "produced"

        with ThreadPoolExecutor(max_workers=1) as caller:
            pending = caller.submit(breaker.call, slow_success)
            assert entered.wait(1.0)
            with pytest.raises(CircuitOpenError):
                breaker.call(_failing)
            release.set()

            assert pending.result(timeout=1.0) == "produced"
        assert breaker.current_state == pybreaker.STATE_OPEN


class TestBreakerRegistry:

    @pytest.fixture(autouse=True)
    def fresh_breakers(self):
        with patch.object(circuit_breakers, "_breakers", {}), \
                patch.object(circuit_breakers, "_email_listener", None):
            yield

    def test_registry_and_issuer_are_independent(self):
        registry = circuit_breakers.get_registry_breaker()
        issuer = circuit_breakers.get_issuer_breaker()

        assert registry is not issuer
        registry.breaker.open()

        assert registry.is_open() is True
        assert issuer.is_open() is False

    def test_same_instance_returned(self):
        assert circuit_breakers.get_breaker("issuer") is circuit_breakers.get_breaker("issuer")

    def test_unknown_service_rejected(self):
        with pytest.raises(ValueError):
            circuit_breakers.get_breaker("mongodb")

    def test_default_exclusions(self):
        from app.exceptions import RegistryNotFound

        registry = circuit_breakers.get_registry_breaker()

        def not_found():
            raise RegistryNotFound("Policy P404 not found in the registry")

        for _ in range(10):
            with pytest.raises(RegistryNotFound):
                registry.call(not_found)
        assert registry.current_state == pybreaker.STATE_CLOSED


class TestEmailListener:

    def test_open_without_smtp_does_not_send(self):
        listener = circuit_breakers.CircuitBreakerEmailListener("ops@example.ci")
        cb = Mock(fail_counter=5, reset_timeout=30)
        cb.name = "issuer"
        old_state = Mock()
        old_state.name = pybreaker.STATE_CLOSED
        new_state = Mock()
        new_state.name = pybreaker.STATE_OPEN

        with patch.object(circuit_breakers.settings, "smtp_host", None), \
                patch("app.services.monitoring.circuit_breakers.smtplib.SMTP") as smtp:
            listener.state_change(cb, old_state, new_state)

        smtp.assert_not_called()
