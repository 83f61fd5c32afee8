"""
Circuit Breaker Implementation for External Service Dependencies

Protects against cascading failures by opening circuits when the error ratio
over a rolling window (or a run of consecutive failures) crosses the configured
threshold, and automatically attempting recovery after a timeout period.

Services protected (one independent breaker each):
- Registry (policy and insured lookups)
- Issuer (certificate production, status, cancel/suspend, download)
"""

import collections
import concurrent.futures
import logging
import smtplib
import threading
import time
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional

import pybreaker

from app.config import settings
from app.exceptions import CircuitOpenError, UpstreamTimeout

logger = logging.getLogger(__name__)

REGISTRY = "registry"
ISSUER = "issuer"


class CircuitBreakerEmailListener(pybreaker.CircuitBreakerListener):
    """
    Email notification listener for circuit breaker state changes.

    Sends alert emails when a circuit breaker opens, indicating that
    an external system is experiencing failures and has been isolated.
    """

    def __init__(self, admin_email: Optional[str]):
        """
        Initialize the email listener.

        Args:
            admin_email: Email address to receive circuit breaker alerts
        """
        self.admin_email = admin_email

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state):
        """
        Handle circuit breaker state changes.

        Args:
            cb: The circuit breaker instance
            old_state: Previous state
            new_state: New state
        """
        old_name = old_state.name if old_state else None
        logger.warning(
            f"Circuit breaker state change: {cb.name} transitioned from {old_name} to {new_state.name}",
            extra={
                "circuit_breaker": cb.name,
                "old_state": old_name,
                "new_state": new_state.name,
                "fail_count": cb.fail_counter
            }
        )

        if new_state.name == pybreaker.STATE_OPEN:
            self._send_alert_email(cb)

    def _send_alert_email(self, cb: pybreaker.CircuitBreaker):
        """
        Send email alert for opened circuit breaker.

        Args:
            cb: The circuit breaker that opened
        """
        try:
            # Skip email if SMTP not configured
            if not settings.smtp_host or not self.admin_email:
                logger.warning(
                    f"Cannot send circuit breaker alert: SMTP not configured (circuit: {cb.name})"
                )
                return

            subject = f"ALERT: Circuit Breaker Opened - {cb.name}"
            body = f"""
CIRCUIT BREAKER ALERT

External system: {cb.name}
Status: OPEN (certificate calls to this system now fail fast)
Consecutive Failures: {cb.fail_counter}
Reset Timeout: {cb.reset_timeout} seconds

Certificate issuance depending on {cb.name} is paused. Requests fail with
CIRCUIT_OPEN until a trial call succeeds after {cb.reset_timeout} seconds.

Environment: {settings.environment}
            """.strip()

            msg = MIMEMultipart()
            msg["From"] = settings.smtp_username or settings.admin_email
            msg["To"] = self.admin_email
            msg["Subject"] = subject
            msg.attach(MIMEText(body, "plain"))

            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
                if settings.smtp_username and settings.smtp_password:
                    server.starttls()
                    server.login(settings.smtp_username, settings.smtp_password)
                server.send_message(msg)

            logger.info(
                f"Circuit breaker alert email sent to {self.admin_email}",
                extra={"circuit_breaker": cb.name, "recipient": self.admin_email}
            )

        except Exception as e:
            # Alerting must never change the outcome of the guarded call
            logger.error(
                f"Failed to send circuit breaker alert email: {e}",
                extra={"circuit_breaker": cb.name, "error": str(e)},
                exc_info=True
            )


class ErrorRateListener(pybreaker.CircuitBreakerListener):
    """
    Opens the breaker when the failure percentage over a rolling window
    reaches the threshold.

    Outcomes are shared by every concurrent caller of one external system,
    so the window is guarded by its own lock.
    """

    def __init__(self, threshold_percentage: int, window_seconds: float, volume_threshold: int, clock=time.monotonic):
        self.threshold_percentage = threshold_percentage
        self.window_seconds = window_seconds
        self.volume_threshold = volume_threshold
        self._clock = clock
        self._outcomes = collections.deque()
        self._lock = threading.Lock()

    def success(self, cb):
        self._record(True)

    def failure(self, cb, exc):
        error_percentage, volume = self._record(False)
        if (
            cb.current_state == pybreaker.STATE_CLOSED
            and volume >= self.volume_threshold
            and error_percentage >= self.threshold_percentage
        ):
            logger.warning(
                f"Error rate {error_percentage:.0f}% over {volume} calls reached threshold for {cb.name}",
                extra={"circuit_breaker": cb.name, "error_percentage": error_percentage, "volume": volume}
            )
            cb.open()

    def state_change(self, cb, old_state, new_state):
        # A fresh closed period starts with an empty window
        if new_state.name == pybreaker.STATE_CLOSED:
            with self._lock:
                self._outcomes.clear()

    def snapshot(self):
        """Return (error_percentage, volume) for the current window."""
        with self._lock:
            self._evict(self._clock())
            return self._stats()

    def _record(self, ok: bool):
        with self._lock:
            now = self._clock()
            self._outcomes.append((now, ok))
            self._evict(now)
            return self._stats()

    def _evict(self, now: float):
        horizon = now - self.window_seconds
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _stats(self):
        volume = len(self._outcomes)
        if volume == 0:
            return 0.0, 0
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures * 100.0 / volume, volume


class _OpenedAtListener(pybreaker.CircuitBreakerListener):
    """Tracks when the breaker last opened, for fail-fast checks."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self.opened_at: Optional[float] = None

    def state_change(self, cb, old_state, new_state):
        if new_state.name == pybreaker.STATE_OPEN:
            self.opened_at = self._clock()
        elif new_state.name == pybreaker.STATE_CLOSED:
            self.opened_at = None


class ExternalServiceBreaker:
    """
    Timeout + error-ratio circuit breaker scoped to one external system.

    States follow pybreaker: closed (calls pass, failures counted), open
    (calls fail with CircuitOpenError without invoking the function),
    half-open (one trial call after reset_timeout; success closes,
    failure reopens).

    Calls run on a bounded worker pool so a slow system cannot take every
    request thread. A call that exceeds the timeout counts as a failure and
    raises UpstreamTimeout; the worker finishes in the background.
    """

    def __init__(
        self,
        name: str,
        timeout: Optional[float] = None,
        error_threshold_percentage: Optional[int] = None,
        rolling_window: Optional[float] = None,
        volume_threshold: Optional[int] = None,
        fail_max: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
        exclude: Optional[list] = None,
        listeners: Optional[list] = None,
    ):
        self.name = name
        self.timeout = timeout if timeout is not None else settings.circuit_breaker_timeout
        self.reset_timeout = reset_timeout if reset_timeout is not None else settings.circuit_breaker_reset_timeout

        self.error_rate = ErrorRateListener(
            threshold_percentage=(
                error_threshold_percentage if error_threshold_percentage is not None
                else settings.circuit_breaker_error_threshold_percentage
            ),
            window_seconds=rolling_window if rolling_window is not None else settings.circuit_breaker_rolling_window,
            volume_threshold=volume_threshold if volume_threshold is not None else settings.circuit_breaker_volume_threshold,
        )
        self._opened = _OpenedAtListener()

        self.breaker = pybreaker.CircuitBreaker(
            name=name,
            fail_max=fail_max if fail_max is not None else settings.circuit_breaker_fail_max,
            reset_timeout=self.reset_timeout,
            exclude=exclude or [],
            listeners=[self.error_rate, self._opened] + (listeners or []),
        )
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers or settings.circuit_breaker_max_workers,
            thread_name_prefix=f"{name}-call",
        )
        # Guards admission and outcome recording, never held while func runs
        self._lock = threading.Lock()
        self._trial_in_flight = False

    @property
    def current_state(self) -> str:
        return self.breaker.current_state

    def is_open(self) -> bool:
        """
        True while the breaker is open and the reset timeout has not elapsed,
        i.e. a call made now would fail fast.
        """
        if self.breaker.current_state != pybreaker.STATE_OPEN:
            return False
        opened_at = self._opened.opened_at
        if opened_at is None:
            return True
        return (time.monotonic() - opened_at) < self.reset_timeout

    def call(self, func, *args, **kwargs):
        """
        Call func through the breaker.

        The breaker state is only consulted before func runs and updated after
        it returns, so concurrent calls to the same system proceed in parallel
        up to max_workers. While half-open a single trial call is admitted.

        Raises:
            CircuitOpenError: Breaker open, func was not invoked
            UpstreamTimeout: func did not return within the timeout
            Exception: Whatever func raised
        """
        trial = self._admit()
        try:
            try:
                result, error = self._run_with_timeout(func, *args, **kwargs), None
            except Exception as e:
                result, error = None, e
            return self._settle(result, error, trial)
        finally:
            if trial:
                with self._lock:
                    self._trial_in_flight = False

    def _admit(self) -> bool:
        """Reject the call while open; returns True when it is the half-open trial."""
        with self._lock:
            state = self.breaker.current_state
            if state == pybreaker.STATE_CLOSED:
                return False
            if self.is_open() or self._trial_in_flight:
                logger.warning(
                    f"Call to {self.name} rejected: circuit {state}",
                    extra={"circuit_breaker": self.name}
                )
                raise CircuitOpenError(self.name)
            if state == pybreaker.STATE_OPEN:
                self.breaker.half_open()
            self._trial_in_flight = True
            return True

    def _settle(self, result, error, trial: bool):
        """Feed the outcome of a finished call into pybreaker's state handlers."""
        with self._lock:
            if not trial and self.breaker.current_state != pybreaker.STATE_CLOSED:
                # Another call opened the breaker while this one was in flight
                if error is not None:
                    raise error
                return result
            try:
                return self.breaker.call(_replay, result, error)
            except pybreaker.CircuitBreakerError as e:
                logger.warning(
                    f"Circuit for {self.name} opened by failed call",
                    extra={"circuit_breaker": self.name}
                )
                raise CircuitOpenError(self.name) from e

    def _run_with_timeout(self, func, *args, **kwargs):
        future = self._executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise UpstreamTimeout(self.name, self.timeout) from e

    def reset(self):
        """Force the breaker closed (operational override and tests)."""
        with self._lock:
            self.breaker.close()
            self._trial_in_flight = False

    def shutdown(self):
        self._executor.shutdown(wait=False)


def _replay(result, error):
    if error is not None:
        raise error
    return result


def _default_exclusions(service_name: str) -> list:
    # Business answers from a healthy upstream must not trip the breaker
    from app.exceptions import IssuerRejected, RegistryNotFound

    if service_name == REGISTRY:
        return [RegistryNotFound]
    if service_name == ISSUER:
        return [IssuerRejected]
    return []


def _create_breaker(name: str, listener: CircuitBreakerEmailListener) -> ExternalServiceBreaker:
    """
    Create a circuit breaker with configured thresholds.

    Args:
        name: External system name
        listener: Email notification listener

    Returns:
        Configured ExternalServiceBreaker instance
    """
    return ExternalServiceBreaker(
        name=name,
        exclude=_default_exclusions(name),
        listeners=[listener],
    )


# Module-level instances (lazy initialization)
_email_listener: Optional[CircuitBreakerEmailListener] = None
_breakers = {}
_breakers_lock = threading.Lock()


def get_breaker(service_name: str) -> ExternalServiceBreaker:
    """
    Get circuit breaker for a specific external system.

    Lazy initializes breakers on first access to avoid import-time side effects.

    Args:
        service_name: "registry" or "issuer"

    Returns:
        Circuit breaker instance for the system

    Raises:
        ValueError: If service_name is not recognized
    """
    global _email_listener

    if service_name not in (REGISTRY, ISSUER):
        raise ValueError(f"Unknown service name: {service_name}. Must be '{REGISTRY}' or '{ISSUER}'")

    with _breakers_lock:
        if _email_listener is None:
            admin_email = settings.circuit_breaker_alert_email or settings.admin_email
            if not admin_email:
                logger.warning("Circuit breaker email alerts disabled: no admin email configured")
            _email_listener = CircuitBreakerEmailListener(admin_email)

        if service_name not in _breakers:
            _breakers[service_name] = _create_breaker(service_name, _email_listener)
            logger.info(f"Initialized {service_name} circuit breaker")
        return _breakers[service_name]


def get_registry_breaker() -> ExternalServiceBreaker:
    return get_breaker(REGISTRY)


def get_issuer_breaker() -> ExternalServiceBreaker:
    return get_breaker(ISSUER)


__all__ = [
    "REGISTRY",
    "ISSUER",
    "CircuitBreakerEmailListener",
    "ErrorRateListener",
    "ExternalServiceBreaker",
    "get_breaker",
    "get_registry_breaker",
    "get_issuer_breaker",
]
