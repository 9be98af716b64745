"""
Circuit breaker for provider calls.

States:
- CLOSED: calls pass through, failures counted
- OPEN: calls short-circuit with CircuitOpenError, provider not called
- HALF_OPEN: after recovery_timeout a single trial call is admitted;
  success closes the circuit, failure re-opens it

CLOSED -> OPEN after `failure_threshold` consecutive failures, or when
the failure rate over the last `window_size` calls reaches
`error_rate_threshold` (once at least `min_calls` were made).

State is per process. Each invocation is short-lived, so a cold process
starts CLOSED; the provider's own 429/5xx answers trip it again quickly.
"""

import logging
import math
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# name -> breaker, for diagnostics
_registry: dict[str, "CircuitBreaker"] = {}


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Call short-circuited: the dependency is considered down."""

    code = "circuit_open"
    retryable = True

    def __init__(
        self,
        name: str,
        retry_after_seconds: int,
        last_failure: Optional[dict] = None,
    ):
        super().__init__(
            f"Circuit breaker {name} is OPEN, retry in {retry_after_seconds}s"
        )
        self.name = name
        self.retry_after_seconds = retry_after_seconds
        self.last_failure = last_failure


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class CircuitBreaker:
    """
    Async circuit breaker.

    Usage:
        breaker = CircuitBreaker("strava-api", failure_threshold=5)
        data = await breaker.execute(client.get, url)

    Exceptions in `ignored_exceptions` mean the dependency answered
    (e.g. 401, 429); they propagate but count as a success.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        error_rate_threshold: float = 0.5,
        window_size: int = 20,
        min_calls: int = 10,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        history_size: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.error_rate_threshold = error_rate_threshold
        self.min_calls = min_calls
        self.ignored_exceptions = ignored_exceptions
        self.clock = clock

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.next_attempt: Optional[float] = None
        self.last_failure: Optional[dict] = None
        self.last_success: Optional[float] = None
        self.total_calls = 0
        self.short_circuited = 0

        self._window: deque[bool] = deque(maxlen=window_size)  # True = failure
        self._history: deque[dict] = deque(maxlen=history_size)
        self._trial_in_flight = False

        _registry[name] = self

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        self._history.append({
            "from": old_state.value,
            "to": new_state.value,
            "at": _iso(self.clock()),
            "reason": reason,
        })
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"Circuit breaker {self.name}: {old_state.value} -> {new_state.value} ({reason})")

    def _open(self, reason: str) -> None:
        self.next_attempt = self.clock() + self.recovery_timeout
        self._transition(CircuitState.OPEN, reason)

    def _error_rate(self) -> float:
        if not self._window:
            return 0.0
        return sum(self._window) / len(self._window)

    def _reject(self, retry_after: float) -> CircuitOpenError:
        self.short_circuited += 1
        return CircuitOpenError(
            self.name,
            max(1, math.ceil(retry_after)),
            self.last_failure,
        )

    def _before_call(self) -> bool:
        """Admit or reject a call. Returns True if it is the HALF_OPEN trial."""
        now = self.clock()
        if self.state == CircuitState.OPEN:
            if self.next_attempt is not None and now < self.next_attempt:
                raise self._reject(self.next_attempt - now)
            self._transition(CircuitState.HALF_OPEN, "recovery timeout elapsed")

        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise self._reject(1)
            self._trial_in_flight = True
            return True
        return False

    def _on_success(self) -> None:
        self.last_success = self.clock()
        self.consecutive_failures = 0
        if self.state == CircuitState.HALF_OPEN:
            self._window.clear()
            self.next_attempt = None
            self._transition(CircuitState.CLOSED, "trial call succeeded")
        else:
            self._window.append(False)

    def _on_failure(self, error: BaseException) -> None:
        self.consecutive_failures += 1
        self.last_failure = {
            "error": type(error).__name__,
            "message": str(error)[:200],
            "status": getattr(error, "status_code", None),
            "at": _iso(self.clock()),
        }

        if self.state == CircuitState.HALF_OPEN:
            self._open("trial call failed")
            return

        self._window.append(True)
        if self.consecutive_failures >= self.failure_threshold:
            self._open(f"{self.consecutive_failures} consecutive failures")
        elif (
            len(self._window) >= self.min_calls
            and self._error_rate() >= self.error_rate_threshold
        ):
            self._open(f"error rate {self._error_rate():.0%} over {len(self._window)} calls")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def execute(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run `fn` through the breaker.

        Raises:
            CircuitOpenError: Circuit open; `fn` was not called
            Exception: Whatever `fn` raised
        """
        trial = self._before_call()
        self.total_calls += 1
        try:
            result = await fn(*args, **kwargs)
        except self.ignored_exceptions:
            self._on_success()
            raise
        except Exception as e:
            self._on_failure(e)
            raise
        else:
            self._on_success()
            return result
        finally:
            if trial:
                self._trial_in_flight = False

    def is_available(self) -> bool:
        """True if a call would currently be admitted."""
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return self.next_attempt is not None and self.clock() >= self.next_attempt

    def get_status(self) -> dict:
        """Diagnostics snapshot, including the transition history."""
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "error_rate": round(self._error_rate(), 3),
            "window_calls": len(self._window),
            "total_calls": self.total_calls,
            "short_circuited": self.short_circuited,
            "last_failure": self.last_failure,
            "last_success": _iso(self.last_success),
            "next_attempt": _iso(self.next_attempt) if self.state == CircuitState.OPEN else None,
            "transitions": list(self._history),
        }

    def reset(self) -> None:
        """Force CLOSED (manual intervention / tests)."""
        self.consecutive_failures = 0
        self.next_attempt = None
        self.last_failure = None
        self._window.clear()
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED, "manual reset")
        logger.info(f"Circuit breaker {self.name} has been reset")


def get_breaker(name: str) -> Optional[CircuitBreaker]:
    return _registry.get(name)


def all_breaker_statuses() -> list[dict]:
    return [breaker.get_status() for breaker in _registry.values()]
