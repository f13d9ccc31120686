"""
Circuit Breaker

Explicit state machine guarding calls to an unreliable upstream:

    CLOSED --(error % >= threshold over rolling window, volume met)--> OPEN
    OPEN --(reset timeout elapsed)--> HALF_OPEN (one trial admitted)
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)--> OPEN

Every call carries its own timeout; a timed-out call counts as a failure.
While OPEN, calls return the fallback (or raise CircuitOpenError) without
invoking the target. State is queried synchronously; transitions are
published to subscribers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ranksheet.errors import CircuitOpenError, UpstreamError

logger = logging.getLogger(__name__)


class BreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


TransitionListener = Callable[[str, BreakerState, BreakerState], None]

_NO_FALLBACK = object()


@dataclass
class CircuitBreakerConfig:
    """Tunables for one upstream dependency."""
    name: str
    timeout: float = 10.0                   # Per-call timeout (seconds)
    error_threshold_percentage: float = 50.0
    reset_timeout: float = 30.0             # OPEN -> HALF_OPEN delay
    rolling_window: float = 10.0            # Stats window (seconds)
    buckets: int = 10
    volume_threshold: int = 5               # Minimum calls before opening


@dataclass
class _Bucket:
    start: float
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    rejects: int = 0


@dataclass
class CircuitBreakerState:
    """Point-in-time view of a breaker."""
    name: str
    state: BreakerState
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    rejects: int = 0
    next_trial_at: Optional[float] = None

    @property
    def error_percentage(self) -> float:
        total = self.successes + self.failures
        return (self.failures / total * 100) if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "stats": {
                "successes": self.successes,
                "failures": self.failures,
                "timeouts": self.timeouts,
                "rejects": self.rejects,
                "errorPercentage": round(self.error_percentage, 2),
            },
            "nextTrialAt": self.next_trial_at,
        }


class CircuitBreaker:
    """
    Circuit breaker for one upstream.

    Usage:
        breaker = CircuitBreaker(CircuitBreakerConfig(name="analytics"))
        dates = await breaker.call(client.fetch_dates, fallback=last_dates)
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._next_trial_at: Optional[float] = None
        self._trial_in_flight = False
        self._buckets: List[_Bucket] = []
        self._listeners: List[TransitionListener] = []

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> BreakerState:
        """Current state; an expired OPEN reports HALF_OPEN."""
        self._maybe_half_open()
        return self._state

    # =========================================================================
    # Observability
    # =========================================================================

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a transition listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> CircuitBreakerState:
        """Rolling-window counters and state."""
        state = self.state
        buckets = self._live_buckets()
        return CircuitBreakerState(
            name=self.name,
            state=state,
            successes=sum(b.successes for b in buckets),
            failures=sum(b.failures for b in buckets),
            timeouts=sum(b.timeouts for b in buckets),
            rejects=sum(b.rejects for b in buckets),
            next_trial_at=self._next_trial_at if state == BreakerState.OPEN else None,
        )

    def reset(self):
        """Force the breaker closed and clear its window."""
        self._buckets.clear()
        self._trial_in_flight = False
        self._next_trial_at = None
        self._transition(BreakerState.CLOSED)

    # =========================================================================
    # Calls
    # =========================================================================

    async def call(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args,
        fallback: Any = _NO_FALLBACK,
        **kwargs,
    ) -> Any:
        """
        Run fn(*args, **kwargs) through the breaker.

        Args:
            fn: Coroutine function to protect
            fallback: Value returned instead of raising while the circuit is open

        Raises:
            CircuitOpenError: Circuit open and no fallback given
            UpstreamError: Call timed out
            Exception: Whatever fn raised (counted as a failure)
        """
        if not self._admit():
            self._current_bucket().rejects += 1
            if fallback is not _NO_FALLBACK:
                logger.warning(f"Circuit {self.name} open, using fallback")
                return fallback
            raise CircuitOpenError(
                f"{self.name} circuit breaker is open - service temporarily unavailable",
                upstream=self.name,
            )

        is_trial = self._state == BreakerState.HALF_OPEN
        try:
            result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            self._current_bucket().timeouts += 1
            self._on_failure()
            logger.warning(f"Circuit {self.name}: call timed out after {self.config.timeout}s")
            raise UpstreamError(
                f"{self.name} call timed out after {self.config.timeout}s",
                upstream=self.name,
            )
        except asyncio.CancelledError:
            if is_trial:
                self._trial_in_flight = False
            raise
        except Exception as e:
            self._on_failure()
            logger.warning(f"Circuit {self.name}: call failed: {e}")
            raise

        self._on_success()
        return result

    # =========================================================================
    # State machine
    # =========================================================================

    def _admit(self) -> bool:
        self._maybe_half_open()
        if self._state == BreakerState.CLOSED:
            return True
        if self._state == BreakerState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def _maybe_half_open(self):
        if (
            self._state == BreakerState.OPEN
            and self._next_trial_at is not None
            and self._clock() >= self._next_trial_at
        ):
            self._transition(BreakerState.HALF_OPEN)

    def _on_success(self):
        self._current_bucket().successes += 1
        if self._state == BreakerState.HALF_OPEN:
            self._trial_in_flight = False
            self._buckets.clear()
            self._next_trial_at = None
            self._transition(BreakerState.CLOSED)

    def _on_failure(self):
        self._current_bucket().failures += 1
        if self._state == BreakerState.HALF_OPEN:
            self._trial_in_flight = False
            self._open()
            return
        if self._state == BreakerState.CLOSED and self._should_open():
            self._open()

    def _should_open(self) -> bool:
        buckets = self._live_buckets()
        failures = sum(b.failures for b in buckets)
        total = failures + sum(b.successes for b in buckets)
        if total < self.config.volume_threshold:
            return False
        return failures * 100 / total >= self.config.error_threshold_percentage

    def _open(self):
        self._next_trial_at = self._clock() + self.config.reset_timeout
        self._transition(BreakerState.OPEN)

    def _transition(self, new_state: BreakerState):
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(self.name, old_state, new_state)
            except Exception as e:
                logger.error(f"Circuit {self.name}: transition listener failed: {e}")

    # =========================================================================
    # Rolling window
    # =========================================================================

    def _bucket_width(self) -> float:
        return self.config.rolling_window / max(1, self.config.buckets)

    def _live_buckets(self) -> List[_Bucket]:
        cutoff = self._clock() - self.config.rolling_window
        self._buckets = [b for b in self._buckets if b.start > cutoff]
        return self._buckets

    def _current_bucket(self) -> _Bucket:
        now = self._clock()
        buckets = self._live_buckets()
        if buckets and now - buckets[-1].start < self._bucket_width():
            return buckets[-1]
        bucket = _Bucket(start=now)
        buckets.append(bucket)
        return bucket


def log_transition(name: str, old: BreakerState, new: BreakerState):
    """Default listener: log every state change."""
    if new == BreakerState.OPEN:
        logger.warning(f"Circuit breaker {name} opened (was {old.value})")
    else:
        logger.info(f"Circuit breaker {name} {old.value} -> {new.value}")


class CircuitBreakerRegistry:
    """One breaker per upstream dependency, shared by the application context."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def register(self, config: CircuitBreakerConfig) -> CircuitBreaker:
        breaker = self._breakers.get(config.name)
        if breaker is None:
            breaker = CircuitBreaker(config, clock=self._clock)
            breaker.subscribe(log_transition)
            self._breakers[config.name] = breaker
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def health(self) -> Dict[str, Dict[str, Any]]:
        return {name: b.snapshot().to_dict() for name, b in self._breakers.items()}

    def reset_all(self):
        for breaker in self._breakers.values():
            breaker.reset()
            logger.info(f"Circuit breaker {breaker.name} manually reset")
