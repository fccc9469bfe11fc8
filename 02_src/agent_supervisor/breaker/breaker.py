"""Circuit breakers gating traffic and commands to agents."""

from collections import Counter
from datetime import datetime, timedelta
from typing import Awaitable, Callable, TypeVar

from ..config import Clock, Settings, utc_now
from ..errors import CircuitOpenRejected
from ..logging_config import get_logger
from ..models import BreakerState, CircuitBreakerState

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_OPERATION_CLASS = "default"


class CircuitBreaker:
    """Three-state breaker for one agent (and optionally one operation class).

    closed: traffic passes, consecutive failures are counted.
    open: traffic fails fast until ``next_probe_at``.
    half_open: exactly one trial request is admitted; its result closes or reopens.
    """

    def __init__(
        self,
        agent_id: str,
        operation_class: str = DEFAULT_OPERATION_CLASS,
        failure_threshold: int = 5,
        base_backoff_s: float = 60.0,
        max_backoff_s: float = 600.0,
        clock: Clock | None = None,
    ):
        self.agent_id = agent_id
        self.operation_class = operation_class
        self._failure_threshold = failure_threshold
        self._base_backoff_s = base_backoff_s
        self._max_backoff_s = max_backoff_s
        self._clock = clock or utc_now

        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_at: datetime | None = None
        self._next_probe_at: datetime | None = None
        self._opens = 0  # consecutive openings without a successful trial request
        self._trial_in_flight = False
        self._held = False

    @property
    def state(self) -> BreakerState:
        self._refresh()
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def held(self) -> bool:
        return self._held

    def backoff_s(self) -> float:
        """Backoff for the next opening: min(base * 2^opens, max)."""
        return min(self._base_backoff_s * (2 ** self._opens), self._max_backoff_s)

    def allow_request(self) -> bool:
        """Whether one request may pass now. Consumes the half-open slot."""
        self._refresh()
        if self._state is BreakerState.CLOSED:
            return True
        if self._state is BreakerState.OPEN:
            return False

        # HALF_OPEN
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def _refresh(self) -> None:
        """Move an open breaker to half-open once its backoff has elapsed."""
        if self._state is not BreakerState.OPEN or self._held:
            return
        if self._next_probe_at is not None and self._clock() >= self._next_probe_at:
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(
                "Breaker half-open for %s (%s)",
                self.agent_id,
                self.operation_class,
                extra={"agent_id": self.agent_id},
            )

    def record_success(self) -> None:
        if self._state is BreakerState.HALF_OPEN:
            self._close()
            return
        self._failure_count = 0

    def record_failure(self) -> None:
        now = self._clock()
        self._last_failure_at = now

        if self._state is BreakerState.HALF_OPEN:
            self._open(now)
            return
        if self._state is BreakerState.OPEN:
            return

        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._open(now)

    def trip(self, hold: bool = False) -> None:
        """Force the breaker open. ``hold`` keeps it open until ``reset``."""
        self._held = self._held or hold
        if self._state is not BreakerState.OPEN:
            self._open(self._clock())

    def reset(self) -> None:
        """Close the breaker and forget all history."""
        self._held = False
        self._close()

    def _open(self, now: datetime) -> None:
        backoff = self.backoff_s()
        self._state = BreakerState.OPEN
        self._next_probe_at = now + timedelta(seconds=backoff)
        self._opens += 1
        self._trial_in_flight = False
        logger.warning(
            "Breaker open for %s (%s), retry in %ss",
            self.agent_id,
            self.operation_class,
            backoff,
            extra={"agent_id": self.agent_id, "breaker_state": self._state.value},
        )

    def _close(self) -> None:
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._next_probe_at = None
        self._opens = 0
        self._trial_in_flight = False
        logger.info(
            "Breaker closed for %s (%s)",
            self.agent_id,
            self.operation_class,
            extra={"agent_id": self.agent_id, "breaker_state": self._state.value},
        )

    def snapshot(self) -> CircuitBreakerState:
        self._refresh()
        next_probe_at = self._next_probe_at
        if self._state is BreakerState.OPEN and self._held:
            # Held breakers never go half-open
            next_probe_at = self._clock() + timedelta(seconds=self._max_backoff_s)
        return CircuitBreakerState(
            agent_id=self.agent_id,
            operation_class=self.operation_class,
            state=self._state,
            failure_count=self._failure_count,
            last_failure_at=self._last_failure_at,
            next_probe_at=next_probe_at,
            open_count=self._opens,
            held=self._held,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Run ``func`` through the breaker, recording its outcome."""
        if not self.allow_request():
            raise CircuitOpenRejected(self.agent_id, self.operation_class)
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


class CircuitBreakerBank:
    """One breaker per (agent, operation class)."""

    def __init__(self, settings: Settings, clock: Clock | None = None):
        self._settings = settings
        self._clock = clock or utc_now
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}

    def get(
        self, agent_id: str, operation_class: str = DEFAULT_OPERATION_CLASS
    ) -> CircuitBreaker:
        """Get or create the breaker for an agent and operation class."""
        key = (agent_id, operation_class)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                agent_id,
                operation_class,
                failure_threshold=self._settings.breaker_failure_threshold,
                base_backoff_s=self._settings.breaker_base_backoff_s,
                max_backoff_s=self._settings.breaker_max_backoff_s,
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker

    def for_agent(self, agent_id: str) -> list[CircuitBreaker]:
        return [b for (aid, _), b in self._breakers.items() if aid == agent_id]

    def trip_agent(self, agent_id: str, hold: bool = False) -> None:
        """Open every breaker of an agent (creating the default one)."""
        self.get(agent_id)
        for breaker in self.for_agent(agent_id):
            breaker.trip(hold=hold)

    def reset_agent(self, agent_id: str) -> None:
        for breaker in self.for_agent(agent_id):
            breaker.reset()

    def remove_agent(self, agent_id: str) -> None:
        for key in [k for k in self._breakers if k[0] == agent_id]:
            del self._breakers[key]

    def snapshots(self) -> list[CircuitBreakerState]:
        return [breaker.snapshot() for breaker in self._breakers.values()]

    def summary(self) -> dict[str, int]:
        """Count of breakers per state."""
        counts = Counter(breaker.state.value for breaker in self._breakers.values())
        return {state.value: counts.get(state.value, 0) for state in BreakerState}

    def open_breakers(self) -> list[str]:
        return sorted(
            {aid for (aid, _), b in self._breakers.items() if b.state is BreakerState.OPEN}
        )

    def clear(self) -> None:
        self._breakers.clear()
