"""Per-provider circuit breakers with timeout-based reopening."""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class CircuitStatus(str, Enum):
    """Breaker position. There is no half-open state; OPEN expires by time."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"


class CircuitState(BaseModel):
    """Point-in-time view of one provider's breaker.

    Args:
        provider_id: Provider the breaker guards.
        status: CLOSED or OPEN.
        failure_count: Consecutive failures since the last success or reset.
        reopen_at: Clock reading after which an OPEN breaker closes.
    """

    provider_id: str
    status: CircuitStatus = CircuitStatus.CLOSED
    failure_count: int = Field(default=0, ge=0)
    reopen_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status == CircuitStatus.OPEN


class _Breaker:
    """Mutable breaker state guarded by its own lock."""

    __slots__ = ("lock", "failure_count", "reopen_at")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.failure_count = 0
        self.reopen_at: Optional[float] = None


class CircuitBreakerRegistry:
    """Failure streak tracking for every provider.

    Each provider has its own lock, so a storm of failures on one provider
    never contends with traffic on another. The registry-level lock is
    only taken to create a breaker the first time a provider is seen.

    Args:
        failure_threshold: Consecutive failures that open the circuit.
        cooldown_seconds: How long an open circuit excludes its provider.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._breakers: dict[str, _Breaker] = {}
        self._registry_lock = threading.Lock()

    def _breaker(self, provider_id: str) -> _Breaker:
        breaker = self._breakers.get(provider_id)
        if breaker is not None:
            return breaker
        with self._registry_lock:
            return self._breakers.setdefault(provider_id, _Breaker())

    def is_open(self, provider_id: str) -> bool:
        """Whether the provider is currently excluded.

        An open breaker whose cooldown has elapsed is closed (and its
        counter reset) by this check.
        """
        breaker = self._breakers.get(provider_id)
        if breaker is None or breaker.reopen_at is None:
            return False

        with breaker.lock:
            if breaker.reopen_at is None:
                return False
            if self._clock() > breaker.reopen_at:
                breaker.reopen_at = None
                breaker.failure_count = 0
                logger.info(f"circuit_closed: provider={provider_id}, reason=cooldown_elapsed")
                return False
            return True

    def record_failure(self, provider_id: str) -> CircuitState:
        """Count a provider failure, opening the circuit at the threshold.

        Args:
            provider_id: Provider that failed.

        Returns:
            The breaker state after the update.
        """
        breaker = self._breaker(provider_id)
        with breaker.lock:
            breaker.failure_count += 1
            opened = False
            if breaker.failure_count >= self._threshold and breaker.reopen_at is None:
                breaker.reopen_at = self._clock() + self._cooldown
                opened = True
            state = self._snapshot(provider_id, breaker)

        if opened:
            logger.warning(
                f"circuit_opened: provider={provider_id}, "
                f"failures={state.failure_count}, cooldown_s={self._cooldown}"
            )
        else:
            logger.info(
                f"circuit_failure_recorded: provider={provider_id}, failures={state.failure_count}"
            )
        return state

    def record_success(self, provider_id: str) -> None:
        """Reset the failure streak and close the circuit immediately."""
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            return
        with breaker.lock:
            was_open = breaker.reopen_at is not None
            breaker.failure_count = 0
            breaker.reopen_at = None
        if was_open:
            logger.info(f"circuit_closed: provider={provider_id}, reason=success")

    def state(self, provider_id: str) -> CircuitState:
        """Current state of one breaker (without triggering expiry)."""
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            return CircuitState(provider_id=provider_id)
        with breaker.lock:
            return self._snapshot(provider_id, breaker)

    def status(self) -> dict[str, CircuitState]:
        """State of every breaker seen so far, expiring stale OPEN entries."""
        for provider_id in list(self._breakers):
            self.is_open(provider_id)
        return {provider_id: self.state(provider_id) for provider_id in list(self._breakers)}

    def reset(self, provider_id: Optional[str] = None) -> None:
        """Forget one breaker, or all of them."""
        with self._registry_lock:
            if provider_id is None:
                self._breakers.clear()
            else:
                self._breakers.pop(provider_id, None)
        logger.info(f"circuit_reset: provider={provider_id or 'all'}")

    @staticmethod
    def _snapshot(provider_id: str, breaker: _Breaker) -> CircuitState:
        return CircuitState(
            provider_id=provider_id,
            status=CircuitStatus.OPEN if breaker.reopen_at is not None else CircuitStatus.CLOSED,
            failure_count=breaker.failure_count,
            reopen_at=breaker.reopen_at,
        )
