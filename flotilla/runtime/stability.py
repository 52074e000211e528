"""
Flotilla Stability Evaluation

Bounded polling of a predicate over the whole cluster:
- Fresh snapshot on every attempt
- Exceptions count as "not yet stable"
- Configurable backoff between attempts, capped by the remaining time
- Timeout reported with the number of attempts and the last error
"""

from __future__ import annotations

import random
import time
from enum import Enum, auto
from typing import Any, Callable, Optional

import structlog

from flotilla.core.config import get_config
from flotilla.runtime.models import FlotillaError

logger = structlog.get_logger(__name__)

Predicate = Callable[[Any], bool]

# lower bound on the delay between attempts
MINIMUM_POLL_DELAY = 0.01


class StabilityTimeoutError(FlotillaError):
    """Raised when a stability predicate did not converge in time."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        elapsed: float = 0.0,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error


class BackoffStrategy(Enum):
    """Backoff strategies between stability evaluations."""
    FIXED = auto()
    LINEAR = auto()
    EXPONENTIAL = auto()
    EXPONENTIAL_JITTER = auto()

    @classmethod
    def from_name(cls, name: str) -> "BackoffStrategy":
        return cls[name.upper()]


class StabilityEvaluator:
    """
    Polls a predicate until it holds or a deadline passes.

    This is an observation loop rather than a subscription: the engine cannot
    be told when a cluster has finished recovering, only check.
    """

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        max_poll_interval: Optional[float] = None,
        backoff: Optional[BackoffStrategy] = None,
        multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = get_config().orchestration
        self.poll_interval = config.poll_interval if poll_interval is None else poll_interval
        self.max_poll_interval = (
            config.max_poll_interval if max_poll_interval is None else max_poll_interval
        )
        self.backoff = backoff or BackoffStrategy.from_name(config.backoff_strategy)
        self.multiplier = multiplier
        self._sleep = sleep
        self._clock = clock

        self._evaluations = 0
        self._converged = 0
        self._timeouts = 0

    def _calculate_delay(self, attempt: int, base: float) -> float:
        """Calculate the delay after a failed attempt."""
        if self.backoff == BackoffStrategy.FIXED:
            delay = base
        elif self.backoff == BackoffStrategy.LINEAR:
            delay = base * attempt
        elif self.backoff == BackoffStrategy.EXPONENTIAL:
            delay = base * (self.multiplier ** (attempt - 1))
        elif self.backoff == BackoffStrategy.EXPONENTIAL_JITTER:
            exp_delay = base * (self.multiplier ** (attempt - 1))
            delay = exp_delay * (0.5 + random.random())
        else:
            delay = base

        return min(delay, max(self.max_poll_interval, base))

    def evaluate(
        self,
        predicate: Predicate,
        snapshot_supplier: Callable[[], Any],
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Evaluate the predicate until it holds.

        Args:
            predicate: Function of a cluster snapshot returning truthy when stable
            snapshot_supplier: Produces a fresh snapshot for every attempt
            poll_interval: Base delay between attempts
            timeout: Deadline in seconds; the predicate is always tried at least once

        Returns:
            The number of attempts it took

        Raises:
            StabilityTimeoutError: If the deadline passed first
        """
        base = self.poll_interval if poll_interval is None else poll_interval
        if timeout is None:
            timeout = get_config().orchestration.stability_timeout

        started = self._clock()
        deadline = started + timeout
        attempt = 0
        last_error: Optional[BaseException] = None

        while True:
            attempt += 1
            self._evaluations += 1

            try:
                if predicate(snapshot_supplier()):
                    self._converged += 1
                    if attempt > 1:
                        logger.debug(
                            "Stability converged",
                            attempts=attempt,
                            elapsed=round(self._clock() - started, 3),
                        )
                    return attempt
                last_error = None

            except Exception as e:
                # an unreachable member is a transient condition, keep polling
                last_error = e
                logger.debug("Stability predicate raised", attempt=attempt, error=str(e))

            remaining = deadline - self._clock()
            if remaining <= 0:
                break

            delay = min(max(self._calculate_delay(attempt, base), MINIMUM_POLL_DELAY), remaining)
            self._sleep(delay)

        elapsed = self._clock() - started
        self._timeouts += 1

        logger.warning(
            "Stability predicate did not converge",
            attempts=attempt,
            timeout=timeout,
            last_error=str(last_error) if last_error else None,
        )

        raise StabilityTimeoutError(
            f"Stability predicate did not converge within {timeout}s "
            f"after {attempt} attempt(s)",
            attempts=attempt,
            elapsed=elapsed,
            last_error=last_error,
        )

    def get_stats(self) -> dict:
        return {
            "evaluations": self._evaluations,
            "converged": self._converged,
            "timeouts": self._timeouts,
        }


# === Built-in predicates ===

def always_stable() -> Predicate:
    """A predicate that always holds."""
    def predicate(cluster: Any) -> bool:
        return True
    return predicate


def all_operational() -> Predicate:
    """Every member of the snapshot reports it is operational."""
    def predicate(cluster: Any) -> bool:
        return all(member.is_operational() for member in cluster)
    return predicate


def minimum_size(count: int) -> Predicate:
    """The snapshot holds at least ``count`` members."""
    def predicate(cluster: Any) -> bool:
        return len(cluster) >= count
    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    """Every given predicate holds."""
    def predicate(cluster: Any) -> bool:
        return all(p(cluster) for p in predicates)
    return predicate
