"""Sliding-window admission control keyed by API key or user id.

The limiter keeps, per identifier, the timestamps of admitted requests in
the trailing window.  A request is rejected once the window holds
``max_requests`` entries; ``retry_after`` is the whole number of seconds
until the oldest retained timestamp leaves the window.

State lives behind the ``WindowStore`` interface.  The default
``InMemoryWindowStore`` is per-process: several service replicas each
enforce their own window, so the effective global ceiling is
``replicas * max_requests``.  A shared store (e.g. Redis sorted sets) can be
dropped in without touching the limiter.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from sentinel.observability.metrics import ADMISSION_REJECTIONS_TOTAL, RATE_LIMIT_IDENTIFIERS

logger = logging.getLogger(__name__)

REMEDIATION_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0
    limiter: str | None = None


class WindowStore:
    """Per-identifier timestamp lists."""

    def get(self, identifier: str) -> list[float]:
        raise NotImplementedError

    def set(self, identifier: str, timestamps: list[float]) -> None:
        raise NotImplementedError

    def delete(self, identifier: str) -> None:
        raise NotImplementedError

    def identifiers(self) -> list[str]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class InMemoryWindowStore(WindowStore):
    def __init__(self) -> None:
        self._windows: dict[str, list[float]] = {}

    def get(self, identifier: str) -> list[float]:
        return list(self._windows.get(identifier, ()))

    def set(self, identifier: str, timestamps: list[float]) -> None:
        self._windows[identifier] = list(timestamps)

    def delete(self, identifier: str) -> None:
        self._windows.pop(identifier, None)

    def identifiers(self) -> list[str]:
        return list(self._windows)

    def clear(self) -> None:
        self._windows.clear()


class SlidingWindowLimiter:
    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        store: WindowStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "global",
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.store = store if store is not None else InMemoryWindowStore()
        self.name = name
        self._clock = clock

    def _live(self, identifier: str, now: float) -> list[float]:
        return [ts for ts in self.store.get(identifier) if now - ts < self.window_seconds]

    def check(self, identifier: str, *, record: bool = True) -> AdmissionDecision:
        """Admit and record the request, or reject it with a retry hint.

        With ``record=False`` an admitted request leaves the window untouched.
        Failures inside the store admit the request.
        """
        try:
            now = self._clock()
            timestamps = self._live(identifier, now)
            if len(timestamps) >= self.max_requests:
                self.store.set(identifier, timestamps)
                oldest = min(timestamps)
                retry_after = math.ceil(max(0.0, self.window_seconds - (now - oldest)))
                ADMISSION_REJECTIONS_TOTAL.labels(limiter=self.name).inc()
                logger.warning(
                    "Rate limit exceeded for %s (limiter=%s, max=%d, retry_after=%ds)",
                    identifier,
                    self.name,
                    self.max_requests,
                    retry_after,
                )
                return AdmissionDecision(allowed=False, retry_after=retry_after, limiter=self.name)

            if not record:
                return AdmissionDecision(allowed=True, remaining=self.max_requests - len(timestamps) - 1)
            timestamps.append(now)
            self.store.set(identifier, timestamps)
            return AdmissionDecision(allowed=True, remaining=self.max_requests - len(timestamps))
        except Exception:
            logger.exception("Rate limit check failed for %s, admitting request", identifier)
            return AdmissionDecision(allowed=True)

    def sweep(self) -> int:
        """Drop expired timestamps everywhere and forget empty identifiers.

        Returns the number of identifiers still tracked.
        """
        now = self._clock()
        for identifier in self.store.identifiers():
            live = self._live(identifier, now)
            if live:
                self.store.set(identifier, live)
            else:
                self.store.delete(identifier)
        remaining = len(self.store.identifiers())
        logger.debug("Limiter %s swept, %d identifiers tracked", self.name, remaining)
        return remaining

    def status(self, identifier: str) -> dict[str, float | int]:
        """Usage of ``identifier`` without recording a request."""
        now = self._clock()
        timestamps = self._live(identifier, now)
        reset_in = self.window_seconds - (now - min(timestamps)) if timestamps else 0
        return {
            "count": len(timestamps),
            "remaining": max(0, self.max_requests - len(timestamps)),
            "reset_in": math.ceil(max(0.0, reset_in)),
        }

    def reset(self, identifier: str) -> None:
        self.store.delete(identifier)

    def clear(self) -> None:
        self.store.clear()


def resolve_identifier(api_key: str | None, user_id: str | None) -> str | None:
    """``api_key:<key>`` takes priority over ``user:<id>``; None bypasses limiting."""
    if api_key:
        return f"api_key:{api_key}"
    if user_id:
        return f"user:{user_id}"
    return None


class AdmissionController:
    """Global limiter plus per-minute limiters for ``rate_limit_user`` ceilings.

    A request must pass the global window and, when a remediation ceiling
    applies, the 60-second window for that ceiling.  Neither window records
    a request that the other rejects.
    """

    def __init__(
        self,
        global_limiter: SlidingWindowLimiter,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.global_limiter = global_limiter
        self._clock = clock
        self._ceiling_limiters: dict[int, SlidingWindowLimiter] = {}

    def _ceiling_limiter(self, ceiling: int) -> SlidingWindowLimiter:
        limiter = self._ceiling_limiters.get(ceiling)
        if limiter is None:
            limiter = SlidingWindowLimiter(
                REMEDIATION_WINDOW_SECONDS,
                ceiling,
                clock=self._clock,
                name="remediation",
            )
            self._ceiling_limiters[ceiling] = limiter
        return limiter

    def admit(self, identifier: str | None, ceiling: int | None = None) -> AdmissionDecision:
        if identifier is None:
            logger.debug("No rate limit identifier, skipping admission control")
            return AdmissionDecision(allowed=True)

        if ceiling is None:
            return self.global_limiter.check(identifier)

        ceiling_limiter = self._ceiling_limiter(ceiling)
        pending = ceiling_limiter.check(identifier, record=False)
        if not pending.allowed:
            return pending
        decision = self.global_limiter.check(identifier)
        if not decision.allowed:
            return decision
        return ceiling_limiter.check(identifier)

    def sweep(self) -> int:
        tracked = self.global_limiter.sweep()
        for limiter in self._ceiling_limiters.values():
            limiter.sweep()
        RATE_LIMIT_IDENTIFIERS.set(tracked)
        return tracked

    def reset(self, identifier: str) -> None:
        self.global_limiter.reset(identifier)
        for limiter in self._ceiling_limiters.values():
            limiter.reset(identifier)

    def clear(self) -> None:
        self.global_limiter.clear()
        self._ceiling_limiters.clear()
