"""Keepalive scheduling for a push session.

The bridge drops a push subscription after a period of inactivity, so an
active session sends a one-byte probe every keepalive period. A failed
send starts a bounded retry sequence with doubling backoff; when the next
wait would overrun the retry budget the sequence is abandoned and the
failure is reported as fatal through ``on_fatal``.

The scheduler never touches session state directly. It only sees the
``send`` callable and the cancellation event.
"""

from __future__ import annotations

__all__ = [
    "Backoff",
    "KeepaliveResult",
    "KeepaliveScheduler",
    "KeepaliveStatus",
]

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from bondhome.push.errors import KeepaliveExhaustedError
from bondhome.push.types import (
    DEFAULT_KEEPALIVE_BUDGET_S,
    DEFAULT_KEEPALIVE_INITIAL_BACKOFF_S,
    DEFAULT_KEEPALIVE_PERIOD_S,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = structlog.get_logger(component="keepalive")


class Backoff:
    """Doubling backoff bounded by a total elapsed budget.

    ``elapsed`` is the sum of the delays handed out so far, i.e. the time
    spent waiting since the first failure of the current sequence.
    """

    def __init__(
        self,
        initial_s: float = DEFAULT_KEEPALIVE_INITIAL_BACKOFF_S,
        budget_s: float = DEFAULT_KEEPALIVE_BUDGET_S,
    ) -> None:
        if initial_s <= 0:
            msg = f"initial backoff must be positive, got {initial_s}"
            raise ValueError(msg)
        self._initial = initial_s
        self._budget = budget_s
        self.current_delay = initial_s
        self.elapsed = 0.0

    def next_delay(self) -> float | None:
        """Return the next delay, or ``None`` if waiting it would exceed the budget."""
        delay = self.current_delay
        if self.elapsed + delay > self._budget:
            return None
        self.elapsed += delay
        self.current_delay = delay * 2
        return delay

    def reset(self) -> None:
        self.current_delay = self._initial
        self.elapsed = 0.0


class KeepaliveStatus(StrEnum):
    """Outcome of one keepalive tick."""

    SENT = "sent"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


@dataclass
class KeepaliveResult:
    """Result of one keepalive tick, including any retries."""

    status: KeepaliveStatus
    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    last_error: OSError | None = None

    @property
    def elapsed_s(self) -> float:
        return sum(self.delays)

    def to_error(self) -> KeepaliveExhaustedError:
        return KeepaliveExhaustedError(self.attempts, self.elapsed_s, self.last_error)


class KeepaliveScheduler:
    """Periodically sends keepalive probes until cancelled.

    Args:
        send: Sends one probe; raises ``OSError`` on failure.
        cancelled: Raised by the owner to stop the scheduler. Every wait
            point observes it.
        on_fatal: Called once with the terminal error when the retry
            budget is exhausted.
        period_s: Time between keepalive ticks.
        initial_backoff_s: First retry delay after a failed send.
        budget_s: Total retry wait allowed before giving up.
    """

    def __init__(
        self,
        send: Callable[[], None],
        cancelled: asyncio.Event,
        on_fatal: Callable[[KeepaliveExhaustedError], None],
        *,
        period_s: float = DEFAULT_KEEPALIVE_PERIOD_S,
        initial_backoff_s: float = DEFAULT_KEEPALIVE_INITIAL_BACKOFF_S,
        budget_s: float = DEFAULT_KEEPALIVE_BUDGET_S,
    ) -> None:
        self._send = send
        self._cancelled = cancelled
        self._on_fatal = on_fatal
        self._period = period_s
        self._initial_backoff = initial_backoff_s
        self._budget = budget_s
        self._task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"KeepaliveScheduler(period={self._period}s, budget={self._budget}s)"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self) -> None:
        """Start the background keepalive task."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self.run(), name="bondhome-keepalive")

    async def join(self) -> None:
        """Wait for the background task to finish after cancellation."""
        if self._task is None:
            return
        task = self._task
        if task is asyncio.current_task():
            return
        await task

    async def run(self) -> None:
        """Tick every period until cancelled or the retry budget is exhausted."""
        while True:
            if await self._wait(self._period):
                logger.debug("keepalive_stopped")
                return
            result = await self.tick()
            if result.status is KeepaliveStatus.CANCELLED:
                logger.debug("keepalive_stopped", during_retry=True)
                return
            if result.status is KeepaliveStatus.EXHAUSTED:
                error = result.to_error()
                logger.error(
                    "keepalive_exhausted",
                    attempts=result.attempts,
                    elapsed_s=result.elapsed_s,
                    error=str(result.last_error),
                )
                self._on_fatal(error)
                return

    async def tick(self) -> KeepaliveResult:
        """Send one probe, retrying with backoff on failure."""
        backoff = Backoff(self._initial_backoff, self._budget)
        result = KeepaliveResult(status=KeepaliveStatus.SENT)
        while True:
            if self._cancelled.is_set():
                result.status = KeepaliveStatus.CANCELLED
                return result
            result.attempts += 1
            try:
                self._send()
            except OSError as exc:
                result.last_error = exc
            else:
                if result.attempts > 1:
                    logger.info("keepalive_recovered", attempts=result.attempts)
                else:
                    logger.debug("keepalive_sent")
                result.status = KeepaliveStatus.SENT
                return result

            delay = backoff.next_delay()
            if delay is None:
                result.status = KeepaliveStatus.EXHAUSTED
                return result
            logger.warning(
                "keepalive_retry",
                attempt=result.attempts,
                delay_s=delay,
                error=str(result.last_error),
            )
            result.delays.append(delay)
            if await self._wait(delay):
                logger.warning("keepalive_retry_cancelled", attempts=result.attempts)
                result.status = KeepaliveStatus.CANCELLED
                return result

    async def _wait(self, delay_s: float) -> bool:
        """Sleep for *delay_s*; return True if cancelled in the meantime."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay_s)
        except TimeoutError:
            return False
        return True
