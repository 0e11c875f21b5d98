"""
Exponential backoff shared by backend reconnects and registry lookups.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryAborted(Exception):
    """Raised when ``should_continue`` stops a retry loop early."""


class RetryExhausted(Exception):
    """Raised when every attempt failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """
    Backoff policy: attempt ``n`` (1-based, n > 1) waits
    ``base_delay * 2 ** (n - 1)`` seconds, capped at ``max_delay``,
    plus up to ``jitter`` random seconds.
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay preceding the given attempt number."""
        if attempt <= 1:
            return 0.0
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        """Same timing, different attempt cap."""
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        first_attempt: int = 1,
        should_continue: Optional[Callable[[], bool]] = None,
        on_retry: Optional[Callable[[int, float, Optional[BaseException]], None]] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds or attempts run out.

        Args:
            operation: Coroutine factory called once per attempt
            first_attempt: Attempt number to start at (earlier ones ran elsewhere)
            should_continue: Checked before every attempt; False aborts
            on_retry: Called with (attempt, delay, last_error) before sleeping

        Returns:
            The operation's result

        Raises:
            RetryAborted: should_continue returned False
            RetryExhausted: every attempt failed
        """
        last_error: Optional[BaseException] = None
        attempt = first_attempt
        for attempt in range(first_attempt, self.max_attempts + 1):
            delay = self.delay_for(attempt)
            if delay:
                if on_retry:
                    on_retry(attempt, delay, last_error)
                await asyncio.sleep(delay)
            if should_continue is not None and not should_continue():
                raise RetryAborted(f"Stopped before attempt {attempt}")
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.debug(f"Attempt {attempt}/{self.max_attempts} failed: {e}")
        raise RetryExhausted(attempt, last_error)
