from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from core.errors import PermanentError, RateLimited, RetryAborted, RetryExhausted, TransientError

logger = logging.getLogger(__name__)


def any_result(result: Any) -> bool:
    return True


def non_empty(result: Any) -> bool:
    return bool(result)


class RetryPolicy:
    """
    Bounded retry with fixed (backoff=1.0) or exponential delay.

    `is_terminal` decides which successful results end the loop, so callers can
    pick "stop on any success" or "stop on first non-empty result".
    """

    def __init__(
        self,
        max_attempts: int = 10,
        delay: float = 1.0,
        backoff: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = int(max_attempts)
        self.delay = max(0.0, float(delay))
        self.backoff = max(1.0, float(backoff))
        self.max_delay = float(max_delay)
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Wait after the given (1-based) failed attempt."""
        return min(self.max_delay, self.delay * (self.backoff ** (attempt - 1)))

    async def _pause(self, wait: float, stop: Optional[asyncio.Event]) -> None:
        """Sleep between attempts; a set `stop` cuts the wait short."""
        if stop is None:
            await self._sleep(wait)
            return
        sleeper = asyncio.ensure_future(self._sleep(wait))
        stopper = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        is_terminal: Optional[Callable[[Any], bool]] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> Any:
        is_terminal = is_terminal or any_result
        last_result: Any = None
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            if stop is not None and stop.is_set():
                raise RetryAborted(attempt - 1)

            wait = self.delay_for(attempt)
            try:
                result = await operation()
            except PermanentError:
                raise
            except RateLimited as e:
                last_error = e
                if e.retry_after:
                    wait = min(self.max_delay, max(wait, float(e.retry_after)))
                logger.debug("Attempt %d/%d rate limited: %s", attempt, self.max_attempts, e)
            except TransientError as e:
                last_error = e
                logger.debug("Attempt %d/%d failed: %s", attempt, self.max_attempts, e)
            else:
                if is_terminal(result):
                    return result
                last_result, last_error = result, None

            if attempt < self.max_attempts:
                await self._pause(wait, stop)

        raise RetryExhausted(self.max_attempts, last_result=last_result, last_error=last_error)
