import asyncio
import time
from typing import Callable

from costbridge.errors import RateLimiterWaitError


class TokenBucket:
    """
    TokenBucket is an asyncio token bucket. Tokens refill continuously
    at `rate` per second up to `burst`. One instance is shared by every
    window in an invocation, so waiters are served one at a time.

    wait() suspends the caller until enough tokens are available. The
    only way out early is the optional cancel event or deadline, both of
    which raise RateLimiterWaitError.
    """

    def __init__(
        self,
        rate: "float",
        burst: "int",
        clock: "Callable[[], float]" = time.monotonic,
    ) -> "None":
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        if burst < 1:
            raise ValueError(f"burst must be at least 1, got {burst}")

        self._rate = rate
        self._burst = burst
        self._clock = clock
        self._tokens: "float" = float(burst)
        self._last: "float" = clock()
        self._lock: "asyncio.Lock" = asyncio.Lock()

    @property
    def rate(self) -> "float":
        return self._rate

    @property
    def burst(self) -> "int":
        return self._burst

    @property
    def tokens(self) -> "float":
        """
        tokens currently available, after refilling for elapsed time.
        """
        self._refill()
        return self._tokens

    def _refill(self) -> "None":
        now = self._clock()
        elapsed = now - self._last
        if elapsed <= 0:
            return
        self._last = now
        self._tokens = min(float(self._burst), self._tokens + elapsed * self._rate)

    async def wait(
        self,
        n: "int" = 1,
        *,
        cancel: "asyncio.Event | None" = None,
        timeout: "float | None" = None,
    ) -> "None":
        """
        takes n tokens, sleeping until they are available.
        """
        if n > self._burst:
            raise RateLimiterWaitError(
                f"requested {n} tokens exceeds limiter burst of {self._burst}"
            )

        deadline = None if timeout is None else self._clock() + timeout

        async with self._lock:
            while True:
                if cancel is not None and cancel.is_set():
                    raise RateLimiterWaitError("rate limiter wait cancelled")

                self._refill()
                if self._tokens >= n:
                    self._tokens -= n
                    return

                delay = (n - self._tokens) / self._rate
                if deadline is not None and self._clock() + delay > deadline:
                    raise RateLimiterWaitError(
                        f"rate limiter wait of {delay:.2f}s would exceed the deadline"
                    )

                if cancel is None:
                    await asyncio.sleep(delay)
                    continue

                try:
                    await asyncio.wait_for(cancel.wait(), timeout=delay)
                except TimeoutError:
                    continue
