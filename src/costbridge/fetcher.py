import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog

from costbridge.errors import ProviderError, RateLimiterWaitError
from costbridge.metrics import PipelineMetrics
from costbridge.models import BillingCharge, UsageEntry, Window
from costbridge.provider.base import UsageSource
from costbridge.ratelimit import TokenBucket

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY_SECONDS = 30.0

# throttling is the only HTTP status worth another attempt
RETRYABLE_STATUS_CODES: "frozenset[int]" = frozenset({429})


def is_retryable(exc: "BaseException") -> "bool":
    """
    transport failures (timeouts, resets) and throttling responses
    are transient; everything else is terminal.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


@dataclass
class FetchResult:
    """
    FetchResult is everything fetched for one window, plus the error
    strings collected on the way. A partial fetch still carries the
    entries from the pages that made it.
    """

    entries: "list[UsageEntry]" = field(default_factory=list)
    pages: "int" = 0
    errors: "list[str]" = field(default_factory=list)

    @property
    def complete(self) -> "bool":
        return not self.errors


class RateLimitedFetcher:
    """
    RateLimitedFetcher walks a source's usage pages for a window. Each
    page costs one token from the shared limiter, and each request is
    retried a bounded number of times with a fixed delay on transient
    failures.
    """

    def __init__(
        self,
        source: "UsageSource",
        limiter: "TokenBucket",
        *,
        max_attempts: "int" = DEFAULT_MAX_ATTEMPTS,
        retry_delay: "float" = DEFAULT_RETRY_DELAY_SECONDS,
        metrics: "PipelineMetrics | None" = None,
        cancel: "asyncio.Event | None" = None,
        wait_timeout: "float | None" = None,
        sleep: "Callable[[float], Awaitable[None]]" = asyncio.sleep,
    ) -> "None":
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        self._source = source
        self._limiter = limiter
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._metrics = metrics
        self._cancel = cancel
        # longest a single request may be held by the limiter
        self._wait_timeout = wait_timeout
        self._sleep = sleep

    @property
    def source(self) -> "UsageSource":
        return self._source

    async def fetch(self, window: "Window") -> "FetchResult":
        """
        fetches every usage page for the window. Stops at the first
        page that fails for good; a limiter failure aborts the window.
        """
        result = FetchResult()
        cursor: "str | None" = None

        while True:
            try:
                await self._acquire()
            except RateLimiterWaitError as exc:
                logger.error("rate_limiter_wait_failed", error=str(exc), window=str(window))
                result.errors.append(f"error waiting on rate limiter: {exc}")
                return result

            try:
                page = await self.call(
                    "usage_page",
                    lambda: self._source.fetch_usage_page(window, cursor),
                )
            except ProviderError as exc:
                result.errors.append(str(exc))
                return result

            result.pages += 1
            result.entries.extend(page.entries)
            if self._metrics is not None:
                self._metrics.inc_pages_fetched(self._source.name)

            logger.debug(
                "usage_page_fetched",
                window=str(window),
                page=result.pages,
                entries=len(page.entries),
            )

            if not page.next_cursor:
                break

            cursor = page.next_cursor

        return result

    async def fetch_billing(
        self, window: "Window"
    ) -> "tuple[list[BillingCharge], list[str]]":
        """
        fetches the provider's charge estimates covering the window.
        """
        try:
            await self._acquire()
        except RateLimiterWaitError as exc:
            logger.error("rate_limiter_wait_failed", error=str(exc), window=str(window))
            return [], [f"error waiting on rate limiter: {exc}"]

        try:
            charges = await self.call(
                "estimated_cost", lambda: self._source.fetch_billing(window)
            )
        except ProviderError as exc:
            return [], [str(exc)]

        return list(charges), []

    async def call(
        self,
        operation: "str",
        request: "Callable[[], Awaitable[T]]",
    ) -> "T":
        """
        runs request, retrying transient failures up to max_attempts
        times with a fixed delay in between. Raises ProviderError once
        it gives up.
        """
        attempt = 1
        while True:
            try:
                return await request()
            except (httpx.HTTPError, ValueError) as exc:
                status = (
                    exc.response.status_code
                    if isinstance(exc, httpx.HTTPStatusError)
                    else None
                )
                if not is_retryable(exc):
                    logger.error(
                        "provider_request_failed",
                        provider=self._source.name,
                        operation=operation,
                        error=str(exc),
                    )
                    raise ProviderError(
                        f"{operation} request to {self._source.name} failed: {exc}",
                        attempts=attempt,
                        status_code=status,
                    ) from exc

                if attempt >= self._max_attempts:
                    logger.error(
                        "provider_retries_exhausted",
                        provider=self._source.name,
                        operation=operation,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise ProviderError(
                        f"after calling {operation} {attempt} times, still getting error: {exc}",
                        attempts=attempt,
                        status_code=status,
                    ) from exc

                if status == 429:
                    logger.warning(
                        "provider_rate_limited",
                        provider=self._source.name,
                        operation=operation,
                        attempt=attempt,
                    )
                else:
                    logger.warning(
                        "provider_transient_error",
                        provider=self._source.name,
                        operation=operation,
                        attempt=attempt,
                        error=str(exc),
                    )

                if self._metrics is not None:
                    self._metrics.inc_fetch_retry(self._source.name)

                await self._sleep(self._retry_delay)
                attempt += 1

    async def _acquire(self) -> "None":
        if self._limiter.tokens < 1.0:
            logger.info(
                "rate_limit_reached",
                provider=self._source.name,
                detail="holding request until rate capacity is back",
            )
            if self._metrics is not None:
                self._metrics.inc_rate_limit_hold(self._source.name)

        await self._limiter.wait(1, cancel=self._cancel, timeout=self._wait_timeout)
