import asyncio
from typing import Any, Mapping, Sequence

import httpx
import pytest
from prometheus_client import CollectorRegistry

from costbridge.errors import ProviderError
from costbridge.fetcher import RateLimitedFetcher, is_retryable
from costbridge.metrics import PipelineMetrics
from costbridge.models import BillingCharge, UsagePage, Window
from costbridge.ratelimit import TokenBucket

from conftest import make_entry


def _status_error(status: "int") -> "httpx.HTTPStatusError":
    request = httpx.Request("GET", "https://api.example.test/usage")
    return httpx.HTTPStatusError(
        f"status {status}",
        request=request,
        response=httpx.Response(status, request=request),
    )


class ScriptedSource:
    """
    A fake source replaying a scripted list of pages or exceptions.
    """

    def __init__(self, script: "list[UsagePage | BaseException]") -> "None":
        self._script = list(script)
        self.cursors: "list[str | None]" = []

    @property
    def name(self) -> "str":
        return "scripted"

    async def fetch_usage_page(
        self,
        window: "Window",
        cursor: "str | None",
    ) -> "UsagePage":
        self.cursors.append(cursor)
        step = self._script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    async def fetch_billing(self, window: "Window") -> "Sequence[BillingCharge]":
        return []

    async def fetch_price_listing(self) -> "Sequence[Mapping[str, Any]]":
        return []

    async def close(self) -> "None":
        pass


async def _no_sleep(delay: "float") -> "None":
    pass


def _page(value: "float", cursor: "str | None" = None) -> "UsagePage":
    return UsagePage(
        entries=(make_entry(measurements={"host_count": value}),),
        next_cursor=cursor,
    )


class TestIsRetryable:
    def test_throttling_is_retryable(self) -> "None":
        assert is_retryable(_status_error(429)) is True

    def test_transport_error_is_retryable(self) -> "None":
        assert is_retryable(httpx.ConnectTimeout("timed out")) is True

    def test_client_error_is_not_retryable(self) -> "None":
        assert is_retryable(_status_error(403)) is False

    def test_malformed_payload_is_not_retryable(self) -> "None":
        assert is_retryable(ValueError("bad json")) is False


class TestRateLimitedFetcher:
    @pytest.mark.asyncio
    async def test_follows_cursors_until_exhausted(self, hour_window: "Window") -> "None":
        source = ScriptedSource([_page(1, "p2"), _page(2, "p3"), _page(3)])
        fetcher = RateLimitedFetcher(source, TokenBucket(100.0, 10), sleep=_no_sleep)

        result = await fetcher.fetch(hour_window)

        assert result.pages == 3
        assert result.complete is True
        assert source.cursors == [None, "p2", "p3"]
        assert [e.measurements["host_count"] for e in result.entries] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_retries_throttled_page(self, hour_window: "Window") -> "None":
        source = ScriptedSource([_status_error(429), _status_error(429), _page(5)])
        delays: "list[float]" = []

        async def record_sleep(delay: "float") -> "None":
            delays.append(delay)

        fetcher = RateLimitedFetcher(
            source, TokenBucket(100.0, 10), retry_delay=30.0, sleep=record_sleep
        )
        result = await fetcher.fetch(hour_window)

        assert result.complete is True
        assert result.pages == 1
        assert delays == [30.0, 30.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, hour_window: "Window") -> "None":
        source = ScriptedSource([_status_error(429)] * 5)
        fetcher = RateLimitedFetcher(
            source, TokenBucket(100.0, 10), max_attempts=5, sleep=_no_sleep
        )

        result = await fetcher.fetch(hour_window)

        assert result.entries == []
        assert len(result.errors) == 1
        assert "5 times" in result.errors[0]
        assert len(source.cursors) == 5

    @pytest.mark.asyncio
    async def test_keeps_pages_fetched_before_a_failure(
        self, hour_window: "Window"
    ) -> "None":
        source = ScriptedSource([_page(4, "p2"), _status_error(500)])
        fetcher = RateLimitedFetcher(source, TokenBucket(100.0, 10), sleep=_no_sleep)

        result = await fetcher.fetch(hour_window)

        assert result.pages == 1
        assert len(result.entries) == 1
        assert len(result.errors) == 1
        # a non-retryable status is not retried
        assert len(source.cursors) == 2

    @pytest.mark.asyncio
    async def test_limiter_failure_aborts_window(self, hour_window: "Window") -> "None":
        source = ScriptedSource([_page(1, "p2"), _page(2)])
        cancel = asyncio.Event()
        limiter = TokenBucket(0.001, 1)
        fetcher = RateLimitedFetcher(source, limiter, cancel=cancel, sleep=_no_sleep)

        # first page uses the only token, the second wait is cancelled
        cancel_task = asyncio.get_running_loop().call_later(0.01, cancel.set)
        result = await fetcher.fetch(hour_window)
        cancel_task.cancel()

        assert result.pages == 1
        assert len(result.errors) == 1
        assert "rate limiter" in result.errors[0]
        assert source.cursors == [None]

    @pytest.mark.asyncio
    async def test_limiter_deadline_aborts_window(self, hour_window: "Window") -> "None":
        source = ScriptedSource([_page(1, "p2"), _page(2)])
        # refilling one token takes 1000s, far past the 5s deadline
        fetcher = RateLimitedFetcher(
            source, TokenBucket(0.001, 1), wait_timeout=5.0, sleep=_no_sleep
        )

        result = await fetcher.fetch(hour_window)

        assert result.pages == 1
        assert result.complete is False
        assert "deadline" in result.errors[0]
        assert source.cursors == [None]

    @pytest.mark.asyncio
    async def test_call_raises_provider_error(self) -> "None":
        source = ScriptedSource([])
        fetcher = RateLimitedFetcher(
            source, TokenBucket(100.0, 10), max_attempts=2, sleep=_no_sleep
        )
        calls = 0

        async def flaky() -> "int":
            nonlocal calls
            calls += 1
            raise httpx.ReadTimeout("slow")

        with pytest.raises(ProviderError) as excinfo:
            await fetcher.call("usage_page", flaky)

        assert calls == 2
        assert excinfo.value.attempts == 2

    @pytest.mark.asyncio
    async def test_records_metrics(
        self,
        hour_window: "Window",
        registry: "CollectorRegistry",
    ) -> "None":
        source = ScriptedSource([_status_error(429), _page(1, "p2"), _page(2)])
        fetcher = RateLimitedFetcher(
            source,
            TokenBucket(100.0, 10),
            metrics=PipelineMetrics(registry),
            sleep=_no_sleep,
        )

        await fetcher.fetch(hour_window)

        assert (
            registry.get_sample_value(
                "costbridge_pages_fetched_total", {"provider": "scripted"}
            )
            == 2.0
        )
        assert (
            registry.get_sample_value(
                "costbridge_fetch_retries_total", {"provider": "scripted"}
            )
            == 1.0
        )
