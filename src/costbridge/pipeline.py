import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

import structlog

from costbridge.assembler import CostAssembler
from costbridge.catalog import PriceCatalog, PricingRules
from costbridge.errors import CatalogError, ProviderError, WindowError
from costbridge.fetcher import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY_SECONDS, RateLimitedFetcher
from costbridge.metrics import PipelineMetrics
from costbridge.models import CostLineItem, CostResponse, Window
from costbridge.normalizer import UsageNormalizer, UsageSnapshot
from costbridge.postprocess import PostProcessor, PostProcessRules
from costbridge.provider.base import UsageSource
from costbridge.ratelimit import TokenBucket
from costbridge.windows import CostRequest, split_windows

logger = structlog.get_logger()


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


class CostPipeline:
    """
    CostPipeline answers one cost request for one provider. For a
    list-priced provider it builds the price catalog once, then walks
    the request's windows in order: fetch, normalize, price, assemble,
    post-process, attach billing. Providers without a price listing
    skip the pricing steps; see process_window.

    Windows run one after another because they share the rate limiter.
    Nothing is raised to the caller: every failure ends up as a string
    in the affected window's errors.
    """

    def __init__(
        self,
        source: "UsageSource",
        limiter: "TokenBucket",
        *,
        pricing_rules: "PricingRules | None" = None,
        postprocess_rules: "PostProcessRules | None" = None,
        metrics: "PipelineMetrics | None" = None,
        max_attempts: "int" = DEFAULT_MAX_ATTEMPTS,
        retry_delay: "float" = DEFAULT_RETRY_DELAY_SECONDS,
        cancel: "asyncio.Event | None" = None,
        wait_timeout: "float | None" = None,
        sleep: "Callable[[float], Awaitable[None]]" = asyncio.sleep,
        now: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        self._source = source
        self._pricing_rules = pricing_rules or PricingRules()
        self._postprocessor = PostProcessor(postprocess_rules)
        self._metrics = metrics
        self._now = now
        self._fetcher = RateLimitedFetcher(
            source,
            limiter,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            metrics=metrics,
            cancel=cancel,
            wait_timeout=wait_timeout,
            sleep=sleep,
        )

    @property
    def source(self) -> "UsageSource":
        return self._source

    async def close(self) -> "None":
        await self._source.close()

    async def build_catalog(self) -> "PriceCatalog":
        """
        fetches and parses the provider's price listing. Raises
        CatalogError or ProviderError when it cannot.
        """
        details = await self._fetcher.call(
            "price_listing", self._source.fetch_price_listing
        )
        return PriceCatalog.from_listing(details, self._pricing_rules)

    async def get_custom_costs(self, request: "CostRequest") -> "list[CostResponse]":
        profile = self._source.profile

        try:
            windows = split_windows(request)
        except WindowError as exc:
            logger.error("window_split_failed", error=str(exc))
            self._record_error("windows")
            return [self._failed(f"error getting windows: {exc}")]

        if request.resolution not in profile.resolutions:
            logger.info(
                "resolution_unsupported",
                provider=self._source.name,
                resolution=str(request.resolution),
            )
            return []

        catalog: "PriceCatalog | None" = None
        if profile.list_priced:
            try:
                catalog = await self.build_catalog()
            except (CatalogError, ProviderError) as exc:
                logger.error("pricing_unavailable", provider=self._source.name, error=str(exc))
                self._record_error("pricing")
                return [self._failed(f"error getting {self._source.name} pricing: {exc}")]

            logger.debug("unit_pricing_loaded", entries=len(catalog))

        now = self._now()
        responses: "list[CostResponse]" = []
        carried: "UsageSnapshot | None" = None
        last: "Window | None" = None

        for window in windows:
            # providers refuse to report on the future
            if window.start > now:
                logger.debug("future_window_skipped", window=str(window))
                continue

            prior = None
            if (
                carried is not None
                and last is not None
                and last.end == window.start
                and last.duration == window.duration
            ):
                prior = carried

            started = time.monotonic()
            response, snapshot = await self.process_window(window, catalog, prior)
            responses.append(response)

            carried = snapshot
            last = window

            if self._metrics is not None:
                self._metrics.observe_window_duration(
                    self._source.name, time.monotonic() - started
                )

        return responses

    async def process_window(
        self,
        window: "Window",
        catalog: "PriceCatalog | None",
        prior: "UsageSnapshot | None" = None,
    ) -> "tuple[CostResponse, UsageSnapshot | None]":
        """
        builds the response for one window. Also returns the window's
        usage totals so the next window can use them as its prior
        period, or None when the fetch was incomplete.

        Without a catalog the provider reports billed cost only: usage
        is not priced and only sets the billing items' quantities.
        """
        profile = self._source.profile
        response = CostResponse.for_window(
            window,
            domain=profile.domain,
            cost_source=profile.cost_source,
            api_client_version=profile.api_client_version,
        )
        if catalog is not None and catalog.currency:
            response.currency = catalog.currency

        with structlog.contextvars.bound_contextvars(window=str(window)):
            logger.info("window_fetch_start", provider=self._source.name)

            current = await self._fetcher.fetch(window)
            self._extend_errors(response, "usage", current.errors)
            snapshot = UsageSnapshot.from_entries(current.entries)

            assembler = CostAssembler()
            warnings = 0
            usage_items: "list[CostLineItem]" = []
            if catalog is not None:
                warnings = await self._price_usage(
                    window, catalog, snapshot, prior, assembler, response
                )
                usage_items = self._postprocessor.process(assembler.usage_items())

            charges, billing_errors = await self._fetcher.fetch_billing(window)
            self._extend_errors(response, "billing", billing_errors)
            try:
                assembler.add_billing(
                    charges, window, cumulative=profile.cumulative_billing
                )
            except WindowError as exc:
                logger.error("billing_attribution_failed", error=str(exc))
                self._extend_errors(response, "billing", [str(exc)])

            if not profile.list_priced and profile.usage_dimension is not None:
                assembler.attach_usage(snapshot, profile.usage_dimension, profile.usage_unit)

            billing_items = assembler.billing_items()
            response.costs = usage_items + billing_items

            if self._metrics is not None:
                self._metrics.add_line_items(self._source.name, "usage", len(usage_items))
                self._metrics.add_line_items(
                    self._source.name, "billing", len(billing_items)
                )

            logger.info(
                "window_fetch_end",
                provider=self._source.name,
                pages=current.pages,
                line_items=len(response.costs),
                errors=len(response.errors),
                warnings=warnings,
            )

        return response, (snapshot if current.complete else None)

    async def _price_usage(
        self,
        window: "Window",
        catalog: "PriceCatalog",
        snapshot: "UsageSnapshot",
        prior: "UsageSnapshot | None",
        assembler: "CostAssembler",
        response: "CostResponse",
    ) -> "int":
        """
        normalizes and prices every observation into the assembler and
        returns the number of normalization warnings.
        """
        normalizer = UsageNormalizer()
        for observation in snapshot:
            family = observation.entry.product_family
            resolution = catalog.resolve(observation.dimension, family)
            if not resolution.matched and self._metrics is not None:
                self._metrics.inc_unpriced(self._source.name)

            is_rate = catalog.is_rate(family, resolution.entry)
            if not is_rate and prior is None:
                prior = await self._fetch_prior(window, response)

            previous = (
                prior.value(observation.entry.public_id, observation.dimension)
                if prior is not None
                else None
            )
            quantity = normalizer.normalize(
                observation.dimension, observation.value, previous, is_rate
            )
            logger.debug(
                "usage_priced",
                dimension=observation.dimension,
                pricing_key=resolution.key,
                method=resolution.method,
                quantity=quantity,
            )
            assembler.assemble(
                observation.entry, observation.dimension, quantity, resolution.entry
            )

        return len(normalizer.warnings)

    async def _fetch_prior(
        self, window: "Window", response: "CostResponse"
    ) -> "UsageSnapshot":
        previous = window.previous()
        logger.debug("prior_window_fetch", prior_window=str(previous))
        result = await self._fetcher.fetch(previous)
        self._extend_errors(
            response,
            "prior_usage",
            [f"prior period {previous}: {error}" for error in result.errors],
        )
        return UsageSnapshot.from_entries(result.entries)

    def _extend_errors(
        self, response: "CostResponse", stage: "str", errors: "list[str]"
    ) -> "None":
        response.errors.extend(errors)
        for _ in errors:
            self._record_error(stage)

    def _record_error(self, stage: "str") -> "None":
        if self._metrics is not None:
            self._metrics.inc_window_error(self._source.name, stage)

    def _failed(self, message: "str") -> "CostResponse":
        profile = self._source.profile
        return CostResponse.failed(
            message, domain=profile.domain, cost_source=profile.cost_source
        )
