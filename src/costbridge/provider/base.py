from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping, Protocol, Sequence

from costbridge.models import BillingCharge, UsagePage, Window
from costbridge.windows import DAY, HOUR


@dataclass(frozen=True, slots=True)
class SourceProfile:
    """
    SourceProfile tells the pipeline how a provider reports and prices
    usage.

    List-priced providers publish a price listing: usage is priced
    against it and billing estimates are added as separate items.
    Providers without one report billed cost only; their usage totals
    are attached to the billing items as quantities, matched through
    usage_dimension (billing product name -> usage dimension).
    """

    domain: "str"
    cost_source: "str"
    api_client_version: "str" = "v1"
    resolutions: "tuple[timedelta, ...]" = (HOUR, DAY)
    list_priced: "bool" = True
    # billing amounts are month-to-date running totals
    cumulative_billing: "bool" = True
    usage_unit: "str" = ""
    usage_dimension: "Callable[[str], str] | None" = None


class UsageSource(Protocol):
    """
    UsageSource is the protocol every metered provider satisfies.

    Sources only talk to the provider: they return one page of usage,
    the provider's own charge estimates and the raw price listing.
    Pagination, rate limiting and retries are the fetcher's job, so a
    source raises httpx errors (or ValueError for payloads it cannot
    read) and lets the caller decide what to do with them.
    """

    @property
    def name(self) -> "str": ...

    @property
    def profile(self) -> "SourceProfile": ...

    async def fetch_usage_page(
        self,
        window: "Window",
        cursor: "str | None",
    ) -> "UsagePage": ...

    async def fetch_billing(self, window: "Window") -> "Sequence[BillingCharge]": ...

    async def fetch_price_listing(self) -> "Sequence[Mapping[str, Any]]": ...

    async def close(self) -> "None": ...
