from dataclasses import dataclass, field
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class Window:
    """
    Window is a closed-open [start, end) interval produced by the
    window splitter. Both bounds are timezone-aware UTC datetimes.
    """

    start: "datetime"
    end: "datetime"

    def __post_init__(self) -> "None":
        if self.start >= self.end:
            raise ValueError(f"window start {self.start} must precede end {self.end}")

    @property
    def duration(self) -> "timedelta":
        return self.end - self.start

    @property
    def hours(self) -> "float":
        return self.duration.total_seconds() / 3600

    def previous(self) -> "Window":
        """
        the immediately preceding window of equal length.
        """
        return Window(start=self.start - self.duration, end=self.start)

    def __str__(self) -> "str":
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


@dataclass(frozen=True, slots=True)
class UsageEntry:
    """
    UsageEntry is one provider measurement row: a resource, the
    product family it belongs to and its named measurements.
    """

    id: "str"
    public_id: "str"
    org_name: "str"
    region: "str"
    product_family: "str"
    # dimension name -> value, None when the provider left it unset
    measurements: "dict[str, float | None]" = field(default_factory=dict)
    timestamp: "datetime | None" = None


@dataclass(frozen=True, slots=True)
class UsagePage:
    """
    UsagePage holds one page of usage entries and the cursor for
    the next page, None on the last page.
    """

    entries: "tuple[UsageEntry, ...]"
    next_cursor: "str | None" = None


@dataclass(frozen=True, slots=True)
class BillingCharge:
    """
    BillingCharge is one provider-reported charge. Depending on the
    provider, cost is a month-to-date running total or the amount for
    the charge date alone.
    """

    id: "str"
    date: "datetime"
    public_id: "str"
    org_name: "str"
    region: "str"
    product_name: "str"
    charge_type: "str"
    cost: "float"
    description: "str" = ""
    resource_type: "str" = ""


@dataclass(frozen=True, slots=True)
class PriceEntry:
    """
    PriceEntry is a catalog price already adjusted for rate pricing
    (hourly fraction of the monthly list price) or a unit rescale.
    """

    key: "str"
    unit_price: "float"
    currency: "str"
    description: "str"
    usage_unit: "str"
    rate_priced: "bool" = False


@dataclass(slots=True)
class CostLineItem:
    """
    CostLineItem is one costed record for a single resource and
    dimension pair within a window.
    """

    provider_id: "str"
    resource_name: "str"
    # public id of the account the item belongs to
    account_id: "str" = ""
    resource_type: "str" = ""
    id: "str" = ""
    zone: "str" = ""
    account_name: "str" = ""
    # "usage" or "billing"
    charge_category: "str" = "usage"
    description: "str" = ""
    usage_quantity: "float" = 0.0
    usage_unit: "str" = ""
    list_unit_price: "float" = 0.0
    list_cost: "float" = 0.0
    billed_cost: "float" = 0.0
    labels: "dict[str, str]" = field(default_factory=dict)


@dataclass(slots=True)
class CostResponse:
    """
    CostResponse is what a caller receives for one window. Failures
    show up as strings in errors, next to whatever costs were built.
    """

    start: "datetime | None"
    end: "datetime | None"
    domain: "str" = "datadog"
    cost_source: "str" = "observability"
    version: "str" = "v1"
    currency: "str" = "USD"
    metadata: "dict[str, str]" = field(default_factory=dict)
    errors: "list[str]" = field(default_factory=list)
    costs: "list[CostLineItem]" = field(default_factory=list)

    @classmethod
    def for_window(
        cls,
        window: "Window",
        domain: "str" = "datadog",
        cost_source: "str" = "observability",
        api_client_version: "str" = "v2",
    ) -> "CostResponse":
        return cls(
            start=window.start,
            end=window.end,
            domain=domain,
            cost_source=cost_source,
            metadata={"api_client_version": api_client_version},
        )

    @classmethod
    def failed(
        cls,
        message: "str",
        domain: "str" = "datadog",
        cost_source: "str" = "observability",
    ) -> "CostResponse":
        return cls(
            start=None,
            end=None,
            domain=domain,
            cost_source=cost_source,
            errors=[message],
        )

    def to_dict(self) -> "dict[str, object]":
        return {
            "domain": self.domain,
            "cost_source": self.cost_source,
            "version": self.version,
            "currency": self.currency,
            "metadata": dict(self.metadata),
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "errors": list(self.errors),
            "costs": [
                {
                    "provider_id": c.provider_id,
                    "account_id": c.account_id,
                    "id": c.id,
                    "zone": c.zone,
                    "account_name": c.account_name,
                    "charge_category": c.charge_category,
                    "description": c.description,
                    "resource_name": c.resource_name,
                    "resource_type": c.resource_type,
                    "usage_quantity": c.usage_quantity,
                    "usage_unit": c.usage_unit,
                    "list_unit_price": c.list_unit_price,
                    "list_cost": c.list_cost,
                    "billed_cost": c.billed_cost,
                    "labels": dict(c.labels),
                }
                for c in self.costs
            ],
        }
