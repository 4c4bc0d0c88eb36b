from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry

from costbridge.models import PriceEntry, UsageEntry, Window


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def hour_window() -> "Window":
    return Window(
        start=datetime(2024, 3, 8, 0, 0, tzinfo=timezone.utc),
        end=datetime(2024, 3, 8, 1, 0, tzinfo=timezone.utc),
    )


@pytest.fixture()
def day_window() -> "Window":
    return Window(
        start=datetime(2024, 3, 16, tzinfo=timezone.utc),
        end=datetime(2024, 3, 17, tzinfo=timezone.utc),
    )


def make_entry(
    product_family: "str" = "infra_hosts",
    measurements: "dict[str, float | None] | None" = None,
    public_id: "str" = "pub-1",
) -> "UsageEntry":
    return UsageEntry(
        id=f"{public_id}-{product_family}",
        public_id=public_id,
        org_name="acme",
        region="us",
        product_family=product_family,
        measurements=measurements or {},
    )


def make_price(
    key: "str" = "infra_hosts",
    unit_price: "float" = 2.0,
    rate_priced: "bool" = False,
) -> "PriceEntry":
    return PriceEntry(
        key=key,
        unit_price=unit_price,
        currency="USD",
        description=f"{key} list price",
        usage_unit="host - hours" if rate_priced else "units",
        rate_priced=rate_priced,
    )
