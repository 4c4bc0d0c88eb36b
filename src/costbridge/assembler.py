from datetime import timedelta
from typing import Callable, Iterable

import structlog

from costbridge.errors import WindowError
from costbridge.models import BillingCharge, CostLineItem, PriceEntry, UsageEntry, Window
from costbridge.normalizer import UsageSnapshot

logger = structlog.get_logger()

# estimated charges are reported per day
_BILLING_COST_FACTORS: "dict[timedelta, float]" = {
    timedelta(days=1): 1.0,
    timedelta(hours=1): 1.0 / 24.0,
}


def billing_cost_factor(window: "Window") -> "float":
    try:
        return _BILLING_COST_FACTORS[window.duration]
    except KeyError:
        raise WindowError(
            f"unsupported window duration: {window.hours:g} hours"
        ) from None


class CostAssembler:
    """
    CostAssembler collects one window's line items. Usage items are
    keyed by (resource public id, dimension): a key seen again adds to
    the existing item instead of creating a second one.

    Billing items come from the provider's own charge estimates and are
    kept apart so that post-processing only sees usage items.
    """

    def __init__(self) -> "None":
        self._usage: "dict[tuple[str, str], CostLineItem]" = {}
        self._billing: "dict[tuple[str, str], CostLineItem]" = {}

    def assemble(
        self,
        entry: "UsageEntry",
        dimension: "str",
        quantity: "float",
        price: "PriceEntry",
    ) -> "CostLineItem | None":
        """
        prices quantity and merges it into the window. A zero quantity
        creates nothing.
        """
        if quantity == 0:
            logger.debug(
                "zero_usage_skipped",
                product_family=entry.product_family,
                dimension=dimension,
            )
            return None

        key = (entry.public_id, dimension)
        list_cost = quantity * price.unit_price

        item = self._usage.get(key)
        if item is not None:
            item.usage_quantity += quantity
            item.list_cost += list_cost
            return item

        item = CostLineItem(
            provider_id=f"{entry.public_id}/{dimension}",
            account_id=entry.public_id,
            id=entry.id,
            zone=entry.region,
            account_name=entry.org_name,
            charge_category="usage",
            description=price.description,
            resource_name=dimension,
            resource_type=entry.product_family,
            usage_quantity=quantity,
            usage_unit=price.usage_unit,
            list_unit_price=price.unit_price,
            list_cost=list_cost,
        )
        self._usage[key] = item
        return item

    def add_billing(
        self,
        charges: "Iterable[BillingCharge]",
        window: "Window",
        *,
        cumulative: "bool" = True,
    ) -> "None":
        """
        attributes provider charges to the window, scaled to the window
        length. Only charges dated on the window's start day are kept.

        With cumulative set the provider reports month-to-date running
        totals, so each charge has the previous total for the same
        resource and product subtracted first. Otherwise every charge is
        already the amount for its date and charges sharing a resource
        and product are summed.
        """
        factor = billing_cost_factor(window)
        previous: "dict[tuple[str, str], float]" = {}

        for charge in sorted(charges, key=lambda c: c.date):
            if charge.charge_type != "total" or charge.cost == 0:
                continue

            key = (charge.public_id, charge.product_name)
            delta = charge.cost
            if cumulative:
                delta -= previous.get(key, 0.0)
                previous[key] = charge.cost

            if charge.date.date() != window.start.date():
                continue

            billed = delta * factor
            item = self._billing.get(key)
            if item is not None:
                item.billed_cost += billed
                continue

            self._billing[key] = CostLineItem(
                provider_id=f"{charge.public_id}/{charge.product_name}",
                account_id=charge.public_id,
                id=charge.id,
                zone=charge.region,
                account_name=charge.org_name,
                charge_category="billing",
                description=charge.description,
                resource_name=charge.product_name,
                resource_type=charge.resource_type,
                billed_cost=billed,
            )

    def attach_usage(
        self,
        snapshot: "UsageSnapshot",
        usage_dimension: "Callable[[str], str]",
        usage_unit: "str",
    ) -> "None":
        """
        sets each billing item's usage quantity from the window's usage
        totals, for providers whose line items carry billed cost only.
        Items with no matching usage keep a zero quantity.
        """
        for (public_id, product), item in self._billing.items():
            quantity = snapshot.value(public_id, usage_dimension(product))
            if quantity is None:
                logger.debug("billing_usage_missing", account_id=public_id, product=product)
                continue
            item.usage_quantity = quantity
            item.usage_unit = usage_unit

    def usage_items(self) -> "list[CostLineItem]":
        return list(self._usage.values())

    def billing_items(self) -> "list[CostLineItem]":
        return list(self._billing.values())
