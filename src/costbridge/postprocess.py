import math
from dataclasses import dataclass, replace
from typing import Iterable

import structlog

from costbridge.models import CostLineItem

logger = structlog.get_logger()

ZERO_TOLERANCE = 0.001


@dataclass(frozen=True, slots=True)
class SplitRule:
    """
    parent counts a whole population and subset counts a part of it
    that is reported on its own. The parent is replaced by parent -
    subset under resource_name and the subset's item is dropped.
    """

    parent: "str"
    subset: "str"
    resource_name: "str"
    description: "str"


@dataclass(frozen=True, slots=True)
class LeftoverRule:
    """
    total overlaps subset. total is replaced by total - subset under
    resource_name; subset stays.
    """

    total: "str"
    subset: "str"
    resource_name: "str"
    description: "str"


@dataclass(frozen=True, slots=True)
class AllowanceRule:
    """
    per_unit free units of dimension come with every unit of companion.
    """

    dimension: "str"
    companion: "str"
    per_unit: "float"
    usage_unit: "str" = ""


@dataclass(frozen=True)
class PostProcessRules:
    splits: "tuple[SplitRule, ...]" = ()
    # dimensions double-counting something that is kept
    overlaps: "tuple[str, ...]" = ()
    leftovers: "tuple[LeftoverRule, ...]" = ()
    allowances: "tuple[AllowanceRule, ...]" = ()
    zero_tolerance: "float" = ZERO_TOLERANCE

    @property
    def exempt_from_pruning(self) -> "frozenset[str]":
        return frozenset(rule.dimension for rule in self.allowances)


def _index(items: "Iterable[CostLineItem]") -> "dict[tuple[str, str], CostLineItem]":
    return {(item.account_id, item.resource_name): item for item in items}


def _synthetic(
    item: "CostLineItem",
    resource_name: "str",
    description: "str",
    quantity: "float",
) -> "CostLineItem":
    return replace(
        item,
        provider_id=f"{item.account_id}/{resource_name}",
        resource_name=resource_name,
        description=description,
        usage_quantity=quantity,
        list_cost=quantity * item.list_unit_price,
        labels=dict(item.labels),
    )


def split_populations(
    items: "list[CostLineItem]", rules: "PostProcessRules"
) -> "list[CostLineItem]":
    """
    replaces each parent population with parent - subset, costed at the
    parent's unit price, and drops the subset it was split against.
    Pairs are matched within one account.
    """
    index = _index(items)
    by_parent = {rule.parent: rule for rule in rules.splits}
    by_subset = {rule.subset: rule for rule in rules.splits}

    result: "list[CostLineItem]" = []
    for item in items:
        rule = by_parent.get(item.resource_name)
        if rule is not None:
            subset = index.get((item.account_id, rule.subset))
            quantity = item.usage_quantity - (subset.usage_quantity if subset else 0.0)
            logger.debug(
                "population_split",
                parent=rule.parent,
                subset=rule.subset,
                quantity=quantity,
            )
            result.append(_synthetic(item, rule.resource_name, rule.description, quantity))
            continue

        rule = by_subset.get(item.resource_name)
        if rule is not None and (item.account_id, rule.parent) in index:
            continue

        result.append(item)

    return result


def remove_overlaps(
    items: "list[CostLineItem]", rules: "PostProcessRules"
) -> "list[CostLineItem]":
    """
    drops dimensions that double count a kept one, and reduces each
    leftover total to what its rolling-window subset does not cover.
    """
    index = _index(items)
    dropped = frozenset(rules.overlaps)
    by_total = {rule.total: rule for rule in rules.leftovers}

    result: "list[CostLineItem]" = []
    for item in items:
        if item.resource_name in dropped:
            logger.debug("overlap_removed", resource_name=item.resource_name)
            continue

        rule = by_total.get(item.resource_name)
        if rule is None:
            result.append(item)
            continue

        subset = index.get((item.account_id, rule.subset))
        quantity = item.usage_quantity - (subset.usage_quantity if subset else 0.0)
        result.append(_synthetic(item, rule.resource_name, rule.description, quantity))

    return result


def apply_allowances(
    items: "list[CostLineItem]", rules: "PostProcessRules"
) -> "list[CostLineItem]":
    """
    subtracts the free allowance earned through each companion
    dimension. Items fully absorbed are dropped; what remains is left
    unpriced until a tiered rate is modelled.
    """
    allowances = {rule.dimension: rule for rule in rules.allowances}
    if not allowances:
        return list(items)

    free: "dict[tuple[str, str], float]" = {}
    for item in items:
        for rule in rules.allowances:
            if item.resource_name == rule.companion:
                key = (item.account_id, rule.dimension)
                free[key] = free.get(key, 0.0) + rule.per_unit * item.usage_quantity

    result: "list[CostLineItem]" = []
    for item in items:
        rule = allowances.get(item.resource_name)
        if rule is None:
            result.append(item)
            continue

        allowance = free.get((item.account_id, rule.dimension), 0.0)
        remaining = item.usage_quantity - allowance
        logger.debug(
            "allowance_applied",
            resource_name=item.resource_name,
            allowance=allowance,
            remaining=remaining,
        )
        if remaining <= 0:
            continue

        # TODO: price the remainder once tiered rates are modelled
        result.append(
            replace(
                item,
                usage_quantity=remaining,
                list_unit_price=0.0,
                list_cost=0.0,
                usage_unit=rule.usage_unit or item.usage_unit,
                labels=dict(item.labels),
            )
        )

    return result


def prune_zero_usage(
    items: "list[CostLineItem]", rules: "PostProcessRules"
) -> "list[CostLineItem]":
    tolerance = rules.zero_tolerance
    exempt = rules.exempt_from_pruning

    def is_zero(item: "CostLineItem") -> "bool":
        return (
            math.isclose(item.usage_quantity, 0.0, abs_tol=tolerance)
            and math.isclose(item.list_cost, 0.0, abs_tol=tolerance)
            and math.isclose(item.billed_cost, 0.0, abs_tol=tolerance)
        )

    kept = [item for item in items if item.resource_name in exempt or not is_zero(item)]
    if len(kept) != len(items):
        logger.debug("zero_usage_pruned", removed=len(items) - len(kept))
    return kept


class PostProcessor:
    """
    PostProcessor runs the fixed adjustment pipeline over a window's
    usage items. Splits go first because the later steps look items up
    by the names the splits produce.
    """

    def __init__(self, rules: "PostProcessRules | None" = None) -> "None":
        self._rules = rules or PostProcessRules()

    @property
    def rules(self) -> "PostProcessRules":
        return self._rules

    def process(self, items: "Iterable[CostLineItem]") -> "list[CostLineItem]":
        result = list(items)
        result = split_populations(result, self._rules)
        result = remove_overlaps(result, self._rules)
        result = apply_allowances(result, self._rules)
        return prune_zero_usage(result, self._rules)
