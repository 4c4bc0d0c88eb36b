from dataclasses import dataclass
from typing import Iterable, Iterator

import structlog

from costbridge.models import UsageEntry

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class Observation:
    """
    the total of one dimension for one resource over a window. entry
    is the first row seen for the resource, kept for its metadata.
    """

    entry: "UsageEntry"
    dimension: "str"
    value: "float"


class UsageSnapshot:
    """
    UsageSnapshot sums a window's measurements per (resource public
    id, dimension). Prior-period values are looked up by that key, so
    two windows can be compared however the provider paginated them.
    """

    def __init__(self, observations: "dict[tuple[str, str], Observation]") -> "None":
        self._observations = observations

    @classmethod
    def from_entries(cls, entries: "Iterable[UsageEntry]") -> "UsageSnapshot":
        observations: "dict[tuple[str, str], Observation]" = {}
        for entry in entries:
            for dimension, value in entry.measurements.items():
                key = (entry.public_id, dimension)
                amount = float(value) if value is not None else 0.0
                seen = observations.get(key)
                if seen is None:
                    observations[key] = Observation(entry, dimension, amount)
                else:
                    observations[key] = Observation(seen.entry, dimension, seen.value + amount)
        return cls(observations)

    def __len__(self) -> "int":
        return len(self._observations)

    def __iter__(self) -> "Iterator[Observation]":
        return iter(self._observations.values())

    def value(self, public_id: "str", dimension: "str") -> "float | None":
        seen = self._observations.get((public_id, dimension))
        return None if seen is None else seen.value


class UsageNormalizer:
    """
    UsageNormalizer turns a window's raw value into the quantity used
    during the window.

    Rate dimensions (standing populations such as hosts) pass through
    unchanged. Cumulative dimensions are monotonic counters, so the
    prior period's value is subtracted. Warnings raised along the way
    are collected on the instance; create one per window.
    """

    def __init__(self) -> "None":
        self.warnings: "list[str]" = []

    def normalize(
        self,
        dimension: "str",
        current: "float",
        prior: "float | None" = None,
        is_rate: "bool" = False,
    ) -> "float":
        if is_rate:
            return current

        if prior is None:
            self._warn(
                f"no prior-period value for cumulative dimension {dimension}, treating it as 0"
            )
            return current

        delta = current - prior
        if delta < 0:
            # counter went backwards: reset at the period boundary
            self._warn(
                f"cumulative dimension {dimension} decreased from {prior} to {current}, "
                "assuming a counter reset"
            )
            return current

        return delta

    def _warn(self, message: "str") -> "None":
        logger.warning("usage_normalization_warning", detail=message)
        self.warnings.append(message)
