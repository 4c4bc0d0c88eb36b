import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

import structlog
from rapidfuzz.distance import Levenshtein

from costbridge.errors import CatalogError
from costbridge.models import PriceEntry

logger = structlog.get_logger()

HOURS_PER_MONTH = 730.0

UNPRICED_LABEL = "PRICING UNAVAILABLE"


def _frozen(mapping: "Mapping[str, Any]") -> "Mapping[str, Any]":
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class PricingRules:
    """
    PricingRules is the static configuration a catalog is built with.

    - aliases: usage dimension or product family -> pricing key. Usage
      reports and price lists are maintained separately and drift apart.
    - unit_scales: pricing key -> number of usage units one list price
      covers (e.g. bytes in a TiB).
    - rate_families: pricing key or product family -> hours per month.
      These are standing populations priced per hour.
    - synonyms: token pairs swapped for a second token-subset attempt.
    """

    aliases: "Mapping[str, str]" = field(default_factory=dict)
    unit_scales: "Mapping[str, float]" = field(default_factory=dict)
    rate_families: "Mapping[str, float]" = field(default_factory=dict)
    synonyms: "tuple[tuple[str, str], ...]" = (("agent", "infra"),)
    strip_suffixes: "tuple[str, ...]" = ("_count",)
    # identifiers too generic to fuzzy-match anything
    too_generic: "frozenset[str]" = frozenset({"host"})

    def __post_init__(self) -> "None":
        object.__setattr__(self, "aliases", _frozen(self.aliases))
        object.__setattr__(self, "unit_scales", _frozen(self.unit_scales))
        object.__setattr__(self, "rate_families", _frozen(self.rate_families))

    def alias_for(self, dimension: "str", product_family: "str") -> "str | None":
        if dimension in self.aliases:
            return self.aliases[dimension]
        return self.aliases.get(product_family)

    def clean(self, identifier: "str") -> "str":
        for suffix in self.strip_suffixes:
            if identifier.endswith(suffix) and identifier != suffix:
                return identifier[: -len(suffix)]
        return identifier


@dataclass(frozen=True, slots=True)
class Resolution:
    """
    the outcome of a catalog lookup. method names the step that
    produced the match, "unpriced" when nothing did.
    """

    key: "str"
    entry: "PriceEntry"
    matched: "bool"
    method: "str"


_SEPARATORS = re.compile(r"[\s_\-./]+")


def tokenize(identifier: "str") -> "list[str]":
    return [t for t in _SEPARATORS.split(identifier.lower()) if t]


def extract_price_details(document: "Mapping[str, Any]") -> "list[Mapping[str, Any]]":
    """
    finds the list of price details inside a provider listing document.
    Listings nest it under a PricingInformation object at varying depth,
    so the document is searched breadth first.
    """
    queue: "list[Any]" = [document]
    while queue:
        node = queue.pop(0)
        if isinstance(node, Mapping):
            info = node.get("PricingInformation")
            if isinstance(info, Mapping) and isinstance(info.get("Details"), list):
                return [d for d in info["Details"] if isinstance(d, Mapping)]
            queue.extend(node.values())
        elif isinstance(node, list):
            queue.extend(node)

    raise CatalogError("price listing has no PricingInformation.Details")


class PriceCatalog:
    """
    PriceCatalog maps pricing keys to prices and resolves provider
    usage dimensions onto them. It is built once per invocation and
    only read afterwards.

    Resolution stops at the first step that succeeds:
      1. alias table (dimension first, then product family)
      2. direct key match
      3. token subset: every token of the identifier is a token of the key
      4. token subset again after synonym substitution
      5. smallest edit distance to any key

    Step 5 is a heuristic; a dimension can land on the wrong price.
    """

    def __init__(
        self,
        entries: "Mapping[str, PriceEntry]",
        rules: "PricingRules | None" = None,
    ) -> "None":
        self._entries: "Mapping[str, PriceEntry]" = MappingProxyType(dict(entries))
        self._rules = rules or PricingRules()
        self._tokens: "dict[str, frozenset[str]]" = {
            key: frozenset(tokenize(key)) for key in self._entries
        }

    @classmethod
    def from_listing(
        cls,
        details: "Iterable[Mapping[str, Any]]",
        rules: "PricingRules | None" = None,
    ) -> "PriceCatalog":
        """
        builds a catalog from listing details shaped like
        {"Name", "DetailDescription", "Units", "1MONTHS": {"Rate", "Currency"}}.
        Rate-family prices become an hourly fraction of the monthly price;
        other prices are divided by their unit scale.
        """
        rules = rules or PricingRules()
        entries: "dict[str, PriceEntry]" = {}

        for detail in details:
            name = str(detail.get("Name") or "").strip()
            if not name:
                continue

            monthly = detail.get("1MONTHS") or {}
            raw_rate = monthly.get("Rate")
            try:
                rate = float(raw_rate)
            except (TypeError, ValueError):
                logger.warning("price_rate_unparseable", key=name, rate=raw_rate)
                continue

            unit = str(detail.get("Units") or monthly.get("Unit") or "")
            hours = rules.rate_families.get(name)
            if hours:
                entries[name] = PriceEntry(
                    key=name,
                    unit_price=rate / hours,
                    currency=str(monthly.get("Currency") or ""),
                    description=str(detail.get("DetailDescription") or ""),
                    usage_unit=unit.removesuffix("s") + " - hours",
                    rate_priced=True,
                )
                continue

            scale = rules.unit_scales.get(name, 1.0)
            entries[name] = PriceEntry(
                key=name,
                unit_price=rate / scale,
                currency=str(monthly.get("Currency") or ""),
                description=str(detail.get("DetailDescription") or ""),
                usage_unit=unit,
            )

        if not entries:
            raise CatalogError("price listing contained no usable prices")

        logger.info("price_catalog_built", entries=len(entries))
        return cls(entries, rules)

    @property
    def rules(self) -> "PricingRules":
        return self._rules

    @property
    def currency(self) -> "str":
        for entry in self._entries.values():
            if entry.currency:
                return entry.currency
        return ""

    def __len__(self) -> "int":
        return len(self._entries)

    def __contains__(self, key: "object") -> "bool":
        return key in self._entries

    def __iter__(self) -> "Iterator[str]":
        return iter(self._entries)

    def get(self, key: "str") -> "PriceEntry | None":
        return self._entries.get(key)

    def is_rate(self, product_family: "str", entry: "PriceEntry | None" = None) -> "bool":
        """
        a dimension is rate-classified when its price is rate-priced or
        its product family is a known standing population.
        """
        if entry is not None and entry.rate_priced:
            return True
        return product_family in self._rules.rate_families

    def resolve(self, dimension: "str", product_family: "str") -> "Resolution":
        rules = self._rules

        alias = rules.alias_for(dimension, product_family)
        if alias is not None and alias in self._entries:
            return self._hit(alias, "alias")

        identifier = alias if alias is not None else rules.clean(dimension)

        if identifier in self._entries:
            return self._hit(identifier, "direct")
        if alias is None and product_family in self._entries:
            return self._hit(product_family, "direct")

        if identifier in rules.too_generic or not self._entries:
            return self._unpriced(dimension, product_family)

        tokens = tokenize(identifier)
        key = self._token_subset(tokens)
        if key is not None:
            return self._hit(key, "tokens")

        swapped = self._swap_synonyms(tokens)
        if swapped != tokens:
            key = self._token_subset(swapped)
            if key is not None:
                return self._hit(key, "synonym")

        key = min(
            self._entries,
            key=lambda candidate: Levenshtein.distance(identifier, candidate),
        )
        logger.debug(
            "pricing_edit_distance_fallback",
            dimension=dimension,
            identifier=identifier,
            key=key,
        )
        return self._hit(key, "edit_distance")

    def _token_subset(self, tokens: "list[str]") -> "str | None":
        if not tokens:
            return None
        for key, key_tokens in self._tokens.items():
            if key_tokens.issuperset(tokens):
                return key
        return None

    def _swap_synonyms(self, tokens: "list[str]") -> "list[str]":
        table: "dict[str, str]" = {}
        for left, right in self._rules.synonyms:
            table.setdefault(left, right)
            table.setdefault(right, left)
        return [table.get(t, t) for t in tokens]

    def _hit(self, key: "str", method: "str") -> "Resolution":
        return Resolution(key=key, entry=self._entries[key], matched=True, method=method)

    def _unpriced(self, dimension: "str", product_family: "str") -> "Resolution":
        logger.warning(
            "pricing_unmatched",
            dimension=dimension,
            product_family=product_family,
        )
        return Resolution(
            key="",
            entry=PriceEntry(
                key="",
                unit_price=0.0,
                currency="",
                description=f"{product_family} {UNPRICED_LABEL}",
                usage_unit="",
            ),
            matched=False,
            method="unpriced",
        )
