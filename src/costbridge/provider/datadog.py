import json
import re
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx
import structlog

from costbridge.catalog import HOURS_PER_MONTH, PricingRules, extract_price_details
from costbridge.errors import CatalogError
from costbridge.models import BillingCharge, UsageEntry, UsagePage, Window
from costbridge.postprocess import (
    AllowanceRule,
    LeftoverRule,
    PostProcessRules,
    SplitRule,
)
from costbridge.provider.base import SourceProfile

logger = structlog.get_logger()

DEFAULT_SITE = "datadoghq.com"

# public AWS Marketplace listing carrying Datadog's list prices
PRICING_URL = "https://aws.amazon.com/marketplace/pp/prodview-536p4hpqbajc2"

HOURLY_USAGE_PATH = "/api/v2/usage/hourly_usage"
ESTIMATED_COST_PATH = "/api/v2/usage/estimated_cost"

_PRODUCT_DETAIL_RE = re.compile(r"var productDetailData = \s*(.*?)\s*;")

_TIB = 1024.0 * 1024.0 * 1024.0 * 1024.0

DATADOG_PROFILE = SourceProfile(
    domain="datadog",
    cost_source="observability",
    api_client_version="v2",
)

DATADOG_PRICING_RULES = PricingRules(
    aliases={
        "timeseries": "custom_metrics",
        "apm_uncategorized_host_count": "apm_hosts",
        "apm_host_count_incl_usm": "apm_hosts",
        "apm_azure_app_service_host_count": "apm_hosts",
        "apm_devsecops_host_count": "apm_hosts",
        "apm_host_count": "apm_hosts",
        "opentelemetry_apm_host_count": "apm_hosts",
        "apm_fargate_count": "apm_hosts",
        "container_count": "containers",
        "container_count_excl_agent": "containers",
        "billable_ingested_bytes": "ingested_logs",
        "ingested_events_bytes": "ingested_logs",
        "logs_live_ingested_bytes": "ingested_logs",
        "logs_rehydrated_ingested_bytes": "ingested_logs",
        "indexed_events_count": "indexed_logs",
        "logs_live_indexed_count": "indexed_logs",
        "synthetics_api": "api_tests",
        "synthetics_browser": "browser_checks",
        "tasks_count": "fargate_tasks",
        "rum": "rum_events",
        "analyzed_logs": "security_logs",
        "snmp": "snmp_device",
        "invocations_sum": "serverless_inv",
    },
    unit_scales={
        "custom_metrics": 100.0,
        "indexed_logs": 1_000_000.0,
        "ingested_logs": _TIB,
        "api_tests": 10_000.0,
        "browser_checks": 1_000.0,
        "rum_events": 10_000.0,
        "security_logs": _TIB,
        "serverless_inv": 1_000_000.0,
    },
    rate_families={
        "infra_hosts": HOURS_PER_MONTH,
        "apm_hosts": HOURS_PER_MONTH,
        "containers": HOURS_PER_MONTH,
    },
)

DATADOG_POSTPROCESS_RULES = PostProcessRules(
    splits=(
        SplitRule(
            parent="host_count",
            subset="agent_host_count",
            resource_name="other_hosts",
            description="other hosts",
        ),
        SplitRule(
            parent="container_count",
            subset="container_count_excl_agent",
            resource_name="agent_container",
            description="agent container",
        ),
    ),
    overlaps=(
        "logs_live_indexed_events_15_day_count",
        "logs_live_indexed_count",
    ),
    leftovers=(
        LeftoverRule(
            total="indexed_events_count",
            subset="logs_indexed_events_15_day_count",
            resource_name="other_log_events",
            description="other log events",
        ),
    ),
    # the first 200 normalized queries per database host are free
    allowances=(
        AllowanceRule(
            dimension="dbm_queries_count",
            companion="dbm_host_count",
            per_unit=200.0,
            usage_unit="queries",
        ),
    ),
)


def _parse_time(value: "Any") -> "datetime":
    if not isinstance(value, str):
        raise ValueError(f"expected an ISO timestamp, got {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_time(value: "datetime") -> "str":
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+00:00")


def parse_usage_page(payload: "Mapping[str, Any]") -> "UsagePage":
    """
    parses an hourly usage response. Raises ValueError when the payload
    does not look like one.
    """
    data = payload.get("data")
    if not isinstance(data, list):
        raise ValueError("hourly usage response has no data list")

    entries: "list[UsageEntry]" = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"malformed hourly usage entry: {item!r}")
        attrs = item.get("attributes") or {}
        measurements: "dict[str, float | None]" = {}
        for measurement in attrs.get("measurements") or []:
            usage_type = measurement.get("usage_type")
            if not usage_type:
                continue
            value = measurement.get("value")
            measurements[usage_type] = float(value) if value is not None else None

        timestamp = attrs.get("timestamp")
        entries.append(
            UsageEntry(
                id=str(item.get("id") or ""),
                public_id=str(attrs.get("public_id") or ""),
                org_name=str(attrs.get("org_name") or ""),
                region=str(attrs.get("region") or ""),
                product_family=str(attrs.get("product_family") or ""),
                measurements=measurements,
                timestamp=_parse_time(timestamp) if timestamp else None,
            )
        )

    pagination = (payload.get("meta") or {}).get("pagination") or {}
    return UsagePage(
        entries=tuple(entries),
        next_cursor=pagination.get("next_record_id") or None,
    )


def parse_estimated_cost(payload: "Mapping[str, Any]") -> "list[BillingCharge]":
    data = payload.get("data")
    if not isinstance(data, list):
        raise ValueError("estimated cost response has no data list")

    charges: "list[BillingCharge]" = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"malformed estimated cost entry: {item!r}")
        attrs = item.get("attributes") or {}
        date = _parse_time(attrs.get("date"))
        for charge in attrs.get("charges") or []:
            if not isinstance(charge, dict):
                raise ValueError(f"malformed charge in estimated cost entry: {charge!r}")
            charges.append(
                BillingCharge(
                    id=str(item.get("id") or ""),
                    date=date,
                    public_id=str(attrs.get("public_id") or ""),
                    org_name=str(attrs.get("org_name") or ""),
                    region=str(attrs.get("region") or ""),
                    product_name=str(charge.get("product_name") or ""),
                    charge_type=str(charge.get("charge_type") or ""),
                    cost=float(charge.get("cost") or 0.0),
                )
            )
    return charges


def parse_pricing_page(body: "str") -> "list[Mapping[str, Any]]":
    """
    pulls the embedded product detail JSON out of the listing page and
    returns its price details.
    """
    matches = _PRODUCT_DETAIL_RE.findall(body)
    if len(matches) != 1:
        raise CatalogError(
            f"requires exactly 1 product detail data, got {len(matches)}"
        )

    try:
        document = json.loads(matches[0])
    except json.JSONDecodeError as exc:
        raise CatalogError(f"failed to read pricing page body: {exc}") from exc

    if not isinstance(document, dict):
        raise CatalogError("product detail data is not an object")

    offer = document.get("offerData")
    if isinstance(offer, dict):
        return extract_price_details(offer)
    return extract_price_details(document)


class DatadogSource:
    """
    DatadogSource implements the UsageSource protocol on Datadog's usage
    metering API. Usage comes from the hourly usage endpoint, charge
    estimates from the estimated cost endpoint and list prices from the
    public marketplace listing.
    """

    def __init__(
        self,
        api_key: "str",
        app_key: "str",
        site: "str" = DEFAULT_SITE,
        pricing_url: "str" = PRICING_URL,
        timeout: "float" = 30.0,
        client: "httpx.AsyncClient | None" = None,
        pricing_client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        self._base_url = f"https://api.{site}"
        self._pricing_url = pricing_url
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "DD-API-KEY": api_key,
                "DD-APPLICATION-KEY": app_key,
                "Accept": "application/json",
            },
        )
        # the listing is a public page: no credentials, and it may redirect
        self._pricing_client: "httpx.AsyncClient" = pricing_client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @property
    def name(self) -> "str":
        return "datadog"

    @property
    def profile(self) -> "SourceProfile":
        return DATADOG_PROFILE

    @property
    def base_url(self) -> "str":
        return self._base_url

    async def close(self) -> "None":
        await self._client.aclose()
        await self._pricing_client.aclose()

    async def fetch_usage_page(
        self,
        window: "Window",
        cursor: "str | None",
    ) -> "UsagePage":
        params: "dict[str, str]" = {
            "filter[timestamp][start]": _format_time(window.start),
            "filter[timestamp][end]": _format_time(window.end),
            "filter[product_families]": "all",
        }
        if cursor:
            params["page[next_record_id]"] = cursor

        logger.debug("datadog_fetch_usage", window=str(window), cursor=cursor)
        resp = await self._client.get(f"{self._base_url}{HOURLY_USAGE_PATH}", params=params)
        resp.raise_for_status()
        return parse_usage_page(resp.json())

    async def fetch_billing(self, window: "Window") -> "list[BillingCharge]":
        # query from the first of the month so running totals can be
        # turned into daily deltas
        start = window.start.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        end = window.end.replace(hour=0, minute=0, second=0, microsecond=0)
        params = {
            "start_date": _format_time(start),
            "end_date": _format_time(end),
            "view": "sub-org",
        }

        logger.debug("datadog_fetch_estimated_cost", start=str(start), end=str(end))
        resp = await self._client.get(
            f"{self._base_url}{ESTIMATED_COST_PATH}", params=params
        )
        resp.raise_for_status()
        return parse_estimated_cost(resp.json())

    async def fetch_price_listing(self) -> "list[Mapping[str, Any]]":
        logger.debug("datadog_fetch_pricing", url=self._pricing_url)
        resp = await self._pricing_client.get(self._pricing_url)
        if resp.status_code == 429:
            resp.raise_for_status()
        if resp.status_code != 200:
            raise CatalogError(
                f"failed to retrieve pricing page. Status code: {resp.status_code}"
            )
        return parse_pricing_page(resp.text)
